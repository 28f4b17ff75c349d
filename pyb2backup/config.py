"""Configuration management for pyb2backup.

Values are read from environment variables first and from the config file
at ``~/.config/pyb2backup/config`` second. The config file holds simple
``KEY=VALUE`` lines.
"""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.backblazeb2.com"

KEY_ID_VAR = "B2_APPLICATION_KEY_ID"
APPLICATION_KEY_VAR = "B2_APPLICATION_KEY"
BUCKET_ID_VAR = "B2_BUCKET_ID"
API_URL_VAR = "B2_API_URL"


class Config:
    """Reads and writes pyb2backup configuration."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Directory holding the config file. Defaults to
                ~/.config/pyb2backup/
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "pyb2backup"
        self.config_dir = config_dir

    def get_config_path(self) -> Path:
        """Return the path of the config file."""
        return self.config_dir / "config"

    def _read_file(self) -> dict[str, str]:
        config_file = self.get_config_path()
        if not config_file.exists():
            return {}

        values: dict[str, str] = {}
        try:
            with open(config_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    values[key.strip()] = value.strip()
        except OSError as e:
            logger.warning(f"Failed to read config file {config_file}: {e}")
        return values

    def _write_values(self, updates: dict[str, str]) -> None:
        values = self._read_file()
        values.update(updates)

        self.config_dir.mkdir(parents=True, exist_ok=True)
        config_file = self.get_config_path()
        with open(config_file, "w", encoding="utf-8") as f:
            for key, value in sorted(values.items()):
                f.write(f"{key}={value}\n")
        # Credentials live in this file
        config_file.chmod(0o600)
        logger.debug(f"Saved {', '.join(sorted(updates))} to {config_file}")

    def _get(self, name: str) -> Optional[str]:
        value = os.environ.get(name)
        if value:
            return value
        return self._read_file().get(name) or None

    @property
    def key_id(self) -> Optional[str]:
        """Application key ID."""
        return self._get(KEY_ID_VAR)

    @property
    def application_key(self) -> Optional[str]:
        """Application key secret."""
        return self._get(APPLICATION_KEY_VAR)

    @property
    def bucket_id(self) -> Optional[str]:
        """Bucket to back up into."""
        return self._get(BUCKET_ID_VAR)

    @property
    def api_url(self) -> str:
        """Authorization endpoint base URL."""
        return self._get(API_URL_VAR) or DEFAULT_API_URL

    def is_configured(self) -> bool:
        """Check whether credentials and bucket are all available."""
        return bool(self.key_id and self.application_key and self.bucket_id)

    def save_credentials(self, key_id: str, application_key: str) -> None:
        """Persist the application key pair."""
        self._write_values(
            {KEY_ID_VAR: key_id, APPLICATION_KEY_VAR: application_key}
        )

    def save_bucket_id(self, bucket_id: str) -> None:
        """Persist the bucket ID."""
        self._write_values({BUCKET_ID_VAR: bucket_id})


config = Config()
