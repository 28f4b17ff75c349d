"""Output formatting for the CLI."""

import json
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .utils import format_size


class OutputFormatter:
    """Writes CLI output as rich text or JSON.

    Status messages go to stderr so that ``--json`` output on stdout stays
    machine readable. ``quiet`` suppresses everything except errors and
    JSON.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console()
        self.err_console = Console(stderr=True)

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(escape(message))

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(f"[green]✓[/green] {escape(message)}")

    def warning(self, message: str) -> None:
        if not self.quiet:
            self.err_console.print(f"[yellow]Warning:[/yellow] {escape(message)}")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {escape(message)}")

    def print(self, renderable: Any = "") -> None:
        """Print to stdout unless quiet or in JSON mode."""
        if not self.quiet and not self.json_output:
            self.console.print(renderable)

    def output_json(self, data: Any) -> None:
        # Plain print: rich would wrap long lines
        print(json.dumps(data, indent=2, default=str))

    def print_summary(self, title: str, items: list[tuple[str, str]]) -> None:
        """Print a two-column summary table."""
        if self.quiet or self.json_output:
            return
        table = Table(title=title, show_header=False, title_justify="left")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in items:
            table.add_row(escape(key), escape(value))
        self.console.print(table)

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Print rows as a table with the given column order."""
        if self.json_output:
            self.output_json(rows)
            return
        if self.quiet:
            return
        headers = headers or {}
        table = Table()
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in rows:
            table.add_row(*(escape(str(row.get(column, ""))) for column in columns))
        self.console.print(table)

    @staticmethod
    def format_size(size_bytes: int) -> str:
        return format_size(size_bytes)
