"""CLI interface for pyb2backup."""

import logging
from pathlib import Path
from typing import Any, Optional

import click
from rich.markup import escape
from rich.tree import Tree

from .api import B2Client
from .cli_progress import wait_with_progress
from .config import config
from .exceptions import (
    AlreadyRunningError,
    B2APIError,
    B2ConfigError,
    ListError,
    NodeNotFoundError,
)
from .output import OutputFormatter
from .sync import (
    BackupEngine,
    DirectoryScanner,
    FileTreeModel,
    RunHandle,
    RunState,
    RunSummary,
    SelectionStateManager,
    SyncPlan,
)
from .utils import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_TIMEOUT,
    DEFAULT_WORKERS,
    normalize_prefix,
)

logger = logging.getLogger(__name__)


@click.group()
@click.option(
    "--key-id", envvar="B2_APPLICATION_KEY_ID", help="B2 application key ID"
)
@click.option("--key", envvar="B2_APPLICATION_KEY", help="B2 application key")
@click.option("--bucket", "-b", envvar="B2_BUCKET_ID", help="B2 bucket ID")
@click.option(
    "--ignore",
    "-i",
    multiple=True,
    help="Glob pattern of local files to leave out of the tree (repeatable)",
)
@click.option(
    "--exclude-dot-files", is_flag=True, help="Leave dot files out of the tree"
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pyb2backup")
@click.pass_context
def main(
    ctx: Any,
    key_id: Optional[str],
    key: Optional[str],
    bucket: Optional[str],
    ignore: tuple[str, ...],
    exclude_dot_files: bool,
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """PyB2Backup - Back up a local directory to Backblaze B2."""
    # Store settings in context for subcommands to access
    ctx.ensure_object(dict)
    ctx.obj["key_id"] = key_id
    ctx.obj["key"] = key
    ctx.obj["bucket"] = bucket
    ctx.obj["ignore"] = list(ignore)
    ctx.obj["exclude_dot_files"] = exclude_dot_files
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj.setdefault("selections", SelectionStateManager())

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pyb2backup").setLevel(logging.DEBUG)
    else:
        # Set default logging level to WARNING to suppress debug/info messages
        logging.basicConfig(level=logging.WARNING)


# =============================================================================
# Helpers
# =============================================================================


def _load_tree(ctx: Any, path: str) -> FileTreeModel:
    """Scan PATH and re-apply the saved selection."""
    out: OutputFormatter = ctx.obj["out"]
    scanner = DirectoryScanner(
        ignore_patterns=ctx.obj["ignore"],
        exclude_dot_files=ctx.obj["exclude_dot_files"],
    )
    root_path = Path(path)
    tree = FileTreeModel.build(root_path, scanner=scanner)

    selections: SelectionStateManager = ctx.obj["selections"]
    rules = selections.load_rules(root_path)
    if rules:
        tree.apply_selection_rules(rules)

    for error in tree.scan_errors:
        out.warning(str(error))
    return tree


def _create_client(ctx: Any) -> B2Client:
    return B2Client(
        key_id=ctx.obj["key_id"],
        application_key=ctx.obj["key"],
        timeout=DEFAULT_TIMEOUT,
    )


def _require_bucket(ctx: Any) -> str:
    bucket_id = ctx.obj["bucket"] or config.bucket_id
    if not bucket_id:
        raise B2ConfigError(
            "Bucket not configured. Use --bucket, set B2_BUCKET_ID or run "
            "'pyb2backup init'."
        )
    return bucket_id


def _create_engine(
    ctx: Any,
    path: str,
    prefix: str,
    workers: int = DEFAULT_WORKERS,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
) -> BackupEngine:
    bucket_id = _require_bucket(ctx)
    tree = _load_tree(ctx, path)
    return BackupEngine(
        _create_client(ctx),
        bucket_id,
        tree,
        prefix=prefix,
        workers=workers,
        max_retries=max_retries,
        retry_delay=retry_delay,
    )


def _plan_to_dict(plan: SyncPlan) -> dict:
    return {
        "uploads": [
            {"key": u.key, "reason": u.reason.value, "size": u.file.size}
            for u in plan.uploads
        ],
        "purges": list(plan.purges),
        "unchanged": plan.unchanged_count,
        "protected": list(plan.protected),
    }


def _finish_run(ctx: Any, handle: RunHandle, title: str) -> None:
    """Wait for a run, report it and set the exit code."""
    out: OutputFormatter = ctx.obj["out"]
    summary = wait_with_progress(
        handle, show_progress=not (out.quiet or out.json_output)
    )
    _report_summary(out, title, summary)

    if summary.state == RunState.CANCELLED:
        out.warning("Run cancelled by user")
        ctx.exit(130)  # Standard exit code for SIGINT
    if summary.has_failures:
        ctx.exit(1)


def _report_summary(out: OutputFormatter, title: str, summary: RunSummary) -> None:
    if out.json_output:
        out.output_json(summary.to_dict())
        return

    for key, error in summary.failures:
        out.error(f"{key}: {error.cause}")

    items = [
        ("Status", summary.state.value),
        (
            "Uploaded",
            f"{summary.uploaded} file(s), {out.format_size(summary.uploaded_bytes)}",
        ),
        ("Purged", f"{summary.purged} file(s)"),
        ("Unchanged", f"{summary.unchanged} file(s)"),
    ]
    if summary.failed:
        items.append(("Failed", f"{summary.failed} operation(s)"))
    if summary.cancelled:
        items.append(("Cancelled", f"{summary.cancelled} operation(s)"))
    items.append(("Elapsed", f"{summary.elapsed:.1f}s"))
    out.print_summary(title, items)


prefix_option = click.option(
    "--prefix",
    "-p",
    envvar="B2_PREFIX",
    default="",
    help="Remote name prefix the local directory maps to",
)


# =============================================================================
# Commands
# =============================================================================


@main.command()
@click.option("--key-id", prompt="Application key ID", help="B2 application key ID")
@click.option(
    "--key",
    prompt="Application key",
    hide_input=True,
    help="B2 application key",
)
@click.option("--bucket", prompt="Bucket ID", help="B2 bucket ID")
@click.pass_context
def init(ctx: Any, key_id: str, key: str, bucket: str) -> None:
    """Initialize B2 configuration.

    Stores your application key and bucket in ~/.config/pyb2backup/config
    for future use.
    """
    out: OutputFormatter = ctx.obj["out"]

    out.info("Validating application key...")
    client = B2Client(key_id=key_id, application_key=key)
    try:
        authorization = client.authorize()
        out.success("Application key is valid")
        allowed = authorization.allowed_bucket_id
        if allowed and allowed != bucket:
            out.warning(f"Key is restricted to bucket {allowed}")
    except B2APIError as e:
        out.error(f"Application key validation failed: {e}")
        if not click.confirm("Save configuration anyway?", default=False):
            out.warning("Configuration cancelled.")
            ctx.exit(1)
    finally:
        client.close()

    config.save_credentials(key_id, key)
    config.save_bucket_id(bucket)

    out.print_summary(
        "Initialization Complete",
        [
            ("Status", "✓ Configuration saved successfully"),
            ("Config file", str(config.get_config_path())),
        ],
    )


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.pass_context
def tree(ctx: Any, path: str) -> None:
    """Show the local tree and what will be backed up.

    PATH: Local directory to back up
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        model = _load_tree(ctx, path)
    except ValueError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json(
            [
                {
                    "path": node_path,
                    "kind": node.kind.value,
                    "size": node.size,
                    "included": effective,
                }
                for node_path, node, effective in model.iter_nodes()
            ]
        )
        return

    root = Tree(f"[bold]{escape(str(model.root_path))}[/bold]")
    branches: dict[str, Tree] = {"": root}
    for node_path, node, effective in model.iter_nodes():
        parent_path = node_path.rsplit("/", 1)[0] if "/" in node_path else ""
        mark = "[green]✓[/green]" if effective else "[red]✗[/red]"
        label = f"{mark} {escape(node.name)}"
        if node.is_dir:
            label += "/"
        else:
            label += f" [dim]({out.format_size(node.size)})[/dim]"
        if node.scan_error is not None:
            label += " [yellow](unreadable)[/yellow]"
        branches[node_path] = branches[parent_path].add(label)
    out.print(root)


def _change_selection(
    ctx: Any, path: str, nodes: tuple[str, ...], included: bool
) -> None:
    out: OutputFormatter = ctx.obj["out"]

    try:
        model = _load_tree(ctx, path)
    except ValueError as e:
        out.error(str(e))
        ctx.exit(1)

    failed = False
    for node_path in nodes:
        try:
            model.set_inclusion(node_path, included)
        except NodeNotFoundError as e:
            out.error(str(e))
            failed = True

    selections: SelectionStateManager = ctx.obj["selections"]
    rules = model.selection_rules()
    try:
        selections.save_rules(model.root_path, rules)
    except OSError as e:
        out.error(f"Failed to save selection: {e}")
        ctx.exit(1)

    selected = sum(1 for _ in model.effective_included_files())
    if out.json_output:
        out.output_json(
            {
                "rules": [{"path": p, "included": i} for p, i in rules],
                "included_files": selected,
            }
        )
    else:
        verb = "Included" if included else "Excluded"
        out.success(f"{verb} {len(nodes)} path(s); {selected} file(s) selected")

    if failed:
        ctx.exit(1)


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.argument("nodes", nargs=-1, required=True)
@click.pass_context
def include(ctx: Any, path: str, nodes: tuple[str, ...]) -> None:
    """Include files or directories in the backup.

    PATH: Local directory to back up
    NODES: Paths relative to PATH
    """
    _change_selection(ctx, path, nodes, included=True)


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.argument("nodes", nargs=-1, required=True)
@click.pass_context
def exclude(ctx: Any, path: str, nodes: tuple[str, ...]) -> None:
    """Exclude files or directories from the backup.

    PATH: Local directory to back up
    NODES: Paths relative to PATH
    """
    _change_selection(ctx, path, nodes, included=False)


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@prefix_option
@click.pass_context
def status(ctx: Any, path: str, prefix: str) -> None:
    """Show what an upload with --purge would do, without doing it.

    PATH: Local directory to back up
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        engine = _create_engine(ctx, path, prefix)
    except (B2ConfigError, ValueError) as e:
        out.error(str(e))
        ctx.exit(1)

    try:
        plan = engine.plan()
    except ListError as e:
        out.error(str(e))
        ctx.exit(1)
    finally:
        engine.client.close()

    if out.json_output:
        out.output_json(_plan_to_dict(plan))
        return

    if plan.uploads:
        out.output_table(
            [
                {
                    "key": u.key,
                    "reason": u.reason.value,
                    "size": out.format_size(u.file.size),
                }
                for u in plan.uploads
            ],
            ["key", "reason", "size"],
            {"key": "Upload", "reason": "Reason", "size": "Size"},
        )
    if plan.purges:
        out.output_table(
            [{"key": key} for key in plan.purges], ["key"], {"key": "Purge"}
        )
    for key in plan.protected:
        out.warning(f"Not purging {key}: its local entry could not be read")

    remote = normalize_prefix(prefix) or "/"
    out.print_summary(
        "Status",
        [
            ("Remote prefix", remote),
            (
                "To upload",
                f"{len(plan.uploads)} file(s), {out.format_size(plan.upload_bytes)}",
            ),
            ("To purge", f"{len(plan.purges)} file(s)"),
            ("Unchanged", f"{plan.unchanged_count} file(s)"),
        ],
    )


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@prefix_option
@click.option(
    "--purge",
    is_flag=True,
    help="Also hide remote files that are no longer selected locally",
)
@click.option(
    "--workers",
    "-j",
    type=click.IntRange(min=1),
    default=DEFAULT_WORKERS,
    help=f"Number of parallel workers (default: {DEFAULT_WORKERS})",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_RETRIES,
    help=f"Attempts per file on transient errors (default: {DEFAULT_MAX_RETRIES})",
)
@click.pass_context
def upload(
    ctx: Any,
    path: str,
    prefix: str,
    purge: bool,
    workers: int,
    max_retries: int,
) -> None:
    """Upload new and changed files to the bucket.

    PATH: Local directory to back up
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        engine = _create_engine(
            ctx, path, prefix, workers=workers, max_retries=max_retries
        )
    except (B2ConfigError, ValueError) as e:
        out.error(str(e))
        ctx.exit(1)

    try:
        out.info("Comparing with bucket...")
        handle = engine.start_upload(purge=purge)
        _finish_run(ctx, handle, "Upload Complete")
    except (ListError, AlreadyRunningError) as e:
        out.error(str(e))
        ctx.exit(1)
    finally:
        engine.client.close()


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@prefix_option
@click.option(
    "--workers",
    "-j",
    type=click.IntRange(min=1),
    default=DEFAULT_WORKERS,
    help=f"Number of parallel workers (default: {DEFAULT_WORKERS})",
)
@click.confirmation_option(prompt="Hide remote files that are not selected locally?")
@click.pass_context
def purge(ctx: Any, path: str, prefix: str, workers: int) -> None:
    """Hide remote files that are no longer selected locally.

    Hidden files keep their older versions in the bucket.

    PATH: Local directory to back up
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        engine = _create_engine(ctx, path, prefix, workers=workers)
    except (B2ConfigError, ValueError) as e:
        out.error(str(e))
        ctx.exit(1)

    try:
        handle = engine.start_purge()
        _finish_run(ctx, handle, "Purge Complete")
    except (ListError, AlreadyRunningError) as e:
        out.error(str(e))
        ctx.exit(1)
    finally:
        engine.client.close()


if __name__ == "__main__":
    main()
