"""cataloger scan command - extract facts into the knowledge base."""

from pathlib import Path
from typing import Any

import click
from rich.table import Table

from cataloger.cli.utils import echo_json
from cataloger.config.loader import load_config
from cataloger.core.errors import CatalogerError
from cataloger.core.progress import get_console, spinner, status
from cataloger.scanner._internal.indexing.pipeline import ScanPipeline, ScanSummary


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--commit", "commit_sha", help="Commit identifier stamped on provenance")
@click.option(
    "--last-commit",
    "last_commit_sha",
    help="Re-parse only files changed since this commit, reusing stored facts for the rest",
)
@click.option("--repository", help="Repository identifier (default: directory name)")
@click.option("--workers", type=click.IntRange(min=1), help="Max files extracted concurrently")
@click.option("--deadline", type=click.FloatRange(min=0), help="Scan deadline in seconds")
@click.option("--enable-sampling", is_flag=True, help="Sample live MongoDB collections")
@click.option("--mongo-uri", help="MongoDB connection string (read-only credentials)")
@click.option("--mongo-database", help="Database to sample (default: from the URI)")
@click.option(
    "--max-documents-per-collection",
    type=click.IntRange(min=0),
    default=100,
    show_default=True,
    help="Documents sampled per collection",
)
@click.option(
    "--pii-detection/--no-pii-detection",
    default=True,
    show_default=True,
    help="Detect and redact PII in sampled documents",
)
@click.option("--connection-timeout", type=click.IntRange(min=1), help="MongoDB timeout (ms)")
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Knowledge base file")
@click.option("--json", "as_json", is_flag=True, help="Output summary as JSON")
def scan_command(
    path: Path,
    commit_sha: str | None,
    last_commit_sha: str | None,
    repository: str | None,
    workers: int | None,
    deadline: float | None,
    enable_sampling: bool,
    mongo_uri: str | None,
    mongo_database: str | None,
    max_documents_per_collection: int,
    pii_detection: bool,
    connection_timeout: int | None,
    db_path: Path | None,
    as_json: bool,
) -> None:
    """Scan a C# repository for MongoDB types, collections and operations.

    PATH is the repository root (default: current directory).
    """
    repo_root = path.resolve()
    scan: dict[str, Any] = {}
    if commit_sha:
        scan["commit_sha"] = commit_sha
    if last_commit_sha:
        scan["last_commit_sha"] = last_commit_sha
    if repository:
        scan["repository"] = repository
    if workers is not None:
        scan["max_workers"] = workers
    if deadline is not None:
        scan["deadline_sec"] = deadline

    sampling: dict[str, Any] = {
        "max_documents_per_collection": max_documents_per_collection,
        "pii_detection_enabled": pii_detection,
    }
    if enable_sampling:
        sampling["enabled"] = True
    if mongo_uri:
        sampling["uri"] = mongo_uri
    if mongo_database:
        sampling["database"] = mongo_database
    if connection_timeout is not None:
        sampling["timeout_ms"] = connection_timeout

    overrides: dict[str, Any] = {"scan": scan, "sampling": sampling}
    if db_path is not None:
        overrides["database"] = {"path": str(db_path)}

    try:
        config = load_config(repo_root, **overrides)
        if config.sampling.enabled and not config.sampling.uri:
            raise click.UsageError("--enable-sampling requires --mongo-uri")
        if as_json:
            summary = ScanPipeline(repo_root, config).run()
        else:
            with spinner(f"Scanning {repo_root}"):
                summary = ScanPipeline(repo_root, config).run()
    except CatalogerError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        echo_json(summary.to_dict())
        return
    _print_summary(summary)


def _print_summary(summary: ScanSummary) -> None:
    console = get_console()
    table = Table(show_header=False, box=None, padding=(0, 2), pad_edge=False)
    table.add_column("metric", style="dim")
    table.add_column("value", justify="right")
    rows: list[tuple[str, object]] = [("Scan type", summary.scan_type)]
    if summary.scan_type == "incremental":
        rows += [
            ("Since commit", (summary.last_commit_sha or "")[:12]),
            ("Files reused", summary.files_reused),
            ("Files deleted", summary.files_deleted),
        ]
    rows += [
        ("Files scanned", summary.files_scanned),
        ("Files skipped", summary.files_skipped),
        ("Files failed", summary.files_failed),
        ("Code types", summary.code_types),
        ("Collection mappings", summary.collection_mappings),
        ("Query operations", summary.query_operations),
        ("Relationships", summary.data_relationships),
        ("Observed schemas", summary.observed_schemas),
        ("Sampling failures", summary.sampling_failures),
        ("Failed writes", summary.failed_writes),
    ]
    for label, value in rows:
        table.add_row(label, str(value))
    console.print()
    console.print(table)
    console.print()
    if summary.deadline_exceeded:
        status("Deadline exceeded; some files were not scanned", style="warning")
    if summary.failed_writes or summary.files_failed or summary.sampling_failures:
        status(f"Scan finished with errors in {summary.duration_sec:.1f}s", style="warning")
    else:
        status(f"Scan complete in {summary.duration_sec:.1f}s", style="success")
    status(f"Knowledge base: {summary.kb_path}", style="info")
