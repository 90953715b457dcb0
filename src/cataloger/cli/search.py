"""cataloger search command - search knowledge base entries."""

from pathlib import Path

import click
from rich.table import Table

from cataloger.cli.utils import echo_json, open_reader
from cataloger.core.errors import CatalogerError
from cataloger.core.progress import get_console
from cataloger.scanner.models import EntityType

ENTITY_TYPES = [e.value for e in EntityType]


@click.command()
@click.argument("query")
@click.option(
    "--type",
    "entity_types",
    multiple=True,
    type=click.Choice(ENTITY_TYPES),
    help="Restrict to an entity type (repeatable)",
)
@click.option("--limit", type=click.IntRange(min=0), default=20, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Knowledge base file")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def search_command(
    query: str,
    entity_types: tuple[str, ...],
    limit: int,
    offset: int,
    db_path: Path | None,
    as_json: bool,
) -> None:
    """Search the knowledge base. Every word of QUERY must match."""
    with open_reader(db_path) as reader:
        try:
            results = reader.search(query, list(entity_types) or None, limit, offset)
        except CatalogerError as e:
            raise click.ClickException(str(e)) from e

    if as_json:
        echo_json(results)
        return

    console = get_console()
    if not results:
        console.print(f"[dim]No results for[/dim] {query!r}")
        return
    table = Table(show_lines=False)
    table.add_column("Type", style="cyan")
    table.add_column("Text")
    table.add_column("Location", style="dim")
    table.add_column("Score", justify="right")
    for entry in results:
        line = (entry.get("provenance") or {}).get("line_span", {}).get("start") or ""
        location = f"{entry['file_path']}:{line}" if line else entry["file_path"]
        table.add_row(
            entry["entity_type"],
            entry["searchable_text"],
            location,
            f"{entry['relevance_score']:.2f}",
        )
    console.print(table)
