"""cataloger get-type command - show one type and what touches it."""

from pathlib import Path
from typing import Any

import click
from rich.table import Table

from cataloger.cli.utils import echo_json, open_reader
from cataloger.core.errors import CatalogerError
from cataloger.core.progress import get_console


@click.command()
@click.argument("name")
@click.option("--namespace", help="Namespace, when NAME is not qualified")
@click.option("--no-relationships", is_flag=True, help="Omit relationships")
@click.option("--no-queries", is_flag=True, help="Omit query operations")
@click.option("--no-schemas", is_flag=True, help="Omit observed schemas")
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Knowledge base file")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def get_type_command(
    name: str,
    namespace: str | None,
    no_relationships: bool,
    no_queries: bool,
    no_schemas: bool,
    db_path: Path | None,
    as_json: bool,
) -> None:
    """Show type NAME (optionally Namespace.Name) with its mappings."""
    with open_reader(db_path) as reader:
        try:
            info = reader.get_type(
                name,
                namespace,
                include_relationships=not no_relationships,
                include_queries=not no_queries,
                include_schemas=not no_schemas,
            )
        except CatalogerError as e:
            raise click.ClickException(str(e)) from e

    if info is None:
        raise click.ClickException(f"Type not found: {name}")
    if as_json:
        echo_json(info)
        return
    _print_type(info)


def _print_type(info: dict[str, Any]) -> None:
    console = get_console()
    qualified = f"{info['namespace']}.{info['name']}" if info["namespace"] else info["name"]
    console.print(f"[bold]{qualified}[/bold]  [dim]{info['file_path']}[/dim]")

    fields = Table(title="Fields", title_justify="left")
    fields.add_column("Name")
    fields.add_column("Type")
    fields.add_column("Stored as", style="dim")
    for f in info["fields"]:
        stored = "_id" if f["is_identity"] else (f["element_name"] or "")
        fields.add_row(f["name"], f["declared_type"], stored)
    console.print(fields)

    for m in info["mappings"]:
        marker = "[green]primary[/green]" if m["is_primary"] else "[dim]alternative[/dim]"
        console.print(
            f"  collection [cyan]{m['collection_name']}[/cyan] "
            f"({m['method']}, {m['confidence']:.2f}) {marker}"
        )

    if "operations" in info:
        console.print(f"\n[bold]Operations[/bold] ({len(info['operations'])})")
        for op in info["operations"]:
            line = op["provenance"]["line_span"]["start"]
            filters = ", ".join(f["field_path"] for f in op["filters"])
            console.print(
                f"  {op['kind']} {op['collection_name'] or ''} "
                f"[dim]{op['file_path']}:{line}[/dim]" + (f"  filter: {filters}" if filters else "")
            )

    if "relationships" in info:
        console.print(f"\n[bold]Relationships[/bold] ({len(info['relationships'])})")
        for r in info["relationships"]:
            console.print(
                f"  {r['source_type_name']} -{r['kind']}-> {r['target_type_name']} "
                f"({r['confidence']:.2f}, {r['cardinality']})  [dim]{r['evidence']}[/dim]"
            )

    if "schemas" in info:
        for s in info["schemas"]:
            console.print(
                f"\n[bold]Observed schema[/bold] {s['collection_name']} "
                f"(sample {s['sample_size']}{', PII redacted' if s['pii_redacted'] else ''})"
            )
