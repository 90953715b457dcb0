"""Cataloger CLI - cataloger command."""

import click

from cataloger.cli.get_type import get_type_command
from cataloger.cli.scan import scan_command
from cataloger.cli.search import search_command
from cataloger.core.logging import configure_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="cataloger")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Cataloger - MongoDB data-access catalog for C# repositories."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    configure_logging(level="DEBUG" if verbose else "WARNING")


cli.add_command(scan_command, name="scan")
cli.add_command(search_command, name="search")
cli.add_command(get_type_command, name="get-type")


if __name__ == "__main__":
    cli()
