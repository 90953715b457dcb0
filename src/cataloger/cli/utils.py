"""CLI utilities."""

import json
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from cataloger.config.loader import get_kb_path, load_config
from cataloger.core.errors import CatalogerError
from cataloger.scanner._internal.db.database import Database
from cataloger.scanner._internal.db.reader import KnowledgeBaseReader


def resolve_kb_path(db_path: Path | None) -> Path:
    """Knowledge base from --db, else the configured one for the current directory.

    Raises:
        click.ClickException: If the knowledge base does not exist
    """
    if db_path is None:
        try:
            repo_root = Path.cwd()
            db_path = get_kb_path(repo_root, load_config(repo_root))
        except CatalogerError as e:
            raise click.ClickException(str(e)) from e
    if not db_path.exists():
        raise click.ClickException(
            f"Knowledge base not found: {db_path}\n"
            "Run 'cataloger scan PATH' first, or pass --db."
        )
    return db_path


@contextmanager
def open_reader(db_path: Path | None) -> Generator[KnowledgeBaseReader, None, None]:
    """Reader over an existing knowledge base; disposed on exit."""
    path = resolve_kb_path(db_path)
    try:
        db = Database(path)
    except CatalogerError as e:
        raise click.ClickException(str(e)) from e
    try:
        yield KnowledgeBaseReader(db)
    finally:
        db.dispose()


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))
