"""Shared fixtures for scanner tests."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pygit2
import pytest

from cataloger.scanner._internal.parsing import CSharpParserService, ParsedSource


@pytest.fixture
def parse_cs() -> Callable[..., ParsedSource]:
    """Parse C# source text into a ParsedSource stamped with test provenance."""

    def _parse(code: str, path: str = "Models/Sample.cs", module_name: str = "") -> ParsedSource:
        return CSharpParserService.get().parse_source(
            path,
            code,
            repository="repo",
            commit_sha="abc123",
            module_name=module_name,
        )

    return _parse


class GitWorkTree:
    """Scratch git repository; ``commit`` stages the whole tree."""

    def __init__(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.repo = pygit2.init_repository(str(path), initial_head="main")
        self.repo.config["user.name"] = "Test User"
        self.repo.config["user.email"] = "test@example.com"

    def write(self, rel_path: str, text: str) -> None:
        target = self.path / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text)

    def remove(self, rel_path: str) -> None:
        (self.path / rel_path).unlink()
        self.repo.index.remove(rel_path)
        self.repo.index.write()

    def commit(self, message: str) -> str:
        self.repo.index.add_all()
        self.repo.index.write()
        tree = self.repo.index.write_tree()
        sig = pygit2.Signature("Test User", "test@example.com")
        parents = [] if self.repo.head_is_unborn else [self.repo.head.target]
        return str(self.repo.create_commit("HEAD", sig, sig, message, tree, parents))


@pytest.fixture
def git_work_tree(tmp_path: Path) -> Callable[..., GitWorkTree]:
    """Factory for scratch repositories under ``tmp_path``."""

    def _create(path: Path | None = None) -> GitWorkTree:
        return GitWorkTree(path or tmp_path / "work")

    return _create
