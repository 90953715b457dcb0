"""Source Reader: enumerate C# files in a repository checkout.

Yields lightweight ``SourceFile`` records; content is read lazily by the
extraction worker that handles the file, so enumeration stays cheap and a
slow or failing read only affects that one file.
"""

from __future__ import annotations

import os
from collections.abc import Collection, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

from cataloger.core.errors import SourceError

logger = structlog.get_logger()

DEFAULT_EXCLUDED_DIRS = frozenset({".git", "bin", "obj", "node_modules", "packages"})


@dataclass(frozen=True)
class SourceFile:
    """A source file discovered under the repository root."""

    path: Path  # absolute
    rel_path: str  # repo-relative, forward slashes
    module_name: str = ""  # nearest *.csproj stem

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def read_text(self) -> str:
        return self.read_bytes().decode("utf-8", errors="replace")


def count_lines(content: bytes) -> int:
    if not content:
        return 0
    return content.count(b"\n") + (0 if content.endswith(b"\n") else 1)


class SourceReader:
    """Enumerate source files under a repository root.

    Args:
        root: Repository checkout root
        extensions: File suffixes to include (".cs")
        excluded_dirs: Directory names never descended into
        max_file_size_mb: Larger files are skipped (logged)
        only: When given, just these repo-relative paths are yielded
    """

    def __init__(
        self,
        root: Path,
        *,
        extensions: Sequence[str] = (".cs",),
        excluded_dirs: Sequence[str] | None = None,
        max_file_size_mb: int = 5,
        only: Collection[str] | None = None,
    ) -> None:
        self.root = root
        self.extensions = tuple(e.lower() for e in extensions)
        self.excluded_dirs = frozenset(excluded_dirs or DEFAULT_EXCLUDED_DIRS)
        self.max_bytes = max_file_size_mb * 1024 * 1024
        self.only = None if only is None else frozenset(only)
        self.skipped: list[str] = []
        self._module_cache: dict[Path, str] = {}

    def enumerate(self) -> Iterator[SourceFile]:
        """Yield source files in a stable (sorted) order.

        Raises:
            SourceError: If the root does not exist or cannot be listed.
        """
        if not self.root.is_dir():
            raise SourceError.root_not_found(str(self.root))
        try:
            os.listdir(self.root)
        except OSError as e:
            raise SourceError.unreadable(str(self.root), str(e)) from e

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=self._on_walk_error):
            dirnames[:] = sorted(d for d in dirnames if d not in self.excluded_dirs)
            current = Path(dirpath)
            for filename in sorted(filenames):
                if not filename.lower().endswith(self.extensions):
                    continue
                path = current / filename
                rel = path.relative_to(self.root).as_posix()
                if self.only is not None and rel not in self.only:
                    continue
                try:
                    size = path.stat().st_size
                except OSError as e:
                    logger.warning("source_stat_failed", path=rel, error=str(e))
                    self.skipped.append(rel)
                    continue
                if size > self.max_bytes:
                    logger.info("source_too_large", path=rel, size_bytes=size)
                    self.skipped.append(rel)
                    continue
                yield SourceFile(path=path, rel_path=rel, module_name=self._module_for(current))

    def _on_walk_error(self, error: OSError) -> None:
        logger.warning("source_walk_error", path=str(error.filename), error=str(error))

    def _module_for(self, directory: Path) -> str:
        """Stem of the nearest *.csproj at or above directory, within the root."""
        if directory in self._module_cache:
            return self._module_cache[directory]
        module = ""
        projects = sorted(directory.glob("*.csproj"))
        if projects:
            module = projects[0].stem
        elif directory != self.root and self.root in directory.parents:
            module = self._module_for(directory.parent)
        self._module_cache[directory] = module
        return module
