"""CSharpParserService -- process-wide parser singleton.

Loading the grammar is the expensive part of parsing; every extractor in a
process (including each extraction worker) shares one parser.

Usage::

    from cataloger.scanner._internal.parsing.service import CSharpParserService

    result = CSharpParserService.get().parse(Path("Models/User.cs"), content)
"""

from __future__ import annotations

from pathlib import Path

from cataloger.core.errors import ParseError
from cataloger.scanner._internal.parsing.treesitter import (
    CSharpParser,
    ParsedSource,
    ParseResult,
)


class CSharpParserService:
    """Singleton wrapper around :class:`CSharpParser`."""

    _instance: CSharpParserService | None = None

    def __init__(self) -> None:
        self._parser = CSharpParser()

    @classmethod
    def get(cls) -> CSharpParserService:
        """Return the singleton service instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset singleton (mainly for testing)."""
        cls._instance = None

    @property
    def parser(self) -> CSharpParser:
        return self._parser

    def parse(self, path: Path, content: bytes | None = None) -> ParseResult:
        """Parse a file. Returns a :class:`ParseResult`."""
        return self._parser.parse(path, content)

    def parse_source(
        self,
        rel_path: str,
        content: bytes | str,
        *,
        repository: str = "",
        commit_sha: str = "unknown",
        module_name: str = "",
        max_error_ratio: float | None = None,
    ) -> ParsedSource:
        """Parse content and wrap it with its provenance context.

        Raises:
            ParseError: If parsing fails or the share of error nodes is
                above ``max_error_ratio``.
        """
        if isinstance(content, str):
            content = content.encode("utf-8")
        result = self._parser.parse(Path(rel_path), content)
        if max_error_ratio is not None and result.error_ratio > max_error_ratio:
            raise ParseError.unparseable(
                rel_path,
                f"error ratio {result.error_ratio:.2f} exceeds {max_error_ratio:.2f}",
            )
        return ParsedSource(
            path=rel_path,
            result=result,
            repository=repository,
            commit_sha=commit_sha,
            module_name=module_name,
        )
