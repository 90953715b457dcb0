"""C# parsing via tree-sitter."""

from cataloger.scanner._internal.parsing.service import CSharpParserService
from cataloger.scanner._internal.parsing.treesitter import (
    CSharpParser,
    ParsedSource,
    ParseResult,
)

__all__ = ["CSharpParser", "CSharpParserService", "ParsedSource", "ParseResult"]
