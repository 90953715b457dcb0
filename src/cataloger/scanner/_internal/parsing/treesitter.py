"""Tree-sitter parsing for C# sources.

Wraps the ``tree_sitter_c_sharp`` grammar behind a small parser object and a
set of node helpers shared by the extractors. Analysis is purely syntactic:
target code is never compiled or executed.

Grammar notes (tree-sitter-c-sharp >= 0.23):
- Declarations may be wrapped in ``preproc_*`` nodes (#if / #region blocks).
- ``file_scoped_namespace_declaration`` holds following declarations as
  children in newer grammar releases and as siblings in older ones; callers
  handle both.
- Field names (``name``, ``type``, ``body`` ...) are used where the grammar
  defines them, with child-type fallbacks for fields renamed across releases.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import tree_sitter
import tree_sitter_c_sharp

from cataloger.core.errors import ParseError

# C# preprocessor wrapper node types that may contain declarations.
PREPROC_WRAPPERS = frozenset(
    {
        "preproc_if",
        "preproc_ifdef",
        "preproc_elif",
        "preproc_else",
        "preproc_region",
    }
)

_NULLABLE_DIRECTIVE = re.compile(r"^[ \t]*#nullable[ \t]+(enable|disable|restore)", re.MULTILINE)


@dataclass
class ParseResult:
    tree: Any
    source: bytes
    error_count: int
    total_nodes: int
    # Last ``#nullable enable|disable|restore`` directive in the file
    nullable_context: str | None = None

    @property
    def root_node(self) -> Any:
        return self.tree.root_node

    @property
    def error_ratio(self) -> float:
        """Share of ERROR or MISSING nodes; 0.0 for an empty tree."""
        return self.error_count / self.total_nodes if self.total_nodes else 0.0


@dataclass
class ParsedSource:
    """A parsed file plus the provenance stamped on every fact taken from it."""

    path: str  # repo-relative, forward slashes
    result: ParseResult
    repository: str = ""
    commit_sha: str = "unknown"
    module_name: str = ""

    @property
    def root(self) -> Any:
        return self.result.root_node


def _tally(root: Any) -> tuple[int, int]:
    """(error nodes, all nodes) under ``root``."""
    errors = total = 0
    for node in walk(root):
        total += 1
        if node.type == "ERROR" or node.is_missing:
            errors += 1
    return errors, total


def _nullable_context(source: bytes) -> str | None:
    found = _NULLABLE_DIRECTIVE.findall(source.decode("utf-8", errors="replace"))
    return found[-1] if found else None


class CSharpParser:
    """One tree-sitter parser bound to the C# grammar. Not thread-safe."""

    def __init__(self) -> None:
        self._parser = tree_sitter.Parser(tree_sitter.Language(tree_sitter_c_sharp.language()))

    def parse(self, path: Path, content: bytes | None = None) -> ParseResult:
        """Parse ``content``, or the bytes at ``path`` when no content is given.

        Raises:
            ParseError: If the file cannot be read or tree-sitter rejects the input.
        """
        try:
            source = path.read_bytes() if content is None else content
            tree = self._parser.parse(source)
        except (OSError, ValueError, TypeError) as e:
            raise ParseError.unparseable(str(path), str(e)) from e

        errors, total = _tally(tree.root_node)
        return ParseResult(
            tree=tree,
            source=source,
            error_count=errors,
            total_nodes=total,
            nullable_context=_nullable_context(source),
        )


# ---------------------------------------------------------------------------
# Node helpers
# ---------------------------------------------------------------------------


def node_text(node: Any) -> str:
    if node is None or node.text is None:
        return ""
    return str(node.text.decode("utf-8", errors="replace"))


def start_line(node: Any) -> int:
    return int(node.start_point[0]) + 1


def end_line(node: Any) -> int:
    return int(node.end_point[0]) + 1


def child_by_field(node: Any, name: str) -> Any:
    if node is None:
        return None
    try:
        return node.child_by_field_name(name)
    except (AttributeError, ValueError):
        return None


def children_of_type(node: Any, *types: str) -> list[Any]:
    if node is None:
        return []
    return [c for c in node.children if c.type in types]


def first_child_of_type(node: Any, *types: str) -> Any:
    for c in children_of_type(node, *types):
        return c
    return None


def named_children(node: Any) -> list[Any]:
    if node is None:
        return []
    return [c for c in node.children if c.is_named and c.type != "comment"]


def walk(node: Any) -> Iterator[Any]:
    """Pre-order walk in lexical order."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def ancestors(node: Any) -> Iterator[Any]:
    current = node.parent
    while current is not None:
        yield current
        current = current.parent


def modifiers(node: Any) -> set[str]:
    """Modifier keywords (public, static, abstract, const ...) on a declaration."""
    result: set[str] = set()
    for c in node.children:
        if c.type == "modifier":
            result.add(node_text(c).strip())
        elif c.type in ("static", "abstract", "const", "sealed", "partial", "readonly"):
            result.add(c.type)
    return result


def declaration_name(node: Any) -> str:
    name = child_by_field(node, "name")
    if name is None:
        name = first_child_of_type(node, "identifier")
    return node_text(name)


def unquote(literal: str) -> str:
    """Strip C# string literal quoting: "x", @"x", $"x", \"\"\"x\"\"\"."""
    text = literal.strip()
    while text[:1] in ("@", "$"):
        text = text[1:]
    if text.startswith('"""') and text.endswith('"""') and len(text) >= 6:
        return text[3:-3].strip()
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        return text[1:-1]
    return text


STRING_NODE_TYPES = frozenset(
    {
        "string_literal",
        "verbatim_string_literal",
        "raw_string_literal",
        "interpolated_string_expression",
    }
)


def is_string_literal(node: Any) -> bool:
    return node is not None and node.type in STRING_NODE_TYPES
