"""Operation Extractor: MongoDB driver call sites in a C# syntax tree.

A *handle* is anything statically known to be an ``IMongoCollection<T>``:
a field, property, local or parameter of that type, an identifier assigned
from ``GetCollection<T>(hint)``, or a ``GetCollection<T>(hint)`` call used
inline as a receiver. Every recognized call on a handle becomes one
QueryOperation carrying its filter, projection, sort, limit/skip and (for
``Aggregate``) pipeline shape.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from cataloger.scanner._internal.extraction.shapes import (
    FLUENT_STAGES,
    Call,
    call_parts,
    fluent_sort,
    fluent_stage,
    int_literal,
    parse_filter,
    parse_projection,
    parse_stage_document,
    stage_documents,
    strip,
)
from cataloger.scanner._internal.extraction.types import (
    TYPE_DECLARATIONS,
    namespace_name,
    simple_type_name,
)
from cataloger.scanner._internal.parsing.treesitter import (
    ParsedSource,
    ancestors,
    child_by_field,
    children_of_type,
    declaration_name,
    end_line,
    first_child_of_type,
    is_string_literal,
    modifiers,
    named_children,
    node_text,
    start_line,
    unquote,
    walk,
)
from cataloger.scanner._internal.resolution.collections import classify_hint
from cataloger.scanner.models import (
    AggregationStage,
    CollectionHint,
    FilterExpression,
    LineSpan,
    OperationKind,
    ProjectionExpression,
    ProvenanceRecord,
    QueryOperation,
    SortExpression,
)

logger = structlog.get_logger()

_CALLS: dict[str, OperationKind] = {kind.value: kind for kind in OperationKind}

_HANDLE_TYPE = re.compile(r"^(?:[\w.]+\.)?IMongoCollection\s*<\s*(.+?)\s*>\s*\??$")
_SESSION_TYPE = re.compile(r"^(?:[\w.]+\.)?IClientSessionHandle\??$")
_STRING_TYPES = frozenset({"string", "String", "System.String"})

_CONFIG_READERS = frozenset({"GetValue", "GetSection", "GetConnectionString"})

_MEMBER_SCOPES = frozenset(
    {
        "method_declaration",
        "constructor_declaration",
        "property_declaration",
        "local_function_statement",
        "operator_declaration",
    }
)

_SORT_CALLS = frozenset({"Sort", "SortBy", "SortByDescending", "ThenBy", "ThenByDescending"})

_CHAIN_WRAPPERS = frozenset({"parenthesized_expression", "await_expression"})


def classify_call(member_name: str | None) -> OperationKind | None:
    """Operation kind of a collection member name; ``None`` when unrecognized."""
    if not member_name:
        return None
    name = member_name.split("<", 1)[0].strip()
    if name.endswith("Async"):
        name = name[: -len("Async")]
    return _CALLS.get(name)


@dataclass
class CollectionHandle:
    """An identifier statically bound to ``IMongoCollection<T>``."""

    name: str
    type_name: str
    hint: str | None = None
    line: int = 0


@dataclass
class FileOperations:
    """Everything the operation pass learns from one file."""

    operations: list[QueryOperation] = field(default_factory=list)
    hints: list[CollectionHint] = field(default_factory=list)
    constants: dict[str, str] = field(default_factory=dict)


class OperationExtractor:
    """Extract QueryOperations, collection hints and string constants."""

    def extract(self, parsed: ParsedSource) -> FileOperations:
        scan = _FileScan(parsed)
        result = scan.run()
        logger.debug(
            "operations_extracted",
            path=parsed.path,
            operations=len(result.operations),
            hints=len(result.hints),
        )
        return result


# ---------------------------------------------------------------------------
# Per-file scan
# ---------------------------------------------------------------------------


def hint_text(node: Any) -> str | None:
    """Collection hint of a ``GetCollection`` argument.

    String literals keep their quotes, and so does the name produced by
    ``nameof(T)``. ``config["A:B"]`` and ``GetValue<string>("A:B")`` yield the
    key ``A:B``. An interpolated string with holes has no static value and
    yields None.
    """
    node = strip(node)
    if node is None:
        return None
    if node.type == "interpolated_string_expression":
        if children_of_type(node, "interpolation"):
            return None
        return f'"{unquote(node_text(node))}"'
    if is_string_literal(node):
        return node_text(node)
    if node.type in ("identifier", "member_access_expression"):
        return re.sub(r"\s+", "", node_text(node))
    if node.type == "element_access_expression":
        subscript = child_by_field(node, "subscript") or first_child_of_type(
            node, "bracketed_argument_list"
        )
        for arg in children_of_type(subscript, "argument"):
            parts = named_children(arg)
            if parts and is_string_literal(parts[-1]):
                return unquote(node_text(parts[-1]))
    call = call_parts(node)
    if call is not None:
        if call.method in _CONFIG_READERS and call.args and is_string_literal(call.args[0]):
            return unquote(node_text(call.args[0]))
        if call.method == "nameof" and call.args:
            name = re.sub(r"\s+", "", node_text(call.args[0])).rsplit(".", 1)[-1]
            return f'"{name.lstrip("@")}"'
    text = node_text(node).strip()
    return text or None


def _initializer(declarator: Any) -> Any:
    clause = first_child_of_type(declarator, "equals_value_clause")
    if clause is not None:
        parts = named_children(clause)
        return parts[-1] if parts else None
    seen_equals = False
    for child in declarator.children:
        if child.type == "=":
            seen_equals = True
        elif seen_equals and child.is_named:
            return child
    return None


def _declarator_name(declarator: Any) -> str:
    return node_text(child_by_field(declarator, "name") or first_child_of_type(declarator, "identifier"))


def _assigned_name(node: Any) -> str:
    """``x`` / ``this.x`` / ``_ctx.x`` -> ``x``."""
    node = strip(node)
    if node is None:
        return ""
    if node.type == "identifier":
        return node_text(node)
    if node.type == "member_access_expression":
        name = child_by_field(node, "name")
        if name is None:
            parts = named_children(node)
            name = parts[-1] if parts else None
        return node_text(name)
    return ""


class _FileScan:
    def __init__(self, parsed: ParsedSource) -> None:
        self.parsed = parsed
        self.handles: dict[str, CollectionHandle] = {}
        self.sessions: set[str] = set()
        self.constants: dict[str, str] = {}
        self.hints: list[CollectionHint] = []
        # name -> [(visible_from_byte, initializer)]
        self.locals: dict[str, list[tuple[int, Any]]] = {}
        self._file_namespace = self._find_file_namespace()

    def run(self) -> FileOperations:
        for node in walk(self.parsed.root):
            self._collect(node)

        operations: list[QueryOperation] = []
        for node in walk(self.parsed.root):
            if node.type != "invocation_expression":
                continue
            op = self._operation(node)
            if op is not None:
                operations.append(op)
        operations.sort(key=lambda op: (op.provenance.line_span.start, op.start_col))
        return FileOperations(operations=operations, hints=self.hints, constants=self.constants)

    # -- declarations -------------------------------------------------------

    def _collect(self, node: Any) -> None:
        kind = node.type
        if kind == "variable_declarator":
            self._collect_declarator(node)
        elif kind == "property_declaration":
            self._collect_property(node)
        elif kind == "parameter":
            type_text = node_text(child_by_field(node, "type")).strip()
            name = node_text(child_by_field(node, "name") or first_child_of_type(node, "identifier"))
            self._bind_declared(name, type_text, node)
            if _SESSION_TYPE.match(type_text):
                self.sessions.add(name)
        elif kind == "assignment_expression":
            self._collect_assignment(node)
        elif kind == "invocation_expression":
            self._collect_hint(node)

    def _collect_declarator(self, node: Any) -> None:
        name = _declarator_name(node)
        if not name:
            return
        declaration = node.parent
        type_text = node_text(child_by_field(declaration, "type")).strip()
        init = _initializer(node)
        if init is not None:
            self.locals.setdefault(name, []).append((node.end_byte, init))
        self._bind_declared(name, type_text, node)
        self._bind_from_call(name, init, node)

        owner = declaration.parent if declaration is not None else None
        if owner is None or type_text not in _STRING_TYPES or not is_string_literal(strip(init)):
            return
        mods = modifiers(owner)
        if "const" in mods or {"static", "readonly"} <= mods:
            value = unquote(node_text(strip(init)))
            self.constants[name] = value
            for anc in ancestors(owner):
                if anc.type in TYPE_DECLARATIONS:
                    self.constants[f"{declaration_name(anc)}.{name}"] = value
                    break

    def _collect_property(self, node: Any) -> None:
        name = declaration_name(node)
        type_text = node_text(child_by_field(node, "type")).strip()
        self._bind_declared(name, type_text, node)
        for inner in walk(node):
            if inner.type == "invocation_expression":
                self._bind_from_call(name, inner, node)
                if name in self.handles and self.handles[name].hint is not None:
                    break

    def _collect_assignment(self, node: Any) -> None:
        left = child_by_field(node, "left")
        right = child_by_field(node, "right")
        if left is None or right is None:
            parts = named_children(node)
            if len(parts) < 2:
                return
            left, right = parts[0], parts[-1]
        name = _assigned_name(left)
        if not name:
            return
        operator = child_by_field(node, "operator")
        if operator is None or node_text(operator) == "=":
            self.locals.setdefault(name, []).append((node.end_byte, right))
        self._bind_from_call(name, right, node)

    def _collect_hint(self, node: Any) -> None:
        call = call_parts(node)
        if call is None or call.method != "GetCollection" or not call.type_args or not call.args:
            return
        hint = hint_text(call.args[0])
        if hint is None:
            return
        self.hints.append(
            CollectionHint(
                type_name=simple_type_name(call.type_args[0]),
                hint=hint,
                file_path=self.parsed.path,
                line=start_line(node),
            )
        )

    def _bind_declared(self, name: str, type_text: str, node: Any) -> None:
        if not name:
            return
        m = _HANDLE_TYPE.match(type_text)
        if m is None:
            return
        handle = self.handles.get(name)
        if handle is None:
            self.handles[name] = CollectionHandle(
                name=name, type_name=simple_type_name(m.group(1)), line=start_line(node)
            )

    def _bind_from_call(self, name: str, expr: Any, node: Any) -> None:
        handle = _inline_handle(strip(expr), name)
        if handle is None:
            return
        existing = self.handles.get(name)
        if existing is None:
            handle.line = start_line(node)
            self.handles[name] = handle
        elif existing.hint is None:
            existing.hint = handle.hint
            if existing.type_name in ("", "T"):
                existing.type_name = handle.type_name

    # -- operations ---------------------------------------------------------

    def _handle_for(self, receiver: Any) -> CollectionHandle | None:
        receiver = strip(receiver)
        if receiver is None:
            return None
        inline = _inline_handle(receiver, "")
        if inline is not None:
            return inline
        name = _assigned_name(receiver)
        return self.handles.get(name) if name else None

    def _resolve_local(self, name: str, at: Any) -> Any:
        best: tuple[int, Any] | None = None
        for visible_from, init in self.locals.get(name, ()):
            if visible_from <= at.start_byte and (best is None or visible_from > best[0]):
                best = (visible_from, init)
        return best[1] if best is not None else None

    def _is_session(self, arg: Any) -> bool:
        arg = strip(arg)
        if arg is None or arg.type != "identifier":
            return False
        name = node_text(arg)
        return name in self.sessions or "session" in name.lower()

    def _operation(self, node: Any) -> QueryOperation | None:
        call = call_parts(node)
        if call is None or call.receiver is None:
            return None
        kind = classify_call(call.method)
        if kind is None:
            return None
        handle = self._handle_for(call.receiver)
        if handle is None:
            return None

        args = list(call.args)
        transactional = bool(args) and self._is_session(args[0])
        if transactional:
            args = args[1:]

        chain = _chain(node)
        filters: list[FilterExpression] = []
        if kind is OperationKind.DISTINCT:
            filter_arg = args[1] if len(args) > 1 else None
        elif kind.takes_filter:
            filter_arg = args[0] if args else None
        else:
            filter_arg = None
        if filter_arg is not None:
            filters = parse_filter(filter_arg, self._resolve_local)

        projections: list[ProjectionExpression] = []
        sort: list[SortExpression] = []
        limit: int | None = None
        skip: int | None = None
        pipeline: list[AggregationStage] | None = None

        if kind is OperationKind.AGGREGATE:
            pipeline = self._pipeline(args, chain, filters)
            if not pipeline:
                logger.debug(
                    "aggregate_without_stages", path=self.parsed.path, line=start_line(node)
                )
                return None
        else:
            for link in chain:
                if link.method in _SORT_CALLS:
                    sort.extend(fluent_sort(link.method, link.args))
                elif link.method == "Limit":
                    limit = int_literal(link.args[0]) if link.args else None
                elif link.method == "Skip":
                    skip = int_literal(link.args[0]) if link.args else None
                elif link.method == "Project" and link.args:
                    projections.extend(parse_projection(link.args[0]))
            for priority, key in enumerate(sort):
                key.priority = priority

        collection_name = None
        if handle.hint is not None:
            collection_name = classify_hint(
                handle.hint, self.constants, type_name=handle.type_name
            ).collection_name

        return QueryOperation(
            kind=kind,
            collection_name=collection_name,
            collection_type=handle.type_name or None,
            collection_hint=handle.hint,
            filters=filters,
            projections=projections,
            sort=sort,
            limit=limit,
            skip=skip,
            pipeline=pipeline,
            chain=[link.method for link in chain],
            is_transactional=transactional,
            start_col=int(node.start_point[1]),
            provenance=ProvenanceRecord(
                repository=self.parsed.repository,
                file_path=self.parsed.path,
                symbol=self._symbol(node),
                line_span=LineSpan(start=start_line(node), end=end_line(node)),
                commit_sha=self.parsed.commit_sha,
            ),
        )

    def _pipeline(
        self, args: list[Any], chain: list[Call], filters: list[FilterExpression]
    ) -> list[AggregationStage]:
        stages: list[AggregationStage] = []
        if args:
            for document in stage_documents(args[0], self._resolve_local):
                parsed = parse_stage_document(document, len(stages))
                if parsed is not None:
                    stages.append(parsed[0])
                    filters.extend(parsed[1])
        for link in chain:
            if link.method not in FLUENT_STAGES and link.method != "AppendStage":
                continue
            parsed = fluent_stage(link.method, link.args, len(stages), self._resolve_local)
            if parsed is not None:
                stages.append(parsed[0])
                filters.extend(parsed[1])
        for stage in stages:
            if stage.operator in ("$lookup", "$graphLookup"):
                self._resolve_lookup_source(stage)
        return stages

    def _resolve_lookup_source(self, stage: AggregationStage) -> None:
        source = stage.arguments.get("from")
        if not source:
            return
        handle = self.handles.get(source.rsplit(".", 1)[-1])
        if handle is None:
            return
        stage.arguments["from_type"] = handle.type_name
        stage.arguments["from"] = classify_hint(
            handle.hint, self.constants, type_name=handle.type_name
        ).collection_name

    def _symbol(self, node: Any) -> str:
        member = ""
        scopes: list[str] = []
        for anc in ancestors(node):
            if anc.type in _MEMBER_SCOPES and not member:
                member = declaration_name(anc)
            elif anc.type in TYPE_DECLARATIONS or anc.type == "interface_declaration":
                scopes.append(declaration_name(anc))
            elif anc.type in ("namespace_declaration", "file_scoped_namespace_declaration"):
                scopes.append(namespace_name(anc))
        if self._file_namespace and self._file_namespace not in scopes:
            scopes.append(self._file_namespace)
        parts = [p for p in reversed(scopes) if p]
        if member:
            parts.append(member)
        return ".".join(parts)

    def _find_file_namespace(self) -> str:
        ns = first_child_of_type(self.parsed.root, "file_scoped_namespace_declaration")
        return namespace_name(ns) if ns is not None else ""


def _inline_handle(node: Any, name: str) -> CollectionHandle | None:
    """Handle for a ``db.GetCollection<T>(hint)`` expression."""
    call = call_parts(node)
    if call is None or call.method != "GetCollection" or not call.type_args:
        return None
    return CollectionHandle(
        name=name,
        type_name=simple_type_name(call.type_args[0]),
        hint=hint_text(call.args[0]) if call.args else None,
        line=start_line(node),
    )


def _chain(node: Any) -> list[Call]:
    """Fluent calls applied to the result of ``node``, outward."""
    calls: list[Call] = []
    current = node
    while True:
        parent = current.parent
        while parent is not None and parent.type in _CHAIN_WRAPPERS:
            current = parent
            parent = current.parent
        if parent is None or parent.type != "member_access_expression":
            break
        grand = parent.parent
        call = call_parts(grand)
        if call is None or call.receiver is None:
            break
        receiver = call.receiver
        if receiver.start_byte != current.start_byte or receiver.end_byte != current.end_byte:
            break
        calls.append(call)
        current = grand
    return calls
