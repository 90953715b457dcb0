"""Query shape parsing over C# expression nodes.

Turns the argument expressions of driver calls into FilterExpression,
ProjectionExpression, SortExpression and AggregationStage records. Every
function here is syntactic and lenient: an expression that does not match a
known shape yields nothing rather than raising.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from cataloger.scanner._internal.parsing.treesitter import (
    child_by_field,
    children_of_type,
    first_child_of_type,
    is_string_literal,
    named_children,
    node_text,
    unquote,
)
from cataloger.scanner.models import (
    AggregationStage,
    FilterExpression,
    ProjectionExpression,
    SortExpression,
)

FILTER_OPERATORS = frozenset(
    {"$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$regex", "$exists"}
)

LITERAL_TYPES = frozenset(
    {
        "string_literal",
        "verbatim_string_literal",
        "raw_string_literal",
        "integer_literal",
        "real_literal",
        "boolean_literal",
        "null_literal",
        "character_literal",
    }
)

_COMPARISONS = {
    "==": "$eq",
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
}

# Comparison with the member on the right-hand side: ``5 < u.Age``.
_MIRRORED = {"$lt": "$gt", "$lte": "$gte", "$gt": "$lt", "$gte": "$lte"}

_NEGATED = {"$eq": "$ne", "$ne": "$eq", "$in": "$nin", "$nin": "$in"}

_STRING_MATCHERS = frozenset({"Contains", "StartsWith", "EndsWith"})

BUILDER_FILTERS = {
    "Eq": "$eq",
    "Ne": "$ne",
    "Gt": "$gt",
    "Gte": "$gte",
    "Lt": "$lt",
    "Lte": "$lte",
    "In": "$in",
    "AnyIn": "$in",
    "AnyEq": "$eq",
    "Nin": "$nin",
    "AnyNin": "$nin",
    "Regex": "$regex",
    "Exists": "$exists",
}

FLUENT_STAGES = {
    "Match": "$match",
    "Lookup": "$lookup",
    "Project": "$project",
    "Group": "$group",
    "Unwind": "$unwind",
    "Sort": "$sort",
    "SortBy": "$sort",
    "SortByDescending": "$sort",
    "ThenBy": "$sort",
    "ThenByDescending": "$sort",
    "Limit": "$limit",
    "Skip": "$skip",
    "Count": "$count",
    "ReplaceRoot": "$replaceRoot",
    "ReplaceWith": "$replaceRoot",
    "Facet": "$facet",
    "GraphLookup": "$graphLookup",
    "SortByCount": "$sortByCount",
    "Sample": "$sample",
    "Out": "$out",
    "Merge": "$merge",
}

_LOOKUP_KEYS = ("from", "localField", "foreignField", "as")
_GRAPH_LOOKUP_KEYS = ("from", "connectFromField", "connectToField", "startWith", "as")

_SORT_JSON = re.compile(r"['\"]?([\w.$]+)['\"]?\s*:\s*(-?1)")
_STAGE_JSON = re.compile(r"\{\s*['\"]?(\$\w+)")
_WHITESPACE = re.compile(r"\s+")

_WRAPPER_TYPES = frozenset({"parenthesized_expression", "await_expression", "checked_expression"})

# Maximum local-variable indirections followed when resolving a filter.
_MAX_INDIRECTION = 4

LocalResolver = Callable[[str, Any], Any]


# ---------------------------------------------------------------------------
# Generic expression helpers
# ---------------------------------------------------------------------------


@dataclass
class Call:
    """An invocation split into receiver, method name and arguments."""

    node: Any
    receiver: Any
    method: str
    type_args: list[str] = field(default_factory=list)
    args: list[Any] = field(default_factory=list)


def strip(node: Any) -> Any:
    """Remove parentheses, ``await``, casts and null-forgiving ``!``."""
    while node is not None:
        if node.type in _WRAPPER_TYPES:
            inner = named_children(node)
            node = inner[-1] if inner else None
        elif node.type == "cast_expression":
            node = child_by_field(node, "value") or (named_children(node) or [None])[-1]
        elif node.type == "postfix_unary_expression" and node_text(node).endswith("!"):
            inner = named_children(node)
            node = inner[0] if inner else None
        else:
            return node
    return None


def shorten(text: str, limit: int = 200) -> str:
    text = _WHITESPACE.sub(" ", text).strip()
    return text if len(text) <= limit else text[: limit - 3] + "..."


def arguments(arg_list: Any) -> list[Any]:
    """Argument expressions, with ``name:`` and ``ref``/``out`` prefixes dropped."""
    result = []
    for arg in children_of_type(arg_list, "argument"):
        parts = [p for p in named_children(arg) if p.type != "name_colon"]
        if parts:
            result.append(parts[-1])
    return result


def name_and_type_args(name_node: Any) -> tuple[str, list[str]]:
    if name_node is None:
        return "", []
    if name_node.type == "generic_name":
        ident = first_child_of_type(name_node, "identifier")
        type_list = first_child_of_type(name_node, "type_argument_list")
        return node_text(ident), [node_text(t) for t in named_children(type_list)]
    return node_text(name_node), []


def call_parts(node: Any) -> Call | None:
    if node is None or node.type != "invocation_expression":
        return None
    function = child_by_field(node, "function")
    if function is None:
        parts = named_children(node)
        function = parts[0] if parts else None
    arg_list = child_by_field(node, "arguments") or first_child_of_type(node, "argument_list")
    args = arguments(arg_list)
    if function is None:
        return None
    if function.type == "member_access_expression":
        receiver, name_node = _member_parts(function)
    elif function.type in ("identifier", "generic_name"):
        receiver, name_node = None, function
    else:
        return None
    method, type_args = name_and_type_args(name_node)
    if not method:
        return None
    return Call(node=node, receiver=receiver, method=method, type_args=type_args, args=args)


def _member_parts(node: Any) -> tuple[Any, Any]:
    receiver = child_by_field(node, "expression")
    name = child_by_field(node, "name")
    if receiver is None or name is None:
        parts = named_children(node)
        if len(parts) >= 2:
            receiver, name = parts[0], parts[-1]
    return receiver, name


def member_path(node: Any, param: str | None) -> str | None:
    """``u.Address.City`` -> ``Address.City`` when ``u`` is the lambda parameter."""
    node = strip(node)
    parts: list[str] = []
    while node is not None and node.type == "member_access_expression":
        receiver, name = _member_parts(node)
        parts.append(node_text(name))
        node = strip(receiver)
    if node is None or node.type != "identifier" or not parts:
        return None
    if param is not None and node_text(node) != param:
        return None
    return ".".join(reversed(parts))


def lambda_parts(node: Any) -> tuple[str, Any] | None:
    """(parameter name, body) of a single-parameter lambda."""
    node = strip(node)
    if node is None or node.type != "lambda_expression":
        return None
    params = child_by_field(node, "parameters")
    body = child_by_field(node, "body")
    if params is None or body is None:
        before: list[Any] = []
        after: list[Any] = []
        seen_arrow = False
        for child in node.children:
            if child.type == "=>":
                seen_arrow = True
            elif child.is_named:
                (after if seen_arrow else before).append(child)
        params = params or (before[-1] if before else None)
        body = body or (after[0] if after else None)
    if params is None or body is None:
        return None
    if params.type == "parameter_list":
        first = first_child_of_type(params, "parameter")
        name = node_text(child_by_field(first, "name") or first_child_of_type(first, "identifier"))
    else:
        name = node_text(params)
    return name, body


def selector_path(node: Any) -> str | None:
    """Field selected by ``u => u.F``, ``"F"`` or ``nameof(User.F)``."""
    node = strip(node)
    if node is None:
        return None
    if is_string_literal(node):
        return unquote(node_text(node)) or None
    parts = lambda_parts(node)
    if parts is not None:
        return member_path(parts[1], parts[0])
    call = call_parts(node)
    if call is not None and call.method == "nameof" and call.args:
        return node_text(call.args[0]).rsplit(".", 1)[-1]
    return None


def value_shape(node: Any) -> str:
    node = strip(node)
    if node is None:
        return "expression"
    if node.type in LITERAL_TYPES:
        return "literal"
    if node.type == "prefix_unary_expression":
        inner = named_children(node)
        if inner and inner[-1].type in LITERAL_TYPES:
            return "literal"
    if node.type == "identifier":
        return "parameter"
    if node.type == "member_access_expression":
        root = node
        while root is not None and root.type == "member_access_expression":
            root = strip(_member_parts(root)[0])
        if root is not None and (root.type == "this_expression" or node_text(root)[:1].islower()):
            return "parameter"
    return "expression"


def int_literal(node: Any) -> int | None:
    node = strip(node)
    if node is None:
        return None
    text = node_text(node).replace("_", "")
    if node.type == "integer_literal":
        try:
            return int(text.rstrip("uUlL"), 0)
        except ValueError:
            return None
    if node.type == "prefix_unary_expression" and text.startswith("-"):
        inner = int_literal(named_children(node)[-1]) if named_children(node) else None
        return -inner if inner is not None else None
    return None


def _operator_text(node: Any) -> str:
    op = child_by_field(node, "operator")
    if op is not None:
        return node_text(op)
    for child in node.children:
        if not child.is_named:
            return node_text(child)
    return ""


def _binary_sides(node: Any) -> tuple[Any, Any]:
    left = child_by_field(node, "left")
    right = child_by_field(node, "right")
    if left is None or right is None:
        parts = named_children(node)
        if len(parts) >= 2:
            left, right = parts[0], parts[-1]
    return left, right


# ---------------------------------------------------------------------------
# BsonDocument literals
# ---------------------------------------------------------------------------


def is_bson_document(node: Any) -> bool:
    node = strip(node)
    if node is None or node.type != "object_creation_expression":
        return False
    type_node = child_by_field(node, "type")
    if type_node is None:
        parts = named_children(node)
        type_node = parts[0] if parts else None
    return node_text(type_node).rsplit(".", 1)[-1] == "BsonDocument"


def bson_pairs(node: Any) -> list[tuple[str, Any]]:
    """Key/value nodes of ``new BsonDocument("k", v)`` or ``new BsonDocument { {"k", v} }``."""
    node = strip(node)
    if not is_bson_document(node):
        return []
    pairs: list[tuple[str, Any]] = []
    args = arguments(child_by_field(node, "arguments") or first_child_of_type(node, "argument_list"))
    if len(args) >= 2 and is_string_literal(args[0]):
        pairs.append((unquote(node_text(args[0])), args[1]))
    initializer = child_by_field(node, "initializer") or first_child_of_type(
        node, "initializer_expression"
    )
    for entry in named_children(initializer):
        if entry.type != "initializer_expression":
            continue
        items = named_children(entry)
        if len(items) >= 2 and is_string_literal(items[0]):
            pairs.append((unquote(node_text(items[0])), items[1]))
    return pairs


def _literal_value(node: Any) -> str | None:
    node = strip(node)
    if node is None:
        return None
    if is_string_literal(node):
        return unquote(node_text(node))
    if node.type in LITERAL_TYPES or node.type == "prefix_unary_expression":
        return node_text(node)
    return None


def _bson_filters(node: Any) -> list[FilterExpression]:
    filters: list[FilterExpression] = []
    for key, value in bson_pairs(node):
        if key in ("$and", "$or", "$nor"):
            for item in _sequence_items(value):
                filters.extend(_bson_filters(item))
            continue
        if key.startswith("$"):
            continue
        inner = bson_pairs(value)
        if inner and all(k.startswith("$") for k, _ in inner):
            for op, op_value in inner:
                filters.append(
                    FilterExpression(
                        field_path=key,
                        operator=op if op in FILTER_OPERATORS else "$eq",
                        value_shape=value_shape(op_value),
                    )
                )
        else:
            filters.append(FilterExpression(field_path=key, value_shape=value_shape(value)))
    return filters


def _sequence_items(node: Any) -> list[Any]:
    """Elements of ``new[] {...}``, ``new BsonArray {...}``, ``new List<T> {...}`` or ``[...]``."""
    node = strip(node)
    if node is None:
        return []
    if node.type == "collection_expression":
        return [strip(c) for c in named_children(node)]
    initializer = child_by_field(node, "initializer") or first_child_of_type(
        node, "initializer_expression"
    )
    if initializer is None:
        return []
    return [strip(c) for c in named_children(initializer)]


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def parse_filter(
    node: Any, resolve_local: LocalResolver | None = None, _depth: int = 0
) -> list[FilterExpression]:
    """Field predicates of a filter argument, in source order.

    ``resolve_local(name, at_node)`` returns the initializer of a local
    variable named ``name`` visible at ``at_node``.
    """
    node = strip(node)
    if node is None or _depth > _MAX_INDIRECTION:
        return []

    if node.type == "identifier" and resolve_local is not None:
        initializer = resolve_local(node_text(node), node)
        if initializer is not None:
            return parse_filter(initializer, resolve_local, _depth + 1)
        return []

    parts = lambda_parts(node)
    if parts is not None:
        param, body = parts
        return _predicate(body, param, negated=False)

    if is_bson_document(node):
        return _bson_filters(node)

    return _builder_filter(node, resolve_local, _depth)


def _predicate(node: Any, param: str, *, negated: bool) -> list[FilterExpression]:
    node = strip(node)
    if node is None:
        return []

    if node.type == "binary_expression":
        op = _operator_text(node)
        left, right = _binary_sides(node)
        if op in ("&&", "||", "&", "|"):
            return _predicate(left, param, negated=negated) + _predicate(
                right, param, negated=negated
            )
        if op in _COMPARISONS:
            operator = _COMPARISONS[op]
            path = member_path(left, param)
            other = right
            if path is None:
                path = member_path(right, param)
                other = left
                operator = _MIRRORED.get(operator, operator)
            if path is None:
                return []
            return [_filter(path, operator, value_shape(other), negated)]
        return []

    if node.type == "prefix_unary_expression" and node_text(node).lstrip().startswith("!"):
        inner = named_children(node)
        return _predicate(inner[-1] if inner else None, param, negated=not negated)

    call = call_parts(node)
    if call is not None:
        if call.method in _STRING_MATCHERS and call.receiver is not None:
            path = member_path(call.receiver, param)
            if path is not None:
                shape = value_shape(call.args[0]) if call.args else "expression"
                return [_filter(path, "$regex", shape, negated)]
        if call.method == "Contains" and call.args:
            path = member_path(call.args[-1], param)
            if path is not None:
                return [_filter(path, "$in", value_shape(call.receiver), negated)]
        return []

    path = member_path(node, param)
    if path is not None:
        return [_filter(path, "$eq", "literal", negated)]
    return []


def _filter(path: str, operator: str, shape: str, negated: bool) -> FilterExpression:
    return FilterExpression(
        field_path=path,
        operator=_NEGATED.get(operator, operator) if negated else operator,
        value_shape=shape,
        is_negated=negated,
    )


def _builder_filter(
    node: Any, resolve_local: LocalResolver | None, depth: int
) -> list[FilterExpression]:
    if node.type == "binary_expression" and _operator_text(node) in ("&", "|"):
        left, right = _binary_sides(node)
        return parse_filter(left, resolve_local, depth) + parse_filter(right, resolve_local, depth)

    if node.type == "prefix_unary_expression" and node_text(node).lstrip().startswith("!"):
        inner = named_children(node)
        return [_negate(f) for f in parse_filter(inner[-1] if inner else None, resolve_local, depth)]

    call = call_parts(node)
    if call is None:
        return []
    if call.method in ("And", "Or"):
        result: list[FilterExpression] = []
        for arg in call.args:
            items = _sequence_items(arg) or [arg]
            for item in items:
                result.extend(parse_filter(item, resolve_local, depth))
        return result
    if call.method == "Not" and call.args:
        return [_negate(f) for f in parse_filter(call.args[0], resolve_local, depth)]
    if call.method in ("Where", "ElemMatch") and call.args:
        return parse_filter(call.args[-1], resolve_local, depth)
    operator = BUILDER_FILTERS.get(call.method)
    if operator is None or not call.args:
        return []
    path = selector_path(call.args[0])
    if path is None:
        return []
    if operator == "$exists":
        shape = value_shape(call.args[1]) if len(call.args) > 1 else "literal"
    else:
        shape = value_shape(call.args[1]) if len(call.args) > 1 else "expression"
    return [FilterExpression(field_path=path, operator=operator, value_shape=shape)]


def _negate(f: FilterExpression) -> FilterExpression:
    return FilterExpression(
        field_path=f.field_path,
        operator=_NEGATED.get(f.operator, f.operator),
        value_shape=f.value_shape,
        is_negated=not f.is_negated,
    )


# ---------------------------------------------------------------------------
# Projections and sorts
# ---------------------------------------------------------------------------


def parse_projection(node: Any) -> list[ProjectionExpression]:
    node = strip(node)
    if node is None:
        return []

    parts = lambda_parts(node)
    if parts is not None:
        param, body = parts
        return [ProjectionExpression(field_path=p) for p in _projected_paths(body, param)]

    if is_bson_document(node):
        return [
            ProjectionExpression(
                field_path=key,
                is_included=(_literal_value(value) or "1").lower() not in ("0", "false"),
            )
            for key, value in bson_pairs(node)
        ]

    result: list[ProjectionExpression] = []
    for call in _call_chain(node):
        if call.method in ("Include", "Exclude") and call.args:
            path = selector_path(call.args[0])
            if path is not None:
                result.append(
                    ProjectionExpression(field_path=path, is_included=call.method == "Include")
                )
        elif call.method == "Expression" and call.args:
            result.extend(parse_projection(call.args[0]))
    return result


def _projected_paths(body: Any, param: str) -> list[str]:
    body = strip(body)
    if body is None:
        return []
    path = member_path(body, param)
    if path is not None:
        return [path]
    if body.type == "anonymous_object_creation_expression":
        members = named_children(body)
    elif body.type == "object_creation_expression":
        initializer = child_by_field(body, "initializer") or first_child_of_type(
            body, "initializer_expression"
        )
        members = named_children(initializer)
    else:
        return []
    paths: list[str] = []
    for member in members:
        if member.type in ("name_equals", "identifier"):
            continue
        target = member
        if member.type == "assignment_expression":
            target = _binary_sides(member)[1]
        path = member_path(target, param)
        if path is not None:
            paths.append(path)
    return paths


def _call_chain(node: Any) -> list[Call]:
    """``a.B(x).C(y)`` -> [B, C] calls in source order."""
    calls: list[Call] = []
    current = strip(node)
    while current is not None:
        call = call_parts(current)
        if call is None:
            break
        calls.append(call)
        current = strip(call.receiver)
    calls.reverse()
    return calls


def parse_sort(node: Any) -> list[SortExpression]:
    """Sort keys of a ``Sort(...)`` argument."""
    node = strip(node)
    if node is None:
        return []
    if is_bson_document(node):
        return [
            SortExpression(field_path=key, direction=-1 if _literal_value(v) == "-1" else 1)
            for key, v in bson_pairs(node)
        ]
    if is_string_literal(node):
        return [
            SortExpression(field_path=m.group(1), direction=int(m.group(2)))
            for m in _SORT_JSON.finditer(unquote(node_text(node)))
        ]
    result: list[SortExpression] = []
    for call in _call_chain(node):
        if call.method in ("Ascending", "Descending") and call.args:
            path = selector_path(call.args[0])
            if path is not None:
                result.append(
                    SortExpression(field_path=path, direction=-1 if call.method == "Descending" else 1)
                )
        elif call.method == "Combine":
            for arg in call.args:
                result.extend(parse_sort(arg))
    return result


def fluent_sort(method: str, args: list[Any]) -> list[SortExpression]:
    """Sort keys of ``SortBy``/``ThenByDescending``/``Sort`` chain calls."""
    if method in ("SortBy", "ThenBy", "SortByDescending", "ThenByDescending"):
        path = selector_path(args[0]) if args else None
        if path is None:
            return []
        return [SortExpression(field_path=path, direction=-1 if method.endswith("Descending") else 1)]
    if method == "Sort" and args:
        return parse_sort(args[0])
    return []


# ---------------------------------------------------------------------------
# Aggregation stages
# ---------------------------------------------------------------------------


def stage_documents(node: Any, resolve_local: LocalResolver | None = None) -> list[Any]:
    """BsonDocument stage literals of a pipeline argument, in source order."""
    node = strip(node)
    for _ in range(_MAX_INDIRECTION):
        if node is None or node.type != "identifier" or resolve_local is None:
            break
        node = strip(resolve_local(node_text(node), node))
    if node is None:
        return []
    if is_bson_document(node):
        return [node]
    call = call_parts(node)
    if call is not None and call.method == "Create" and call.args:
        # PipelineDefinition<TIn, TOut>.Create(stages)
        documents: list[Any] = []
        for arg in call.args:
            documents.extend(stage_documents(arg, resolve_local))
        return documents
    return [item for item in _sequence_items(node) if is_bson_document(item)]


def parse_stage_document(node: Any, order: int) -> tuple[AggregationStage, list[FilterExpression]] | None:
    """One ``new BsonDocument("$op", ...)`` stage and the predicates of a ``$match``."""
    pairs = bson_pairs(node)
    if not pairs or not pairs[0][0].startswith("$"):
        return None
    operator, body = pairs[0]
    args: dict[str, str] = {}
    for key, value in bson_pairs(body):
        literal = _literal_value(value)
        if literal is not None:
            args[key] = literal
    if operator in ("$limit", "$skip"):
        literal = _literal_value(body)
        if literal is not None:
            args["value"] = literal
    if operator == "$unwind":
        literal = _literal_value(body)
        if literal is not None:
            args["path"] = literal.lstrip("$")
    filters = _bson_filters(body) if operator == "$match" else []
    stage = AggregationStage(
        operator=operator, order=order, arguments=args, shape=shorten(node_text(body))
    )
    return stage, filters


def fluent_stage(
    method: str, args: list[Any], order: int, resolve_local: LocalResolver | None = None
) -> tuple[AggregationStage, list[FilterExpression]] | None:
    """Stage for an ``IAggregateFluent`` chain call, with any ``$match`` predicates."""
    if method == "AppendStage":
        if not args:
            return None
        if is_bson_document(args[0]):
            return parse_stage_document(args[0], order)
        if is_string_literal(args[0]):
            m = _STAGE_JSON.match(unquote(node_text(args[0])))
            if m:
                return AggregationStage(
                    operator=m.group(1), order=order, shape=shorten(unquote(node_text(args[0])))
                ), []
        return None

    operator = FLUENT_STAGES.get(method)
    if operator is None:
        return None
    shape = shorten(", ".join(node_text(a) for a in args))
    stage_args: dict[str, str] = {}
    filters: list[FilterExpression] = []

    if operator == "$match" and args:
        filters = parse_filter(args[0], resolve_local)
    elif operator == "$lookup":
        stage_args = _positional_arguments(args, _LOOKUP_KEYS)
    elif operator == "$graphLookup":
        stage_args = _positional_arguments(args, _GRAPH_LOOKUP_KEYS)
    elif operator == "$unwind" and args:
        path = selector_path(args[0])
        if path is not None:
            stage_args["path"] = path
    elif operator in ("$limit", "$skip", "$sample") and args:
        literal = _literal_value(args[0])
        if literal is not None:
            stage_args["value"] = literal
    elif operator == "$sort":
        for s in fluent_sort(method, args):
            stage_args[s.field_path] = str(s.direction)
    return AggregationStage(operator=operator, order=order, arguments=stage_args, shape=shape), filters


def _positional_arguments(args: list[Any], keys: tuple[str, ...]) -> dict[str, str]:
    result: dict[str, str] = {}
    for key, arg in zip(keys, args, strict=False):
        value = selector_path(arg)
        if value is None:
            value = _literal_value(arg)
        if value is None:
            value = node_text(strip(arg))
        if value:
            result[key] = value
    return result
