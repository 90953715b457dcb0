"""Type Extractor: record (POCO) declarations from a C# syntax tree.

Walks namespace blocks, file-scoped namespaces and preprocessor wrappers,
emitting one CodeType per concrete class / record / struct that looks like
stored data. Declarations that are abstract, static, constants-only, or that
are data-access or behaviour classes (Mongo handles, methods without any data
members) are skipped.
"""

from __future__ import annotations

import re
from typing import Any

import structlog

from cataloger.scanner._internal.parsing.treesitter import (
    PREPROC_WRAPPERS,
    ParsedSource,
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
)
from cataloger.scanner.models import (
    Attribute,
    CodeType,
    FieldDefinition,
    LineSpan,
    ProvenanceRecord,
)

logger = structlog.get_logger()

TYPE_DECLARATIONS = frozenset(
    {
        "class_declaration",
        "record_declaration",
        "record_struct_declaration",
        "struct_declaration",
    }
)

# Declarations that never become CodeTypes but may still contain nested types.
_NON_RECORD_DECLARATIONS = frozenset(
    {"interface_declaration", "enum_declaration", "delegate_declaration"}
)

_RECORD_DECLARATIONS = frozenset({"record_declaration", "record_struct_declaration"})

_BEHAVIOUR_MEMBERS = frozenset(
    {
        "method_declaration",
        "constructor_declaration",
        "destructor_declaration",
        "operator_declaration",
        "conversion_operator_declaration",
        "event_declaration",
        "event_field_declaration",
        "indexer_declaration",
    }
)

VALUE_TYPES = frozenset(
    {
        "bool",
        "byte",
        "sbyte",
        "char",
        "short",
        "ushort",
        "int",
        "uint",
        "long",
        "ulong",
        "nint",
        "nuint",
        "float",
        "double",
        "decimal",
        "Boolean",
        "Byte",
        "SByte",
        "Char",
        "Int16",
        "UInt16",
        "Int32",
        "UInt32",
        "Int64",
        "UInt64",
        "Single",
        "Double",
        "Decimal",
        "DateTime",
        "DateTimeOffset",
        "DateOnly",
        "TimeOnly",
        "TimeSpan",
        "Guid",
        "ObjectId",
        "Decimal128",
    }
)

_DATA_ACCESS_TYPE = re.compile(r"^(?:[\w.]+\.)?IMongo(?:Collection|Database|Client)\b")
_NULLABLE_GENERIC = re.compile(r"^(?:System\.)?Nullable\s*<")
_WHITESPACE = re.compile(r"\s+")

IDENTITY_NAMES = frozenset({"Id", "_id"})


def simple_type_name(type_text: str) -> str:
    """``System.Collections.Generic.List<User>?`` -> ``List``."""
    text = type_text.strip().rstrip("?")
    text = text.split("<", 1)[0].split("[", 1)[0]
    return text.rsplit(".", 1)[-1].strip()


def normalize_type_text(type_text: str) -> str:
    return _WHITESPACE.sub(" ", type_text).replace("< ", "<").replace(" >", ">").strip()


def is_nullable_type(type_node: Any, type_text: str, *, nullable_disabled: bool = False) -> bool:
    """Nullability of a declared type.

    ``T?`` and ``Nullable<T>`` are nullable; value types are not; reference
    types are nullable only where the file opts out with ``#nullable disable``.
    """
    if type_node is not None and type_node.type == "nullable_type":
        return True
    if type_text.endswith("?") or _NULLABLE_GENERIC.match(type_text):
        return True
    if simple_type_name(type_text) in VALUE_TYPES:
        return False
    return nullable_disabled


def parse_attributes(node: Any) -> list[Attribute]:
    """Attributes on a declaration, in source order."""
    result: list[Attribute] = []
    for attr_list in children_of_type(node, "attribute_list"):
        for attr in children_of_type(attr_list, "attribute"):
            name_node = child_by_field(attr, "name")
            if name_node is None:
                parts = named_children(attr)
                name_node = parts[0] if parts else None
            name = node_text(name_node).rsplit(".", 1)[-1].split("<", 1)[0].strip()
            if name.endswith("Attribute") and len(name) > len("Attribute"):
                name = name[: -len("Attribute")]
            if not name:
                continue
            arg_list = first_child_of_type(attr, "attribute_argument_list")
            arguments = [
                _attribute_argument(arg) for arg in children_of_type(arg_list, "attribute_argument")
            ]
            result.append(
                Attribute(
                    name=name,
                    value=arguments[0] if arguments else "true",
                    arguments=arguments,
                )
            )
    return result


def _attribute_argument(arg: Any) -> str:
    parts = named_children(arg)
    if not parts:
        return node_text(arg)
    expr = parts[-1]
    prefix = ""
    if len(parts) > 1 and parts[0].type in ("name_equals", "name_colon"):
        prefix = node_text(parts[0]).rstrip("=:").strip() + "="
    if is_string_literal(expr):
        value = unquote(node_text(expr))
    elif expr.type == "typeof_expression":
        inner = child_by_field(expr, "type") or (named_children(expr) or [None])[0]
        value = node_text(inner)
    else:
        value = node_text(expr)
    return prefix + value


def _attribute(attributes: list[Attribute], name: str) -> Attribute | None:
    for attr in attributes:
        if attr.name == name:
            return attr
    return None


class TypeExtractor:
    """Extract record types from parsed C# sources."""

    def extract(self, parsed: ParsedSource) -> list[CodeType]:
        """All emitted CodeTypes of one file, in declaration order."""
        types: list[CodeType] = []
        nullable_disabled = parsed.result.nullable_context == "disable"
        self._walk(parsed.root, "", (), parsed, nullable_disabled, types)
        logger.debug("types_extracted", path=parsed.path, count=len(types))
        return types

    def _walk(
        self,
        node: Any,
        namespace: str,
        outer: tuple[str, ...],
        parsed: ParsedSource,
        nullable_disabled: bool,
        out: list[CodeType],
    ) -> None:
        for child in node.children:
            kind = child.type
            if kind == "namespace_declaration":
                body = child_by_field(child, "body") or first_child_of_type(child, "declaration_list")
                if body is not None:
                    inner = _join(namespace, namespace_name(child))
                    self._walk(body, inner, (), parsed, nullable_disabled, out)
            elif kind == "file_scoped_namespace_declaration":
                # Newer grammars nest the following declarations, older ones
                # leave them as siblings; both see the updated namespace.
                namespace = _join(namespace, namespace_name(child))
                self._walk(child, namespace, (), parsed, nullable_disabled, out)
            elif kind in PREPROC_WRAPPERS or kind == "declaration_list":
                self._walk(child, namespace, outer, parsed, nullable_disabled, out)
            elif kind in TYPE_DECLARATIONS:
                self._visit_type(child, namespace, outer, parsed, nullable_disabled, out)
            elif kind in _NON_RECORD_DECLARATIONS:
                body = child_by_field(child, "body") or first_child_of_type(child, "declaration_list")
                if body is not None:
                    name = declaration_name(child)
                    self._walk(body, namespace, (*outer, name), parsed, nullable_disabled, out)

    def _visit_type(
        self,
        node: Any,
        namespace: str,
        outer: tuple[str, ...],
        parsed: ParsedSource,
        nullable_disabled: bool,
        out: list[CodeType],
    ) -> None:
        name = declaration_name(node)
        body = child_by_field(node, "body") or first_child_of_type(node, "declaration_list")
        members = list(_members(body))

        skip_reason = None if name else "anonymous"
        if skip_reason is None:
            skip_reason = _skip_reason(node, members)

        if skip_reason is None:
            code_type = self._build(node, name, namespace, outer, members, parsed, nullable_disabled)
            out.append(code_type)
        else:
            logger.debug("type_skipped", path=parsed.path, type_name=name, reason=skip_reason)

        if body is not None:
            self._walk(body, namespace, (*outer, name), parsed, nullable_disabled, out)

    def _build(
        self,
        node: Any,
        name: str,
        namespace: str,
        outer: tuple[str, ...],
        members: list[Any],
        parsed: ParsedSource,
        nullable_disabled: bool,
    ) -> CodeType:
        fields: list[FieldDefinition] = []
        if node.type in _RECORD_DECLARATIONS:
            for param in _record_parameters(node):
                fld = _field_from(param, child_by_field(param, "type"), param, nullable_disabled)
                if fld is not None:
                    fields.append(fld)
        for member in members:
            if not _is_instance_data(member):
                continue
            if member.type == "property_declaration":
                fld = _field_from(member, child_by_field(member, "type"), member, nullable_disabled)
                if fld is not None:
                    fields.append(fld)
            else:
                declaration = first_child_of_type(member, "variable_declaration")
                type_node = child_by_field(declaration, "type")
                for declarator in children_of_type(declaration, "variable_declarator"):
                    fld = _field_from(member, type_node, declarator, nullable_disabled)
                    if fld is not None:
                        fields.append(fld)

        attributes = parse_attributes(node)
        discriminators = [
            a.value for a in attributes if a.name == "BsonDiscriminator" and a.arguments
        ]
        qualified_ns = ".".join(p for p in (namespace, *outer) if p)
        symbol = f"{qualified_ns}.{name}" if qualified_ns else name
        return CodeType(
            name=name,
            namespace=qualified_ns,
            module_name=parsed.module_name,
            fields=fields,
            attributes=attributes,
            discriminators=discriminators,
            base_types=_base_types(node),
            provenance=ProvenanceRecord(
                repository=parsed.repository,
                file_path=parsed.path,
                symbol=symbol,
                line_span=LineSpan(start=start_line(node), end=end_line(node)),
                commit_sha=parsed.commit_sha,
            ),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _join(namespace: str, name: str) -> str:
    if not name:
        return namespace
    return f"{namespace}.{name}" if namespace else name


def namespace_name(node: Any) -> str:
    name = child_by_field(node, "name") or first_child_of_type(node, "qualified_name", "identifier")
    return node_text(name).replace(" ", "")


def _members(body: Any) -> Any:
    """Member declarations of a type body, flattening preprocessor blocks."""
    if body is None:
        return
    for child in body.children:
        if child.type in PREPROC_WRAPPERS:
            yield from _members(child)
        elif (
            child.is_named
            and child.type != "comment"
            and child.type not in TYPE_DECLARATIONS
            and child.type not in _NON_RECORD_DECLARATIONS
        ):
            yield child


def _is_instance_data(member: Any) -> bool:
    if member.type not in ("property_declaration", "field_declaration"):
        return False
    mods = modifiers(member)
    return "static" not in mods and "const" not in mods


def _member_type_text(member: Any) -> str:
    if member.type == "property_declaration":
        return node_text(child_by_field(member, "type"))
    if member.type == "field_declaration":
        declaration = first_child_of_type(member, "variable_declaration")
        return node_text(child_by_field(declaration, "type"))
    return ""


def _skip_reason(node: Any, members: list[Any]) -> str | None:
    mods = modifiers(node)
    if "abstract" in mods:
        return "abstract"
    if "static" in mods:
        return "static"
    if not members:
        return None

    instance_data = [m for m in members if _is_instance_data(m)]
    positional = bool(_record_parameters(node)) and node.type in _RECORD_DECLARATIONS
    if not instance_data and not positional:
        if all({"static", "const"} & modifiers(m) for m in members):
            return "static_members_only"
    if any(_DATA_ACCESS_TYPE.match(_member_type_text(m).strip()) for m in members):
        return "data_access"

    has_data = positional or any(
        m.type == "property_declaration" or "private" not in modifiers(m) for m in instance_data
    )
    if not has_data and any(m.type in _BEHAVIOUR_MEMBERS for m in members):
        return "behaviour_only"
    return None


def _record_parameters(node: Any) -> list[Any]:
    params = child_by_field(node, "parameters") or first_child_of_type(node, "parameter_list")
    return children_of_type(params, "parameter")


def _field_from(
    owner: Any, type_node: Any, name_source: Any, nullable_disabled: bool
) -> FieldDefinition | None:
    name_node = child_by_field(name_source, "name") or first_child_of_type(name_source, "identifier")
    name = node_text(name_node)
    if not name:
        return None
    type_text = normalize_type_text(node_text(type_node))
    attributes = parse_attributes(owner)

    element = _attribute(attributes, "BsonElement")
    representation = _attribute(attributes, "BsonRepresentation")
    return FieldDefinition(
        name=name,
        declared_type=type_text,
        is_nullable=is_nullable_type(type_node, type_text, nullable_disabled=nullable_disabled),
        attributes=attributes,
        element_name=element.value if element is not None and element.arguments else None,
        is_identity=_attribute(attributes, "BsonId") is not None or name in IDENTITY_NAMES,
        is_ignored=_attribute(attributes, "BsonIgnore") is not None,
        representation=(
            representation.value.rsplit(".", 1)[-1]
            if representation is not None and representation.arguments
            else None
        ),
    )


def _base_types(node: Any) -> list[str]:
    base_list = child_by_field(node, "bases") or first_child_of_type(node, "base_list")
    result: list[str] = []
    for child in named_children(base_list):
        if child.type == "primary_constructor_base_type":
            child = named_children(child)[0] if named_children(child) else child
        if child.type == "argument_list":
            continue
        text = node_text(child).strip()
        if text:
            result.append(text.split("(", 1)[0].strip())
    return result
