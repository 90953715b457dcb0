"""Relationship Inferencer: evidence-backed edges between CodeTypes.

Rules, strongest first:

- EMBEDDED (0.95): a field's declared type, unwrapped from nullables,
  arrays and collection generics, is another known type.
- LOOKUP (0.9, +0.02 per further pipeline stage, max 0.98): an ``Aggregate``
  on A's collection carries a ``$lookup`` whose ``from`` resolves to B.
- REFERS_TO strong (0.75 for ``*Id``, 0.72 for ``*Ref``, +0.1 per further
  supporting operation, max 0.95; +0.05 when sampled data stores the field
  as an ObjectId): an FK-shaped field of A whose stem names B, filtered on
  by at least one operation against A's collection.
- REFERS_TO weak (0.4 + 0.25 * similarity): as above when no type matches the
  stem exactly but one is similar enough.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, replace
from difflib import SequenceMatcher

import structlog

from cataloger.core.errors import InvalidArgumentError
from cataloger.scanner._internal.resolution.collections import pluralize
from cataloger.scanner.models import (
    Cardinality,
    CodeType,
    CollectionMapping,
    DataRelationship,
    FieldDefinition,
    ObservedSchema,
    OperationKind,
    ProvenanceRecord,
    QueryOperation,
    RelationshipKind,
)

logger = structlog.get_logger()

EMBEDDED_CONFIDENCE = 0.95
LOOKUP_CONFIDENCE = 0.9
LOOKUP_STAGE_BONUS = 0.02
LOOKUP_MAX = 0.98
REFERENCE_ID_CONFIDENCE = 0.75
REFERENCE_REF_CONFIDENCE = 0.72
REFERENCE_OPERATION_BONUS = 0.1
REFERENCE_MAX = 0.95
OBJECT_ID_BONUS = 0.05
WEAK_BASE = 0.4
WEAK_SCALE = 0.25
WEAK_MIN_SIMILARITY = 0.5

# Suffix -> base confidence, longest suffixes first.
_FK_SUFFIXES: tuple[tuple[str, float], ...] = (
    ("_id", REFERENCE_ID_CONFIDENCE),
    ("ID", REFERENCE_ID_CONFIDENCE),
    ("Id", REFERENCE_ID_CONFIDENCE),
    ("Ref", REFERENCE_REF_CONFIDENCE),
)

_COLLECTION_WRAPPERS = frozenset(
    {
        "List",
        "IList",
        "ICollection",
        "IEnumerable",
        "IReadOnlyList",
        "IReadOnlyCollection",
        "HashSet",
        "ISet",
        "Collection",
    }
)
_DICTIONARY_WRAPPERS = frozenset({"Dictionary", "IDictionary", "IReadOnlyDictionary"})
_GENERIC = re.compile(r"^([\w.]+)\s*<(.*)>$", re.DOTALL)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _split_type_args(text: str) -> list[str]:
    """Top-level comma split of generic arguments: ``K, List<V>``."""
    parts: list[str] = []
    depth = 0
    current = []
    for ch in text:
        if ch == "<":
            depth += 1
        elif ch == ">":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    parts.append("".join(current).strip())
    return parts


def unwrap_type(declared_type: str) -> tuple[str, bool]:
    """Element type name and whether it sits inside a collection.

    ``List<Address>?`` -> ``("Address", True)``; ``User?`` -> ``("User", False)``.
    """
    text = declared_type.strip()
    many = False
    while True:
        text = text.strip().rstrip("?").strip()
        if text.endswith("]") and "[" in text:
            text = text[: text.rindex("[")]
            many = True
            continue
        m = _GENERIC.match(text)
        if m is None:
            break
        wrapper = m.group(1).rsplit(".", 1)[-1]
        args = _split_type_args(m.group(2))
        if wrapper in _COLLECTION_WRAPPERS and len(args) == 1:
            text, many = args[0], True
        elif wrapper in _DICTIONARY_WRAPPERS and len(args) == 2:
            text, many = args[1], True
        elif wrapper == "Nullable" and len(args) == 1:
            text = args[0]
        else:
            text = m.group(1)
            break
    return text.rsplit(".", 1)[-1], many


def foreign_key_stem(field_name: str) -> tuple[str, float] | None:
    """``UserId`` -> ``("User", 0.75)``; None for non FK-shaped names."""
    for suffix, confidence in _FK_SUFFIXES:
        if field_name.endswith(suffix) and len(field_name) > len(suffix):
            stem = field_name[: -len(suffix)].rstrip("_")
            if stem:
                return stem, confidence
    return None


def _normalize(name: str) -> str:
    return name.replace("_", "").lower()


@dataclass
class _Support:
    operation: QueryOperation
    operator: str


class RelationshipInferencer:
    """Infer DataRelationships from types, operations and observed schemas."""

    def infer(
        self,
        code_types: list[CodeType] | None,
        operations: list[QueryOperation] | None,
        schemas: Iterable[ObservedSchema] | None = None,
        mappings: Iterable[CollectionMapping] | None = None,
    ) -> list[DataRelationship]:
        """All edges, deduplicated by (source, target, kind).

        Raises:
            InvalidArgumentError: If code_types or operations is None.
        """
        if code_types is None:
            raise InvalidArgumentError.null("code_types")
        if operations is None:
            raise InvalidArgumentError.null("operations")
        if not code_types:
            return []

        ctx = _Context(code_types, operations, list(schemas or []), list(mappings or []))
        edges: list[DataRelationship] = []
        for code_type in code_types:
            edges.extend(self._embedded(ctx, code_type))
            edges.extend(self._references(ctx, code_type))
        edges.extend(self._lookups(ctx))

        result = _merge(edges)
        logger.info(
            "relationships_inferred",
            types=len(code_types),
            operations=len(operations),
            relationships=len(result),
        )
        return result

    def _embedded(self, ctx: _Context, source: CodeType) -> list[DataRelationship]:
        edges = []
        for fld in source.fields:
            element, many = unwrap_type(fld.declared_type)
            target = ctx.by_name.get(element)
            if target is None or target.id == source.id:
                continue
            edges.append(
                _edge(
                    source,
                    target,
                    RelationshipKind.EMBEDDED,
                    EMBEDDED_CONFIDENCE,
                    f"field '{fld.name}' of {source.name} embeds {target.name}",
                    field_path=fld.stored_name,
                    cardinality=Cardinality.ONE_TO_MANY if many else Cardinality.ONE_TO_ONE,
                    is_required=not fld.is_nullable,
                )
            )
        return edges

    def _references(self, ctx: _Context, source: CodeType) -> list[DataRelationship]:
        edges = []
        for fld in source.fields:
            shape = foreign_key_stem(fld.name)
            if shape is None:
                continue
            stem, base = shape
            support = ctx.supporting_operations(source, fld)
            if not support:
                continue
            filters = "; ".join(
                f"filter on {fld.name} ({s.operator}) in {s.operation.kind.value}" for s in support
            )
            target = ctx.by_normalized.get(_normalize(stem))
            if target is not None and target.id != source.id:
                distinct = len({id(s.operation) for s in support})
                confidence = min(REFERENCE_MAX, base + REFERENCE_OPERATION_BONUS * (distinct - 1))
                evidence = f"field '{fld.name}' references {target.name}; {filters}"
                collection = ctx.object_id_collection(source, fld)
                if collection is not None:
                    confidence += OBJECT_ID_BONUS
                    evidence += f"; '{fld.stored_name}' observed as objectid in '{collection}'"
                edges.append(
                    _edge(
                        source,
                        target,
                        RelationshipKind.REFERS_TO,
                        confidence,
                        evidence,
                        field_path=fld.stored_name,
                        cardinality=Cardinality.MANY_TO_ONE,
                        is_required=not fld.is_nullable,
                    )
                )
                continue

            weak = ctx.most_similar(stem, exclude=source.id)
            if weak is None:
                continue
            candidate, ratio = weak
            edges.append(
                _edge(
                    source,
                    candidate,
                    RelationshipKind.REFERS_TO,
                    WEAK_BASE + WEAK_SCALE * ratio,
                    f"field '{fld.name}' weakly matches {candidate.name} by name "
                    f"(similarity {ratio:.2f}); {filters}",
                    field_path=fld.stored_name,
                    cardinality=Cardinality.MANY_TO_ONE,
                )
            )
        return edges

    def _lookups(self, ctx: _Context) -> list[DataRelationship]:
        edges = []
        for op in ctx.operations:
            if op.kind is not OperationKind.AGGREGATE or not op.pipeline:
                continue
            source = ctx.type_of_operation(op)
            if source is None:
                continue
            bonus = LOOKUP_STAGE_BONUS * (len(op.pipeline) - 1)
            confidence = min(LOOKUP_MAX, LOOKUP_CONFIDENCE + bonus)
            for stage in op.lookup_stages():
                origin = stage.arguments.get("from", "")
                target = ctx.type_of_collection(origin)
                if target is None:
                    target = ctx.by_name.get(stage.arguments.get("from_type", ""))
                if target is None or target.id == source.id:
                    continue
                local = stage.arguments.get("localField") or stage.arguments.get(
                    "connectFromField", ""
                )
                alias = stage.arguments.get("as", "")
                unwound = any(
                    s.operator == "$unwind" and alias and s.arguments.get("path") == alias
                    for s in op.pipeline
                )
                edges.append(
                    _edge(
                        source,
                        target,
                        RelationshipKind.LOOKUP,
                        confidence,
                        f"{stage.operator} from '{origin}' on localField '{local}'",
                        field_path=local,
                        cardinality=Cardinality.MANY_TO_ONE if unwound else Cardinality.ONE_TO_MANY,
                        provenance=op.provenance,
                    )
                )
        return edges


class _Context:
    """Name and collection indexes shared by the rules of one inference run."""

    def __init__(
        self,
        code_types: list[CodeType],
        operations: list[QueryOperation],
        schemas: list[ObservedSchema],
        mappings: list[CollectionMapping],
    ) -> None:
        self.code_types = code_types
        self.operations = operations
        self.schemas = schemas
        self.by_id = {t.id: t for t in code_types}
        self.by_name: dict[str, CodeType] = {}
        self.by_normalized: dict[str, CodeType] = {}
        for t in code_types:
            self.by_name.setdefault(t.name, t)
            self.by_normalized.setdefault(_normalize(t.name), t)

        self.collections: dict[str, CodeType] = {}
        self.collections_of: dict[str, set[str]] = {t.id: set() for t in code_types}
        for m in mappings:
            owner = self.by_id.get(m.type_id)
            if owner is None:
                continue
            self.collections.setdefault(m.collection_name.lower(), owner)
            self.collections_of[owner.id].add(m.collection_name.lower())
        for t in code_types:
            inferred = pluralize(t.name)
            self.collections.setdefault(inferred, t)
            self.collections_of[t.id].add(inferred)

    def type_of_collection(self, collection_name: str | None) -> CodeType | None:
        if not collection_name:
            return None
        return self.collections.get(collection_name.lower())

    def type_of_operation(self, op: QueryOperation) -> CodeType | None:
        found = self.type_of_collection(op.collection_name)
        if found is None and op.collection_type:
            found = self.by_name.get(op.collection_type)
        return found

    def targets(self, op: QueryOperation, code_type: CodeType) -> bool:
        if op.collection_name and op.collection_name.lower() in self.collections_of[code_type.id]:
            return True
        return op.collection_type == code_type.name

    def supporting_operations(self, code_type: CodeType, fld: FieldDefinition) -> list[_Support]:
        names = {fld.name.lower(), fld.stored_name.lower()}
        support = []
        for op in self.operations:
            if not self.targets(op, code_type):
                continue
            for flt in op.filters:
                if flt.field_path.lower() in names:
                    support.append(_Support(operation=op, operator=flt.operator))
                    break
        return support

    def object_id_collection(self, code_type: CodeType, fld: FieldDefinition) -> str | None:
        owned = self.collections_of[code_type.id]
        for schema in self.schemas:
            if schema.collection_name.lower() not in owned:
                continue
            stats = schema.fields.get(fld.stored_name) or schema.fields.get(fld.name)
            if stats is not None and stats.primary_type == "objectid":
                return schema.collection_name
        return None

    def most_similar(self, stem: str, *, exclude: str) -> tuple[CodeType, float] | None:
        best: tuple[CodeType, float] | None = None
        wanted = _normalize(stem)
        for t in self.code_types:
            if t.id == exclude:
                continue
            ratio = SequenceMatcher(None, wanted, _normalize(t.name)).ratio()
            if ratio >= WEAK_MIN_SIMILARITY and (best is None or ratio > best[1]):
                best = (t, ratio)
        return best


def _edge(
    source: CodeType,
    target: CodeType,
    kind: RelationshipKind,
    confidence: float,
    evidence: str,
    *,
    field_path: str = "",
    cardinality: Cardinality = Cardinality.MANY_TO_ONE,
    is_required: bool = False,
    provenance: ProvenanceRecord | None = None,
) -> DataRelationship:
    base = provenance if provenance is not None else source.provenance
    return DataRelationship(
        source_type_id=source.id,
        target_type_id=target.id,
        source_type_name=source.name,
        target_type_name=target.name,
        kind=kind,
        confidence=_clamp(confidence),
        evidence=evidence,
        field_path=field_path,
        cardinality=cardinality,
        is_required=is_required,
        provenance=replace(base, symbol=f"{source.name}->{target.name}"),
    )


def _absorb(into: DataRelationship, other: DataRelationship) -> None:
    parts = into.evidence.split("; ")
    for piece in other.evidence.split("; "):
        if piece not in parts:
            parts.append(piece)
    into.evidence = "; ".join(parts)
    into.confidence = _clamp(max(into.confidence, other.confidence))
    into.field_path = into.field_path or other.field_path
    into.is_required = into.is_required or other.is_required


def _merge(edges: list[DataRelationship]) -> list[DataRelationship]:
    merged: dict[tuple[str, str, RelationshipKind], DataRelationship] = {}
    for edge in edges:
        if edge.source_type_id == edge.target_type_id:
            continue
        key = (edge.source_type_id, edge.target_type_id, edge.kind)
        if key in merged:
            _absorb(merged[key], edge)
        else:
            merged[key] = edge

    for key in list(merged):
        source, target, kind = key
        lookup = merged.get((source, target, RelationshipKind.LOOKUP))
        if kind is RelationshipKind.REFERS_TO and lookup is not None:
            _absorb(lookup, merged.pop(key))

    for (source, target, kind), edge in merged.items():
        if (target, source, kind) in merged:
            edge.is_bidirectional = True
    return list(merged.values())
