"""Fact model shared by every scan stage.

Every fact carries a stable id and a ProvenanceRecord. Stages produce these
plain dataclasses (picklable, so they cross the extraction process pool);
the knowledge base writer flattens them into the SQLModel tables in
``scanner/_internal/db/tables.py``.

Id derivation (``stable_id``) is deterministic over repository + file path +
symbol (or repository + collection name) so that a re-scan of an unchanged
checkout upserts the same rows instead of adding new ones.
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

EXTRACTOR_VERSION = "1.0.0"


def stable_id(*parts: object) -> str:
    """Deterministic fact id from identifying parts."""
    joined = ":".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:32]


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


# ============================================================================
# ENUMS
# ============================================================================


class ResolutionMethod(str, Enum):
    """How a collection name was determined, in decreasing static certainty."""

    LITERAL = "literal"
    CONSTANT = "constant"
    CONFIG = "config"
    INFERRED = "inferred"


class OperationKind(str, Enum):
    """Closed set of recognized collection call sites."""

    FIND = "Find"
    FIND_ONE_AND_UPDATE = "FindOneAndUpdate"
    FIND_ONE_AND_REPLACE = "FindOneAndReplace"
    FIND_ONE_AND_DELETE = "FindOneAndDelete"
    INSERT_ONE = "InsertOne"
    INSERT_MANY = "InsertMany"
    UPDATE_ONE = "UpdateOne"
    UPDATE_MANY = "UpdateMany"
    REPLACE_ONE = "ReplaceOne"
    DELETE_ONE = "DeleteOne"
    DELETE_MANY = "DeleteMany"
    AGGREGATE = "Aggregate"
    COUNT_DOCUMENTS = "CountDocuments"
    DISTINCT = "Distinct"

    @property
    def category(self) -> str:
        """Coarse class: Find, Insert, Update, Replace, Delete, Aggregate, Count."""
        return _KIND_CATEGORY[self]

    @property
    def takes_filter(self) -> bool:
        return self not in (
            OperationKind.INSERT_ONE,
            OperationKind.INSERT_MANY,
            OperationKind.AGGREGATE,
        )


_KIND_CATEGORY: dict[OperationKind, str] = {
    OperationKind.FIND: "Find",
    OperationKind.FIND_ONE_AND_UPDATE: "Update",
    OperationKind.FIND_ONE_AND_REPLACE: "Replace",
    OperationKind.FIND_ONE_AND_DELETE: "Delete",
    OperationKind.INSERT_ONE: "Insert",
    OperationKind.INSERT_MANY: "Insert",
    OperationKind.UPDATE_ONE: "Update",
    OperationKind.UPDATE_MANY: "Update",
    OperationKind.REPLACE_ONE: "Replace",
    OperationKind.DELETE_ONE: "Delete",
    OperationKind.DELETE_MANY: "Delete",
    OperationKind.AGGREGATE: "Aggregate",
    OperationKind.COUNT_DOCUMENTS: "Count",
    OperationKind.DISTINCT: "Find",
}


class RelationshipKind(str, Enum):
    REFERS_TO = "REFERS_TO"
    LOOKUP = "LOOKUP"
    EMBEDDED = "EMBEDDED"


class Cardinality(str, Enum):
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"
    MANY_TO_ONE = "many-to-one"


class EntityType(str, Enum):
    """Entity tags used by knowledge base entries."""

    CODE_TYPE = "code_type"
    COLLECTION_MAPPING = "collection_mapping"
    QUERY_OPERATION = "query_operation"
    DATA_RELATIONSHIP = "data_relationship"
    OBSERVED_SCHEMA = "observed_schema"


# ============================================================================
# PROVENANCE
# ============================================================================


@dataclass(frozen=True)
class LineSpan:
    start: int = 0  # 1-based, inclusive
    end: int = 0


@dataclass
class ProvenanceRecord:
    """Where and when a fact was extracted."""

    repository: str = ""
    file_path: str = ""
    symbol: str = ""
    line_span: LineSpan = field(default_factory=LineSpan)
    commit_sha: str = "unknown"
    extracted_at: str = field(default_factory=utc_now_iso)
    extractor_version: str = EXTRACTOR_VERSION

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProvenanceRecord:
        span = data.get("line_span") or {}
        return cls(
            repository=data.get("repository", ""),
            file_path=data.get("file_path", ""),
            symbol=data.get("symbol", ""),
            line_span=LineSpan(start=span.get("start", 0), end=span.get("end", 0)),
            commit_sha=data.get("commit_sha", "unknown"),
            extracted_at=data.get("extracted_at", ""),
            extractor_version=data.get("extractor_version", EXTRACTOR_VERSION),
        )


# ============================================================================
# CODE TYPES
# ============================================================================


@dataclass
class Attribute:
    """A C# attribute as written, e.g. ``[BsonElement("name")]``."""

    name: str
    value: str = "true"
    arguments: list[str] = field(default_factory=list)


@dataclass
class FieldDefinition:
    name: str
    declared_type: str
    is_nullable: bool = False
    attributes: list[Attribute] = field(default_factory=list)
    element_name: str | None = None  # BsonElement alias
    is_identity: bool = False
    is_ignored: bool = False
    representation: str | None = None

    @property
    def stored_name(self) -> str:
        """Name the field has inside stored documents."""
        if self.is_identity:
            return "_id"
        return self.element_name or self.name


@dataclass
class CodeType:
    name: str
    namespace: str = ""
    module_name: str = ""
    fields: list[FieldDefinition] = field(default_factory=list)
    attributes: list[Attribute] = field(default_factory=list)
    discriminators: list[str] = field(default_factory=list)
    base_types: list[str] = field(default_factory=list)
    provenance: ProvenanceRecord = field(default_factory=ProvenanceRecord)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = stable_id(
                self.provenance.repository, self.provenance.file_path, self.qualified_name
            )

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    def field_named(self, name: str) -> FieldDefinition | None:
        lowered = name.lower()
        for f in self.fields:
            if f.name.lower() == lowered or (f.element_name or "").lower() == lowered:
                return f
        return None


# ============================================================================
# COLLECTION MAPPINGS
# ============================================================================


@dataclass
class CollectionMapping:
    type_id: str
    type_name: str
    collection_name: str
    method: ResolutionMethod
    confidence: float
    context: str | None = None
    is_primary: bool = True
    alternatives: list[str] = field(default_factory=list)
    provenance: ProvenanceRecord = field(default_factory=ProvenanceRecord)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = stable_id(self.provenance.repository, self.type_id, self.collection_name)


@dataclass
class CollectionHint:
    """A collection name hint found at a ``GetCollection<T>(...)`` call site."""

    type_name: str
    hint: str
    file_path: str = ""
    line: int = 0


@dataclass
class ScannedFile:
    """What one source file contributed to a scan.

    Kept in the knowledge base so an incremental scan can rebuild the join
    inputs of files it does not parse again.
    """

    repository: str
    file_path: str
    commit_sha: str = "unknown"
    line_count: int = 0
    type_ids: list[str] = field(default_factory=list)
    operation_ids: list[str] = field(default_factory=list)
    hints: list[CollectionHint] = field(default_factory=list)
    constants: dict[str, str] = field(default_factory=dict)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = stable_id(self.repository, self.file_path)


# ============================================================================
# QUERY OPERATIONS
# ============================================================================


@dataclass
class FilterExpression:
    field_path: str
    operator: str = "$eq"
    value_shape: str = "expression"  # literal | parameter | expression
    is_negated: bool = False


@dataclass
class ProjectionExpression:
    field_path: str
    is_included: bool = True


@dataclass
class SortExpression:
    field_path: str
    direction: int = 1
    priority: int = 0


@dataclass
class AggregationStage:
    operator: str
    order: int = 0
    arguments: dict[str, str] = field(default_factory=dict)
    shape: str = ""


@dataclass
class QueryOperation:
    kind: OperationKind
    collection_name: str | None = None
    collection_type: str | None = None
    collection_mapping_id: str | None = None
    collection_hint: str | None = None  # raw GetCollection argument, re-resolved after the join
    filters: list[FilterExpression] = field(default_factory=list)
    projections: list[ProjectionExpression] = field(default_factory=list)
    sort: list[SortExpression] = field(default_factory=list)
    limit: int | None = None
    skip: int | None = None
    pipeline: list[AggregationStage] | None = None
    chain: list[str] = field(default_factory=list)
    is_transactional: bool = False
    provenance: ProvenanceRecord = field(default_factory=ProvenanceRecord)
    start_col: int = 0
    id: str = ""

    def __post_init__(self) -> None:
        if self.kind is OperationKind.AGGREGATE:
            if self.pipeline is None:
                self.pipeline = []
        else:
            self.pipeline = None
        if not self.id:
            p = self.provenance
            self.id = stable_id(
                p.repository, p.file_path, p.symbol, p.line_span.start, self.start_col, self.kind.value
            )

    @property
    def filter_fields(self) -> list[str]:
        return [f.field_path for f in self.filters]

    def lookup_stages(self) -> list[AggregationStage]:
        return [s for s in self.pipeline or [] if s.operator in ("$lookup", "$graphLookup")]


# ============================================================================
# RELATIONSHIPS
# ============================================================================


@dataclass
class DataRelationship:
    source_type_id: str
    target_type_id: str
    kind: RelationshipKind
    confidence: float
    evidence: str
    field_path: str = ""
    source_type_name: str = ""
    target_type_name: str = ""
    is_bidirectional: bool = False
    cardinality: Cardinality = Cardinality.MANY_TO_ONE
    is_required: bool = False
    provenance: ProvenanceRecord = field(default_factory=ProvenanceRecord)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = stable_id(
                self.provenance.repository,
                self.source_type_id,
                self.target_type_id,
                self.kind.value,
            )


# ============================================================================
# OBSERVED SCHEMAS
# ============================================================================


@dataclass
class FieldStatistics:
    types: dict[str, int] = field(default_factory=dict)
    presence: int = 0
    item_types: dict[str, int] = field(default_factory=dict)
    is_pii: bool = False

    @property
    def primary_type(self) -> str:
        if not self.types:
            return "unknown"
        return max(self.types.items(), key=lambda kv: (kv[1], kv[0]))[0]


@dataclass
class StringFormat:
    field_name: str
    pattern: str
    frequency: float
    confidence: float = 0.8


@dataclass
class EnumCandidate:
    field_name: str
    values: list[str]
    value_frequencies: dict[str, float] = field(default_factory=dict)
    distinct_value_count: int = 0
    is_good_candidate: bool = False
    confidence: float = 0.0


@dataclass
class PiiDetection:
    """Why a field was flagged. Never carries the flagged value."""

    field_name: str
    pii_type: str
    reason: str
    detection_method: str = "field_name"
    confidence: float = 1.0
    instance_count: int = 1
    requires_manual_review: bool = False


@dataclass
class ObservedSchema:
    collection_name: str
    collection_mapping_id: str | None = None
    fields: dict[str, FieldStatistics] = field(default_factory=dict)
    type_frequencies: dict[str, float] = field(default_factory=dict)
    required_fields: list[str] = field(default_factory=list)
    string_formats: list[StringFormat] = field(default_factory=list)
    enum_candidates: list[EnumCandidate] = field(default_factory=list)
    sample_size: int = 0
    pii_redacted: bool = False
    pii_detections: list[PiiDetection] = field(default_factory=list)
    provenance: ProvenanceRecord = field(default_factory=ProvenanceRecord)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = stable_id(self.provenance.repository, self.collection_name)

    def json_schema(self) -> dict[str, Any]:
        """Top-level fields rendered as a JSON-Schema-like document."""
        properties: dict[str, Any] = {}
        for path, stats in self.fields.items():
            if "." in path or path.endswith("[]"):
                continue
            prop: dict[str, Any] = {"type": stats.primary_type}
            if stats.item_types:
                prop["items"] = {
                    "type": max(stats.item_types.items(), key=lambda kv: kv[1])[0]
                }
            properties[path] = prop
        for fmt in self.string_formats:
            if fmt.field_name in properties:
                properties[fmt.field_name]["format"] = fmt.pattern
        required = [f for f in self.required_fields if f in properties]
        return {"type": "object", "properties": properties, "required": required}


# ============================================================================
# KNOWLEDGE BASE ENTRY
# ============================================================================


@dataclass
class KnowledgeBaseEntry:
    entity_type: EntityType
    entity_id: str
    searchable_text: str
    tags: list[str] = field(default_factory=list)
    related_ids: list[str] = field(default_factory=list)
    relevance_score: float = 1.0
    is_active: bool = True
    is_indexed: bool = True
    provenance: ProvenanceRecord = field(default_factory=ProvenanceRecord)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = stable_id(self.entity_type.value, self.entity_id)
