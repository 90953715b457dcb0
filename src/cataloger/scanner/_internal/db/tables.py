"""SQLModel table definitions for the knowledge base.

One table per fact type, keyed by the fact's stable id. Nested structures
(fields, filters, pipelines, provenance ...) are stored as JSON text columns
with a ``_json`` suffix; ``created_at`` / ``updated_at`` are epoch seconds
maintained by the writer.
"""

import json
from typing import Any

from sqlmodel import Field, SQLModel


class _FactRow(SQLModel):
    """Columns shared by every fact table."""

    id: str = Field(primary_key=True)
    repository: str = ""
    file_path: str = ""
    commit_sha: str = "unknown"
    provenance_json: str = "{}"
    created_at: float = 0.0
    updated_at: float = Field(default=0.0, index=True)

    def provenance(self) -> dict[str, Any]:
        result: dict[str, Any] = json.loads(self.provenance_json or "{}")
        return result


class CodeTypeRow(_FactRow, table=True):
    """Extracted record type."""

    __tablename__ = "code_types"

    name: str = Field(index=True)
    namespace: str = Field(default="", index=True)
    module_name: str = ""
    fields_json: str = "[]"
    attributes_json: str = "[]"
    discriminators_json: str = "[]"
    base_types_json: str = "[]"


class CollectionMappingRow(_FactRow, table=True):
    """Type -> collection mapping with resolution method and confidence."""

    __tablename__ = "collection_mappings"

    type_id: str = Field(index=True)
    type_name: str = ""
    collection_name: str = Field(index=True)
    method: str = ""
    confidence: float = 0.0
    context: str | None = None
    is_primary: bool = True
    alternatives_json: str = "[]"


class QueryOperationRow(_FactRow, table=True):
    """Driver call site against a collection."""

    __tablename__ = "query_operations"

    kind: str = Field(index=True)
    category: str = ""
    collection_name: str | None = Field(default=None, index=True)
    collection_type: str | None = None
    collection_mapping_id: str | None = Field(default=None, index=True)
    collection_hint: str | None = None
    filters_json: str = "[]"
    projections_json: str = "[]"
    sort_json: str = "[]"
    limit_value: int | None = None
    skip_value: int | None = None
    pipeline_json: str | None = None
    chain_json: str = "[]"
    is_transactional: bool = False


class DataRelationshipRow(_FactRow, table=True):
    """Inferred edge between two types."""

    __tablename__ = "data_relationships"

    source_type_id: str = Field(index=True)
    target_type_id: str = Field(index=True)
    kind: str = Field(index=True)
    source_type_name: str = ""
    target_type_name: str = ""
    confidence: float = 0.0
    evidence: str = ""
    field_path: str = ""
    is_bidirectional: bool = False
    cardinality: str = ""
    is_required: bool = False


class ObservedSchemaRow(_FactRow, table=True):
    """Schema inferred from sampled documents."""

    __tablename__ = "observed_schemas"

    collection_name: str = Field(index=True)
    collection_mapping_id: str | None = Field(default=None, index=True)
    schema_json: str = "{}"
    fields_json: str = "{}"
    type_frequencies_json: str = "{}"
    required_fields_json: str = "[]"
    string_formats_json: str = "[]"
    enum_candidates_json: str = "[]"
    pii_detections_json: str = "[]"
    sample_size: int = 0
    pii_redacted: bool = False


class KnowledgeBaseEntryRow(_FactRow, table=True):
    """Searchable entry pointing at one fact."""

    __tablename__ = "knowledge_base_entries"

    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    searchable_text: str = ""
    tags_json: str = "[]"
    related_ids_json: str = "[]"
    relevance_score: float = 1.0
    is_active: bool = Field(default=True, index=True)
    is_indexed: bool = True


class ScannedFileRow(_FactRow, table=True):
    """Per-file manifest: ids of the facts a file produced, its hints and constants."""

    __tablename__ = "source_files"

    line_count: int = 0
    type_ids_json: str = "[]"
    operation_ids_json: str = "[]"
    hints_json: str = "[]"
    constants_json: str = "{}"


FACT_TABLES: dict[str, type[_FactRow]] = {
    "code_types": CodeTypeRow,
    "collection_mappings": CollectionMappingRow,
    "query_operations": QueryOperationRow,
    "data_relationships": DataRelationshipRow,
    "observed_schemas": ObservedSchemaRow,
    "knowledge_base_entries": KnowledgeBaseEntryRow,
}

ALL_TABLES = [
    model.__table__  # type: ignore[attr-defined]
    for model in (*FACT_TABLES.values(), ScannedFileRow)
]


def row_to_dict(row: SQLModel) -> dict[str, Any]:
    """Row as a plain dict with ``*_json`` columns decoded under their bare name."""
    result: dict[str, Any] = {}
    for key, value in row.model_dump().items():
        if key.endswith("_json"):
            result[key[: -len("_json")]] = json.loads(value) if value is not None else None
        else:
            result[key] = value
    return result
