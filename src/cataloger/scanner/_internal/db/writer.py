"""Knowledge base writer.

Flattens fact dataclasses into table rows and upserts them in chunks keyed
by the fact's stable id. Every chunk is its own BulkWriter transaction and is
retried while SQLite reports the database as locked or busy; a chunk that
still fails is logged and counted, never raised.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from cataloger.core.errors import InvalidArgumentError
from cataloger.scanner._internal.db.database import Database, is_database_locked_error, retry_delay
from cataloger.scanner._internal.db.tables import (
    CodeTypeRow,
    CollectionMappingRow,
    DataRelationshipRow,
    KnowledgeBaseEntryRow,
    ObservedSchemaRow,
    QueryOperationRow,
    ScannedFileRow,
)
from cataloger.scanner.models import (
    CodeType,
    CollectionMapping,
    DataRelationship,
    EntityType,
    KnowledgeBaseEntry,
    ObservedSchema,
    ProvenanceRecord,
    QueryOperation,
    ScannedFile,
)

logger = structlog.get_logger()

Record = dict[str, Any]


def _json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


@dataclass
class WriteSummary:
    """Rows written per table plus the number of rows that could not be written."""

    written: dict[str, int] = field(default_factory=dict)
    failed_writes: int = 0

    def add(self, table: str, written: int, failed: int) -> None:
        self.written[table] = self.written.get(table, 0) + written
        self.failed_writes += failed


class KnowledgeBaseWriter:
    """Upsert facts into the knowledge base.

    Args:
        db: Open database (tables created)
        batch_size: Rows per upsert transaction
        max_retries: Retries per chunk while the database is locked
        retry_base_delay_sec: First backoff delay, doubled per attempt
    """

    def __init__(
        self,
        db: Database,
        *,
        batch_size: int = 500,
        max_retries: int = 3,
        retry_base_delay_sec: float = 0.1,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_base_delay_sec = retry_base_delay_sec
        self._clock = clock
        self._sleep = sleep

    # -- per fact type ------------------------------------------------------

    def write_code_types(self, code_types: Sequence[CodeType] | None) -> tuple[int, int]:
        if code_types is None:
            raise InvalidArgumentError.null("code_types")
        now = self._clock()
        return self._upsert(CodeTypeRow, [_code_type_record(t, now) for t in code_types])

    def write_mappings(self, mappings: Sequence[CollectionMapping] | None) -> tuple[int, int]:
        if mappings is None:
            raise InvalidArgumentError.null("mappings")
        now = self._clock()
        return self._upsert(CollectionMappingRow, [_mapping_record(m, now) for m in mappings])

    def write_operations(self, operations: Sequence[QueryOperation] | None) -> tuple[int, int]:
        if operations is None:
            raise InvalidArgumentError.null("operations")
        now = self._clock()
        return self._upsert(QueryOperationRow, [_operation_record(o, now) for o in operations])

    def write_relationships(
        self, relationships: Sequence[DataRelationship] | None
    ) -> tuple[int, int]:
        if relationships is None:
            raise InvalidArgumentError.null("relationships")
        now = self._clock()
        return self._upsert(
            DataRelationshipRow, [_relationship_record(r, now) for r in relationships]
        )

    def write_schemas(self, schemas: Sequence[ObservedSchema] | None) -> tuple[int, int]:
        if schemas is None:
            raise InvalidArgumentError.null("schemas")
        now = self._clock()
        return self._upsert(ObservedSchemaRow, [_schema_record(s, now) for s in schemas])

    def write_entries(self, entries: Sequence[KnowledgeBaseEntry] | None) -> tuple[int, int]:
        if entries is None:
            raise InvalidArgumentError.null("entries")
        now = self._clock()
        return self._upsert(KnowledgeBaseEntryRow, [_entry_record(e, now) for e in entries])

    def write_scanned_files(self, files: Sequence[ScannedFile] | None) -> tuple[int, int]:
        """Per-file manifests; a file scanned again replaces its previous manifest."""
        if files is None:
            raise InvalidArgumentError.null("files")
        now = self._clock()
        return self._upsert(ScannedFileRow, [_scanned_file_record(f, now) for f in files])

    # -- whole scan ---------------------------------------------------------

    def write_batch(
        self,
        code_types: Sequence[CodeType],
        mappings: Sequence[CollectionMapping],
        operations: Sequence[QueryOperation],
        relationships: Sequence[DataRelationship],
        schemas: Sequence[ObservedSchema] = (),
    ) -> WriteSummary:
        """Write every fact of one scan plus a search entry per fact."""
        summary = WriteSummary()
        summary.add("code_types", *self.write_code_types(code_types))
        summary.add("collection_mappings", *self.write_mappings(mappings))
        summary.add("query_operations", *self.write_operations(operations))
        summary.add("data_relationships", *self.write_relationships(relationships))
        summary.add("observed_schemas", *self.write_schemas(schemas))
        entries = build_entries(code_types, mappings, operations, relationships, schemas)
        summary.add("knowledge_base_entries", *self.write_entries(entries))
        self.db.checkpoint()
        logger.info(
            "kb_write_complete",
            written=sum(summary.written.values()),
            failed_writes=summary.failed_writes,
        )
        return summary

    # -- chunked upsert -----------------------------------------------------

    def _upsert(self, model: type[SQLModel], records: list[Record]) -> tuple[int, int]:
        """Upsert in chunks; returns (written, failed)."""
        if not records:
            return 0, 0
        table = model.__table__.name  # type: ignore[attr-defined]
        update_columns = [c for c in records[0] if c not in ("id", "created_at")]
        written = failed = 0
        for start in range(0, len(records), self.batch_size):
            chunk = records[start : start + self.batch_size]
            if self._write_chunk(model, table, chunk, update_columns):
                written += len(chunk)
            else:
                failed += len(chunk)
        return written, failed

    def _write_chunk(
        self,
        model: type[SQLModel],
        table: str,
        chunk: list[Record],
        update_columns: list[str],
    ) -> bool:
        for attempt in range(self.max_retries + 1):
            try:
                with self.db.bulk_writer() as writer:
                    writer.upsert_many(model, chunk, ["id"], update_columns)
                return True
            except SQLAlchemyError as e:
                if is_database_locked_error(e) and attempt < self.max_retries:
                    delay = retry_delay(attempt, self.retry_base_delay_sec)
                    logger.warning(
                        "kb_write_retry",
                        table=table,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay_sec=delay,
                    )
                    self._sleep(delay)
                    continue
                logger.error("kb_write_failed", table=table, rows=len(chunk), error=str(e))
                return False
        return False


# ============================================================================
# ROW FLATTENING
# ============================================================================


def _base(fact_id: str, provenance: ProvenanceRecord, now: float) -> Record:
    return {
        "id": fact_id,
        "repository": provenance.repository,
        "file_path": provenance.file_path,
        "commit_sha": provenance.commit_sha,
        "provenance_json": _json(provenance.to_dict()),
        "created_at": now,
        "updated_at": now,
    }


def _code_type_record(t: CodeType, now: float) -> Record:
    return _base(t.id, t.provenance, now) | {
        "name": t.name,
        "namespace": t.namespace,
        "module_name": t.module_name,
        "fields_json": _json([asdict(f) for f in t.fields]),
        "attributes_json": _json([asdict(a) for a in t.attributes]),
        "discriminators_json": _json(t.discriminators),
        "base_types_json": _json(t.base_types),
    }


def _mapping_record(m: CollectionMapping, now: float) -> Record:
    return _base(m.id, m.provenance, now) | {
        "type_id": m.type_id,
        "type_name": m.type_name,
        "collection_name": m.collection_name,
        "method": m.method.value,
        "confidence": m.confidence,
        "context": m.context,
        "is_primary": m.is_primary,
        "alternatives_json": _json(m.alternatives),
    }


def _operation_record(o: QueryOperation, now: float) -> Record:
    return _base(o.id, o.provenance, now) | {
        "kind": o.kind.value,
        "category": o.kind.category,
        "collection_name": o.collection_name,
        "collection_type": o.collection_type,
        "collection_mapping_id": o.collection_mapping_id,
        "collection_hint": o.collection_hint,
        "filters_json": _json([asdict(f) for f in o.filters]),
        "projections_json": _json([asdict(p) for p in o.projections]),
        "sort_json": _json([asdict(s) for s in o.sort]),
        "limit_value": o.limit,
        "skip_value": o.skip,
        "pipeline_json": None if o.pipeline is None else _json([asdict(s) for s in o.pipeline]),
        "chain_json": _json(o.chain),
        "is_transactional": o.is_transactional,
    }


def _relationship_record(r: DataRelationship, now: float) -> Record:
    return _base(r.id, r.provenance, now) | {
        "source_type_id": r.source_type_id,
        "target_type_id": r.target_type_id,
        "kind": r.kind.value,
        "source_type_name": r.source_type_name,
        "target_type_name": r.target_type_name,
        "confidence": r.confidence,
        "evidence": r.evidence,
        "field_path": r.field_path,
        "is_bidirectional": r.is_bidirectional,
        "cardinality": r.cardinality.value,
        "is_required": r.is_required,
    }


def _schema_record(s: ObservedSchema, now: float) -> Record:
    return _base(s.id, s.provenance, now) | {
        "collection_name": s.collection_name,
        "collection_mapping_id": s.collection_mapping_id,
        "schema_json": _json(s.json_schema()),
        "fields_json": _json({path: asdict(stats) for path, stats in s.fields.items()}),
        "type_frequencies_json": _json(s.type_frequencies),
        "required_fields_json": _json(s.required_fields),
        "string_formats_json": _json([asdict(f) for f in s.string_formats]),
        "enum_candidates_json": _json([asdict(c) for c in s.enum_candidates]),
        "pii_detections_json": _json([asdict(d) for d in s.pii_detections]),
        "sample_size": s.sample_size,
        "pii_redacted": s.pii_redacted,
    }


def _scanned_file_record(f: ScannedFile, now: float) -> Record:
    provenance = ProvenanceRecord(
        repository=f.repository, file_path=f.file_path, commit_sha=f.commit_sha
    )
    return _base(f.id, provenance, now) | {
        "line_count": f.line_count,
        "type_ids_json": _json(f.type_ids),
        "operation_ids_json": _json(f.operation_ids),
        "hints_json": _json([asdict(h) for h in f.hints]),
        # insertion order matters: the first definition of a name wins
        "constants_json": json.dumps(f.constants),
    }


def _entry_record(e: KnowledgeBaseEntry, now: float) -> Record:
    return _base(e.id, e.provenance, now) | {
        "entity_type": e.entity_type.value,
        "entity_id": e.entity_id,
        "searchable_text": e.searchable_text,
        "tags_json": _json(e.tags),
        "related_ids_json": _json(e.related_ids),
        "relevance_score": e.relevance_score,
        "is_active": e.is_active,
        "is_indexed": e.is_indexed,
    }


# ============================================================================
# SEARCH ENTRIES
# ============================================================================


def _text(*parts: object) -> str:
    return " ".join(str(p) for p in parts if p)


def build_entries(
    code_types: Iterable[CodeType],
    mappings: Iterable[CollectionMapping],
    operations: Iterable[QueryOperation],
    relationships: Iterable[DataRelationship],
    schemas: Iterable[ObservedSchema] = (),
) -> list[KnowledgeBaseEntry]:
    """One searchable entry per fact."""
    mappings = list(mappings)
    mapping_ids_by_type: dict[str, list[str]] = {}
    for m in mappings:
        mapping_ids_by_type.setdefault(m.type_id, []).append(m.id)

    entries: list[KnowledgeBaseEntry] = []
    for t in code_types:
        field_names = [f.name for f in t.fields] + [f.element_name for f in t.fields if f.element_name]
        entries.append(
            KnowledgeBaseEntry(
                entity_type=EntityType.CODE_TYPE,
                entity_id=t.id,
                searchable_text=_text(
                    t.qualified_name,
                    t.module_name,
                    *field_names,
                    *(a.name for a in t.attributes),
                ),
                tags=[EntityType.CODE_TYPE.value, *([t.module_name] if t.module_name else [])],
                related_ids=mapping_ids_by_type.get(t.id, []),
                provenance=t.provenance,
            )
        )
    for m in mappings:
        entries.append(
            KnowledgeBaseEntry(
                entity_type=EntityType.COLLECTION_MAPPING,
                entity_id=m.id,
                searchable_text=_text(m.type_name, m.collection_name, *m.alternatives),
                tags=[EntityType.COLLECTION_MAPPING.value, m.method.value],
                related_ids=[m.type_id],
                relevance_score=m.confidence,
                provenance=m.provenance,
            )
        )
    for o in operations:
        entries.append(
            KnowledgeBaseEntry(
                entity_type=EntityType.QUERY_OPERATION,
                entity_id=o.id,
                searchable_text=_text(
                    o.kind.value,
                    o.collection_name,
                    o.collection_type,
                    o.provenance.symbol,
                    *o.filter_fields,
                ),
                tags=[EntityType.QUERY_OPERATION.value, o.kind.category.lower()]
                + (["transactional"] if o.is_transactional else []),
                related_ids=[o.collection_mapping_id] if o.collection_mapping_id else [],
                provenance=o.provenance,
            )
        )
    for r in relationships:
        entries.append(
            KnowledgeBaseEntry(
                entity_type=EntityType.DATA_RELATIONSHIP,
                entity_id=r.id,
                searchable_text=_text(
                    r.source_type_name, r.kind.value, r.target_type_name, r.field_path, r.evidence
                ),
                tags=[EntityType.DATA_RELATIONSHIP.value, r.kind.value, r.cardinality.value],
                related_ids=[r.source_type_id, r.target_type_id],
                relevance_score=r.confidence,
                provenance=r.provenance,
            )
        )
    for s in schemas:
        entries.append(
            KnowledgeBaseEntry(
                entity_type=EntityType.OBSERVED_SCHEMA,
                entity_id=s.id,
                searchable_text=_text(s.collection_name, *s.fields),
                tags=[EntityType.OBSERVED_SCHEMA.value] + (["pii"] if s.pii_redacted else []),
                related_ids=[s.collection_mapping_id] if s.collection_mapping_id else [],
                provenance=s.provenance,
            )
        )
    return entries
