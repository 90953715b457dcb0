"""Read side of the knowledge base: search, type lookup, counts, stored scan state."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import func
from sqlmodel import col, or_, select

from cataloger.core.errors import InvalidArgumentError
from cataloger.scanner._internal.db.database import Database
from cataloger.scanner._internal.db.tables import (
    FACT_TABLES,
    CodeTypeRow,
    CollectionMappingRow,
    DataRelationshipRow,
    KnowledgeBaseEntryRow,
    ObservedSchemaRow,
    QueryOperationRow,
    ScannedFileRow,
    row_to_dict,
)
from cataloger.scanner._internal.db.restore import (
    code_type_from_row,
    operation_from_row,
    scanned_file_from_row,
)
from cataloger.scanner.models import CodeType, QueryOperation, ScannedFile

DEFAULT_SEARCH_LIMIT = 20
_ID_CHUNK = 500  # below SQLite's bound-parameter limit


class KnowledgeBaseReader:
    """Queries over a knowledge base written by KnowledgeBaseWriter."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def search(
        self,
        query: str,
        entity_types: list[str] | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Active entries whose searchable text contains every query term.

        Matching is case-insensitive. Results are ordered by relevance score,
        then most recently updated.

        Raises:
            InvalidArgumentError: If limit or offset is negative.
        """
        if limit < 0:
            raise InvalidArgumentError.negative("limit", limit)
        if offset < 0:
            raise InvalidArgumentError.negative("offset", offset)

        stmt = select(KnowledgeBaseEntryRow).where(col(KnowledgeBaseEntryRow.is_active).is_(True))
        for term in query.split():
            stmt = stmt.where(
                func.lower(KnowledgeBaseEntryRow.searchable_text).like(f"%{term.lower()}%")
            )
        if entity_types:
            stmt = stmt.where(col(KnowledgeBaseEntryRow.entity_type).in_(entity_types))
        stmt = (
            stmt.order_by(
                col(KnowledgeBaseEntryRow.relevance_score).desc(),
                col(KnowledgeBaseEntryRow.updated_at).desc(),
            )
            .offset(offset)
            .limit(limit)
        )
        with self.db.session() as session:
            return [row_to_dict(row) for row in session.exec(stmt).all()]

    def get_type(
        self,
        name: str,
        namespace: str | None = None,
        *,
        include_relationships: bool = True,
        include_queries: bool = True,
        include_schemas: bool = True,
    ) -> dict[str, Any] | None:
        """A stored type with its mappings and, optionally, related facts.

        ``name`` may be qualified (``Shop.Models.User``); the namespace is then
        taken from it. Returns None when no type matches.
        """
        if not name or not name.strip():
            raise InvalidArgumentError.blank("name")
        if namespace is None and "." in name:
            namespace, _, name = name.rpartition(".")

        with self.db.session() as session:
            stmt = select(CodeTypeRow).where(CodeTypeRow.name == name)
            if namespace is not None:
                stmt = stmt.where(CodeTypeRow.namespace == namespace)
            row = session.exec(stmt.order_by(col(CodeTypeRow.updated_at).desc())).first()
            if row is None:
                return None

            result = row_to_dict(row)
            mappings = session.exec(
                select(CollectionMappingRow)
                .where(CollectionMappingRow.type_id == row.id)
                .order_by(
                    col(CollectionMappingRow.is_primary).desc(),
                    col(CollectionMappingRow.confidence).desc(),
                )
            ).all()
            result["mappings"] = [row_to_dict(m) for m in mappings]
            mapping_ids = [m.id for m in mappings]

            if include_queries:
                ops = session.exec(
                    select(QueryOperationRow)
                    .where(col(QueryOperationRow.collection_mapping_id).in_(mapping_ids))
                    .order_by(col(QueryOperationRow.file_path), col(QueryOperationRow.id))
                ).all()
                result["operations"] = [row_to_dict(o) for o in ops]
            if include_relationships:
                rels = session.exec(
                    select(DataRelationshipRow)
                    .where(
                        or_(
                            DataRelationshipRow.source_type_id == row.id,
                            DataRelationshipRow.target_type_id == row.id,
                        )
                    )
                    .order_by(col(DataRelationshipRow.confidence).desc())
                ).all()
                result["relationships"] = [row_to_dict(r) for r in rels]
            if include_schemas:
                schemas = session.exec(
                    select(ObservedSchemaRow).where(
                        col(ObservedSchemaRow.collection_mapping_id).in_(mapping_ids)
                    )
                ).all()
                result["schemas"] = [row_to_dict(s) for s in schemas]
            return result

    def counts(self) -> dict[str, int]:
        """Row count per knowledge base table."""
        with self.db.session() as session:
            return {
                table: session.exec(select(func.count()).select_from(model)).one()
                for table, model in FACT_TABLES.items()
            }

    # -- stored scan state --------------------------------------------------

    def scanned_files(self, repository: str) -> list[ScannedFile]:
        """Manifests of every file previously scanned for ``repository``, by path."""
        with self.db.session() as session:
            rows = session.exec(
                select(ScannedFileRow)
                .where(ScannedFileRow.repository == repository)
                .order_by(col(ScannedFileRow.file_path))
            ).all()
            return [scanned_file_from_row(row) for row in rows]

    def load_code_types(self, ids: Sequence[str]) -> list[CodeType]:
        """Stored code types in the order of ``ids``; unknown ids are skipped."""
        rows = self._rows_by_id(CodeTypeRow, ids)
        return [code_type_from_row(rows[i]) for i in ids if i in rows]

    def load_operations(self, ids: Sequence[str]) -> list[QueryOperation]:
        """Stored query operations in the order of ``ids``; unknown ids are skipped."""
        rows = self._rows_by_id(QueryOperationRow, ids)
        return [operation_from_row(rows[i]) for i in ids if i in rows]

    def _rows_by_id(self, model: Any, ids: Sequence[str]) -> dict[str, Any]:
        found: dict[str, Any] = {}
        unique = list(dict.fromkeys(ids))
        with self.db.session() as session:
            for start in range(0, len(unique), _ID_CHUNK):
                chunk = unique[start : start + _ID_CHUNK]
                for row in session.exec(select(model).where(col(model.id).in_(chunk))).all():
                    found[row.id] = row
        return found
