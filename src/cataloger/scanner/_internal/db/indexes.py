"""Composite index creation for knowledge base query patterns.

These complement the single-column indexes declared with Field(index=True).
Call create_additional_indexes() after the tables exist.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Engine


ADDITIONAL_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_code_types_namespace_name ON code_types(namespace, name)",
    "CREATE INDEX IF NOT EXISTS idx_mappings_type_primary ON collection_mappings(type_id, is_primary)",
    "CREATE INDEX IF NOT EXISTS idx_operations_collection_kind ON query_operations(collection_name, kind)",
    "CREATE INDEX IF NOT EXISTS idx_relationships_source_kind ON data_relationships(source_type_id, kind)",
    "CREATE INDEX IF NOT EXISTS idx_relationships_target_kind ON data_relationships(target_type_id, kind)",
    "CREATE INDEX IF NOT EXISTS idx_entries_type_active ON knowledge_base_entries(entity_type, is_active)",
    "CREATE INDEX IF NOT EXISTS idx_entries_entity ON knowledge_base_entries(entity_type, entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_source_files_repo_path ON source_files(repository, file_path)",
]


def create_additional_indexes(engine: Engine) -> None:
    """Create composite indexes (idempotent)."""
    with engine.connect() as conn:
        for sql in ADDITIONAL_INDEXES:
            conn.execute(text(sql))
        conn.commit()
