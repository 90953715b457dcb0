"""Rebuild fact dataclasses from knowledge base rows.

The inverse of the writer's row flattening, limited to the facts an
incremental scan joins again: code types, query operations and per-file
manifests.
"""

from __future__ import annotations

from typing import Any

from cataloger.scanner._internal.db.tables import (
    CodeTypeRow,
    QueryOperationRow,
    ScannedFileRow,
    row_to_dict,
)
from cataloger.scanner.models import (
    AggregationStage,
    Attribute,
    CodeType,
    CollectionHint,
    FieldDefinition,
    FilterExpression,
    OperationKind,
    ProjectionExpression,
    ProvenanceRecord,
    QueryOperation,
    ScannedFile,
    SortExpression,
)


def _attributes(items: list[dict[str, Any]]) -> list[Attribute]:
    return [Attribute(**a) for a in items]


def _field(data: dict[str, Any]) -> FieldDefinition:
    data = dict(data)
    data["attributes"] = _attributes(data.get("attributes", []))
    return FieldDefinition(**data)


def code_type_from_row(row: CodeTypeRow) -> CodeType:
    d = row_to_dict(row)
    return CodeType(
        name=d["name"],
        namespace=d["namespace"],
        module_name=d["module_name"],
        fields=[_field(f) for f in d["fields"]],
        attributes=_attributes(d["attributes"]),
        discriminators=list(d["discriminators"]),
        base_types=list(d["base_types"]),
        provenance=ProvenanceRecord.from_dict(d["provenance"]),
        id=d["id"],
    )


def operation_from_row(row: QueryOperationRow) -> QueryOperation:
    d = row_to_dict(row)
    pipeline = d["pipeline"]
    return QueryOperation(
        kind=OperationKind(d["kind"]),
        collection_name=d["collection_name"],
        collection_type=d["collection_type"],
        collection_mapping_id=d["collection_mapping_id"],
        collection_hint=d["collection_hint"],
        filters=[FilterExpression(**f) for f in d["filters"]],
        projections=[ProjectionExpression(**p) for p in d["projections"]],
        sort=[SortExpression(**s) for s in d["sort"]],
        limit=d["limit_value"],
        skip=d["skip_value"],
        pipeline=None if pipeline is None else [AggregationStage(**s) for s in pipeline],
        chain=list(d["chain"]),
        is_transactional=d["is_transactional"],
        provenance=ProvenanceRecord.from_dict(d["provenance"]),
        id=d["id"],
    )


def scanned_file_from_row(row: ScannedFileRow) -> ScannedFile:
    d = row_to_dict(row)
    return ScannedFile(
        repository=d["repository"],
        file_path=d["file_path"],
        commit_sha=d["commit_sha"],
        line_count=d["line_count"],
        type_ids=list(d["type_ids"]),
        operation_ids=list(d["operation_ids"]),
        hints=[CollectionHint(**h) for h in d["hints"]],
        constants=dict(d["constants"]),
        id=d["id"],
    )
