"""Fixtures for knowledge base tests."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from cataloger.scanner._internal.db.database import Database
from cataloger.scanner.models import (
    AggregationStage,
    Cardinality,
    CodeType,
    CollectionMapping,
    DataRelationship,
    FieldDefinition,
    FieldStatistics,
    FilterExpression,
    LineSpan,
    ObservedSchema,
    OperationKind,
    PiiDetection,
    ProvenanceRecord,
    QueryOperation,
    RelationshipKind,
    ResolutionMethod,
)


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    """Fresh knowledge base with every table created."""
    database = Database(tmp_path / "kb" / "knowledge.db")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def facts() -> dict:
    """A small, consistent set of facts: User <- Order, one find, one aggregate."""
    user = CodeType(
        name="User",
        namespace="Shop.Models",
        module_name="Shop.Core",
        fields=[
            FieldDefinition(name="Id", declared_type="string", is_identity=True),
            FieldDefinition(name="Email", declared_type="string", element_name="email"),
        ],
        provenance=ProvenanceRecord(
            repository="repo",
            file_path="Models/User.cs",
            symbol="Shop.Models.User",
            line_span=LineSpan(start=3, end=8),
            commit_sha="abc123",
        ),
    )
    order = CodeType(
        name="Order",
        namespace="Shop.Models",
        fields=[
            FieldDefinition(name="Id", declared_type="string", is_identity=True),
            FieldDefinition(name="UserId", declared_type="string"),
        ],
        provenance=ProvenanceRecord(
            repository="repo", file_path="Models/Order.cs", symbol="Shop.Models.Order"
        ),
    )
    user_mapping = CollectionMapping(
        type_id=user.id,
        type_name="User",
        collection_name="users",
        method=ResolutionMethod.LITERAL,
        confidence=1.0,
        provenance=user.provenance,
    )
    order_mapping = CollectionMapping(
        type_id=order.id,
        type_name="Order",
        collection_name="orders",
        method=ResolutionMethod.INFERRED,
        confidence=0.6,
        provenance=order.provenance,
    )
    find = QueryOperation(
        kind=OperationKind.FIND,
        collection_name="orders",
        collection_type="Order",
        collection_mapping_id=order_mapping.id,
        filters=[FilterExpression(field_path="UserId", value_shape="parameter")],
        limit=10,
        provenance=ProvenanceRecord(
            repository="repo",
            file_path="Data/OrderRepository.cs",
            symbol="OrderRepository.ByUser",
            line_span=LineSpan(start=12, end=12),
        ),
    )
    aggregate = QueryOperation(
        kind=OperationKind.AGGREGATE,
        collection_name="orders",
        collection_type="Order",
        collection_mapping_id=order_mapping.id,
        pipeline=[AggregationStage(operator="$lookup", arguments={"from": "users"})],
        is_transactional=True,
        provenance=ProvenanceRecord(
            repository="repo",
            file_path="Data/OrderRepository.cs",
            symbol="OrderRepository.Report",
            line_span=LineSpan(start=20, end=24),
        ),
    )
    relationship = DataRelationship(
        source_type_id=order.id,
        target_type_id=user.id,
        source_type_name="Order",
        target_type_name="User",
        kind=RelationshipKind.REFERS_TO,
        confidence=0.75,
        evidence="field 'UserId' references User",
        field_path="UserId",
        cardinality=Cardinality.MANY_TO_ONE,
        provenance=order.provenance,
    )
    schema = ObservedSchema(
        collection_name="users",
        collection_mapping_id=user_mapping.id,
        fields={"email": FieldStatistics(types={"string": 2}, presence=2, is_pii=True)},
        required_fields=["email"],
        sample_size=2,
        pii_redacted=True,
        pii_detections=[PiiDetection(field_name="email", pii_type="email", reason="field name token 'email'")],
        provenance=ProvenanceRecord(repository="repo", file_path="mongodb://users", symbol="users"),
    )
    return {
        "code_types": [user, order],
        "mappings": [user_mapping, order_mapping],
        "operations": [find, aggregate],
        "relationships": [relationship],
        "schemas": [schema],
    }
