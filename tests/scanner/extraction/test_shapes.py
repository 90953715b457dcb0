"""Tests for query shape parsing over expression nodes."""

from collections.abc import Callable
from typing import Any

import pytest

from cataloger.scanner._internal.extraction.shapes import (
    call_parts,
    int_literal,
    parse_filter,
    parse_projection,
    parse_sort,
    parse_stage_document,
    selector_path,
    shorten,
    stage_documents,
    value_shape,
)
from cataloger.scanner._internal.parsing import ParsedSource
from cataloger.scanner._internal.parsing.treesitter import walk

ParseCs = Callable[..., ParsedSource]


@pytest.fixture
def expr(parse_cs: ParseCs) -> Callable[[str], Any]:
    """Expression node for C# source text, taken from a ``Capture(...)`` argument."""

    def _expr(text: str) -> Any:
        parsed = parse_cs(f"class C {{ void M() {{ Capture({text}); }} }}")
        for node in walk(parsed.root):
            call = call_parts(node)
            if call is not None and call.method == "Capture":
                return call.args[0]
        raise AssertionError("Capture call not found")

    return _expr


class TestParseFilter:
    """Filter predicates."""

    def test_negated_lambda(self, expr: Callable[[str], Any]) -> None:
        """``!`` flips the operator and marks the predicate negated."""
        (flt,) = parse_filter(expr("u => !(u.Status == status)"))

        assert flt.field_path == "Status"
        assert flt.operator == "$ne"
        assert flt.is_negated is True

    def test_mirrored_comparison(self, expr: Callable[[str], Any]) -> None:
        """A member on the right-hand side mirrors the operator."""
        (flt,) = parse_filter(expr("u => 18 < u.Age"))

        assert (flt.field_path, flt.operator, flt.value_shape) == ("Age", "$gt", "literal")

    def test_nested_member_path(self, expr: Callable[[str], Any]) -> None:
        (flt,) = parse_filter(expr('u => u.Address.City == "Oslo"'))

        assert flt.field_path == "Address.City"

    def test_string_matcher(self, expr: Callable[[str], Any]) -> None:
        (flt,) = parse_filter(expr("u => u.Name.StartsWith(prefix)"))

        assert (flt.field_path, flt.operator, flt.value_shape) == ("Name", "$regex", "parameter")

    def test_contains_on_list(self, expr: Callable[[str], Any]) -> None:
        (flt,) = parse_filter(expr("u => ids.Contains(u.Id)"))

        assert (flt.field_path, flt.operator) == ("Id", "$in")

    def test_builder_and_combination(self, expr: Callable[[str], Any]) -> None:
        """``&`` of builder filters yields both predicates in order."""
        filters = parse_filter(
            expr("Builders<User>.Filter.Eq(u => u.Name, name) & Builders<User>.Filter.Gt(\"age\", 30)")
        )

        assert [(f.field_path, f.operator, f.value_shape) for f in filters] == [
            ("Name", "$eq", "parameter"),
            ("age", "$gt", "literal"),
        ]

    def test_builder_not(self, expr: Callable[[str], Any]) -> None:
        (flt,) = parse_filter(expr("Builders<User>.Filter.Not(Builders<User>.Filter.In(u => u.Role, roles))"))

        assert (flt.field_path, flt.operator, flt.is_negated) == ("Role", "$nin", True)

    def test_unknown_shape_yields_nothing(self, expr: Callable[[str], Any]) -> None:
        assert parse_filter(expr("BuildFilter()")) == []

    def test_bson_or_array(self, expr: Callable[[str], Any]) -> None:
        filters = parse_filter(
            expr(
                'new BsonDocument("$or", new BsonArray { new BsonDocument("a", 1), '
                'new BsonDocument("b", x) })'
            )
        )

        assert [(f.field_path, f.value_shape) for f in filters] == [
            ("a", "literal"),
            ("b", "parameter"),
        ]


class TestProjectionAndSort:
    """Projection and sort definitions."""

    def test_projection_builder(self, expr: Callable[[str], Any]) -> None:
        result = parse_projection(
            expr("Builders<User>.Projection.Include(u => u.Name).Exclude(u => u.Id)")
        )

        assert [(p.field_path, p.is_included) for p in result] == [("Name", True), ("Id", False)]

    def test_projection_bson(self, expr: Callable[[str], Any]) -> None:
        result = parse_projection(expr('new BsonDocument { { "name", 1 }, { "_id", 0 } }'))

        assert [(p.field_path, p.is_included) for p in result] == [("name", True), ("_id", False)]

    def test_sort_builder_chain(self, expr: Callable[[str], Any]) -> None:
        result = parse_sort(
            expr("Builders<User>.Sort.Ascending(u => u.Name).Descending(u => u.Age)")
        )

        assert [(s.field_path, s.direction) for s in result] == [("Name", 1), ("Age", -1)]

    def test_sort_json_string(self, expr: Callable[[str], Any]) -> None:
        result = parse_sort(expr('"{ createdAt: -1, name: 1 }"'))

        assert [(s.field_path, s.direction) for s in result] == [("createdAt", -1), ("name", 1)]


class TestStages:
    """BsonDocument pipeline stages."""

    def test_stage_documents_from_array(self, expr: Callable[[str], Any]) -> None:
        """Stage literals of an array pipeline are parsed in order."""
        # Given
        node = expr(
            'new[] { new BsonDocument("$match", new BsonDocument("status", "open")), '
            'new BsonDocument("$lookup", new BsonDocument { { "from", "users" }, '
            '{ "localField", "userId" }, { "foreignField", "_id" }, { "as", "user" } }), '
            'new BsonDocument("$limit", 10) }'
        )

        # When
        documents = stage_documents(node)
        parsed = [parse_stage_document(d, i) for i, d in enumerate(documents)]

        # Then
        assert [p[0].operator for p in parsed if p] == ["$match", "$lookup", "$limit"]
        match_stage, match_filters = parsed[0]
        assert [(f.field_path, f.value_shape) for f in match_filters] == [("status", "literal")]
        assert parsed[1][0].arguments == {
            "from": "users",
            "localField": "userId",
            "foreignField": "_id",
            "as": "user",
        }
        assert parsed[2][0].arguments == {"value": "10"}
        assert parsed[2][0].order == 2


class TestHelpers:
    """Literal and shape helpers."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [("42", "literal"), ('"x"', "literal"), ("-1", "literal"), ("id", "parameter"),
         ("request.Id", "parameter"), ("Compute()", "expression")],
    )
    def test_value_shape(self, expr: Callable[[str], Any], text: str, expected: str) -> None:
        assert value_shape(expr(text)) == expected

    def test_int_literal(self, expr: Callable[[str], Any]) -> None:
        assert int_literal(expr("25")) == 25
        assert int_literal(expr("-3")) == -3
        assert int_literal(expr("count")) is None

    def test_selector_path_forms(self, expr: Callable[[str], Any]) -> None:
        assert selector_path(expr("u => u.Profile.Email")) == "Profile.Email"
        assert selector_path(expr('"email"')) == "email"
        assert selector_path(expr("nameof(User.Email)")) == "Email"

    def test_shorten(self) -> None:
        assert shorten("a   b\n c") == "a b c"
        assert len(shorten("x" * 500)) == 200
