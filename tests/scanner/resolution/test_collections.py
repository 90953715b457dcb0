"""Tests for the collection resolver."""

from collections.abc import Callable

import pytest

from cataloger.core.errors import InvalidArgumentError
from cataloger.scanner._internal.extraction.operations import OperationExtractor
from cataloger.scanner._internal.parsing import ParsedSource
from cataloger.scanner._internal.resolution.collections import (
    CollectionResolver,
    classify_hint,
    pluralize,
)
from cataloger.scanner.models import (
    CodeType,
    CollectionHint,
    ProvenanceRecord,
    ResolutionMethod,
)

ParseCs = Callable[..., ParsedSource]


def _type(name: str) -> CodeType:
    return CodeType(
        name=name,
        namespace="Shop",
        provenance=ProvenanceRecord(repository="repo", file_path=f"Models/{name}.cs"),
    )


class TestPluralize:
    """Inferred collection names."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("User", "users"),
            ("Category", "categories"),
            ("Day", "days"),
            ("Address", "addresss"),
            ("Status", "statuss"),
            ("", ""),
        ],
    )
    def test_pluralize(self, name: str, expected: str) -> None:
        assert pluralize(name) == expected


class TestClassifyHint:
    """The confidence ladder."""

    @pytest.mark.parametrize(
        ("hint", "method", "confidence", "name"),
        [
            ('"users"', ResolutionMethod.LITERAL, 1.0, "users"),
            ('@"Users"', ResolutionMethod.LITERAL, 1.0, "Users"),
            ("orders", ResolutionMethod.CONSTANT, 0.8, "tbl_orders"),
            ("name", ResolutionMethod.CONSTANT, 0.8, "name"),
            ('"""\n  audit_log\n  """', ResolutionMethod.LITERAL, 1.0, "audit_log"),
            ("Names.Users", ResolutionMethod.CONSTANT, 0.8, "users_v2"),
            ("Collections:Orders", ResolutionMethod.CONFIG, 0.7, "Collections:Orders"),
            ("PRODUCT_COLLECTION", ResolutionMethod.CONSTANT, 0.8, "PRODUCT_COLLECTION"),
        ],
    )
    def test_hint_rules(
        self, hint: str, method: ResolutionMethod, confidence: float, name: str
    ) -> None:
        # Given
        constants = {"Names.Users": "users_v2", "orders": "tbl_orders"}

        # When
        outcome = classify_hint(hint, constants, type_name="User")

        # Then
        assert outcome.method is method
        assert outcome.confidence == confidence
        assert outcome.collection_name == name

    def test_qualified_constant_matches_trailing_segments(self) -> None:
        """``MyApp.Names.Users`` finds a constant keyed ``Names.Users``."""
        outcome = classify_hint("MyApp.Names.Users", {"Names.Users": "people"})

        assert outcome.collection_name == "people"

    def test_no_hint_inferred_from_type(self) -> None:
        outcome = classify_hint(None, type_name="Category")

        assert outcome.method is ResolutionMethod.INFERRED
        assert outcome.confidence == 0.6
        assert outcome.collection_name == "categories"

    def test_no_hint_no_type_falls_back(self) -> None:
        outcome = classify_hint("  ")

        assert outcome.collection_name == "documents"
        assert outcome.confidence == 0.3


class TestCollectionResolver:
    """Type to collection mappings."""

    def test_given_none_type_when_resolve_then_invalid_argument(self) -> None:
        with pytest.raises(InvalidArgumentError):
            CollectionResolver().resolve(None)

    def test_resolve_without_hint(self) -> None:
        """Without a hint the mapping is inferred and primary."""
        # Given
        user = _type("User")

        # When
        mapping = CollectionResolver().resolve(user)

        # Then
        assert mapping.type_id == user.id
        assert mapping.type_name == "User"
        assert mapping.collection_name == "users"
        assert mapping.method is ResolutionMethod.INFERRED
        assert mapping.is_primary is True
        assert mapping.provenance.file_path == "Models/User.cs"

    def test_resolve_all_one_mapping_per_distinct_name(self) -> None:
        """Several hints produce one primary plus alternatives, strongest first."""
        # Given
        user = _type("User")
        hints = {
            "User": [
                CollectionHint(type_name="User", hint="Names.Users", file_path="b.cs", line=4),
                CollectionHint(type_name="User", hint='"members"', file_path="a.cs", line=9),
                CollectionHint(type_name="User", hint='"members"', file_path="c.cs", line=1),
            ]
        }
        resolver = CollectionResolver({"Names.Users": "people"})

        # When
        mappings = resolver.resolve_all([user], hints)

        # Then
        assert [(m.collection_name, m.is_primary) for m in mappings] == [
            ("members", True),
            ("people", False),
        ]
        primary, alternative = mappings
        assert primary.confidence == 1.0
        assert primary.context == "a.cs:9"
        assert primary.provenance.file_path == "a.cs"
        assert primary.alternatives == ["people", "users"]
        assert alternative.alternatives == ["members"]
        assert alternative.method is ResolutionMethod.CONSTANT

    def test_resolve_all_types_without_hints(self) -> None:
        mappings = CollectionResolver().resolve_all([_type("User"), _type("Order")])

        assert [m.collection_name for m in mappings] == ["users", "orders"]
        assert all(m.is_primary for m in mappings)

    def test_mapping_ids_stable(self) -> None:
        user = _type("User")

        assert CollectionResolver().resolve(user).id == CollectionResolver().resolve(user).id


class TestHintsFromSource:
    """Hints as the operation extractor reports them, through to a mapping."""

    @pytest.mark.parametrize(
        ("argument", "method", "name"),
        [
            ('"users"', ResolutionMethod.LITERAL, "users"),
            ("nameof(User)", ResolutionMethod.LITERAL, "User"),
            ('$"audit"', ResolutionMethod.LITERAL, "audit"),
            ("collectionName", ResolutionMethod.CONSTANT, "collectionName"),
            ('$"{prefix}_users"', ResolutionMethod.INFERRED, "users"),
        ],
    )
    def test_argument_forms(
        self, parse_cs: ParseCs, argument: str, method: ResolutionMethod, name: str
    ) -> None:
        # Given
        code = f"""
        public class UserStore
        {{
            private readonly IMongoCollection<User> _users;

            public UserStore(IMongoDatabase db, string collectionName, string prefix)
            {{
                _users = db.GetCollection<User>({argument});
            }}
        }}
        """
        extracted = OperationExtractor().extract(parse_cs(code, path="Data/UserStore.cs"))

        # When
        hints = {"User": extracted.hints}
        (mapping,) = CollectionResolver(extracted.constants).resolve_all([_type("User")], hints)

        # Then
        assert mapping.method is method
        assert mapping.collection_name == name

    def test_parameter_named_like_a_collection_is_not_literal(self, parse_cs: ParseCs) -> None:
        """A bare identifier never maps at literal confidence."""
        code = """
        public class UserStore
        {
            private readonly IMongoCollection<User> _users;

            public UserStore(IMongoDatabase db, string name)
            {
                _users = db.GetCollection<User>(name);
            }
        }
        """
        extracted = OperationExtractor().extract(parse_cs(code, path="Data/UserStore.cs"))

        (hint,) = extracted.hints
        mapping = CollectionResolver().resolve(_type("User"), hint.hint)

        assert hint.hint == "name"
        assert mapping.method is ResolutionMethod.CONSTANT
        assert mapping.confidence == 0.8

    def test_lowercase_constant_resolves(self, parse_cs: ParseCs) -> None:
        code = """
        public class OrderStore
        {
            private const string orders = "tbl_orders";
            private readonly IMongoCollection<Order> _orders;

            public OrderStore(IMongoDatabase db)
            {
                _orders = db.GetCollection<Order>(orders);
            }
        }
        """
        extracted = OperationExtractor().extract(parse_cs(code, path="Data/OrderStore.cs"))

        (hint,) = extracted.hints
        mapping = CollectionResolver(extracted.constants).resolve(_type("Order"), hint.hint)

        assert mapping.collection_name == "tbl_orders"
        assert mapping.method is ResolutionMethod.CONSTANT
