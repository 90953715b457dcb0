"""Tests for the type extractor."""

from collections.abc import Callable

from cataloger.scanner._internal.extraction.types import (
    TypeExtractor,
    is_nullable_type,
    normalize_type_text,
    simple_type_name,
)
from cataloger.scanner._internal.parsing import ParsedSource

ParseCs = Callable[..., ParsedSource]


def _types(parse_cs: ParseCs, code: str, **kwargs: str) -> dict:
    return {t.name: t for t in TypeExtractor().extract(parse_cs(code, **kwargs))}


class TestRecordDetection:
    """Which declarations become CodeTypes."""

    def test_given_poco_when_extract_then_fields_and_namespace(self, parse_cs: ParseCs) -> None:
        """A plain class with properties is emitted with its namespace."""
        # Given
        code = """
        namespace Shop.Models
        {
            public class User
            {
                public string Id { get; set; }
                public string Name { get; set; }
                public int Age { get; set; }
            }
        }
        """

        # When
        types = _types(parse_cs, code, module_name="Shop.Core")

        # Then
        user = types["User"]
        assert user.namespace == "Shop.Models"
        assert user.qualified_name == "Shop.Models.User"
        assert user.module_name == "Shop.Core"
        assert [f.name for f in user.fields] == ["Id", "Name", "Age"]
        assert user.provenance.repository == "repo"
        assert user.provenance.commit_sha == "abc123"
        assert user.provenance.symbol == "Shop.Models.User"
        assert user.provenance.line_span.start >= 1

    def test_file_scoped_namespace(self, parse_cs: ParseCs) -> None:
        code = """
        namespace Shop.Models;

        public class Order
        {
            public string Id { get; set; }
        }
        """

        types = _types(parse_cs, code)

        assert types["Order"].namespace == "Shop.Models"

    def test_abstract_and_static_skipped(self, parse_cs: ParseCs) -> None:
        """Abstract and static classes are never emitted."""
        code = """
        public abstract class Entity { public string Id { get; set; } }
        public static class Names { public const string Users = "users"; }
        public class Product : Entity { public string Sku { get; set; } }
        """

        types = _types(parse_cs, code)

        assert set(types) == {"Product"}
        assert types["Product"].base_types == ["Entity"]

    def test_constants_only_class_skipped(self, parse_cs: ParseCs) -> None:
        code = """
        public class CollectionNames
        {
            public const string Users = "users";
            public static readonly string Orders = "orders";
        }
        """

        assert _types(parse_cs, code) == {}

    def test_data_access_class_skipped(self, parse_cs: ParseCs) -> None:
        """Classes holding driver handles are repositories, not records."""
        code = """
        public class UserRepository
        {
            private readonly IMongoCollection<User> _users;
            public UserRepository(IMongoDatabase db) { _users = db.GetCollection<User>("users"); }
        }
        """

        assert _types(parse_cs, code) == {}

    def test_behaviour_only_class_skipped(self, parse_cs: ParseCs) -> None:
        code = """
        public class Calculator
        {
            private int _count;
            public int Add(int a, int b) { return a + b; }
        }
        """

        assert _types(parse_cs, code) == {}

    def test_interfaces_and_enums_skipped_but_nested_types_found(self, parse_cs: ParseCs) -> None:
        code = """
        public enum Status { Active, Inactive }
        public interface IThing { string Name { get; } }
        public class Outer
        {
            public string Id { get; set; }
            public class Inner { public string Value { get; set; } }
        }
        """

        types = _types(parse_cs, code)

        assert set(types) == {"Outer", "Inner"}
        assert types["Inner"].namespace == "Outer"

    def test_empty_concrete_class_emitted(self, parse_cs: ParseCs) -> None:
        """A concrete class with no members is still a record candidate."""
        types = _types(parse_cs, "namespace Shop.Models { public class Marker { } }")

        assert set(types) == {"Marker"}
        assert types["Marker"].fields == []
        assert types["Marker"].qualified_name == "Shop.Models.Marker"

    def test_generic_type_uses_unparameterized_name(self, parse_cs: ParseCs) -> None:
        code = """
        public class Box<T>
        {
            public T Value { get; set; }
        }
        """

        types = _types(parse_cs, code)

        assert set(types) == {"Box"}
        assert [f.name for f in types["Box"].fields] == ["Value"]

    def test_positional_record(self, parse_cs: ParseCs) -> None:
        """Record parameters become fields."""
        code = "public record Address(string Street, string City, string? Zip);"

        address = _types(parse_cs, code)["Address"]

        assert [f.name for f in address.fields] == ["Street", "City", "Zip"]
        assert address.fields[2].is_nullable is True

    def test_region_wrapped_declarations(self, parse_cs: ParseCs) -> None:
        code = """
        namespace Shop
        {
        #region Models
            public class Tag { public string Label { get; set; } }
        #endregion
        }
        """

        assert "Tag" in _types(parse_cs, code)

    def test_static_and_const_members_not_fields(self, parse_cs: ParseCs) -> None:
        code = """
        public class Setting
        {
            public const int Max = 5;
            public static string Default = "x";
            public string Key { get; set; }
        }
        """

        assert [f.name for f in _types(parse_cs, code)["Setting"].fields] == ["Key"]


class TestFieldAttributes:
    """Bson mapping attributes."""

    def test_bson_attributes(self, parse_cs: ParseCs) -> None:
        """BsonId, BsonElement, BsonIgnore and BsonRepresentation are decoded."""
        # Given
        code = """
        [BsonDiscriminator("customer")]
        public class Customer
        {
            [BsonId]
            [BsonRepresentation(BsonType.ObjectId)]
            public string Key { get; set; }

            [BsonElement("full_name")]
            public string FullName { get; set; }

            [BsonIgnore]
            public string Cache { get; set; }
        }
        """

        # When
        customer = _types(parse_cs, code)["Customer"]

        # Then
        key, full_name, cache = customer.fields
        assert key.is_identity is True
        assert key.representation == "ObjectId"
        assert key.stored_name == "_id"
        assert full_name.element_name == "full_name"
        assert full_name.stored_name == "full_name"
        assert cache.is_ignored is True
        assert customer.discriminators == ["customer"]
        assert [a.name for a in customer.attributes] == ["BsonDiscriminator"]

    def test_attribute_suffix_stripped(self, parse_cs: ParseCs) -> None:
        code = """
        public class Item
        {
            [BsonElementAttribute("sku")]
            public string Sku { get; set; }
        }
        """

        assert _types(parse_cs, code)["Item"].fields[0].element_name == "sku"

    def test_nullable_disable_makes_references_nullable(self, parse_cs: ParseCs) -> None:
        """Reference types are nullable only under #nullable disable."""
        code = """
        #nullable disable
        public class Note
        {
            public string Text { get; set; }
            public int Count { get; set; }
        }
        """

        text, count = _types(parse_cs, code)["Note"].fields

        assert text.is_nullable is True
        assert count.is_nullable is False


class TestHelpers:
    """Type text helpers."""

    def test_simple_type_name(self) -> None:
        assert simple_type_name("System.Collections.Generic.List<User>?") == "List"
        assert simple_type_name("int[]") == "int"

    def test_normalize_type_text(self) -> None:
        assert normalize_type_text("Dictionary< string,\n  int >") == "Dictionary<string, int>"

    def test_is_nullable_type(self) -> None:
        assert is_nullable_type(None, "int?") is True
        assert is_nullable_type(None, "Nullable<int>") is True
        assert is_nullable_type(None, "DateTime") is False
        assert is_nullable_type(None, "string") is False
        assert is_nullable_type(None, "string", nullable_disabled=True) is True
