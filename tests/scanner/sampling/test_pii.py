"""Tests for PII detection."""

import pytest

from cataloger.core.errors import ConfigError
from cataloger.scanner._internal.sampling.pii import (
    NOT_PII,
    PiiVerdict,
    RuleBasedPiiDetector,
    field_tokens,
    load_detector,
)


class TestFieldTokens:
    """Field name tokenization."""

    def test_camel_case_split(self) -> None:
        assert field_tokens("billingAddress") == {"billing", "address", "billingaddress"}

    def test_dotted_path_and_array_marker(self) -> None:
        assert {"customer", "email"} <= field_tokens("customer.email[]")

    def test_acronym_boundary(self) -> None:
        assert {"ip", "address"} <= field_tokens("IPAddress")


class TestRuleBasedPiiDetector:
    """Default rule set."""

    @pytest.fixture
    def detector(self) -> RuleBasedPiiDetector:
        return RuleBasedPiiDetector()

    @pytest.mark.parametrize(
        ("field", "pii_type"),
        [
            ("email", "email"),
            ("contactEmail", "email"),
            ("phoneNumber", "phone"),
            ("ssn", "ssn"),
            ("creditCard", "credit_card"),
            ("lastLoginIp", "ip_address"),
            ("shippingAddress", "address"),
            ("firstName", "name"),
            ("password", "api_key"),
        ],
    )
    def test_field_name_rules(self, detector: RuleBasedPiiDetector, field: str, pii_type: str) -> None:
        verdict = detector(field, 123)

        assert verdict.is_pii is True
        assert verdict.pii_type == pii_type
        assert verdict.method == "field_name"

    @pytest.mark.parametrize("field", ["createdAt", "status", "total", "_id", "shipping", "category"])
    def test_innocent_names(self, detector: RuleBasedPiiDetector, field: str) -> None:
        """Substring overlap never triggers a name rule."""
        assert detector(field, 1) is NOT_PII

    @pytest.mark.parametrize(
        ("value", "pii_type"),
        [
            ("ada@example.com", "email"),
            ("555-123-4567", "phone"),
            ("123-45-6789", "ssn"),
            ("4111 1111 1111 1111", "credit_card"),
            ("192.168.1.20", "ip_address"),
        ],
    )
    def test_value_rules(self, detector: RuleBasedPiiDetector, value: str, pii_type: str) -> None:
        verdict = detector("payload", value)

        assert verdict.pii_type == pii_type
        assert verdict.method == "value_pattern"

    def test_invalid_card_number_not_flagged(self, detector: RuleBasedPiiDetector) -> None:
        """Card-shaped numbers must pass the Luhn check."""
        assert detector("payload", "4111 1111 1111 1112") is NOT_PII

    def test_object_id_string_not_api_key(self, detector: RuleBasedPiiDetector) -> None:
        assert detector("ref", "507f1f77bcf86cd799439011") is NOT_PII

    def test_non_string_values_skip_value_rules(self, detector: RuleBasedPiiDetector) -> None:
        assert detector("payload", 5551234567) is NOT_PII

    def test_ssn_requires_review(self, detector: RuleBasedPiiDetector) -> None:
        assert detector("ssn", None).requires_manual_review is True


def always_pii(field_name: str, value: object) -> PiiVerdict:
    return PiiVerdict(is_pii=True, pii_type="custom", reason="test")


class TestLoadDetector:
    """Custom detector loading."""

    def test_function_target(self) -> None:
        detector = load_detector(f"{__name__}:always_pii")

        assert detector("x", 1).pii_type == "custom"

    def test_class_target_instantiated(self) -> None:
        detector = load_detector(
            "cataloger.scanner._internal.sampling.pii:RuleBasedPiiDetector"
        )

        assert isinstance(detector, RuleBasedPiiDetector)

    @pytest.mark.parametrize(
        "path", ["no_colon", "missing.module.xyz:thing", f"{__name__}:does_not_exist"]
    )
    def test_bad_paths(self, path: str) -> None:
        with pytest.raises(ConfigError):
            load_detector(path)
