"""PII detection for sampled values.

A detector is any callable ``(field_name, value) -> PiiVerdict``. The default
is :class:`RuleBasedPiiDetector`; a replacement can be configured as
``sampling.pii_detector = "package.module:callable"``.

Field names are split into lowercase tokens (``billingAddress`` ->
``billing``, ``address``) and a name rule fires only on an exact token
match, so ``CreatedAt`` is never taken for ``cat``. Value rules apply to
strings only.
"""

from __future__ import annotations

import importlib
import re
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from cataloger.core.errors import ConfigError

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_SEPARATORS = re.compile(r"[_\-.\s\[\]]+")


@dataclass(frozen=True)
class PiiVerdict:
    is_pii: bool
    pii_type: str = ""
    reason: str = ""
    method: str = "field_name"  # field_name | value_pattern
    confidence: float = 0.0
    requires_manual_review: bool = False


NOT_PII = PiiVerdict(is_pii=False)

PiiDetector = Callable[[str, Any], PiiVerdict]


@dataclass(frozen=True)
class PiiRule:
    pii_type: str
    confidence: float
    field_tokens: frozenset[str]
    value_patterns: tuple[re.Pattern[str], ...] = ()
    requires_manual_review: bool = False
    value_check: Callable[[str], bool] | None = None


def _luhn_valid(value: str) -> bool:
    digits = [int(c) for c in value if c.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for index, digit in enumerate(reversed(digits)):
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def _has_phone_digits(value: str) -> bool:
    return 7 <= sum(c.isdigit() for c in value) <= 15


def _not_hex_id(value: str) -> bool:
    # 24-hex strings are stringified ObjectIds
    return not re.fullmatch(r"[0-9a-fA-F]{24}", value)


# Rules are checked in order; the first match wins.
DEFAULT_RULES: tuple[PiiRule, ...] = (
    PiiRule(
        pii_type="email",
        confidence=0.95,
        field_tokens=frozenset({"email", "e-mail", "mail", "emailaddress"}),
        value_patterns=(re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),),
    ),
    PiiRule(
        pii_type="phone",
        confidence=0.85,
        field_tokens=frozenset({"phone", "telephone", "mobile", "cell", "phonenumber"}),
        value_patterns=(
            re.compile(r"^\d{3}-\d{3}-\d{4}$"),
            re.compile(r"^\(\d{3}\)\s?\d{3}-\d{4}$"),
            re.compile(r"^\+\d[\d\s\-()]{6,}$"),
        ),
        value_check=_has_phone_digits,
    ),
    PiiRule(
        pii_type="ssn",
        confidence=0.98,
        field_tokens=frozenset({"ssn", "social", "socialsecurity", "socialsecuritynumber"}),
        value_patterns=(re.compile(r"^\d{3}-\d{2}-\d{4}$"),),
        requires_manual_review=True,
    ),
    PiiRule(
        pii_type="credit_card",
        confidence=0.90,
        field_tokens=frozenset({"credit", "card", "creditcard", "cardnumber", "pan"}),
        value_patterns=(re.compile(r"^\d{4}[\s\-]?\d{4}[\s\-]?\d{4}[\s\-]?\d{1,7}$"),),
        requires_manual_review=True,
        value_check=_luhn_valid,
    ),
    PiiRule(
        pii_type="ip_address",
        confidence=0.95,
        field_tokens=frozenset({"ip", "ipaddress", "ipv4", "ipv6"}),
        value_patterns=(
            re.compile(r"^(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)$"),
            re.compile(r"^(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}$"),
        ),
    ),
    PiiRule(
        pii_type="address",
        confidence=0.70,
        field_tokens=frozenset({"address", "street", "city", "zip", "zipcode", "postal", "postcode"}),
        value_patterns=(
            re.compile(
                r"\d+\s+[A-Za-z\s]+(?:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|Boulevard|Blvd)\b"
            ),
        ),
    ),
    PiiRule(
        pii_type="name",
        confidence=0.60,
        field_tokens=frozenset({"name", "firstname", "lastname", "fullname", "surname"}),
        requires_manual_review=True,
    ),
    PiiRule(
        pii_type="jwt",
        confidence=0.90,
        field_tokens=frozenset({"token", "jwt", "bearer"}),
        value_patterns=(re.compile(r"^eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]*$"),),
    ),
    PiiRule(
        pii_type="api_key",
        confidence=0.80,
        field_tokens=frozenset({"key", "apikey", "secret", "password", "passwd"}),
        value_patterns=(re.compile(r"^(?=.*[A-Za-z])(?=.*\d)[A-Za-z0-9]{32,}$"),),
        requires_manual_review=True,
        value_check=_not_hex_id,
    ),
)


@lru_cache(maxsize=4096)
def field_tokens(field_name: str) -> frozenset[str]:
    """``customer.billingAddress[]`` -> {customer, billing, address, billingaddress}.

    The joined form of each segment is included so ``EmailAddress`` also
    matches a ``emailaddress`` token.
    """
    tokens: set[str] = set()
    for segment in _SEPARATORS.split(field_name):
        if not segment:
            continue
        parts = [p.lower() for p in _CAMEL_BOUNDARY.split(segment) if p]
        tokens.update(parts)
        tokens.add(segment.lower())
    return frozenset(tokens)


class RuleBasedPiiDetector:
    """Default PII predicate: field-name tokens first, then value patterns."""

    def __init__(self, rules: tuple[PiiRule, ...] = DEFAULT_RULES) -> None:
        self.rules = rules

    def __call__(self, field_name: str, value: Any) -> PiiVerdict:
        leaf = field_name.rsplit(".", 1)[-1]
        tokens = field_tokens(leaf)
        for rule in self.rules:
            matched = tokens & rule.field_tokens
            if matched:
                return PiiVerdict(
                    is_pii=True,
                    pii_type=rule.pii_type,
                    reason=f"field name token '{sorted(matched)[0]}'",
                    method="field_name",
                    confidence=rule.confidence,
                    requires_manual_review=rule.requires_manual_review,
                )
        if not isinstance(value, str) or not value:
            return NOT_PII
        candidate = value.strip()
        for rule in self.rules:
            if not any(p.search(candidate) for p in rule.value_patterns):
                continue
            if rule.value_check is not None and not rule.value_check(candidate):
                continue
            return PiiVerdict(
                is_pii=True,
                pii_type=rule.pii_type,
                reason=f"value matches {rule.pii_type} pattern",
                method="value_pattern",
                confidence=rule.confidence,
                requires_manual_review=rule.requires_manual_review,
            )
        return NOT_PII


def load_detector(path: str) -> PiiDetector:
    """Import a detector from ``"package.module:callable"``.

    Classes are instantiated without arguments.

    Raises:
        ConfigError: If the target cannot be imported or is not callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError.invalid_value(
            "sampling.pii_detector", path, "expected 'package.module:callable'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError.invalid_value("sampling.pii_detector", path, str(e)) from e
    target = getattr(module, attr, None)
    if target is None:
        raise ConfigError.invalid_value(
            "sampling.pii_detector", path, f"{module_name} has no attribute {attr}"
        )
    if isinstance(target, type):
        target = target()
    if not callable(target):
        raise ConfigError.invalid_value("sampling.pii_detector", path, "target is not callable")
    return target  # type: ignore[no-any-return]
