"""Schema inference over sampled documents.

The sampler consumes any :class:`DocumentSource`; the live MongoDB adapter
lives in ``mongo.py``. Values of PII-flagged fields are dropped as soon as
the field is flagged and never reach string-format or enum detection.
"""

from __future__ import annotations

import re
import uuid
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from itertools import islice
from typing import Any, Protocol

import structlog
from bson import Binary, Decimal128, ObjectId

from cataloger.core.errors import InvalidArgumentError
from cataloger.scanner._internal.sampling.pii import PiiDetector, RuleBasedPiiDetector
from cataloger.scanner.models import (
    EnumCandidate,
    FieldStatistics,
    ObservedSchema,
    PiiDetection,
    ProvenanceRecord,
    StringFormat,
)

logger = structlog.get_logger()

DEFAULT_MAX_SAMPLE_SIZE = 1000
MAX_RETAINED_VALUES = 10
ENUM_MIN_DISTINCT = 2
ENUM_MAX_DISTINCT = 20
ENUM_GOOD_DISTINCT = 10
FORMAT_CONFIDENCE = 0.8

STRING_FORMATS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("email", re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")),
    ("uuid", re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")),
    (
        "date",
        re.compile(
            r"^\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$"
        ),
    ),
    ("phone", re.compile(r"^\+?[\d\s().-]{7,20}$")),
)


class DocumentSource(Protocol):
    """Anything that can hand out up to ``size`` documents of a collection."""

    def sample(self, collection_name: str, size: int) -> Iterable[Mapping[str, Any]]: ...


def value_type(value: Any) -> str:
    """BSON-ish type label of a decoded value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, (float, Decimal, Decimal128)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (datetime, date)):
        return "datetime"
    if isinstance(value, ObjectId):
        return "objectid"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, (bytes, bytearray, Binary, uuid.UUID)):
        return "binary"
    return "unknown"


@dataclass
class _FieldState:
    stats: FieldStatistics = field(default_factory=FieldStatistics)
    examples: list[str] = field(default_factory=list)
    values: Counter[str] = field(default_factory=Counter)
    string_count: int = 0
    too_many_values: bool = False
    detection: PiiDetection | None = None


class SchemaSampler:
    """Infer an ObservedSchema from a sample of a collection.

    Args:
        source: Document source (live MongoDB or any fake)
        pii_detector: PII predicate; defaults to RuleBasedPiiDetector
        max_sample_size: Ceiling applied to every requested size
        pii_detection_enabled: Skip PII checks entirely when False
    """

    def __init__(
        self,
        source: DocumentSource,
        pii_detector: PiiDetector | None = None,
        max_sample_size: int = DEFAULT_MAX_SAMPLE_SIZE,
        *,
        pii_detection_enabled: bool = True,
        repository: str = "",
        commit_sha: str = "unknown",
    ) -> None:
        self.source = source
        self.pii_detector = pii_detector or RuleBasedPiiDetector()
        self.max_sample_size = max_sample_size
        self.pii_detection_enabled = pii_detection_enabled
        self.repository = repository
        self.commit_sha = commit_sha

    def sample(
        self,
        collection_name: str | None,
        sample_size: int,
        *,
        collection_mapping_id: str | None = None,
    ) -> ObservedSchema:
        """Sample and analyze one collection.

        Raises:
            InvalidArgumentError: If collection_name is None/blank or
                sample_size is negative.
        """
        if collection_name is None:
            raise InvalidArgumentError.null("collection_name")
        if not collection_name.strip():
            raise InvalidArgumentError.blank("collection_name")
        if sample_size < 0:
            raise InvalidArgumentError.negative("sample_size", sample_size)

        schema = ObservedSchema(
            collection_name=collection_name,
            collection_mapping_id=collection_mapping_id,
            provenance=ProvenanceRecord(
                repository=self.repository,
                file_path=f"mongodb://{collection_name}",
                symbol=collection_name,
                commit_sha=self.commit_sha,
            ),
        )
        effective = min(sample_size, self.max_sample_size)
        if effective == 0:
            return schema

        states: dict[str, _FieldState] = {}
        type_totals: Counter[str] = Counter()
        count = 0
        for document in islice(self.source.sample(collection_name, effective), effective):
            count += 1
            seen: set[str] = set()
            self._walk(document, "", states, seen, type_totals)

        self._finish(schema, states, type_totals, count)
        logger.info(
            "collection_sampled",
            collection=collection_name,
            sample_size=count,
            fields=len(schema.fields),
            pii_fields=len(schema.pii_detections),
        )
        return schema

    # -- per document -------------------------------------------------------

    def _walk(
        self,
        document: Mapping[str, Any],
        prefix: str,
        states: dict[str, _FieldState],
        seen: set[str],
        type_totals: Counter[str],
    ) -> None:
        for key, value in document.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            self._observe(path, value, states, seen, type_totals)

    def _observe(
        self,
        path: str,
        value: Any,
        states: dict[str, _FieldState],
        seen: set[str],
        type_totals: Counter[str],
    ) -> None:
        state = states.get(path)
        if state is None:
            state = states[path] = _FieldState()
        if path not in seen:
            seen.add(path)
            state.stats.presence += 1

        kind = value_type(value)
        state.stats.types[kind] = state.stats.types.get(kind, 0) + 1
        type_totals[kind] += 1

        if kind == "object":
            self._walk(value, path, states, seen, type_totals)
        elif kind == "array":
            item_path = f"{path}[]"
            for item in value:
                item_kind = value_type(item)
                state.stats.item_types[item_kind] = state.stats.item_types.get(item_kind, 0) + 1
                if item_kind == "object":
                    self._walk(item, item_path, states, seen, type_totals)
                elif item_kind not in ("array", "null"):
                    self._check_pii(path, item, state)
        elif kind != "null":
            self._check_pii(path, value, state)
            if not state.stats.is_pii and kind == "string":
                self._retain(state, value)

    def _check_pii(self, path: str, value: Any, state: _FieldState) -> None:
        if not self.pii_detection_enabled:
            return
        verdict = self.pii_detector(path, value)
        if not verdict.is_pii:
            return
        if state.detection is not None:
            state.detection.instance_count += 1
            return
        state.stats.is_pii = True
        state.detection = PiiDetection(
            field_name=path,
            pii_type=verdict.pii_type,
            reason=verdict.reason,
            detection_method=verdict.method,
            confidence=verdict.confidence,
            instance_count=1,
            requires_manual_review=verdict.requires_manual_review,
        )
        state.examples.clear()
        state.values.clear()
        state.string_count = 0

    def _retain(self, state: _FieldState, value: str) -> None:
        state.string_count += 1
        if len(state.examples) < MAX_RETAINED_VALUES:
            state.examples.append(value)
        if state.too_many_values:
            return
        if value not in state.values and len(state.values) >= ENUM_MAX_DISTINCT:
            state.too_many_values = True
            state.values.clear()
            return
        state.values[value] += 1

    # -- summary ------------------------------------------------------------

    def _finish(
        self,
        schema: ObservedSchema,
        states: dict[str, _FieldState],
        type_totals: Counter[str],
        count: int,
    ) -> None:
        schema.sample_size = count
        schema.fields = {path: state.stats for path, state in states.items()}
        schema.required_fields = [
            path for path, state in states.items() if count and state.stats.presence == count
        ]
        total = sum(type_totals.values())
        schema.type_frequencies = (
            {kind: n / total for kind, n in sorted(type_totals.items())} if total else {}
        )

        for path, state in states.items():
            if state.detection is not None:
                schema.pii_detections.append(state.detection)
                continue
            fmt = _string_format(path, state.examples)
            if fmt is not None:
                schema.string_formats.append(fmt)
            candidate = _enum_candidate(path, state)
            if candidate is not None:
                schema.enum_candidates.append(candidate)
        schema.pii_redacted = bool(schema.pii_detections)


def _string_format(path: str, examples: list[str]) -> StringFormat | None:
    if not examples:
        return None
    for name, pattern in STRING_FORMATS:
        if all(pattern.match(v) for v in examples):
            return StringFormat(
                field_name=path, pattern=name, frequency=1.0, confidence=FORMAT_CONFIDENCE
            )
    return None


def _enum_candidate(path: str, state: _FieldState) -> EnumCandidate | None:
    if state.too_many_values or state.string_count == 0:
        return None
    distinct = len(state.values)
    if not ENUM_MIN_DISTINCT <= distinct <= ENUM_MAX_DISTINCT:
        return None
    total = state.string_count
    ordered = state.values.most_common()
    return EnumCandidate(
        field_name=path,
        values=[v for v, _ in ordered],
        value_frequencies={v: n / total for v, n in ordered},
        distinct_value_count=distinct,
        is_good_candidate=distinct <= ENUM_GOOD_DISTINCT,
        confidence=max(0.1, 1 - distinct / total),
    )
