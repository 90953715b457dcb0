"""Collection Resolver: which persistent collection a type maps to.

Resolution is a confidence ladder over the hint found at a
``GetCollection<T>(hint)`` call site::

    "users"                  literal   1.0   (quoted string or nameof(T))
    usersName                constant  0.8   (value from the constants table)
    Collections:Orders       config    0.7
    PRODUCT_COLLECTION       constant  0.8   (identifier text, unresolved)
    <no hint>                inferred  0.6   (pluralized type name)
    <no hint, no type name>  inferred  0.3   "documents"
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

import structlog

from cataloger.core.errors import InvalidArgumentError
from cataloger.scanner.models import (
    CodeType,
    CollectionHint,
    CollectionMapping,
    LineSpan,
    ResolutionMethod,
)

logger = structlog.get_logger()

METHOD_CONFIDENCE: dict[ResolutionMethod, float] = {
    ResolutionMethod.LITERAL: 1.0,
    ResolutionMethod.CONSTANT: 0.8,
    ResolutionMethod.CONFIG: 0.7,
    ResolutionMethod.INFERRED: 0.6,
}

FALLBACK_COLLECTION = "documents"
FALLBACK_CONFIDENCE = 0.3

_QUOTED = re.compile(r'^@?("""|")(.*)\1$', re.DOTALL)
_IDENTIFIER = re.compile(r"^@?[A-Za-z_]\w*(?:\s*\.\s*@?[A-Za-z_]\w*)*$")
_VOWELS = frozenset("aeiou")


@dataclass(frozen=True)
class HintClass:
    """Outcome of classifying one collection hint."""

    method: ResolutionMethod
    confidence: float
    collection_name: str


def pluralize(name: str) -> str:
    """Lowercased name plus ``s``; a consonant before a final ``y`` takes ``ies``.

    ``User`` -> ``users``, ``Category`` -> ``categories``, ``Address`` -> ``addresss``.
    """
    lowered = name.strip().lower()
    if not lowered:
        return lowered
    if lowered.endswith("y") and len(lowered) > 1 and lowered[-2] not in _VOWELS:
        return lowered[:-1] + "ies"
    return lowered + "s"


def _lookup_constant(identifier: str, constants: Mapping[str, str]) -> str | None:
    if identifier in constants:
        return constants[identifier]
    parts = identifier.split(".")
    # Names.Users, MyApp.Names.Users -> try the two trailing segments, then the last
    if len(parts) >= 2:
        qualified = ".".join(parts[-2:])
        if qualified in constants:
            return constants[qualified]
    return constants.get(parts[-1]) if len(parts) > 1 else None


def classify_hint(
    hint: str | None,
    constants: Mapping[str, str] | None = None,
    *,
    type_name: str = "",
) -> HintClass:
    """Classify a collection hint. First matching rule wins."""
    constants = constants or {}
    text = (hint or "").strip()

    if text:
        quoted = _QUOTED.match(text)
        if quoted:
            return HintClass(ResolutionMethod.LITERAL, 1.0, quoted.group(2).strip())

        identifier = re.sub(r"\s+", "", text).replace("@", "")
        if _IDENTIFIER.match(text):
            value = _lookup_constant(identifier, constants)
            if value:
                return HintClass(ResolutionMethod.CONSTANT, 0.8, value)

        if ":" in text:
            return HintClass(ResolutionMethod.CONFIG, 0.7, text)

        if _IDENTIFIER.match(text):
            return HintClass(ResolutionMethod.CONSTANT, 0.8, identifier)

    name = type_name.strip()
    if name:
        return HintClass(ResolutionMethod.INFERRED, 0.6, pluralize(name))
    return HintClass(ResolutionMethod.INFERRED, FALLBACK_CONFIDENCE, FALLBACK_COLLECTION)


class CollectionResolver:
    """Map CodeTypes to collections.

    Args:
        constants: String constants visible to hints, keyed by bare name
            and by ``Class.Name``.
    """

    def __init__(self, constants: Mapping[str, str] | None = None) -> None:
        self.constants = dict(constants or {})

    def resolve(
        self,
        code_type: CodeType | None,
        hint: str | None = None,
        *,
        context: str | None = None,
    ) -> CollectionMapping:
        """Resolve one type against an optional hint. Never returns None.

        Raises:
            InvalidArgumentError: If code_type is None.
        """
        if code_type is None:
            raise InvalidArgumentError.null("code_type")
        outcome = classify_hint(hint, self.constants, type_name=code_type.name)
        return CollectionMapping(
            type_id=code_type.id,
            type_name=code_type.name,
            collection_name=outcome.collection_name,
            method=outcome.method,
            confidence=max(0.0, min(1.0, outcome.confidence)),
            context=context,
            provenance=replace(code_type.provenance),
        )

    def resolve_all(
        self,
        code_types: Iterable[CodeType],
        hints_by_type: Mapping[str, list[CollectionHint]] | None = None,
    ) -> list[CollectionMapping]:
        """One primary mapping per type plus one per further distinct name."""
        hints_by_type = hints_by_type or {}
        mappings: list[CollectionMapping] = []
        for code_type in code_types:
            hints = hints_by_type.get(code_type.name, [])
            if not hints:
                mappings.append(self.resolve(code_type))
                continue
            mappings.extend(self._reconcile(code_type, hints))
        logger.debug("collections_resolved", mappings=len(mappings))
        return mappings

    def _reconcile(self, code_type: CodeType, hints: list[CollectionHint]) -> list[CollectionMapping]:
        ordered = sorted(hints, key=lambda h: (h.file_path, h.line))
        best: dict[str, CollectionMapping] = {}
        for hint in ordered:
            mapping = self.resolve(code_type, hint.hint, context=f"{hint.file_path}:{hint.line}")
            mapping.provenance = replace(
                mapping.provenance,
                file_path=hint.file_path or mapping.provenance.file_path,
                line_span=LineSpan(start=hint.line, end=hint.line),
            )
            current = best.get(mapping.collection_name)
            if current is None or mapping.confidence > current.confidence:
                best[mapping.collection_name] = mapping

        # dict preserves first-seen (lexical) order; sort is stable
        candidates = sorted(best.values(), key=lambda m: -m.confidence)
        names = [m.collection_name for m in candidates]
        inferred = pluralize(code_type.name) if code_type.name else FALLBACK_COLLECTION

        for index, mapping in enumerate(candidates):
            mapping.is_primary = index == 0
            mapping.alternatives = [n for n in names if n != mapping.collection_name]
            if mapping.is_primary and inferred not in names:
                mapping.alternatives.append(inferred)
        return candidates
