"""Errors raised across the cataloger, each carrying a numeric code.

Codes are grouped by the layer that raises them:

    2xxx  configuration
    3xxx  scan inputs (arguments, source files, the repository root)
    4xxx  stores (the knowledge base and a live MongoDB)
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Self


class ErrorCode(IntEnum):
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002

    INVALID_ARGUMENT = 3001
    PARSE_FAILED = 3002
    SOURCE_UNAVAILABLE = 3003
    REVISION_NOT_FOUND = 3004

    STORE_UNAVAILABLE = 4001
    SAMPLING_FAILED = 4003


@dataclass(frozen=True, slots=True)
class CatalogerError(Exception):
    """Root of every cataloger error. Renders as ``[code] NAME: message``."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _build(
        cls, code: ErrorCode, message: str, *, retryable: bool = False, **details: Any
    ) -> Self:
        return cls(code=code, message=message, retryable=retryable, details=details)

    @property
    def error_name(self) -> str:
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Payload for ``--json`` error output."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(CatalogerError):
    @classmethod
    def parse_error(cls, path: str, reason: str) -> Self:
        return cls._build(
            ErrorCode.CONFIG_PARSE_ERROR,
            f"Cannot read config file {path}: {reason}",
            path=path,
            reason=reason,
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> Self:
        return cls._build(
            ErrorCode.CONFIG_INVALID_VALUE,
            f"Bad value for '{field}': {reason}",
            field=field,
            value=str(value),
            reason=reason,
        )


class InvalidArgumentError(CatalogerError):
    """An entry point was handed None, an empty string or a negative count."""

    @classmethod
    def null(cls, argument: str) -> Self:
        return cls._build(ErrorCode.INVALID_ARGUMENT, f"'{argument}' is required", argument=argument)

    @classmethod
    def blank(cls, argument: str) -> Self:
        return cls._build(ErrorCode.INVALID_ARGUMENT, f"'{argument}' is empty", argument=argument)

    @classmethod
    def negative(cls, argument: str, value: int) -> Self:
        return cls._build(
            ErrorCode.INVALID_ARGUMENT,
            f"'{argument}' cannot be negative (got {value})",
            argument=argument,
            value=value,
        )


class ParseError(CatalogerError):
    """One source file failed to parse; the scan records it and moves on."""

    @classmethod
    def unparseable(cls, path: str, reason: str) -> Self:
        return cls._build(ErrorCode.PARSE_FAILED, f"{path}: {reason}", path=path, reason=reason)


class SourceError(CatalogerError):
    """The repository checkout cannot be walked or diffed."""

    @classmethod
    def root_not_found(cls, path: str) -> Self:
        return cls._build(ErrorCode.SOURCE_UNAVAILABLE, f"No such repository root: {path}", path=path)

    @classmethod
    def unreadable(cls, path: str, reason: str) -> Self:
        return cls._build(
            ErrorCode.SOURCE_UNAVAILABLE,
            f"Cannot list repository root {path}: {reason}",
            path=path,
            reason=reason,
        )

    @classmethod
    def not_a_repository(cls, path: str) -> Self:
        return cls._build(
            ErrorCode.SOURCE_UNAVAILABLE, f"Not inside a git work tree: {path}", path=path
        )

    @classmethod
    def unknown_revision(cls, revision: str, reason: str) -> Self:
        return cls._build(
            ErrorCode.REVISION_NOT_FOUND,
            f"Cannot resolve commit '{revision}': {reason}",
            revision=revision,
            reason=reason,
        )


class StoreError(CatalogerError):
    @classmethod
    def unavailable(cls, target: str, reason: str) -> Self:
        return cls._build(
            ErrorCode.STORE_UNAVAILABLE,
            f"Cannot open {target}: {reason}",
            target=target,
            reason=reason,
        )

    @classmethod
    def sampling_failed(cls, collection: str, reason: str, *, retryable: bool = False) -> Self:
        return cls._build(
            ErrorCode.SAMPLING_FAILED,
            f"Could not sample '{collection}': {reason}",
            retryable=retryable,
            collection=collection,
            reason=reason,
        )
