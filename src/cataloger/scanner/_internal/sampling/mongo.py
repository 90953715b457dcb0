"""Live MongoDB document source using ``$sample``.

One MongoClient is shared by every sampling worker of a scan; pymongo's
client is thread-safe and pools connections internally. Transient driver
errors are retried with exponential backoff.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import structlog
from pymongo import MongoClient
from pymongo.errors import (
    AutoReconnect,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from cataloger.config.models import SamplingConfig
from cataloger.core.errors import StoreError

logger = structlog.get_logger()

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    AutoReconnect,
    NetworkTimeout,
    ServerSelectionTimeoutError,
    ExecutionTimeout,
)

DEFAULT_RETRY_MAX_DELAY = 8.0


def create_client(config: SamplingConfig) -> MongoClient[dict[str, Any]]:
    """Client for read-only sampling; secondaries are preferred."""
    if not config.uri:
        raise StoreError.unavailable("mongodb", "sampling.uri is not set")
    return MongoClient(
        config.uri,
        serverSelectionTimeoutMS=config.timeout_ms,
        connectTimeoutMS=config.timeout_ms,
        socketTimeoutMS=config.timeout_ms,
        readPreference="secondaryPreferred",
        appname="cataloger",
    )


class MongoDocumentSource:
    """DocumentSource over a live database.

    Args:
        client: Shared MongoClient
        database: Database name; the URI's default database when None
        timeout_ms: Server-side ``maxTimeMS`` per aggregate
        max_retries: Retries for transient errors
        retry_base_delay_sec: First backoff delay, doubled per attempt
    """

    def __init__(
        self,
        client: MongoClient[dict[str, Any]],
        database: str | None = None,
        *,
        timeout_ms: int = 30000,
        max_retries: int = 3,
        retry_base_delay_sec: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.db = client[database] if database else client.get_default_database()
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.retry_base_delay_sec = retry_base_delay_sec
        self._sleep = sleep

    def sample(self, collection_name: str, size: int) -> list[dict[str, Any]]:
        """Up to ``size`` random documents of a collection.

        Raises:
            StoreError: When retries are exhausted or a non-transient driver
                error occurs.
        """
        pipeline: list[dict[str, Any]] = [{"$sample": {"size": size}}]
        for attempt in range(self.max_retries + 1):
            try:
                cursor = self.db[collection_name].aggregate(pipeline, maxTimeMS=self.timeout_ms)
                with cursor:
                    return list(cursor)
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_retries:
                    raise StoreError.sampling_failed(
                        collection_name, str(e), retryable=True
                    ) from e
                delay = min(self.retry_base_delay_sec * (2**attempt), DEFAULT_RETRY_MAX_DELAY)
                logger.warning(
                    "sampling_retry",
                    collection=collection_name,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_sec=delay,
                    error=str(e),
                )
                self._sleep(delay)
            except PyMongoError as e:
                raise StoreError.sampling_failed(collection_name, str(e)) from e
        raise StoreError.sampling_failed(collection_name, "no attempts made")
