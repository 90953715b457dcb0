"""Configuration sections and their defaults.

Every scalar can be set from the environment as
``CATALOGER__<SECTION>__<KEY>``, e.g. ``CATALOGER__SCAN__MAX_WORKERS=8`` or
``CATALOGER__SAMPLING__URI=mongodb://localhost:27017``. See
``cataloger.config.loader`` for how sources are layered.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogOutputConfig(BaseModel):
    """One log sink. Lists of outputs are only expressible in YAML."""

    format: Literal["json", "console"] = "console"
    # "stderr", "stdout" or an absolute file path
    destination: str = "stderr"
    level: LogLevel | None = None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        resolved = Path(v).expanduser()
        if not resolved.is_absolute():
            raise ValueError(f"log file destination must be absolute, got {v}")
        return str(resolved)


class LoggingConfig(BaseModel):
    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every skipped call site and retry.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class ScanConfig(BaseModel):
    """Static scan configuration.

    Env vars:
        CATALOGER__SCAN__REPOSITORY: Repository identifier stamped on provenance
        CATALOGER__SCAN__COMMIT_SHA: Commit identifier stamped on provenance
        CATALOGER__SCAN__LAST_COMMIT_SHA: Base commit for an incremental scan
        CATALOGER__SCAN__MAX_WORKERS: Concurrency ceiling for per-file extraction
        CATALOGER__SCAN__DEADLINE_SEC: Overall scan deadline
    """

    repository: str | None = Field(
        default=None,
        description="Repository identifier. Defaults to the checkout directory name.",
    )
    commit_sha: str = Field(
        default="unknown",
        description="Commit identifier stamped on every fact's provenance.",
    )
    last_commit_sha: str | None = Field(
        default=None,
        description="Previously scanned commit. When set, only files changed between it and "
        "commit_sha (or HEAD) are parsed; facts of other files are reused from the knowledge base.",
    )
    max_workers: int = Field(
        default=20,
        description="Max files extracted concurrently. 1 disables the process pool. "
        "RISK: Very high values multiply parser memory on large repositories.",
    )
    deadline_sec: float | None = Field(
        default=None,
        description="Cooperative scan deadline. Checked between files, never mid-parse.",
    )
    max_file_size_mb: int = Field(
        default=5,
        description="Skip source files larger than this (MB). Generated code is rarely useful.",
    )
    max_error_ratio: float = Field(
        default=0.5,
        description="Files whose tree-sitter error-node ratio exceeds this are treated "
        "as unparseable and skipped.",
    )
    excluded_dirs: list[str] = Field(
        default_factory=lambda: [
            ".git",
            ".vs",
            ".idea",
            ".cataloger",
            "bin",
            "obj",
            "node_modules",
            "packages",
            "TestResults",
        ],
        description="Directory names never descended into.",
    )
    extensions: list[str] = Field(
        default_factory=lambda: [".cs"],
        description="Source file extensions to scan.",
    )

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_workers must be >= 1, got {v}")
        return v

    @field_validator("max_error_ratio")
    @classmethod
    def validate_error_ratio(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError(f"max_error_ratio must be within [0, 1], got {v}")
        return v


class SamplingConfig(BaseModel):
    """Live MongoDB sampling configuration.

    Env vars:
        CATALOGER__SAMPLING__ENABLED: Enable live sampling
        CATALOGER__SAMPLING__URI: MongoDB connection string (read-only credentials)
        CATALOGER__SAMPLING__DATABASE: Database name (defaults to the URI path)
        CATALOGER__SAMPLING__MAX_DOCUMENTS_PER_COLLECTION: Requested sample size
        CATALOGER__SAMPLING__PII_DETECTOR: Custom detector as "module:callable"
    """

    enabled: bool = Field(
        default=False,
        description="Sample live collections. Requires uri.",
    )
    uri: str | None = Field(
        default=None,
        description="MongoDB connection string. SECURITY: use read-only credentials.",
    )
    database: str | None = Field(
        default=None,
        description="Database to sample. Defaults to the database in the URI path.",
    )
    max_documents_per_collection: int = Field(
        default=100,
        description="Requested documents per collection.",
    )
    max_sample_size: int = Field(
        default=1000,
        description="Hard ceiling on documents drawn per collection, whatever is requested. "
        "Protects the live store from being over-queried.",
    )
    pii_detection_enabled: bool = Field(
        default=True,
        description="Run PII detection and redact flagged fields.",
    )
    pii_detector: str | None = Field(
        default=None,
        description="Custom PII predicate as 'package.module:callable'. Default rule set if unset.",
    )
    timeout_ms: int = Field(
        default=30000,
        description="Connect/read timeout per sampling operation (ms).",
    )
    max_concurrency: int = Field(
        default=4,
        description="Collections sampled concurrently over the shared client.",
    )
    max_retries: int = Field(
        default=3,
        description="Retries for transient driver errors.",
    )
    retry_base_delay_sec: float = Field(
        default=0.5,
        description="Base delay between retries (exponential backoff).",
    )

    @field_validator("max_documents_per_collection", "max_sample_size")
    @classmethod
    def validate_sizes(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"Sample sizes must be >= 0, got {v}")
        return v


class DatabaseConfig(BaseModel):
    """Knowledge base (SQLite) configuration.

    Env vars:
        CATALOGER__DATABASE__PATH: Knowledge base file location
        CATALOGER__DATABASE__BUSY_TIMEOUT_MS: SQLite busy timeout
        CATALOGER__DATABASE__MAX_RETRIES: Max retry attempts for locked DB
        CATALOGER__DATABASE__BATCH_SIZE: Rows per upsert chunk
    """

    path: str | None = Field(
        default=None,
        description="Knowledge base file. Default: .cataloger/knowledge.db in the repo.",
    )
    busy_timeout_ms: int = Field(
        default=30000,
        description="SQLite busy timeout (ms). How long a write waits for locks. "
        "RISK: Too low causes failures under contention; too high delays errors.",
    )
    max_retries: int = Field(
        default=3,
        description="Max retry attempts for locked database errors.",
    )
    retry_base_delay_sec: float = Field(
        default=0.1,
        description="Base delay between retries (exponential backoff).",
    )
    batch_size: int = Field(
        default=500,
        description="Rows per upsert transaction.",
    )

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"batch_size must be >= 1, got {v}")
        return v


class CatalogerConfig(BaseModel):
    """Every section, as resolved by ``load_config()``."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
