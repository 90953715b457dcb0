"""Scan pipeline: parallel per-file extraction, then global stages.

Stages:
1. Enumerate sources (fatal on a missing root); an incremental scan
   enumerates only the files changed since ``scan.last_commit_sha``
2. Extract types, operations, hints and constants per file, in a process
   pool; each worker returns an ExtractionResult and never shares state.
   Unchanged files of an incremental scan are rebuilt from their stored
   manifests instead
3. Join: reconcile collection hints with every constant of the repository,
   re-resolve operation collection names, backfill mapping ids
4. Sample live collections (optional, thread pool over one client)
5. Infer relationships
6. Upsert everything into the knowledge base, then the per-file manifests
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Iterator
from concurrent.futures import (
    FIRST_COMPLETED,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    as_completed,
    wait,
)
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from cataloger.config.loader import get_kb_path
from cataloger.config.models import CatalogerConfig
from cataloger.core.errors import ParseError, SourceError
from cataloger.core.logging import scan_scope
from cataloger.core.progress import progress
from cataloger.scanner._internal.db.database import Database
from cataloger.scanner._internal.db.reader import KnowledgeBaseReader
from cataloger.scanner._internal.db.writer import KnowledgeBaseWriter, WriteSummary
from cataloger.scanner._internal.discovery.changes import ChangeSet, diff_commits
from cataloger.scanner._internal.discovery.sources import SourceFile, SourceReader, count_lines
from cataloger.scanner._internal.extraction.operations import OperationExtractor
from cataloger.scanner._internal.extraction.types import TypeExtractor
from cataloger.scanner._internal.inference.relationships import RelationshipInferencer
from cataloger.scanner._internal.parsing.service import CSharpParserService
from cataloger.scanner._internal.resolution.collections import CollectionResolver, classify_hint
from cataloger.scanner._internal.sampling.mongo import MongoDocumentSource, create_client
from cataloger.scanner._internal.sampling.pii import load_detector
from cataloger.scanner._internal.sampling.sampler import DocumentSource, SchemaSampler
from cataloger.scanner.models import (
    CodeType,
    CollectionHint,
    CollectionMapping,
    DataRelationship,
    ObservedSchema,
    QueryOperation,
    ScannedFile,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class ExtractContext:
    """Per-scan settings shipped to every extraction worker."""

    repository: str
    commit_sha: str = "unknown"
    max_error_ratio: float | None = None
    deadline: float | None = None  # time.monotonic() value


@dataclass
class ExtractionResult:
    """Result of extracting facts from a single file."""

    file_path: str
    types: list[CodeType] = field(default_factory=list)
    operations: list[QueryOperation] = field(default_factory=list)
    hints: list[CollectionHint] = field(default_factory=list)
    constants: dict[str, str] = field(default_factory=dict)
    line_count: int = 0
    error: str | None = None
    skipped: bool = False
    duration_ms: int = 0


@dataclass
class ScanSummary:
    """Outcome of one scan run."""

    repository: str
    commit_sha: str
    scan_type: str = "full"  # full | incremental
    last_commit_sha: str | None = None
    files_scanned: int = 0
    files_reused: int = 0
    files_deleted: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    lines_scanned: int = 0
    code_types: int = 0
    collection_mappings: int = 0
    query_operations: int = 0
    data_relationships: int = 0
    observed_schemas: int = 0
    collections_sampled: int = 0
    sampling_failures: int = 0
    failed_writes: int = 0
    deadline_exceeded: bool = False
    duration_sec: float = 0.0
    kb_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _extract_file(source: SourceFile, context: ExtractContext) -> ExtractionResult:
    """Extract every per-file fact from one source file (worker function)."""
    start = time.monotonic()
    result = ExtractionResult(file_path=source.rel_path)
    if context.deadline is not None and start >= context.deadline:
        result.skipped = True
        return result

    try:
        content = source.read_bytes()
    except OSError as e:
        logger.warning("source_read_failed", path=source.rel_path, error=str(e))
        result.error = str(e)
        return result
    result.line_count = count_lines(content)

    try:
        parsed = CSharpParserService.get().parse_source(
            source.rel_path,
            content,
            repository=context.repository,
            commit_sha=context.commit_sha,
            module_name=source.module_name,
            max_error_ratio=context.max_error_ratio,
        )
    except ParseError as e:
        logger.warning("parse_failed", path=source.rel_path, error=e.message)
        result.error = e.message
        return result

    result.types = TypeExtractor().extract(parsed)
    ops = OperationExtractor().extract(parsed)
    result.operations = ops.operations
    result.hints = ops.hints
    result.constants = ops.constants
    result.duration_ms = int((time.monotonic() - start) * 1000)
    return result


@dataclass
class _Joined:
    types: list[CodeType] = field(default_factory=list)
    operations: list[QueryOperation] = field(default_factory=list)
    hints: dict[str, list[CollectionHint]] = field(default_factory=dict)
    constants: dict[str, str] = field(default_factory=dict)


class ScanPipeline:
    """Scan one repository checkout, in full or since a commit, into its knowledge base.

    Args:
        repo_root: Checkout to scan
        config: Resolved configuration
        document_source: Sampling source; when None and sampling is enabled
            a MongoDB source is created from ``config.sampling``
    """

    def __init__(
        self,
        repo_root: Path,
        config: CatalogerConfig,
        *,
        document_source: DocumentSource | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.config = config
        self.document_source = document_source
        self.repository = config.scan.repository or repo_root.resolve().name

    def run(self) -> ScanSummary:
        """Run every stage. Fatal errors (SourceError, StoreError on open) propagate."""
        with scan_scope():
            return self._run()

    def _run(self) -> ScanSummary:
        started = time.monotonic()
        scan = self.config.scan
        summary = ScanSummary(repository=self.repository, commit_sha=scan.commit_sha)
        deadline = started + scan.deadline_sec if scan.deadline_sec is not None else None
        logger.info("scan_started", root=str(self.repo_root), repository=self.repository)

        changes: ChangeSet | None = None
        if scan.last_commit_sha:
            if not self.repo_root.is_dir():
                raise SourceError.root_not_found(str(self.repo_root))
            target = None if scan.commit_sha == "unknown" else scan.commit_sha
            changes = diff_commits(self.repo_root, scan.last_commit_sha, target)
            summary.last_commit_sha = changes.base
        sources, skipped = self._enumerate(changes)

        kb_path = get_kb_path(self.repo_root, self.config)
        db = Database(kb_path, busy_timeout_ms=self.config.database.busy_timeout_ms)
        try:
            db.create_all()
            summary.kb_path = str(kb_path)

            stored: list[ScannedFile] = []
            if changes is not None:
                stored = KnowledgeBaseReader(db).scanned_files(self.repository)
                if stored:
                    summary.scan_type = "incremental"
                else:
                    logger.warning("no_stored_scan_state", repository=self.repository)
                    changes = None
                    sources, skipped = self._enumerate(None)
            summary.files_skipped += skipped

            context = ExtractContext(
                repository=self.repository,
                commit_sha=scan.commit_sha,
                max_error_ratio=scan.max_error_ratio,
                deadline=deadline,
            )
            fresh = self._extract(sources, context, summary)
            reused: list[ExtractionResult] = []
            if changes is not None:
                reused = self._reuse(db, stored, changes, summary)
            joined = self._join([*fresh, *reused])

            mappings = CollectionResolver(joined.constants).resolve_all(
                joined.types, joined.hints
            )
            self._backfill_operations(joined, mappings)
            schemas = self._sample(mappings, joined.operations, summary)
            relationships = RelationshipInferencer().infer(
                joined.types, joined.operations, schemas, mappings
            )

            writer = KnowledgeBaseWriter(
                db,
                batch_size=self.config.database.batch_size,
                max_retries=self.config.database.max_retries,
                retry_base_delay_sec=self.config.database.retry_base_delay_sec,
            )
            written = writer.write_batch(
                joined.types, mappings, joined.operations, relationships, schemas
            )
            _, manifest_failures = writer.write_scanned_files(
                [self._manifest(result) for result in fresh]
            )
            written.failed_writes += manifest_failures
            self._count(summary, joined, mappings, relationships, schemas, written)
        finally:
            db.dispose()

        summary.duration_sec = round(time.monotonic() - started, 3)
        logger.info("scan_complete", **summary.to_dict())
        return summary

    # -- extraction ---------------------------------------------------------

    def _enumerate(self, changes: ChangeSet | None) -> tuple[list[SourceFile], int]:
        """Sources to parse and the number the reader skipped."""
        scan = self.config.scan
        reader = SourceReader(
            self.repo_root,
            extensions=scan.extensions,
            excluded_dirs=scan.excluded_dirs,
            max_file_size_mb=scan.max_file_size_mb,
            only=None if changes is None else changes.changed,
        )
        sources = list(reader.enumerate())
        return sources, len(reader.skipped)

    def _extract(
        self, sources: list[SourceFile], context: ExtractContext, summary: ScanSummary
    ) -> list[ExtractionResult]:
        """Parse ``sources``; returns every result that was not skipped."""
        workers = self.config.scan.max_workers
        if workers == 1 or len(sources) <= 1:
            results = self._sequential_extract(sources, context)
        else:
            results = self._parallel_extract(sources, context, workers)

        kept: list[ExtractionResult] = []
        for result in progress(results, desc="Extracting", total=len(sources)):
            if result.skipped:
                summary.files_skipped += 1
                summary.deadline_exceeded = True
                continue
            kept.append(result)
            if result.error is not None:
                summary.files_failed += 1
                continue
            summary.files_scanned += 1
            summary.lines_scanned += result.line_count
        return kept

    def _reuse(
        self, db: Database, stored: list[ScannedFile], changes: ChangeSet, summary: ScanSummary
    ) -> list[ExtractionResult]:
        """Rebuild extraction results of unchanged files from their manifests."""
        reader = KnowledgeBaseReader(db)
        manifests: list[ScannedFile] = []
        for manifest in stored:
            path = manifest.file_path
            if path in changes.changed:
                continue
            if path in changes.deleted or not (self.repo_root / path).is_file():
                summary.files_deleted += 1
                continue
            manifests.append(manifest)

        types = {
            t.id: t
            for t in reader.load_code_types([i for m in manifests for i in m.type_ids])
        }
        operations = {
            o.id: o
            for o in reader.load_operations([i for m in manifests for i in m.operation_ids])
        }

        results: list[ExtractionResult] = []
        for manifest in manifests:
            ops = [operations[i] for i in manifest.operation_ids if i in operations]
            for op in ops:
                # back to the state extraction left it in; the join resolves it again
                op.collection_mapping_id = None
                if op.collection_hint is None:
                    op.collection_name = None
            results.append(
                ExtractionResult(
                    file_path=manifest.file_path,
                    types=[types[i] for i in manifest.type_ids if i in types],
                    operations=ops,
                    hints=list(manifest.hints),
                    constants=dict(manifest.constants),
                    line_count=manifest.line_count,
                )
            )
        summary.files_reused = len(results)
        logger.info("scan_state_reused", files=len(results), deleted=summary.files_deleted)
        return results

    def _manifest(self, result: ExtractionResult) -> ScannedFile:
        return ScannedFile(
            repository=self.repository,
            file_path=result.file_path,
            commit_sha=self.config.scan.commit_sha,
            line_count=result.line_count,
            type_ids=[t.id for t in result.types],
            operation_ids=[o.id for o in result.operations],
            hints=result.hints,
            constants=result.constants,
        )

    def _join(self, results: list[ExtractionResult]) -> _Joined:
        joined = _Joined()
        # Merge in path order so the join does not depend on completion order
        for result in sorted(results, key=lambda r: r.file_path):
            if result.error is not None:
                continue
            joined.types.extend(result.types)
            joined.operations.extend(result.operations)
            for hint in result.hints:
                joined.hints.setdefault(hint.type_name, []).append(hint)
            for name, value in result.constants.items():
                joined.constants.setdefault(name, value)
        return joined

    def _sequential_extract(
        self, sources: list[SourceFile], context: ExtractContext
    ) -> Iterator[ExtractionResult]:
        for source in sources:
            if self._past(context.deadline):
                yield ExtractionResult(file_path=source.rel_path, skipped=True)
                continue
            yield _extract_file(source, context)

    def _parallel_extract(
        self, sources: list[SourceFile], context: ExtractContext, workers: int
    ) -> Iterator[ExtractionResult]:
        """Process pool with at most ``workers * 2`` submissions in flight."""
        max_in_flight = workers * 2
        pending = iter(sources)
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures: dict[Future[ExtractionResult], str] = {}
            exhausted = False
            while True:
                while not exhausted and len(futures) < max_in_flight:
                    source = next(pending, None)
                    if source is None:
                        exhausted = True
                        break
                    if self._past(context.deadline):
                        yield ExtractionResult(file_path=source.rel_path, skipped=True)
                        continue
                    futures[executor.submit(_extract_file, source, context)] = source.rel_path
                if not futures:
                    break
                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    path = futures.pop(future)
                    try:
                        yield future.result()
                    except Exception as e:
                        logger.warning("extraction_failed", path=path, error=str(e))
                        yield ExtractionResult(file_path=path, error=str(e))

    def _past(self, deadline: float | None) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    # -- join ---------------------------------------------------------------

    def _backfill_operations(self, joined: _Joined, mappings: list[CollectionMapping]) -> None:
        """Resolve collection names with global constants and attach mapping ids."""
        by_type: dict[str, list[CollectionMapping]] = {}
        by_collection: dict[str, CollectionMapping] = {}
        for mapping in mappings:
            by_type.setdefault(mapping.type_name, []).append(mapping)
            if mapping.is_primary:
                by_collection.setdefault(mapping.collection_name, mapping)

        for op in joined.operations:
            if op.collection_hint is not None:
                op.collection_name = classify_hint(
                    op.collection_hint, joined.constants, type_name=op.collection_type or ""
                ).collection_name

            candidates = by_type.get(op.collection_type or "", [])
            mapping = next(
                (m for m in candidates if m.collection_name == op.collection_name), None
            )
            if mapping is None and op.collection_name is None:
                mapping = next((m for m in candidates if m.is_primary), None)
            if mapping is None and op.collection_name is not None:
                mapping = by_collection.get(op.collection_name)
            if mapping is None:
                continue
            op.collection_mapping_id = mapping.id
            if op.collection_name is None:
                op.collection_name = mapping.collection_name

    # -- sampling -----------------------------------------------------------

    def _sample(
        self,
        mappings: list[CollectionMapping],
        operations: list[QueryOperation],
        summary: ScanSummary,
    ) -> list[ObservedSchema]:
        cfg = self.config.sampling
        if not cfg.enabled:
            return []

        targets: dict[str, str | None] = {}
        for mapping in mappings:
            if mapping.is_primary:
                targets.setdefault(mapping.collection_name, mapping.id)
        for op in operations:
            if op.collection_name:
                targets.setdefault(op.collection_name, op.collection_mapping_id)
        if not targets:
            return []

        client = None
        source = self.document_source
        if source is None:
            client = create_client(cfg)
            source = MongoDocumentSource(
                client,
                cfg.database,
                timeout_ms=cfg.timeout_ms,
                max_retries=cfg.max_retries,
                retry_base_delay_sec=cfg.retry_base_delay_sec,
            )

        detector = load_detector(cfg.pii_detector) if cfg.pii_detector else None
        sampler = SchemaSampler(
            source,
            detector,
            cfg.max_sample_size,
            pii_detection_enabled=cfg.pii_detection_enabled,
            repository=self.repository,
            commit_sha=self.config.scan.commit_sha,
        )
        try:
            return list(self._sample_all(sampler, targets, summary))
        finally:
            if client is not None:
                client.close()

    def _sample_all(
        self, sampler: SchemaSampler, targets: dict[str, str | None], summary: ScanSummary
    ) -> Iterable[ObservedSchema]:
        cfg = self.config.sampling
        schemas: list[ObservedSchema] = []
        with ThreadPoolExecutor(max_workers=max(1, cfg.max_concurrency)) as executor:
            futures = {
                executor.submit(
                    sampler.sample,
                    name,
                    cfg.max_documents_per_collection,
                    collection_mapping_id=mapping_id,
                ): name
                for name, mapping_id in targets.items()
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    schemas.append(future.result())
                except Exception as e:
                    logger.warning("sampling_failed", collection=name, error=str(e))
                    summary.sampling_failures += 1
        summary.collections_sampled = len(schemas)
        return sorted(schemas, key=lambda s: s.collection_name)

    # -- summary ------------------------------------------------------------

    def _count(
        self,
        summary: ScanSummary,
        joined: _Joined,
        mappings: list[CollectionMapping],
        relationships: list[DataRelationship],
        schemas: list[ObservedSchema],
        written: WriteSummary,
    ) -> None:
        summary.code_types = len(joined.types)
        summary.collection_mappings = len(mappings)
        summary.query_operations = len(joined.operations)
        summary.data_relationships = len(relationships)
        summary.observed_schemas = len(schemas)
        summary.failed_writes = written.failed_writes


def run_scan(
    repo_root: Path,
    config: CatalogerConfig,
    *,
    document_source: DocumentSource | None = None,
) -> ScanSummary:
    """Convenience wrapper around :class:`ScanPipeline`."""
    return ScanPipeline(repo_root, config, document_source=document_source).run()
