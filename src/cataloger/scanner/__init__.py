"""Static analysis of C# MongoDB data access into a knowledge base."""

from cataloger.scanner._internal.db.database import Database
from cataloger.scanner._internal.db.reader import KnowledgeBaseReader
from cataloger.scanner._internal.db.writer import KnowledgeBaseWriter, WriteSummary
from cataloger.scanner._internal.discovery.sources import SourceFile, SourceReader
from cataloger.scanner._internal.extraction.operations import OperationExtractor
from cataloger.scanner._internal.extraction.types import TypeExtractor
from cataloger.scanner._internal.indexing.pipeline import ScanPipeline, ScanSummary, run_scan
from cataloger.scanner._internal.inference.relationships import RelationshipInferencer
from cataloger.scanner._internal.resolution.collections import CollectionResolver, classify_hint
from cataloger.scanner._internal.sampling.pii import RuleBasedPiiDetector
from cataloger.scanner._internal.sampling.sampler import DocumentSource, SchemaSampler

__all__ = [
    "CollectionResolver",
    "Database",
    "DocumentSource",
    "KnowledgeBaseReader",
    "KnowledgeBaseWriter",
    "OperationExtractor",
    "RelationshipInferencer",
    "RuleBasedPiiDetector",
    "ScanPipeline",
    "ScanSummary",
    "SchemaSampler",
    "SourceFile",
    "SourceReader",
    "TypeExtractor",
    "WriteSummary",
    "classify_hint",
    "run_scan",
]
