"""Indexing functionality for repocontext."""

from .base import RawItem, UpstreamSource
from .history import HistoryRecorder
from .pipeline import MergePipeline, PipelineResult, embed_items, merge_records
from .retention import HIGH_VALUE_CATEGORIES, CleanupStats, RetentionManager, importance_score
from .sources import GitLogSource, InteractionLogSource, LocalRepositorySource, iter_files
from .watermark import WatermarkStore

__all__ = [
    "CleanupStats",
    "GitLogSource",
    "HIGH_VALUE_CATEGORIES",
    "HistoryRecorder",
    "InteractionLogSource",
    "LocalRepositorySource",
    "MergePipeline",
    "PipelineResult",
    "RawItem",
    "RetentionManager",
    "UpstreamSource",
    "WatermarkStore",
    "embed_items",
    "importance_score",
    "iter_files",
    "merge_records",
]
