"""Retrieval over corpus snapshots."""

from .searcher import CATEGORY_MODES, RetrievalEngine, RetrievalMode, build_engine, format_hit, mode_for_category
from .topk import TopKSelector, select_bounded, select_by_sort

__all__ = [
    "CATEGORY_MODES",
    "RetrievalEngine",
    "RetrievalMode",
    "TopKSelector",
    "build_engine",
    "format_hit",
    "mode_for_category",
    "select_bounded",
    "select_by_sort",
]
