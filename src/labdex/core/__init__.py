"""
Labdex Core — configuration, cache, GitLab client, sync, and search.

Re-exports the primary classes for convenience::

    from labdex.core import LabdexConfig, ForgeCache, QueryEngine
"""

from labdex.core.config import LabdexConfig
from labdex.core.engine import (
    ForgeCache,
    FuzzyInfo,
    MergeRequest,
    Project,
    QueryEntry,
    SyncResult,
    fuzzy_score,
    multi_word_fuzzy_score,
    score_project,
)
from labdex.core.search import QueryEngine, ResultFormatter, parse_query

__all__ = [
    "LabdexConfig",
    "ForgeCache",
    "FuzzyInfo",
    "MergeRequest",
    "Project",
    "QueryEntry",
    "SyncResult",
    "fuzzy_score",
    "multi_word_fuzzy_score",
    "score_project",
    "QueryEngine",
    "ResultFormatter",
    "parse_query",
]
