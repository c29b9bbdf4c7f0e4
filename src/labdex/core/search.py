"""
Labdex Search Engine

Ranks cached projects and merge requests for a query string.

Two query shapes are understood:

- **Flat** (``"res infra"``): projects and merge requests whose fields
  contain every query word are fuzzy-scored and merged into one list.
- **Drill-down** (``"res infra!retry"``): the text before the first ``!``
  picks one project; the text after it filters that project's merge
  requests.

Results optionally get a usage-history boost, then are sorted by score.
"""

import json
import logging
import time
from typing import List, Optional, Tuple

from labdex.core.engine import (
    ForgeCache, FuzzyInfo, FuzzyMatcher, MergeRequest, Project, QueryEntry,
    fuzzy_score, multi_word_fuzzy_score, score_project,
)
from labdex.core.history import HistoryStore

logger = logging.getLogger(__name__)

DRILL_DOWN_SEPARATOR = "!"
BROWSE_BASE_SCORE = 1000


def parse_query(query: str) -> Tuple[str, Optional[str]]:
    """
    Split *query* at the first ``!``.

    Returns ``(project_filter, mr_filter)``; ``mr_filter`` is ``None`` for
    a flat query.  Later ``!`` characters stay in ``mr_filter``.
    """
    project_filter, sep, mr_filter = query.partition(DRILL_DOWN_SEPARATOR)
    if not sep:
        return query, None
    return project_filter, mr_filter


def project_identifier(project: Project) -> str:
    return f"project:{project.id}"


def merge_request_identifier(mr: MergeRequest) -> str:
    return f"mr:{mr.id}"


def merge_request_subtext(mr: MergeRequest) -> str:
    return f"!{mr.iid} · {mr.project_path} · {mr.role}"


# =============================================================================
# Query Engine
# =============================================================================

class QueryEngine:
    """
    Read-only search over a :class:`ForgeCache`.

    The base fuzzy matcher and the history store are injectable; without a
    history store (or with ``use_history=False``) no usage boost is applied.
    """

    def __init__(self, cache: ForgeCache, history: HistoryStore | None = None,
                 use_history: bool = True, matcher: FuzzyMatcher = fuzzy_score):
        self.cache = cache
        self.history = history
        self.use_history = use_history
        self.matcher = matcher
        self._last_elapsed_seconds: float = 0.0

    @property
    def last_query_elapsed_seconds(self) -> float:
        """Wall time of the last :meth:`query` call, in seconds."""
        return self._last_elapsed_seconds

    # ── Public API ────────────────────────────────────────────────

    def query(self, query: str, exact: bool = False,
              max_results: Optional[int] = None) -> List[QueryEntry]:
        """
        Execute *query* and return entries sorted by score (highest first).

        Args:
            query: Flat or drill-down query string.
            exact: Passed through to the base matcher.
            max_results: Cap the sorted list (``None`` returns everything).
        """
        t0 = time.perf_counter()
        project_filter, mr_filter = parse_query(query)

        if mr_filter is None:
            entries = self._flat(query, exact)
        else:
            entries = self._drill_down(query, project_filter, mr_filter, exact)

        # list.sort is stable: equal scores keep store order
        entries.sort(key=lambda e: e.score, reverse=True)
        if max_results is not None:
            entries = entries[:max_results]

        self._last_elapsed_seconds = time.perf_counter() - t0
        logger.debug(
            f"Query {query!r}: {len(entries)} entries in {self._last_elapsed_seconds * 1000:.1f} ms"
        )
        return entries

    # ── Flat mode ─────────────────────────────────────────────────

    def _flat(self, query: str, exact: bool) -> List[QueryEntry]:
        entries: List[QueryEntry] = []

        for k, project in enumerate(self.cache.query_projects(query)):
            entry = QueryEntry(
                identifier=project_identifier(project),
                text=project.name,
                subtext=project.path_with_namespace,
                score=BROWSE_BASE_SCORE - k,
            )
            if query:
                entry.score = score_project(query, project, exact, self.matcher)
                entry.fuzzy = self._project_fuzzy(query, project, exact)
            entries.append(self._blend_history(query, entry))

        for k, mr in enumerate(self.cache.query_merge_requests(query)):
            entry = self._merge_request_entry(mr)
            if query:
                self._score_merge_request(entry, query, mr, exact)
            else:
                entry.score = BROWSE_BASE_SCORE - k
            entries.append(self._blend_history(query, entry))

        return entries

    def _project_fuzzy(self, query: str, project: Project, exact: bool) -> FuzzyInfo:
        """Annotate the name (``text``) unless the path scored strictly higher."""
        score_ns, pos_ns, start_ns = multi_word_fuzzy_score(
            query, project.path_with_namespace, exact, self.matcher,
        )
        score_name, pos_name, start_name = multi_word_fuzzy_score(
            query, project.name, exact, self.matcher,
        )
        if score_name >= score_ns:
            return FuzzyInfo(field="text", start=start_name, positions=pos_name)
        return FuzzyInfo(field="subtext", start=start_ns, positions=pos_ns)

    # ── Drill-down mode ───────────────────────────────────────────

    def _drill_down(self, query: str, project_filter: str, mr_filter: str,
                    exact: bool) -> List[QueryEntry]:
        candidates = self.cache.query_projects(project_filter)
        if not candidates:
            return []

        best = self._best_project(project_filter, candidates, exact)
        logger.debug(f"Drill-down into {best.path_with_namespace}")

        entries: List[QueryEntry] = []
        for mr in self.cache.query_merge_requests_for_projects(
                [best.path_with_namespace], mr_filter):
            entry = self._merge_request_entry(mr)
            if mr_filter:
                self._score_merge_request(entry, mr_filter, mr, exact)
            entries.append(self._blend_history(query, entry))
        return entries

    def _best_project(self, project_filter: str, candidates: List[Project],
                      exact: bool) -> Project:
        """Highest :func:`score_project`; the earliest candidate wins ties.

        An empty filter picks the most recently active candidate.
        """
        best = candidates[0]
        if not project_filter:
            return best
        best_score = score_project(project_filter, best, exact, self.matcher)
        for project in candidates[1:]:
            score = score_project(project_filter, project, exact, self.matcher)
            if score > best_score:
                best, best_score = project, score
        return best

    # ── Shared helpers ────────────────────────────────────────────

    @staticmethod
    def _merge_request_entry(mr: MergeRequest) -> QueryEntry:
        return QueryEntry(
            identifier=merge_request_identifier(mr),
            text=mr.title,
            subtext=merge_request_subtext(mr),
        )

    def _score_merge_request(self, entry: QueryEntry, query: str, mr: MergeRequest,
                             exact: bool) -> None:
        score, positions, start = multi_word_fuzzy_score(query, mr.title, exact, self.matcher)
        entry.score = score
        entry.fuzzy = FuzzyInfo(field="text", start=start, positions=positions)

    def _blend_history(self, query: str, entry: QueryEntry) -> QueryEntry:
        if not self.use_history or self.history is None:
            return entry
        usage = self.history.calc_usage_score(query, entry.identifier)
        if usage:
            entry.score += usage
            entry.history_boosted = True
        return entry


# =============================================================================
# Result Formatting
# =============================================================================

class ResultFormatter:
    """Format query results for different output modes."""

    @staticmethod
    def format_console(entries: List[QueryEntry], elapsed_time: float | None = None) -> str:
        """Human-friendly listing with identifiers, scores, and history markers."""
        if not entries:
            return "\n  No results found.\n"

        import shutil
        width = min(shutil.get_terminal_size().columns, 78)
        thin = "─" * width

        header = f"  LABDEX — {len(entries)} result{'s' if len(entries) != 1 else ''}"
        if elapsed_time is not None:
            header += f" in {elapsed_time:.4f} seconds"

        out: List[str] = [f"\n{thin}", header, thin]
        for idx, entry in enumerate(entries, start=1):
            marker = "  ★ history" if entry.history_boosted else ""
            out.append("")
            out.append(f"  #{idx}  {entry.text}{marker}")
            out.append(f"    {entry.subtext}")
            out.append(f"    Id     : {entry.identifier}")
            out.append(f"    Score  : {entry.score}")
        out.append(f"\n{thin}")
        return "\n".join(out)

    @staticmethod
    def format_json(entries: List[QueryEntry]) -> str:
        return json.dumps([e.to_dict() for e in entries], indent=2, ensure_ascii=False)

    @staticmethod
    def format_compact(entries: List[QueryEntry]) -> str:
        """One line per entry: ``identifier  score  text  (subtext)``."""
        if not entries:
            return "No results found."
        return "\n".join(
            f"{e.identifier}  {e.score:>5}  {e.text}  ({e.subtext})" for e in entries
        )
