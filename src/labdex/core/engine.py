"""
Labdex Core Engine

Data models, the SQLite forge cache, and fuzzy search scoring.
Production-grade with transactional writes, serialized access to a
single connection, and logging on every failure path.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, asdict, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from labdex.exceptions import DecodeError, StoreError

# Application code (CLI, MCP server) is responsible for configuring logging.
logger = logging.getLogger(__name__)

ROLE_ASSIGNED = "assigned"
ROLE_AUTHORED = "authored"
ROLE_REVIEWING = "reviewing"
ROLES = (ROLE_ASSIGNED, ROLE_AUTHORED, ROLE_REVIEWING)

DEFAULT_ACTIONS = ("open", "copy_url")


# =============================================================================
# Data Models
# =============================================================================

def _parse_timestamp(value: Any) -> int:
    """Convert a GitLab ISO-8601 timestamp to Unix seconds (0 when absent)."""
    if not value:
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp())
    except ValueError as e:
        raise DecodeError(f"Invalid timestamp {value!r}: {e}") from e


def _require_id(payload: Dict[str, Any], kind: str) -> int:
    if not isinstance(payload, dict):
        raise DecodeError(f"Expected a JSON object for {kind}, got {type(payload).__name__}")
    raw = payload.get("id")
    if raw is None:
        raise DecodeError(f"{kind} payload has no 'id'")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"{kind} id {raw!r} is not an integer") from e


def project_path_from_reference(reference: str) -> str:
    """Derive ``group/project`` from a full reference like ``group/project!123``."""
    idx = reference.rfind("!")
    if idx > 0:
        return reference[:idx]
    return ""


@dataclass
class Project:
    """A GitLab project as mirrored in the local cache."""
    id: int
    path_with_namespace: str
    name: str
    web_url: str
    description: str = ""
    namespace: str = ""
    """Full namespace path (``group/subgroup``)."""
    last_activity_at: int = 0
    """Unix seconds."""

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Project":
        pid = _require_id(payload, "project")
        namespace = payload.get("namespace") or {}
        return cls(
            id=pid,
            path_with_namespace=payload.get("path_with_namespace") or "",
            name=payload.get("name") or "",
            web_url=payload.get("web_url") or "",
            description=payload.get("description") or "",
            namespace=namespace.get("full_path", "") if isinstance(namespace, dict) else "",
            last_activity_at=_parse_timestamp(payload.get("last_activity_at")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MergeRequest:
    """A GitLab merge request as mirrored in the local cache.

    :attr:`role` is stamped by the cache at upsert time; the API payload
    does not carry it.
    """
    id: int
    iid: int
    title: str
    web_url: str
    description: str = ""
    state: str = "opened"
    source_branch: str = ""
    target_branch: str = ""
    project_path: str = ""
    author: str = ""
    role: str = ""
    created_at: int = 0

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "MergeRequest":
        mid = _require_id(payload, "merge request")
        author = payload.get("author") or {}
        references = payload.get("references") or {}
        try:
            iid = int(payload.get("iid") or 0)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"merge request iid {payload.get('iid')!r} is not an integer") from e
        return cls(
            id=mid,
            iid=iid,
            title=payload.get("title") or "",
            web_url=payload.get("web_url") or "",
            description=payload.get("description") or "",
            state=payload.get("state") or "opened",
            source_branch=payload.get("source_branch") or "",
            target_branch=payload.get("target_branch") or "",
            project_path=project_path_from_reference(references.get("full") or "")
            if isinstance(references, dict) else "",
            author=author.get("username", "") if isinstance(author, dict) else "",
            created_at=_parse_timestamp(payload.get("created_at")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GitLabUser:
    """The account the access token belongs to."""
    id: int
    username: str


@dataclass
class FetchResult:
    """Items gathered by one paginated fetch.

    ``complete`` is False when pagination stopped on an error, i.e. the
    listing may be missing pages.
    """
    items: list = field(default_factory=list)
    complete: bool = True

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class FuzzyInfo:
    """Which field of an entry matched, and where."""
    field: str
    start: int
    positions: List[int] = field(default_factory=list)


@dataclass
class QueryEntry:
    """One ranked search result."""
    identifier: str
    text: str
    subtext: str
    score: int = 0
    fuzzy: FuzzyInfo | None = None
    history_boosted: bool = False
    actions: Tuple[str, ...] = DEFAULT_ACTIONS

    def to_dict(self) -> dict:
        """Return a JSON-serializable dict for API/agent pipelines."""
        data = asdict(self)
        data["actions"] = list(self.actions)
        return data


@dataclass
class SyncResult:
    """Typed result returned by :meth:`SyncPipeline.run`."""
    projects_fetched: int = 0
    projects_pruned: int = 0
    assigned: int = 0
    authored: int = 0
    reviewing: int = 0
    errors: int = 0
    elapsed_seconds: float = 0.0
    skipped: bool = False
    """True when another cycle was already in flight and this call coalesced into it."""

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# Cache Management (SQLite)
# =============================================================================

_PROJECT_COLUMNS = (
    "id, path_with_namespace, name, description, web_url, namespace, last_activity_at"
)
_MR_COLUMNS = (
    "id, iid, title, description, web_url, state, source_branch, target_branch, "
    "project_path, author, role, created_at"
)
_PROJECT_MATCH = "(path_with_namespace LIKE ? ESCAPE '\\' OR name LIKE ? ESCAPE '\\')"
_MR_MATCH = (
    "(title LIKE ? ESCAPE '\\' OR project_path LIKE ? ESCAPE '\\' "
    "OR source_branch LIKE ? ESCAPE '\\' OR CAST(iid AS TEXT) LIKE ? ESCAPE '\\')"
)


def _like_clauses(substring: str, template: str, arity: int) -> Tuple[str, list]:
    """Build an AND of *template* per whitespace-separated word.

    SQLite's LIKE is case-insensitive for ASCII, which gives the
    case-insensitive substring semantics without lowercasing columns.
    """
    words = substring.split()
    if not words:
        return "", []
    clauses = " AND ".join([template] * len(words))
    params: list = []
    for word in words:
        escaped = word.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        params.extend([f"%{escaped}%"] * arity)
    return clauses, params


class ForgeCache:
    """SQLite cache for projects, merge requests, and metadata.

    All access goes through one connection guarded by a lock, so every
    statement and every transaction is serialized across threads.  The
    lock does not span a whole sync cycle: a reader can observe the cache
    between two write batches.
    """

    def __init__(self, db_path: Path, filtered_limit: int = 200, browse_limit: int = 50):
        self.db_path = Path(db_path)
        self.filtered_limit = filtered_limit
        self.browse_limit = browse_limit
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._closed = False
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Return the shared connection, opening it on first use.

        Raises :class:`StoreError` once the cache has been closed.
        """
        if self._closed:
            raise StoreError(f"Cache {self.db_path} is closed")
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.execute("PRAGMA temp_store=MEMORY")
            self._conn = conn
        return self._conn

    def close(self) -> None:
        """Close the connection for good. Idempotent."""
        with self._lock:
            self._closed = True
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _init_db(self):
        """Create the schema if it does not exist yet."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY,
                    path_with_namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    web_url TEXT NOT NULL,
                    namespace TEXT DEFAULT '',
                    last_activity_at INTEGER DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS merge_requests (
                    id INTEGER PRIMARY KEY,
                    iid INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    web_url TEXT NOT NULL,
                    state TEXT DEFAULT 'opened',
                    source_branch TEXT DEFAULT '',
                    target_branch TEXT DEFAULT '',
                    project_path TEXT DEFAULT '',
                    author TEXT DEFAULT '',
                    role TEXT DEFAULT '',
                    created_at INTEGER DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_projects_activity ON projects(last_activity_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_mrs_project_path ON merge_requests(project_path)"
            )
            conn.commit()

    # ── Writes ────────────────────────────────────────────────────

    def upsert_projects(self, projects: Sequence[Project]) -> None:
        """Replace-by-id a batch of projects in one transaction."""
        self._write_projects(projects, prune=False)

    def replace_projects(self, projects: Sequence[Project]) -> int:
        """Upsert *projects* and delete every cached project not in the batch.

        Only call with a complete listing.  Returns the number of rows pruned.
        """
        return self._write_projects(projects, prune=True)

    def _write_projects(self, projects: Sequence[Project], prune: bool) -> int:
        rows = [
            (p.id, p.path_with_namespace, p.name, p.description, p.web_url,
             p.namespace, p.last_activity_at)
            for p in projects
        ]
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    conn.executemany(f"""
                        INSERT OR REPLACE INTO projects ({_PROJECT_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, rows)
                    pruned = 0
                    if prune:
                        conn.execute("CREATE TEMP TABLE IF NOT EXISTS keep_ids (id INTEGER PRIMARY KEY)")
                        conn.execute("DELETE FROM keep_ids")
                        conn.executemany("INSERT OR IGNORE INTO keep_ids (id) VALUES (?)",
                                         [(p.id,) for p in projects])
                        cursor = conn.execute(
                            "DELETE FROM projects WHERE id NOT IN (SELECT id FROM keep_ids)"
                        )
                        pruned = cursor.rowcount
                        conn.execute("DELETE FROM keep_ids")
            except sqlite3.Error as e:
                raise StoreError(f"Failed to write {len(rows)} projects: {e}") from e
        return pruned

    def upsert_merge_requests(self, mrs: Sequence[MergeRequest], role: str) -> None:
        """Replace-by-id a batch of merge requests, stamping each with *role*."""
        rows = [
            (mr.id, mr.iid, mr.title, mr.description, mr.web_url, mr.state,
             mr.source_branch, mr.target_branch, mr.project_path, mr.author,
             role, mr.created_at)
            for mr in mrs
        ]
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    conn.executemany(f"""
                        INSERT OR REPLACE INTO merge_requests ({_MR_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, rows)
            except sqlite3.Error as e:
                raise StoreError(f"Failed to write {len(rows)} {role} merge requests: {e}") from e

    def clear_merge_requests(self) -> None:
        """Delete every merge-request row."""
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute("DELETE FROM merge_requests")
            except sqlite3.Error as e:
                raise StoreError(f"Failed to clear merge requests: {e}") from e

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value),
                    )
            except sqlite3.Error as e:
                raise StoreError(f"Failed to write meta '{key}': {e}") from e

    # ── Reads ─────────────────────────────────────────────────────
    # Read failures are logged and yield empty results.

    def _select(self, sql: str, params: Sequence[Any], what: str) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._get_connection().execute(sql, params).fetchall()
            except (sqlite3.Error, StoreError) as e:
                logger.error(f"Failed to query {what}: {e}")
                return []

    def _limit(self, substring: str) -> int:
        return self.filtered_limit if substring.strip() else self.browse_limit

    def query_projects(self, substring: str = "") -> List[Project]:
        """Projects whose path or name contains *substring*, most recently active first.

        Every whitespace-separated word of *substring* must match.  Returns
        at most 200 rows for a filtered query and 50 for an empty one.
        """
        where, params = _like_clauses(substring, _PROJECT_MATCH, 2)
        sql = f"SELECT {_PROJECT_COLUMNS} FROM projects"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY last_activity_at DESC LIMIT ?"
        rows = self._select(sql, params + [self._limit(substring)], "projects")
        return [Project(**dict(row)) for row in rows]

    def query_merge_requests(self, substring: str = "") -> List[MergeRequest]:
        """Merge requests matching *substring* on title, project path,
        source branch, or decimal iid; newest first.
        """
        where, params = _like_clauses(substring, _MR_MATCH, 4)
        sql = f"SELECT {_MR_COLUMNS} FROM merge_requests"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY created_at DESC LIMIT ?"
        rows = self._select(sql, params + [self._limit(substring)], "merge requests")
        return [MergeRequest(**dict(row)) for row in rows]

    def query_merge_requests_for_projects(self, paths: Iterable[str],
                                          substring: str = "") -> List[MergeRequest]:
        """Like :meth:`query_merge_requests`, restricted to the given project paths."""
        paths = list(paths)
        if not paths:
            return []
        placeholders = ", ".join("?" * len(paths))
        where, params = _like_clauses(substring, _MR_MATCH, 4)
        sql = f"SELECT {_MR_COLUMNS} FROM merge_requests WHERE project_path IN ({placeholders})"
        if where:
            sql += f" AND {where}"
        sql += " ORDER BY created_at DESC LIMIT ?"
        rows = self._select(
            sql, paths + params + [self._limit(substring)], "merge requests for projects",
        )
        return [MergeRequest(**dict(row)) for row in rows]

    def get_project_web_url(self, project_id: int | str) -> Optional[str]:
        rows = self._select("SELECT web_url FROM projects WHERE id = ?", (project_id,), "project url")
        return rows[0]["web_url"] if rows else None

    def get_merge_request_web_url(self, mr_id: int | str) -> Optional[str]:
        rows = self._select(
            "SELECT web_url FROM merge_requests WHERE id = ?", (mr_id,), "merge request url",
        )
        return rows[0]["web_url"] if rows else None

    def get_meta(self, key: str) -> Optional[str]:
        rows = self._select("SELECT value FROM meta WHERE key = ?", (key,), "meta")
        return rows[0]["value"] if rows else None

    def get_stats(self) -> Dict[str, Any]:
        """Row counts for projects and merge requests (per role), plus last sync time."""
        stats: Dict[str, Any] = {"projects": 0, "merge_requests": 0}
        rows = self._select("SELECT COUNT(*) AS n FROM projects", (), "project count")
        if rows:
            stats["projects"] = rows[0]["n"]
        for role in ROLES:
            stats[role] = 0
        rows = self._select(
            "SELECT role, COUNT(*) AS n FROM merge_requests GROUP BY role", (), "merge request count",
        )
        for row in rows:
            stats[row["role"] or "unknown"] = row["n"]
            stats["merge_requests"] += row["n"]
        stats["last_sync_at"] = self.get_meta("last_sync_at")
        return stats


# =============================================================================
# Search Scoring
# =============================================================================

NO_MATCH = -1

SCORE_MATCH = 16
SCORE_GAP_START = -3
SCORE_GAP_EXTENSION = -1
BONUS_BOUNDARY = SCORE_MATCH // 2
BONUS_NON_WORD = SCORE_MATCH // 2
BONUS_CAMEL_123 = BONUS_BOUNDARY + SCORE_GAP_EXTENSION
BONUS_CONSECUTIVE = -(SCORE_GAP_START + SCORE_GAP_EXTENSION)
BONUS_FIRST_CHAR_MULTIPLIER = 2

_CHAR_NON_WORD, _CHAR_LOWER, _CHAR_UPPER, _CHAR_NUMBER = range(4)

FuzzyResult = Tuple[int, List[int], int]


class FuzzyMatcher(Protocol):
    """Single-word matcher: ``(word, target, exact) -> (score, positions, start)``."""

    def __call__(self, word: str, target: str, exact: bool) -> FuzzyResult: ...


def _char_class(ch: str) -> int:
    if ch.islower():
        return _CHAR_LOWER
    if ch.isupper():
        return _CHAR_UPPER
    if ch.isdigit():
        return _CHAR_NUMBER
    if ch.isalpha():
        return _CHAR_LOWER
    return _CHAR_NON_WORD


def _bonus_for(prev_class: int, cls: int) -> int:
    if prev_class == _CHAR_NON_WORD and cls != _CHAR_NON_WORD:
        return BONUS_BOUNDARY
    if (prev_class == _CHAR_LOWER and cls == _CHAR_UPPER) or \
            (prev_class != _CHAR_NUMBER and cls == _CHAR_NUMBER):
        return BONUS_CAMEL_123
    if cls == _CHAR_NON_WORD:
        return BONUS_NON_WORD
    return 0


def _fold(text: str) -> str:
    # one character per input character so indices stay aligned
    return "".join(ch.lower()[:1] for ch in text)


def _calculate_score(target: str, pattern: str, start: int, end: int) -> Tuple[int, List[int]]:
    """Score the matched window ``target[start:end]`` the way fzf's v1 algorithm does."""
    pidx = 0
    score = 0
    in_gap = False
    consecutive = 0
    first_bonus = 0
    positions: List[int] = []
    prev_class = _char_class(target[start - 1]) if start > 0 else _CHAR_NON_WORD

    for idx in range(start, end):
        ch = target[idx]
        cls = _char_class(ch)
        if pidx < len(pattern) and ch.lower()[:1] == pattern[pidx]:
            positions.append(idx)
            score += SCORE_MATCH
            bonus = _bonus_for(prev_class, cls)
            if consecutive == 0:
                first_bonus = bonus
            else:
                # a boundary inside a run restarts the chunk bonus
                if bonus == BONUS_BOUNDARY:
                    first_bonus = bonus
                bonus = max(bonus, first_bonus, BONUS_CONSECUTIVE)
            score += bonus * BONUS_FIRST_CHAR_MULTIPLIER if pidx == 0 else bonus
            in_gap = False
            consecutive += 1
            pidx += 1
        else:
            score += SCORE_GAP_EXTENSION if in_gap else SCORE_GAP_START
            in_gap = True
            consecutive = 0
            first_bonus = 0
        prev_class = cls

    return score, positions


def fuzzy_score(word: str, target: str, exact: bool = False) -> FuzzyResult:
    """
    Score a single query *word* against *target*, case-insensitively.

    Returns ``(score, positions, start)``; ``start`` is :data:`NO_MATCH`
    (with score 0 and no positions) when the word does not match.  With
    ``exact=True`` the word must occur as a contiguous substring.
    """
    if not word or not target:
        return 0, [], NO_MATCH

    pattern = _fold(word)
    text = _fold(target)

    if exact:
        start = text.find(pattern)
        if start < 0:
            return 0, [], NO_MATCH
        end = start + len(pattern)
    else:
        # Forward scan: earliest window containing the pattern as a subsequence.
        pidx = 0
        start = end = -1
        for idx, ch in enumerate(text):
            if ch == pattern[pidx]:
                if start < 0:
                    start = idx
                pidx += 1
                if pidx == len(pattern):
                    end = idx + 1
                    break
        if end < 0:
            return 0, [], NO_MATCH

        # Backward scan: tighten the window from the right.
        pidx = len(pattern) - 1
        for idx in range(end - 1, start - 1, -1):
            if text[idx] == pattern[pidx]:
                pidx -= 1
                if pidx < 0:
                    start = idx
                    break

    score, positions = _calculate_score(target, pattern, start, end)
    return score, positions, start


def multi_word_fuzzy_score(query: str, target: str, exact: bool = False,
                           matcher: FuzzyMatcher = fuzzy_score) -> FuzzyResult:
    """
    Score every whitespace-separated word of *query* independently and sum.

    Each extra case-insensitive occurrence of a word in *target* adds half
    that word's base score, so a word that recurs across path segments
    ranks the target higher.  A query with zero or one word is passed to
    *matcher* unchanged.
    """
    words = query.split()
    if len(words) <= 1:
        return matcher(query, target, exact)

    total = 0
    all_positions: List[int] = []
    min_start = NO_MATCH
    lower_target = target.lower()

    for word in words:
        score, positions, start = matcher(word, target, exact)
        total += score
        all_positions.extend(positions)
        if start != NO_MATCH and (min_start == NO_MATCH or start < min_start):
            min_start = start

        occurrences = lower_target.count(word.lower())
        if occurrences > 1:
            total += (occurrences - 1) * (score // 2)

    all_positions.sort()
    return total, all_positions, min_start


def score_project(query: str, project: Project, exact: bool = False,
                  matcher: FuzzyMatcher = fuzzy_score) -> int:
    """Path score plus twice the name score, so the repository name dominates."""
    path_score, _, _ = multi_word_fuzzy_score(query, project.path_with_namespace, exact, matcher)
    name_score, _, _ = multi_word_fuzzy_score(query, project.name, exact, matcher)
    return path_score + name_score * 2
