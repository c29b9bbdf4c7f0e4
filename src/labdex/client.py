"""
Labdex Client Facade

Single entry point for programmatic use of Labdex.  Owns the cache, the
GitLab client, the sync machinery, and the usage history behind one
instance-based API with optional async support.

Usage::

    from labdex import Labdex

    # From environment variables
    with Labdex() as dex:
        dex.setup()                         # open cache, start background sync
        for entry in dex.query("res infra"):
            print(entry.score, entry.text, entry.subtext)
        dex.activate("project:42")          # open in the browser

    # With explicit configuration
    from labdex.core.config import LabdexConfig
    dex = Labdex(config=LabdexConfig(gitlab_url="https://git.example.com"))

    # Async variants (for FastAPI / MCP handlers)
    entries = await dex.aquery("res infra!retry")
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, List, Optional

from labdex.core.autosync import AutoSyncer
from labdex.core.config import LabdexConfig
from labdex.core.engine import ForgeCache, FuzzyMatcher, QueryEntry, SyncResult, fuzzy_score
from labdex.core.gitlab import GitLabClient
from labdex.core.history import HistoryStore, UsageHistory
from labdex.core.launcher import Launcher, SubprocessLauncher
from labdex.core.search import QueryEngine
from labdex.core.sync import SyncPipeline
from labdex.exceptions import ActivationError, ConfigError, ForgeError

logger = logging.getLogger(__name__)

ACTION_OPEN = "open"
ACTION_COPY_URL = "copy_url"
ACTION_REFRESH = "refresh"
ACTION_ERASE_HISTORY = "erase_history"
ACTIONS = (ACTION_OPEN, ACTION_COPY_URL, ACTION_REFRESH, ACTION_ERASE_HISTORY)

DOC = """\
Labdex: search your GitLab projects and merge requests.

Projects and open merge requests (assigned to you, authored by you, or
awaiting your review) are mirrored into a local SQLite cache and
refreshed in the background every few minutes.

Query syntax
  res infra          fuzzy search over projects and merge requests
  res infra!         merge requests of the best matching project
  res infra!retry    ...filtered by title, branch, or number
  res infra!620      ...or by merge request number

Actions
  open               open the entry in the browser (default)
  copy_url           copy the entry's URL to the clipboard
  refresh            re-sync the cache now
  erase_history      forget past activations of an entry

Configuration (environment)
  LABDEX_GITLAB_URL        forge root URL (default https://gitlab.com)
  LABDEX_PAT_FILE          file holding a personal access token (~/.gitlab_pat)
  LABDEX_GITLAB_TOKEN      token value, overrides the file
  LABDEX_REFRESH_INTERVAL  minutes between background syncs (15)
  LABDEX_MAX_PROJECTS      project cap per sync (1000)
  LABDEX_MEMBERSHIP_ONLY   only projects you are a member of (true)
  LABDEX_HISTORY           boost frequently used results (true)
  LABDEX_OPEN_COMMAND      browser opener (xdg-open)
  LABDEX_COPY_COMMAND      clipboard tool (wl-copy)
  LABDEX_CACHE_DIR         cache location ($XDG_CACHE_HOME/labdex)

Without a token the cached data stays searchable but is never refreshed.
"""


class Labdex:
    """
    High-level Labdex service.

    Each instance carries its own :class:`LabdexConfig` and collaborators
    and never touches global state, so several instances (or tests) can
    coexist in one process.

    Args:
        config: Explicit configuration object.  When *None*, a config
            is built from environment variables or keyword overrides.
        gitlab_client: Pre-built remote client; skips token resolution.
        history: Usage-history store (defaults to a JSON file in the cache dir).
        launcher: URL opener / clipboard helper.
        matcher: Base single-word fuzzy matcher.
        validate_on_init: Call :meth:`LabdexConfig.validate` immediately.
        **kwargs: Forwarded to :class:`LabdexConfig` when *config* is ``None``.
    """

    def __init__(
        self,
        config: LabdexConfig | None = None,
        *,
        gitlab_client: GitLabClient | None = None,
        history: HistoryStore | None = None,
        launcher: Launcher | None = None,
        matcher: FuzzyMatcher = fuzzy_score,
        validate_on_init: bool = False,
        **kwargs,
    ):
        if config is not None:
            self._config = config
        elif kwargs:
            # Build a config from env, then overlay keyword overrides
            base = LabdexConfig.from_env()
            merged = {
                f.name: kwargs.get(f.name, getattr(base, f.name))
                for f in base.__dataclass_fields__.values()
            }
            self._config = LabdexConfig(**merged)
        else:
            self._config = LabdexConfig.from_env()

        if validate_on_init:
            self._config.validate()

        self._gitlab = gitlab_client
        self._owns_gitlab = gitlab_client is None
        self._history: HistoryStore = (
            history if history is not None else UsageHistory(self._config.get_history_path())
        )
        self._launcher: Launcher = launcher if launcher is not None else SubprocessLauncher(
            self._config.command, self._config.copy_command,
        )
        self._matcher = matcher

        self._lock = threading.RLock()
        self._setup_lock = threading.Lock()
        self._cache: Optional[ForgeCache] = None
        self._engine: Optional[QueryEngine] = None
        self._pipeline: Optional[SyncPipeline] = None
        self._syncer: Optional[AutoSyncer] = None
        self._user_id: Optional[int] = None
        self._setup_done = False

    # ── Configuration ─────────────────────────────────────────────

    @property
    def config(self) -> LabdexConfig:
        """The active configuration for this instance."""
        return self._config

    @property
    def icon(self) -> str:
        return self._config.icon

    @property
    def read_only(self) -> bool:
        """True when no credential is available; cached data is served as-is."""
        return self._gitlab is None

    @property
    def cache(self) -> ForgeCache:
        self._open_local()
        return self._cache

    # ── Lifecycle ─────────────────────────────────────────────────

    def setup(self, start_sync: bool = True) -> None:
        """
        Open the cache and history, resolve the credential, and (with
        *start_sync*) start the background syncer.

        Without a credential the instance stays read-only.  A failed
        account lookup is logged; syncing then skips reviewer merge requests.
        """
        # Account lookup hits the network; only the setup lock is held.
        with self._setup_lock:
            self._open_local()
            if not self._setup_done:
                self._setup_done = True
                self._connect()
        with self._lock:
            if start_sync and self._pipeline is not None and self._syncer is None:
                self._syncer = AutoSyncer(self._pipeline, self._config.refresh_interval)
                self._syncer.start()

    start = setup

    def close(self) -> None:
        """Stop background syncing and release the cache and HTTP client. Idempotent."""
        with self._setup_lock, self._lock:
            if self._syncer is not None:
                self._syncer.stop()
                self._syncer = None
            if self._gitlab is not None and self._owns_gitlab:
                self._gitlab.close()
                self._gitlab = None
            if self._cache is not None:
                self._cache.close()
                self._cache = None
                self._engine = None
            self._pipeline = None
            self._setup_done = False

    def __enter__(self) -> "Labdex":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Sync ──────────────────────────────────────────────────────

    def sync(self, show_progress: bool = False) -> SyncResult:
        """
        Run one sync cycle in the calling thread.

        Raises:
            ConfigError: If no access token is available.
        """
        self.setup(start_sync=False)
        if self._pipeline is None:
            raise ConfigError(
                "No GitLab access token available; cannot sync.\n"
                f"  Put a personal access token in {self._config.pat_file} "
                "or set LABDEX_GITLAB_TOKEN."
            )
        self._pipeline.show_progress = show_progress
        try:
            return self._pipeline.run()
        finally:
            self._pipeline.show_progress = False

    def refresh(self) -> None:
        """Request a sync cycle without waiting for it (no-op when read-only)."""
        self.setup(start_sync=False)
        if self._pipeline is None:
            logger.warning("Refresh ignored: no GitLab access token (read-only mode)")
            return
        if self._syncer is not None and self._syncer.is_running:
            self._syncer.trigger()
            return
        threading.Thread(target=self._run_detached, name="labdex-refresh", daemon=True).start()

    # ── Query & activation ────────────────────────────────────────

    def query(self, query: str, *, exact: bool = False,
              max_results: int | None = None) -> List[QueryEntry]:
        """Ranked entries for *query* (see :class:`~labdex.core.search.QueryEngine`)."""
        self._open_local()
        return self._engine.query(query, exact=exact, max_results=max_results)

    def activate(self, identifier: str, action: str = ACTION_OPEN, query: str = "") -> bool:
        """
        Perform *action* on the entry named by *identifier*.

        ``open`` and ``copy_url`` record the activation in the usage
        history under *query*.  Returns False when the entry's URL cannot
        be resolved or the helper command fails.

        Raises:
            ActivationError: If *action* is not one of :data:`ACTIONS`.
        """
        action = action or ACTION_OPEN
        if action not in ACTIONS:
            raise ActivationError(
                f"Unknown action '{action}'. Valid: {', '.join(ACTIONS)}"
            )

        if action == ACTION_ERASE_HISTORY:
            self._history.remove(identifier)
            return True
        if action == ACTION_REFRESH:
            self.refresh()
            return True

        url = self.resolve_url(identifier)
        if not url:
            logger.error(f"No URL found for '{identifier}'")
            return False

        if action == ACTION_OPEN:
            ok = self._launcher.open_url(url)
        else:
            ok = self._launcher.copy_url(url)

        if self._config.history:
            self._history.save(query, identifier)
        return ok

    def resolve_url(self, identifier: str) -> Optional[str]:
        """Web URL for ``project:<id>`` or ``mr:<id>``; None when unknown."""
        self._open_local()
        kind, _, raw_id = identifier.partition(":")
        if not raw_id:
            return None
        if kind == "project":
            return self._cache.get_project_web_url(raw_id)
        if kind == "mr":
            return self._cache.get_merge_request_web_url(raw_id)
        return None

    def state(self) -> Dict[str, List[str]]:
        """Provider-level actions available regardless of the selected entry."""
        return {"actions": [ACTION_REFRESH]}

    def doc(self) -> str:
        return DOC

    # ── Statistics & health ───────────────────────────────────────

    def stats(self) -> Dict[str, object]:
        """Cache row counts plus the last successful sync time."""
        self._open_local()
        return self._cache.get_stats()

    def health(self) -> Dict[str, object]:
        """
        Return a small status dict for agents or status endpoints.

        Never touches the network.
        """
        return {
            "version": __import__("labdex", fromlist=["__version__"]).__version__,
            "gitlab_url": self._config.gitlab_url,
            "read_only": self.read_only,
            "syncing": bool(self._syncer and self._syncer.is_running),
            "cache_path": str(self._config.get_cache_path()),
        }

    # ── Async variants ────────────────────────────────────────────
    # These use asyncio.to_thread() to run sync operations off the
    # event loop. They raise the same exceptions as the sync methods.

    async def aquery(self, query: str, *, exact: bool = False,
                     max_results: int | None = None) -> List[QueryEntry]:
        """Async variant of :meth:`query`."""
        return await asyncio.to_thread(
            self.query, query, exact=exact, max_results=max_results,
        )

    async def async_sync(self) -> SyncResult:
        """Async variant of :meth:`sync`. Raises same exceptions as sync."""
        return await asyncio.to_thread(self.sync)

    async def aactivate(self, identifier: str, action: str = ACTION_OPEN,
                        query: str = "") -> bool:
        """Async variant of :meth:`activate`."""
        return await asyncio.to_thread(self.activate, identifier, action, query)

    # ── Internal helpers ──────────────────────────────────────────

    def _open_local(self) -> None:
        """Open the cache, load history, and build the query engine once."""
        with self._lock:
            if self._cache is not None:
                return
            self._cache = ForgeCache(
                self._config.get_cache_path(),
                filtered_limit=self._config.filtered_limit,
                browse_limit=self._config.browse_limit,
            )
            self._history.load()
            self._engine = QueryEngine(
                self._cache, self._history,
                use_history=self._config.history, matcher=self._matcher,
            )
            logger.debug(f"Opened cache {self._cache.db_path}")

    def _connect(self) -> None:
        """Build the remote client and sync pipeline when a credential exists."""
        if self._gitlab is None:
            token = self._config.resolve_token()
            if not token:
                logger.error("No access token found; serving cached data only")
                return
            self._gitlab = GitLabClient.from_config(self._config, token)
            self._owns_gitlab = True

        try:
            user = self._gitlab.get_current_user()
            self._user_id = user.id
            logger.info(f"Authenticated to {self._config.gitlab_url} as {user.username}")
        except ForgeError as e:
            logger.error(f"Failed to get current user: {e}")

        self._pipeline = SyncPipeline(
            self._cache, self._gitlab, config=self._config, user_id=self._user_id,
        )

    def _run_detached(self) -> None:
        try:
            self._pipeline.run()
        except Exception as e:
            logger.error(f"Refresh failed: {e}", exc_info=True)
