"""
Labdex Sync Pipeline

Refreshes the local cache from GitLab in one ordered cycle:

  1. projects (reconciled against the cache when the listing is complete)
  2. clear merge requests
  3. merge requests assigned to the account
  4. merge requests authored by the account
  5. merge requests the account is reviewing (when the account id is known)

Each step logs and counts its own failure; a cycle never aborts early.
Only one cycle runs at a time: overlapping calls coalesce into a single
follow-up cycle run by whoever is already syncing.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from tqdm import tqdm

from labdex.core.config import LabdexConfig
from labdex.core.engine import (
    ROLE_ASSIGNED, ROLE_AUTHORED, ROLE_REVIEWING,
    FetchResult, ForgeCache, SyncResult,
)
from labdex.core.gitlab import GitLabClient
from labdex.exceptions import LabdexError

logger = logging.getLogger(__name__)


# =============================================================================
# Sync Pipeline
# =============================================================================

class SyncPipeline:
    """
    Orchestrates a cache refresh from the forge.

    The cache's own lock serializes individual statements; this class adds
    the cycle-level guard so two cycles never interleave their writes.
    """

    def __init__(self, cache: ForgeCache, gitlab: GitLabClient,
                 config: LabdexConfig | None = None, user_id: Optional[int] = None,
                 show_progress: bool = False):
        """
        Args:
            cache: Destination store.
            gitlab: Remote client.
            config: Sync settings (``max_projects``, ``membership_only``,
                    ``prune_projects``). Defaults to ``LabdexConfig()``.
            user_id: Account id used for the reviewer step; ``None`` skips it.
            show_progress: Draw a tqdm bar over the steps (CLI use).
        """
        self.cache = cache
        self.gitlab = gitlab
        self.config = config or LabdexConfig()
        self.user_id = user_id
        self.show_progress = show_progress

        self._guard = threading.Lock()
        self._running = False
        self._pending = False

    # ── Single-flight entry point ─────────────────────────────────

    def run(self) -> SyncResult:
        """
        Run one sync cycle.

        If a cycle is already in flight, flag a re-run and return at once
        with ``skipped=True``; the in-flight caller performs exactly one
        more cycle after its current one and returns that cycle's result.
        """
        with self._guard:
            if self._running:
                self._pending = True
                logger.debug("Sync already in progress; queued one re-run")
                return SyncResult(skipped=True)
            self._running = True

        try:
            while True:
                result = self._run_cycle()
                with self._guard:
                    if not self._pending:
                        self._running = False
                        return result
                    self._pending = False
                logger.info("Running queued sync cycle")
        except BaseException:
            with self._guard:
                self._running = False
                self._pending = False
            raise

    @property
    def is_running(self) -> bool:
        with self._guard:
            return self._running

    # ── One cycle ─────────────────────────────────────────────────

    def _run_cycle(self) -> SyncResult:
        result = SyncResult()
        t0 = time.time()
        steps = 5 if self.user_id is not None else 4

        logger.info("─" * 60)
        logger.info("  LABDEX — Sync")
        logger.info(f"  Forge: {self.gitlab.base_url}")
        logger.info(f"  Cache: {self.cache.db_path}")
        logger.info("─" * 60)

        with tqdm(total=steps, desc="Syncing", unit="step",
                  disable=not self.show_progress) as pbar:
            # ── Step 1: Projects ─────────────────────────────────
            logger.info(f"[1/{steps}] Fetching projects...")
            self._sync_projects(result)
            pbar.update(1)

            # ── Step 2: Clear merge requests ─────────────────────
            logger.info(f"[2/{steps}] Clearing cached merge requests...")
            try:
                self.cache.clear_merge_requests()
            except LabdexError as e:
                logger.error(f"Failed to clear merge requests: {e}")
                result.errors += 1
            pbar.update(1)

            # ── Steps 3-5: Merge requests per role ───────────────
            logger.info(f"[3/{steps}] Fetching assigned merge requests...")
            result.assigned = self._sync_role(
                ROLE_ASSIGNED, self.gitlab.fetch_assigned_merge_requests, result,
            )
            pbar.update(1)

            logger.info(f"[4/{steps}] Fetching authored merge requests...")
            result.authored = self._sync_role(
                ROLE_AUTHORED, self.gitlab.fetch_authored_merge_requests, result,
            )
            pbar.update(1)

            if self.user_id is not None:
                user_id = self.user_id
                logger.info(f"[5/{steps}] Fetching merge requests under review...")
                result.reviewing = self._sync_role(
                    ROLE_REVIEWING,
                    lambda: self.gitlab.fetch_reviewing_merge_requests(user_id),
                    result,
                )
                pbar.update(1)
            else:
                logger.info("  Account id unknown; skipping reviewer merge requests")

        result.elapsed_seconds = round(time.time() - t0, 3)
        try:
            self.cache.set_meta("last_sync_at", datetime.now(timezone.utc).isoformat())
        except LabdexError as e:
            logger.error(f"Failed to record sync time: {e}")
            result.errors += 1

        logger.info(
            f"Sync finished in {result.elapsed_seconds:.2f}s: "
            f"{result.projects_fetched} projects ({result.projects_pruned} pruned), "
            f"{result.assigned} assigned / {result.authored} authored / "
            f"{result.reviewing} reviewing MRs, {result.errors} error(s)"
        )
        return result

    def _sync_projects(self, result: SyncResult) -> None:
        try:
            fetched = self.gitlab.fetch_projects(
                max_count=self.config.max_projects,
                membership_only=self.config.membership_only,
            )
        except LabdexError as e:
            logger.error(f"Failed to fetch projects: {e}")
            result.errors += 1
            return

        if not fetched.complete:
            result.errors += 1
        result.projects_fetched = len(fetched)
        logger.info(f"  Fetched {len(fetched):,} projects")
        if not fetched.items:
            return

        try:
            if self.config.prune_projects and fetched.complete:
                result.projects_pruned = self.cache.replace_projects(fetched.items)
                if result.projects_pruned:
                    logger.info(f"  Pruned {result.projects_pruned:,} projects no longer listed")
            else:
                self.cache.upsert_projects(fetched.items)
        except LabdexError as e:
            logger.error(f"Failed to store projects: {e}")
            result.errors += 1

    def _sync_role(self, role: str, fetch: Callable[[], FetchResult],
                   result: SyncResult) -> int:
        """Fetch and store one role's merge requests; return how many were fetched."""
        try:
            fetched = fetch()
        except LabdexError as e:
            logger.error(f"Failed to fetch {role} merge requests: {e}")
            result.errors += 1
            return 0

        if not fetched.complete:
            result.errors += 1
        logger.info(f"  Fetched {len(fetched):,} {role} merge requests")
        if not fetched.items:
            return 0

        try:
            self.cache.upsert_merge_requests(fetched.items, role)
        except LabdexError as e:
            logger.error(f"Failed to store {role} merge requests: {e}")
            result.errors += 1
        return len(fetched)
