"""
Labdex MCP Server

Exposes the Labdex GitLab cache as tools that AI agents can invoke
natively via the Model Context Protocol: search, activation, on-demand
refresh, and cache statistics.  The usage documentation is published as
a resource.

Start with::

    labdex mcp                  # stdio transport (default)
    labdex mcp --transport sse  # SSE transport

Or programmatically::

    from labdex.mcp.server import create_server
    server = create_server()
    server.run()
"""

from __future__ import annotations

import json
import logging
from typing import Annotated

# FastMCP uses pydantic for validation, so Field is available whenever
# the mcp extra is installed.
from pydantic import Field  # type: ignore[import-untyped]

from labdex.client import ACTIONS, Labdex
from labdex.core.config import LabdexConfig

logger = logging.getLogger(__name__)


def create_server(config: LabdexConfig | None = None, service: Labdex | None = None,
                  start_sync: bool = True):
    """
    Build and return a configured FastMCP server instance.

    One :class:`~labdex.client.Labdex` service backs every tool call.  Its
    background syncer starts here when a credential resolves.

    Args:
        config: Defaults to ``LabdexConfig.from_env()`` so that the server
            respects the same environment variables as the CLI.
        service: Pre-built service (tests inject one with fakes).
        start_sync: Start periodic background syncing.

    Raises ``ImportError`` if ``fastmcp`` is not installed (install
    via ``pip install 'labdex[mcp]'``).
    """
    from fastmcp import FastMCP  # type: ignore[import-untyped]

    if config is not None:
        cfg = config
    elif service is not None:
        cfg = service.config
    else:
        cfg = LabdexConfig.from_env()
    dex = service if service is not None else Labdex(config=cfg)
    dex.setup(start_sync=start_sync)

    mcp = FastMCP("Labdex")

    # ==================================================================
    # Tool: search_forge
    # ==================================================================

    @mcp.tool()
    def search_forge(
        query: Annotated[
            str,
            Field(default="", description="Space-separated fuzzy words matched against project paths/names and merge-request titles, e.g. 'res infra'. Add '!' to drill into the best matching project's merge requests: 'res infra!' lists them, 'res infra!retry' filters by title/branch, 'res infra!620' by MR number. Empty lists recently active projects.")
        ] = "",
        exact: Annotated[
            bool,
            Field(default=False, description="Require each word to appear as a contiguous substring instead of a fuzzy subsequence.")
        ] = False,
        max_results: Annotated[
            int | None,
            Field(default=None, description="Maximum number of entries to return. None returns everything above the configured minimum score.")
        ] = None,
    ) -> str:
        """Search the local mirror of GitLab projects and open merge requests.

        Entries come back ranked by fuzzy score plus a usage boost for
        entries activated before with a similar query.

        Returns:
            JSON array of entries with identifier (``project:<id>`` or
            ``mr:<id>``), text, subtext, score, and match positions.
        """
        try:
            query = str(query) if query is not None else ""
            entries = dex.query(query, exact=exact)
            if query:
                entries = [e for e in entries if e.score >= cfg.min_score]
            if max_results is not None:
                entries = entries[:max_results]
            return json.dumps([e.to_dict() for e in entries], ensure_ascii=False)
        except Exception as e:
            return json.dumps({"error": str(e), "results": []})

    # ==================================================================
    # Tool: activate_entry
    # ==================================================================

    @mcp.tool()
    def activate_entry(
        identifier: Annotated[
            str,
            Field(description="Entry identifier returned by search_forge, e.g. 'project:42' or 'mr:1007'.")
        ],
        action: Annotated[
            str,
            Field(default="open", description=f"One of: {', '.join(ACTIONS)}. 'open' launches the browser, 'copy_url' copies the URL, 'erase_history' forgets past activations.")
        ] = "open",
        query: Annotated[
            str,
            Field(default="", description="The query the entry was found with; recorded in usage history.")
        ] = "",
    ) -> str:
        """Act on a search result (open it, copy its URL, or erase its history).

        Returns:
            JSON with ``ok`` and, for open/copy_url, the resolved ``url``.
        """
        try:
            ok = dex.activate(identifier, action=action, query=query)
            payload = {"ok": ok, "identifier": identifier, "action": action}
            if action in ("open", "copy_url"):
                payload["url"] = dex.resolve_url(identifier)
            return json.dumps(payload)
        except Exception as e:
            return json.dumps({"error": str(e)})

    # ==================================================================
    # Tool: refresh_cache
    # ==================================================================

    @mcp.tool()
    def refresh_cache() -> str:
        """Request a background sync from GitLab without waiting for it.

        Returns:
            JSON with ``requested`` (False in read-only mode).
        """
        try:
            dex.refresh()
            return json.dumps({"requested": not dex.read_only})
        except Exception as e:
            return json.dumps({"error": str(e)})

    # ==================================================================
    # Tool: get_cache_stats
    # ==================================================================

    @mcp.tool()
    def get_cache_stats() -> str:
        """Return row counts of the local cache and the last sync time.

        **Use this first** to check the mirror is populated.

        Returns:
            JSON with projects, merge_requests, per-role counts, last_sync_at.
        """
        try:
            return json.dumps(dex.stats())
        except Exception as e:
            return json.dumps({"error": str(e)})

    # ==================================================================
    # Tool: health (readiness check)
    # ==================================================================

    @mcp.tool()
    def health() -> str:
        """Check that the Labdex MCP server is running and responsive.

        Returns:
            JSON with status, version, forge URL, and sync state.
        """
        status = {"status": "ok"}
        status.update(dex.health())
        status["provider_actions"] = dex.state()["actions"]
        return json.dumps(status)

    # ==================================================================
    # Resource: documentation
    # ==================================================================

    @mcp.resource("labdex://doc")
    def documentation() -> str:
        """Return the Labdex usage documentation (query syntax, actions, settings)."""
        return dex.doc()

    # ==================================================================
    # Prompt templates
    # ==================================================================

    @mcp.prompt()
    def review_queue() -> str:
        """Pre-built prompt: summarize merge requests waiting for the user."""
        return (
            "Call search_forge with an empty query to see recently active "
            "projects, then for each project that looks relevant call "
            "search_forge with '<project words>!' to list its open merge "
            "requests. Summarize the ones whose subtext ends in 'reviewing' "
            "or 'assigned', oldest first."
        )

    return mcp
