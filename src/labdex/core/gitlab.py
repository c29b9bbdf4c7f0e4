"""
Labdex GitLab Client

Thin synchronous wrapper around the GitLab REST API (v4) built on httpx.
Every request carries the ``PRIVATE-TOKEN`` header and a fixed timeout.
List endpoints are walked page by page following ``X-Next-Page``; a
failed page ends the walk and whatever was gathered so far is returned.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from labdex.core.config import LabdexConfig
from labdex.core.engine import FetchResult, GitLabUser, MergeRequest, Project
from labdex.exceptions import DecodeError, ForgeAPIError, ForgeError, TransportError

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v4"


class GitLabClient:
    """
    Read-only GitLab API client.

    Example::

        with GitLabClient("https://gitlab.com", token) as gitlab:
            user = gitlab.get_current_user()
            projects = gitlab.fetch_projects(max_count=500)
    """

    def __init__(self, base_url: str, token: str, timeout: float = 30.0,
                 per_page: int = 100, transport: httpx.BaseTransport | None = None):
        """
        Args:
            base_url: Forge root URL, e.g. ``https://gitlab.com``.
            token: Personal access token sent as ``PRIVATE-TOKEN``.
            timeout: Per-request deadline in seconds.
            per_page: Page size requested from list endpoints.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        """
        self.base_url = base_url.rstrip("/")
        self.per_page = per_page
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"PRIVATE-TOKEN": token},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: LabdexConfig, token: str,
                    transport: httpx.BaseTransport | None = None) -> "GitLabClient":
        return cls(
            config.gitlab_url, token,
            timeout=config.request_timeout,
            per_page=config.per_page,
            transport=transport,
        )

    # ── Lifecycle ─────────────────────────────────────────────────

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GitLabClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Low-level requests ────────────────────────────────────────

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Tuple[Any, httpx.Headers]:
        """
        Issue one GET and decode its JSON body.

        httpx applies ``timeout`` to each connect/read/write phase; the
        body is streamed so that the whole request also has to finish
        within ``timeout`` seconds.  Every failure is mapped onto the
        :class:`ForgeError` family.
        """
        deadline = time.monotonic() + self.timeout
        try:
            with self._client.stream("GET", API_PREFIX + path, params=params) as response:
                if not response.is_success:
                    raise ForgeAPIError(
                        f"GET {path} returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                body = bytearray()
                for chunk in response.iter_bytes():
                    body.extend(chunk)
                    if time.monotonic() > deadline:
                        raise TransportError(
                            f"GET {path} exceeded the {self.timeout:g}s request deadline"
                        )
                headers = response.headers
        except httpx.TimeoutException as e:
            raise TransportError(f"GET {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"GET {path} failed: {e}") from e

        try:
            return json.loads(bytes(body)), headers
        except ValueError as e:
            raise DecodeError(f"GET {path} returned a non-JSON body: {e}") from e

    def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> FetchResult:
        """
        Collect raw items from a paginated list endpoint.

        Stops at the last page (no ``X-Next-Page``), on an empty page, once
        *limit* items have been gathered, or on the first failure.  A
        failure is logged and marks the result incomplete; it is never
        raised.
        """
        items: List[Dict[str, Any]] = []
        page = 1
        pages = 0
        while True:
            query = dict(params or {})
            query.update({"per_page": self.per_page, "page": page})
            try:
                batch, headers = self._get(path, query)
                if not isinstance(batch, list):
                    raise DecodeError(
                        f"GET {path} page {page}: expected a JSON array, got {type(batch).__name__}"
                    )
            except ForgeError as e:
                logger.error(f"Pagination of {path} stopped at page {page}: {e}")
                return FetchResult(items=items, complete=False)

            pages += 1
            if not batch:
                break
            items.extend(batch)

            if limit is not None and len(items) >= limit:
                del items[limit:]
                break

            next_page = headers.get("X-Next-Page", "").strip()
            if not next_page:
                break
            try:
                page = int(next_page)
            except ValueError:
                logger.error(f"Pagination of {path} stopped: bad X-Next-Page {next_page!r}")
                return FetchResult(items=items, complete=False)

        logger.debug(f"GET {path}: {len(items)} items over {pages} page(s)")
        return FetchResult(items=items, complete=True)

    @staticmethod
    def _decode(result: FetchResult, factory, kind: str) -> FetchResult:
        """Turn raw dicts into dataclasses; undecodable items are logged and dropped."""
        decoded = []
        complete = result.complete
        for raw in result.items:
            try:
                decoded.append(factory(raw))
            except DecodeError as e:
                logger.warning(f"Skipping malformed {kind}: {e}")
                complete = False
        return FetchResult(items=decoded, complete=complete)

    # ── Endpoints ─────────────────────────────────────────────────

    def get_current_user(self) -> GitLabUser:
        """Return the account the token belongs to. Raises :class:`ForgeError`."""
        payload, _ = self._get("/user")
        if not isinstance(payload, dict) or "id" not in payload:
            raise DecodeError("GET /user: response has no 'id'")
        try:
            return GitLabUser(id=int(payload["id"]), username=payload.get("username") or "")
        except (TypeError, ValueError) as e:
            raise DecodeError(f"GET /user: bad id {payload['id']!r}") from e

    def fetch_projects(self, max_count: int = 1000, membership_only: bool = True) -> FetchResult:
        """Projects ordered by most recent activity, capped at *max_count*."""
        params: Dict[str, Any] = {"order_by": "last_activity_at"}
        if membership_only:
            params["membership"] = "true"
        raw = self._paginate("/projects", params, limit=max_count)
        return self._decode(raw, Project.from_api, "project")

    def fetch_merge_requests(self, params: Dict[str, Any]) -> FetchResult:
        """All open merge requests matching *params* (every page)."""
        query = dict(params)
        query["state"] = "opened"
        raw = self._paginate("/merge_requests", query)
        return self._decode(raw, MergeRequest.from_api, "merge request")

    def fetch_assigned_merge_requests(self) -> FetchResult:
        return self.fetch_merge_requests({"scope": "assigned_to_me"})

    def fetch_authored_merge_requests(self) -> FetchResult:
        return self.fetch_merge_requests({"scope": "created_by_me"})

    def fetch_reviewing_merge_requests(self, user_id: int) -> FetchResult:
        return self.fetch_merge_requests({"reviewer_id": user_id, "scope": "all"})
