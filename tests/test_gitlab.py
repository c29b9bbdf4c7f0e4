"""
Tests for labdex.core.gitlab — pagination, error handling, and endpoint
parameters, driven through ``httpx.MockTransport``.
"""

import logging
import time

import httpx
import pytest

from labdex.core.gitlab import GitLabClient
from labdex.exceptions import DecodeError, ForgeAPIError, TransportError


def _project(pid: int) -> dict:
    return {
        "id": pid,
        "path_with_namespace": f"group/p{pid}",
        "name": f"p{pid}",
        "web_url": f"https://git.example.com/group/p{pid}",
        "namespace": {"full_path": "group"},
        "last_activity_at": "2024-01-01T00:00:00Z",
    }


def _mr(mid: int) -> dict:
    return {
        "id": mid,
        "iid": mid % 100,
        "title": f"MR {mid}",
        "web_url": f"https://git.example.com/group/p1/-/merge_requests/{mid % 100}",
        "references": {"full": f"group/p1!{mid % 100}"},
        "author": {"username": "alice"},
        "created_at": "2024-01-01T00:00:00Z",
    }


class Recorder:
    """Transport handler serving pre-baked pages and recording requests."""

    def __init__(self, pages, fail_on_page=None, fail_status=500):
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.fail_status = fail_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        page = int(request.url.params.get("page", "1"))
        if page == self.fail_on_page:
            return httpx.Response(self.fail_status, json={"message": "boom"})
        headers = {}
        if page < len(self.pages):
            headers["X-Next-Page"] = str(page + 1)
        body = self.pages[page - 1] if page <= len(self.pages) else []
        return httpx.Response(200, json=body, headers=headers)


def _client(handler) -> GitLabClient:
    return GitLabClient("https://git.example.com/", "secret", transport=httpx.MockTransport(handler))


class DrippingStream(httpx.SyncByteStream):
    """Response body that arrives one slow chunk at a time."""

    def __init__(self, chunks, delay):
        self.chunks = chunks
        self.delay = delay

    def __iter__(self):
        for chunk in self.chunks:
            time.sleep(self.delay)
            yield chunk


# =============================================================================
# Pagination
# =============================================================================

class TestPagination:

    def test_follows_next_page_header(self):
        handler = Recorder([[_project(1), _project(2)], [_project(3)]])
        with _client(handler) as gitlab:
            result = gitlab.fetch_projects()
        assert [p.id for p in result.items] == [1, 2, 3]
        assert result.complete
        assert len(handler.requests) == 2

    def test_sends_token_and_paging_params(self):
        handler = Recorder([[_project(1)]])
        with _client(handler) as gitlab:
            gitlab.fetch_projects(membership_only=True)
        request = handler.requests[0]
        assert request.headers["PRIVATE-TOKEN"] == "secret"
        assert request.url.path == "/api/v4/projects"
        assert request.url.params["per_page"] == "100"
        assert request.url.params["page"] == "1"
        assert request.url.params["order_by"] == "last_activity_at"
        assert request.url.params["membership"] == "true"

    def test_membership_param_omitted_when_disabled(self):
        handler = Recorder([[_project(1)]])
        with _client(handler) as gitlab:
            gitlab.fetch_projects(membership_only=False)
        assert "membership" not in handler.requests[0].url.params

    def test_max_count_truncates_overshoot(self):
        handler = Recorder([[_project(i) for i in range(1, 4)], [_project(i) for i in range(4, 7)]])
        with _client(handler) as gitlab:
            result = gitlab.fetch_projects(max_count=4)
        assert [p.id for p in result.items] == [1, 2, 3, 4]
        assert result.complete
        assert len(handler.requests) == 2

    def test_stops_on_empty_page(self):
        handler = Recorder([[_project(1)], []])
        with _client(handler) as gitlab:
            result = gitlab.fetch_projects()
        assert len(result) == 1
        assert result.complete

    def test_error_keeps_partial_results(self):
        handler = Recorder([[_project(1)], [_project(2)], [_project(3)]], fail_on_page=2)
        with _client(handler) as gitlab:
            result = gitlab.fetch_projects()
        assert [p.id for p in result.items] == [1]
        assert not result.complete
        assert len(handler.requests) == 2

    def test_non_list_body_stops(self):
        def handler(request):
            return httpx.Response(200, json={"message": "not a list"})

        with _client(handler) as gitlab:
            result = gitlab.fetch_projects()
        assert result.items == []
        assert not result.complete

    def test_non_json_body_stops(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>", headers={"Content-Type": "text/html"})

        with _client(handler) as gitlab:
            result = gitlab.fetch_merge_requests({"scope": "all"})
        assert not result.complete

    def test_transport_error_stops(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with _client(handler) as gitlab:
            result = gitlab.fetch_assigned_merge_requests()
        assert result.items == []
        assert not result.complete

    def test_malformed_item_is_skipped(self):
        handler = Recorder([[_project(1), {"name": "no id"}]])
        with _client(handler) as gitlab:
            result = gitlab.fetch_projects()
        assert [p.id for p in result.items] == [1]
        assert not result.complete

    def test_debug_log_counts_fetched_pages(self, caplog):
        def handler(request):
            page = request.url.params["page"]
            if page == "1":
                return httpx.Response(200, json=[_project(1)], headers={"X-Next-Page": "7"})
            return httpx.Response(200, json=[_project(2)])

        caplog.set_level(logging.DEBUG, logger="labdex.core.gitlab")
        with _client(handler) as gitlab:
            result = gitlab.fetch_projects()
        assert len(result) == 2
        assert "2 items over 2 page(s)" in caplog.text

    def test_slow_body_exceeding_deadline_stops(self):
        def handler(request):
            return httpx.Response(200, stream=DrippingStream([b"[", b"]", b" ", b" "], 0.1))

        transport = httpx.MockTransport(handler)
        with GitLabClient("https://git.example.com", "secret", timeout=0.15,
                          transport=transport) as gitlab:
            result = gitlab.fetch_projects()
        assert result.items == []
        assert not result.complete


# =============================================================================
# Merge request endpoints
# =============================================================================

class TestMergeRequestEndpoints:

    @pytest.mark.parametrize("method, args, expected", [
        ("fetch_assigned_merge_requests", (), {"scope": "assigned_to_me"}),
        ("fetch_authored_merge_requests", (), {"scope": "created_by_me"}),
        ("fetch_reviewing_merge_requests", (42,), {"scope": "all", "reviewer_id": "42"}),
    ])
    def test_query_parameters(self, method, args, expected):
        handler = Recorder([[_mr(101)]])
        with _client(handler) as gitlab:
            result = getattr(gitlab, method)(*args)
        params = handler.requests[0].url.params
        assert handler.requests[0].url.path == "/api/v4/merge_requests"
        assert params["state"] == "opened"
        for key, value in expected.items():
            assert params[key] == value
        assert result.items[0].project_path == "group/p1"


# =============================================================================
# Current user
# =============================================================================

class TestCurrentUser:

    def test_returns_user(self):
        def handler(request):
            assert request.url.path == "/api/v4/user"
            return httpx.Response(200, json={"id": 7, "username": "alice"})

        with _client(handler) as gitlab:
            user = gitlab.get_current_user()
        assert (user.id, user.username) == (7, "alice")

    def test_http_error_raises(self):
        def handler(request):
            return httpx.Response(401, json={"message": "401 Unauthorized"})

        with _client(handler) as gitlab:
            with pytest.raises(ForgeAPIError) as excinfo:
                gitlab.get_current_user()
        assert excinfo.value.status_code == 401

    def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with _client(handler) as gitlab:
            with pytest.raises(TransportError):
                gitlab.get_current_user()

    def test_request_deadline_covers_whole_body(self):
        chunks = [b'{"id": 7,', b' "username"', b': "alice"', b"}"]

        def handler(request):
            return httpx.Response(200, stream=DrippingStream(chunks, 0.1))

        transport = httpx.MockTransport(handler)
        with GitLabClient("https://git.example.com", "secret", timeout=0.15,
                          transport=transport) as gitlab:
            with pytest.raises(TransportError, match="deadline"):
                gitlab.get_current_user()

    def test_bad_payload_raises(self):
        def handler(request):
            return httpx.Response(200, json=["not", "a", "user"])

        with _client(handler) as gitlab:
            with pytest.raises(DecodeError):
                gitlab.get_current_user()
