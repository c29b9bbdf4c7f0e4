"""
Shared fixtures for the Labdex test suite.
"""

import sys
import warnings
from pathlib import Path
from typing import List, Optional

import pytest

# Filter deprecation warnings from pytest-asyncio; we cannot fix the library.
warnings.filterwarnings(
    "ignore",
    category=DeprecationWarning,
    module="pytest_asyncio",
)

# Ensure the src/ directory is on the import path so that
# labdex.core.config / labdex.core.engine / etc. can be imported.
SRC_ROOT = Path(__file__).resolve().parent.parent / "src"
sys.path.insert(0, str(SRC_ROOT))

from labdex.core.config import LabdexConfig  # noqa: E402
from labdex.core.engine import (  # noqa: E402
    FetchResult, ForgeCache, GitLabUser, MergeRequest, Project,
)


# =============================================================================
# Reference data: eight projects, six merge requests
# =============================================================================

PROJECT_ROWS = [
    (1, "researchable/infrastructure", "infrastructure"),
    (2, "researchable/sport-data-valley/sdv/sdv-infrastructure", "sdv-infrastructure"),
    (3, "researchable/general/researchable-infrastructure", "researchable-infrastructure"),
    (4, "researchable/general/development-infrastructure", "development-infrastructure"),
    (5, "researchable/projects/alpha/infrastructure", "infrastructure"),
    (6, "researchable/projects/beta/infrastructure", "infrastructure"),
    (7, "researchable/general/infrastructure/heroku-vsv-infrastructure", "heroku-vsv-infrastructure"),
    (8, "legalcorp/legalcorp-app", "legalcorp-app"),
]

_PATHS = {pid: path for pid, path, _ in PROJECT_ROWS}

MR_ROWS = [
    (100, 620, "fix: bump retry timeout for background jobs", 3, "fix/retry-timeout"),
    (101, 621, "fix: correct permission flags on shared volumes", 3, "fix/volume-perms"),
    (102, 17, "chore: update helm chart values", 5, "chore/helm"),
    (103, 27, "feat: add integration test suite", 6, "feat/integration-tests"),
    (104, 38, "feat: enable daily snapshots", 6, "feat/snapshots"),
    (105, 3, "chore: pin base image version", 7, "chore/pin-image"),
]


def make_project(pid: int, path: str, name: str) -> Project:
    return Project(
        id=pid,
        path_with_namespace=path,
        name=name,
        web_url=f"https://git.example.com/{path}",
        namespace=path.rsplit("/", 1)[0],
        last_activity_at=1000 + pid,
    )


def make_merge_request(mid: int, iid: int, title: str, project_path: str,
                       branch: str = "feature", role: str = "authored") -> MergeRequest:
    return MergeRequest(
        id=mid,
        iid=iid,
        title=title,
        web_url=f"https://git.example.com/{project_path}/-/merge_requests/{iid}",
        source_branch=branch,
        target_branch="main",
        project_path=project_path,
        author="alice",
        role=role,
        created_at=1000 + mid,
    )


def reference_projects() -> List[Project]:
    return [make_project(*row) for row in PROJECT_ROWS]


def reference_merge_requests() -> List[MergeRequest]:
    return [
        make_merge_request(mid, iid, title, _PATHS[pid], branch)
        for mid, iid, title, pid, branch in MR_ROWS
    ]


# =============================================================================
# Test doubles
# =============================================================================

class FakeGitLab:
    """In-memory stand-in for :class:`~labdex.core.gitlab.GitLabClient`."""

    base_url = "https://git.example.com"

    def __init__(self, projects=None, assigned=None, authored=None, reviewing=None,
                 user: Optional[GitLabUser] = None):
        self.projects = FetchResult(list(projects or []))
        self.assigned = FetchResult(list(assigned or []))
        self.authored = FetchResult(list(authored or []))
        self.reviewing = FetchResult(list(reviewing or []))
        self.user = user or GitLabUser(id=7, username="alice")
        self.calls: List[str] = []
        self.closed = False

    def get_current_user(self) -> GitLabUser:
        self.calls.append("user")
        return self.user

    def fetch_projects(self, max_count: int = 1000, membership_only: bool = True) -> FetchResult:
        self.calls.append("projects")
        return FetchResult(self.projects.items[:max_count], self.projects.complete)

    def fetch_assigned_merge_requests(self) -> FetchResult:
        self.calls.append("assigned")
        return self.assigned

    def fetch_authored_merge_requests(self) -> FetchResult:
        self.calls.append("authored")
        return self.authored

    def fetch_reviewing_merge_requests(self, user_id: int) -> FetchResult:
        self.calls.append(f"reviewing:{user_id}")
        return self.reviewing

    def close(self) -> None:
        self.closed = True


class FakeLauncher:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.opened: List[str] = []
        self.copied: List[str] = []

    def open_url(self, url: str) -> bool:
        self.opened.append(url)
        return self.ok

    def copy_url(self, url: str) -> bool:
        self.copied.append(url)
        return self.ok


class FixedHistory:
    """History store returning preset usage scores per identifier."""

    def __init__(self, scores=None):
        self.scores = dict(scores or {})
        self.saved: List[tuple] = []
        self.removed: List[str] = []

    def load(self) -> None:
        pass

    def save(self, query: str, identifier: str) -> None:
        self.saved.append((query, identifier))

    def calc_usage_score(self, query: str, identifier: str) -> int:
        return self.scores.get(identifier, 0)

    def remove(self, identifier: str) -> None:
        self.removed.append(identifier)
        self.scores.pop(identifier, None)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config(tmp_path: Path) -> LabdexConfig:
    """Config rooted in a temp cache dir with a static token."""
    return LabdexConfig(
        gitlab_url="https://git.example.com",
        token="test-token",
        cache_dir=str(tmp_path / "cache"),
    )


@pytest.fixture
def cache(tmp_path: Path):
    store = ForgeCache(tmp_path / "gitlab.db")
    yield store
    store.close()


@pytest.fixture
def reference_cache(cache: ForgeCache) -> ForgeCache:
    """Cache holding the reference projects and merge requests."""
    cache.upsert_projects(reference_projects())
    cache.upsert_merge_requests(reference_merge_requests(), "authored")
    return cache


@pytest.fixture
def fake_gitlab() -> FakeGitLab:
    return FakeGitLab(
        projects=reference_projects(),
        authored=reference_merge_requests(),
    )
