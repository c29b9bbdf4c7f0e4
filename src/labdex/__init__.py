"""
Labdex — a local, fuzzy-searchable mirror of your GitLab projects and
merge requests.

The ``labdex`` package keeps a SQLite cache of the projects you belong to
and the open merge requests you are assigned to, authored, or reviewing,
and answers multi-word fuzzy queries against it in milliseconds.

Quick start (programmatic API)::

    from labdex import Labdex

    with Labdex() as dex:                       # reads env vars
        dex.sync()                              # fill the cache
        entries = dex.query("res infra!retry")  # drill into one project's MRs

Quick start (CLI)::

    labdex sync
    labdex query "res infra"

Configuration override::

    from labdex import Labdex, LabdexConfig

    config = LabdexConfig(gitlab_url="https://git.example.com", token="glpat-...")
    dex = Labdex(config=config)
"""

__version__ = "1.0.0"

# Primary public API: the Labdex facade
from labdex.client import Labdex

# Configuration
from labdex.core.config import LabdexConfig

# Core data types that callers interact with
from labdex.core.engine import MergeRequest, Project, QueryEntry, SyncResult

# Exception hierarchy
from labdex.exceptions import (
    ActivationError,
    ConfigError,
    DecodeError,
    ForgeAPIError,
    ForgeError,
    LabdexError,
    StoreError,
    TransportError,
)


def health(config: LabdexConfig | None = None) -> dict:
    """
    Return a small status dict for agents or health checks (no cache/network).

    When *config* is None, uses :meth:`LabdexConfig.from_env()` for the snapshot.
    """
    cfg = config or LabdexConfig.from_env()
    return {
        "version": __version__,
        "gitlab_url": cfg.gitlab_url,
        "history": cfg.history,
    }


__all__ = [
    "__version__",
    # Facade
    "Labdex",
    # Config
    "LabdexConfig",
    # Data types
    "Project",
    "MergeRequest",
    "QueryEntry",
    "SyncResult",
    # Exceptions
    "LabdexError",
    "ConfigError",
    "ForgeError",
    "TransportError",
    "ForgeAPIError",
    "DecodeError",
    "StoreError",
    "ActivationError",
    # Status
    "health",
]
