"""
Labdex Configuration Module

Centralized configuration for the Labdex cache, sync, and search system.
Every setting lives on a :class:`LabdexConfig` instance that is passed
through the call stack, so a process can host several independent
services (or tests) without touching global state.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _default_cache_dir() -> str:
    base = os.getenv("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return str(Path(base) / "labdex")


def expand_path(path: str) -> Path:
    """Expand a leading ``~/`` to the user's home directory."""
    return Path(path).expanduser()


@dataclass
class LabdexConfig:
    """
    Instance-based configuration for Labdex.

    Create from environment variables::

        config = LabdexConfig.from_env()

    Or with explicit values::

        config = LabdexConfig(gitlab_url="https://git.example.com", token="glpat-...")
    """

    # ── Forge ─────────────────────────────────────────────────────
    gitlab_url: str = "https://gitlab.com"
    token: Optional[str] = None
    """Static access token. When unset, :attr:`pat_file` is read instead."""
    pat_file: str = "~/.gitlab_pat"
    request_timeout: float = 30.0
    per_page: int = 100

    # ── Sync ──────────────────────────────────────────────────────
    refresh_interval: int = 15  # minutes between background refreshes
    max_projects: int = 1000
    membership_only: bool = True
    prune_projects: bool = True
    """Delete cached projects missing from a complete project listing."""

    # ── Local cache ───────────────────────────────────────────────
    cache_dir: str = ""
    cache_db_name: str = "gitlab.db"
    history_file_name: str = "history.json"

    # ── Search ────────────────────────────────────────────────────
    filtered_limit: int = 200
    browse_limit: int = 50
    history: bool = True
    min_score: int = 20  # display hint for hosts; the engine itself never filters

    # ── Actions ───────────────────────────────────────────────────
    command: str = "xdg-open"
    copy_command: str = "wl-copy"
    icon: str = "gitlab"

    # ── Logging ───────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __post_init__(self):
        if not self.cache_dir:
            self.cache_dir = _default_cache_dir()

    # ── Factory ───────────────────────────────────────────────────

    @classmethod
    def from_env(cls) -> "LabdexConfig":
        """Build a config snapshot from current environment variables."""
        return cls(
            gitlab_url=os.getenv("LABDEX_GITLAB_URL", "https://gitlab.com").rstrip("/"),
            token=os.getenv("LABDEX_GITLAB_TOKEN") or None,
            pat_file=os.getenv("LABDEX_PAT_FILE", "~/.gitlab_pat"),
            request_timeout=float(os.getenv("LABDEX_REQUEST_TIMEOUT", "30")),
            refresh_interval=int(os.getenv("LABDEX_REFRESH_INTERVAL", "15")),
            max_projects=int(os.getenv("LABDEX_MAX_PROJECTS", "1000")),
            membership_only=_env_bool("LABDEX_MEMBERSHIP_ONLY", True),
            prune_projects=_env_bool("LABDEX_PRUNE_PROJECTS", True),
            cache_dir=os.getenv("LABDEX_CACHE_DIR", ""),
            history=_env_bool("LABDEX_HISTORY", True),
            min_score=int(os.getenv("LABDEX_MIN_SCORE", "20")),
            command=os.getenv("LABDEX_OPEN_COMMAND", "xdg-open"),
            copy_command=os.getenv("LABDEX_COPY_COMMAND", "wl-copy"),
            log_level=os.getenv("LABDEX_LOG_LEVEL", "INFO").upper(),
        )

    # ── Validation & Accessors ────────────────────────────────────

    def validate(self) -> bool:
        """
        Check the settings that would otherwise fail deep inside a sync.

        Raises :class:`~labdex.exceptions.ConfigError` on failure.
        """
        from labdex.exceptions import ConfigError

        if not self.gitlab_url.startswith(("http://", "https://")):
            raise ConfigError(
                f"Invalid GitLab URL '{self.gitlab_url}' (must start with http:// or https://).\n"
                "  Set via: export LABDEX_GITLAB_URL=https://gitlab.com"
            )
        if self.refresh_interval <= 0:
            raise ConfigError(f"refresh_interval must be positive, got {self.refresh_interval}")
        if self.max_projects <= 0:
            raise ConfigError(f"max_projects must be positive, got {self.max_projects}")
        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be positive, got {self.request_timeout}")
        return True

    def resolve_token(self) -> str:
        """
        Return the access token, or ``""`` when none is available.

        An explicit :attr:`token` wins; otherwise the first line of
        :attr:`pat_file` is used.  A missing or unreadable file is logged
        and treated as "no credential" (read-only mode).
        """
        if self.token:
            return self.token.strip()

        path = expand_path(self.pat_file)
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.error(f"Could not read access token from {path}: {e}")
            return ""

    def get_cache_path(self, base_dir: Path | None = None) -> Path:
        """Get the path to the cache database."""
        return (base_dir or Path(self.cache_dir)) / self.cache_db_name

    def get_history_path(self, base_dir: Path | None = None) -> Path:
        """Get the path to the usage-history file."""
        return (base_dir or Path(self.cache_dir)) / self.history_file_name
