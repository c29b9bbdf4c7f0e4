"""
Tests for labdex.core.config — LabdexConfig defaults, environment loading,
validation, and credential resolution.
"""

from pathlib import Path

import pytest

from labdex.core.config import LabdexConfig
from labdex.exceptions import ConfigError


# =============================================================================
# Defaults & environment
# =============================================================================

class TestDefaults:

    def test_defaults(self):
        cfg = LabdexConfig()
        assert cfg.gitlab_url == "https://gitlab.com"
        assert cfg.pat_file == "~/.gitlab_pat"
        assert cfg.refresh_interval == 15
        assert cfg.max_projects == 1000
        assert cfg.membership_only is True
        assert cfg.history is True
        assert cfg.command == "xdg-open"
        assert cfg.min_score == 20
        assert cfg.icon == "gitlab"

    def test_cache_dir_follows_xdg(self, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
        cfg = LabdexConfig()
        assert cfg.get_cache_path() == tmp_path / "labdex" / "gitlab.db"
        assert cfg.get_history_path() == tmp_path / "labdex" / "history.json"

    def test_explicit_base_dir(self, tmp_path):
        cfg = LabdexConfig(cache_dir="/ignored")
        assert cfg.get_cache_path(tmp_path) == tmp_path / "gitlab.db"


class TestFromEnv:

    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LABDEX_GITLAB_URL", "https://git.example.com/")
        monkeypatch.setenv("LABDEX_REFRESH_INTERVAL", "5")
        monkeypatch.setenv("LABDEX_MAX_PROJECTS", "50")
        monkeypatch.setenv("LABDEX_MEMBERSHIP_ONLY", "false")
        monkeypatch.setenv("LABDEX_HISTORY", "0")
        monkeypatch.setenv("LABDEX_CACHE_DIR", str(tmp_path))
        monkeypatch.setenv("LABDEX_LOG_LEVEL", "debug")
        cfg = LabdexConfig.from_env()
        assert cfg.gitlab_url == "https://git.example.com"
        assert cfg.refresh_interval == 5
        assert cfg.max_projects == 50
        assert cfg.membership_only is False
        assert cfg.history is False
        assert cfg.cache_dir == str(tmp_path)
        assert cfg.log_level == "DEBUG"

    def test_blank_booleans_keep_defaults(self, monkeypatch):
        monkeypatch.setenv("LABDEX_MEMBERSHIP_ONLY", "  ")
        assert LabdexConfig.from_env().membership_only is True

    def test_instances_are_independent(self):
        a = LabdexConfig(max_projects=1)
        b = LabdexConfig()
        assert a.max_projects != b.max_projects


# =============================================================================
# Validation
# =============================================================================

class TestValidate:

    def test_valid_config(self):
        assert LabdexConfig().validate() is True

    @pytest.mark.parametrize("kwargs", [
        {"gitlab_url": "gitlab.com"},
        {"refresh_interval": 0},
        {"max_projects": -1},
        {"request_timeout": 0},
    ])
    def test_invalid_settings_raise(self, kwargs):
        with pytest.raises(ConfigError):
            LabdexConfig(**kwargs).validate()

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            LabdexConfig(gitlab_url="ftp://x").validate()


# =============================================================================
# Credential resolution
# =============================================================================

class TestResolveToken:

    def test_explicit_token_wins(self, tmp_path):
        pat = tmp_path / "pat"
        pat.write_text("from-file")
        cfg = LabdexConfig(token=" glpat-abc ", pat_file=str(pat))
        assert cfg.resolve_token() == "glpat-abc"

    def test_reads_and_strips_pat_file(self, tmp_path):
        pat = tmp_path / "pat"
        pat.write_text("glpat-xyz\n")
        assert LabdexConfig(pat_file=str(pat)).resolve_token() == "glpat-xyz"

    def test_home_is_expanded(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / ".gitlab_pat").write_text("glpat-home")
        assert LabdexConfig().resolve_token() == "glpat-home"

    def test_missing_file_means_no_credential(self, tmp_path):
        cfg = LabdexConfig(pat_file=str(tmp_path / "absent"))
        assert cfg.resolve_token() == ""
