"""Tests for the configuration module."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from ctlbridge.config import Config, get_config, load_config, reset_config
from ctlbridge.config.merge import deep_merge, merge_configs
from ctlbridge.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)


def write_yaml(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestDeepMerge:
    """Test the deep merge algorithm."""

    def test_simple_override(self) -> None:
        """Test that override values replace base values."""
        result = deep_merge({"a": 1, "b": 2}, {"b": 3, "c": 4})
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self) -> None:
        """Test that nested dicts are recursively merged."""
        base = {"drivers": {"default": "tmux", "tmux": {"binary": "tmux"}}}
        override = {"drivers": {"tmux": {"binary": "/opt/tmux"}}}
        result = deep_merge(base, override)
        assert result["drivers"]["default"] == "tmux"
        assert result["drivers"]["tmux"]["binary"] == "/opt/tmux"

    def test_none_does_not_override(self) -> None:
        """Test that None values in override don't replace base values."""
        assert deep_merge({"a": 1}, {"a": None}) == {"a": 1}

    def test_list_replaced_not_merged(self) -> None:
        """Test that lists are replaced, not concatenated."""
        assert deep_merge({"items": [1, 2, 3]}, {"items": [4]}) == {"items": [4]}

    def test_inputs_not_modified(self) -> None:
        """Test that merging returns a new dict."""
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}

    def test_merge_configs_multiple(self) -> None:
        """Test merging multiple configs in order."""
        result = merge_configs({"a": 1, "b": 2}, {}, {"b": 3}, {"c": 4})
        assert result == {"a": 1, "b": 3, "c": 4}


class TestConfigPaths:
    """Test platform-aware path resolution."""

    def test_windows_system_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test system config path on Windows."""
        monkeypatch.setattr(sys, "platform", "win32")
        monkeypatch.setenv("PROGRAMDATA", "C:\\ProgramData")
        path = get_system_config_path()
        assert path is not None
        assert path.parts[-2:] == ("ctlbridge", "config.yaml")

    def test_windows_without_programdata(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a missing PROGRAMDATA gives no system path."""
        monkeypatch.setattr(sys, "platform", "win32")
        monkeypatch.delenv("PROGRAMDATA", raising=False)
        assert get_system_config_path() is None

    def test_unix_system_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test system config path on Unix."""
        monkeypatch.setattr(sys, "platform", "linux")
        assert get_system_config_path() == Path("/etc/ctlbridge/config.yaml")

    def test_xdg_user_path(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test that XDG_CONFIG_HOME wins for the user path."""
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert get_user_config_path() == tmp_path / "ctlbridge" / "config.yaml"

    def test_dot_dir_fallback(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test the ~/.ctlbridge fallback when ~/.config is missing."""
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        assert get_user_config_path() == tmp_path / ".ctlbridge" / "config.yaml"

    def test_project_path(self, tmp_path: Path) -> None:
        """Test project config path."""
        assert get_project_config_path(str(tmp_path)) == tmp_path / ".ctlbridge" / "config.yaml"

    def test_paths_in_priority_order(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test that project config comes last (highest priority)."""
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        paths = get_config_paths(str(tmp_path))
        assert paths[0] == Path("/etc/ctlbridge/config.yaml")
        assert paths[-1] == tmp_path / ".ctlbridge" / "config.yaml"
        assert len(paths) == 3

    def test_no_cwd_no_project(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test that no cwd means no project path."""
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert get_config_paths(None) == [
            Path("/etc/ctlbridge/config.yaml"),
            tmp_path / "ctlbridge" / "config.yaml",
        ]


class TestLoadConfig:
    """Test layered config loading."""

    def test_defaults(self, isolated_config: Path) -> None:
        """Test that no files gives the defaults."""
        config = load_config(cwd=str(isolated_config / "project"))
        assert config == Config()
        assert config.drivers.default == "memory"
        assert config.transport.concurrent is True

    def test_project_overrides_user(self, isolated_config: Path) -> None:
        """Test layering between user and project files."""
        write_yaml(
            isolated_config / "xdg" / "ctlbridge" / "config.yaml",
            "drivers:\n  default: tmux\n  tmux:\n    binary: /usr/bin/tmux\nlogging:\n  level: debug\n",
        )
        project = isolated_config / "project"
        write_yaml(project / ".ctlbridge" / "config.yaml", "drivers:\n  default: neovim\n")

        config = load_config(cwd=str(project))
        assert config.drivers.default == "neovim"
        assert config.drivers.tmux.binary == "/usr/bin/tmux"
        assert config.logging.level == "debug"

    def test_system_layer(self, isolated_config: Path) -> None:
        """Test that the system file is the lowest layer."""
        write_yaml(isolated_config / "system" / "config.yaml", "shutdown:\n  close_timeout: 2.5\n")
        config = load_config(cwd=str(isolated_config))
        assert config.shutdown.close_timeout == 2.5

    def test_explicit_file_wins(self, isolated_config: Path) -> None:
        """Test that --config overrides project config."""
        project = isolated_config / "project"
        write_yaml(project / ".ctlbridge" / "config.yaml", "transport:\n  concurrent: true\n")
        explicit = write_yaml(isolated_config / "explicit.yaml", "transport:\n  concurrent: false\n")

        config = load_config(explicit, cwd=str(project))
        assert config.transport.concurrent is False

    def test_missing_explicit_file(
        self, isolated_config: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a missing --config file is reported and skipped."""
        with caplog.at_level("WARNING", logger="ctlbridge.config"):
            config = load_config(isolated_config / "nope.yaml")
        assert config == Config()
        assert "not found" in caplog.text

    def test_env_overrides(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that environment variables beat every file."""
        explicit = write_yaml(isolated_config / "c.yaml", "drivers:\n  default: tmux\n")
        monkeypatch.setenv("CTLBRIDGE_DRIVER", "browser")
        monkeypatch.setenv("CTLBRIDGE_LOG", "/tmp/ctlbridge.log")

        config = load_config(explicit)
        assert config.drivers.default == "browser"
        assert config.logging.file == "/tmp/ctlbridge.log"

    def test_invalid_yaml_ignored(self, isolated_config: Path) -> None:
        """Test that a broken file is skipped, not fatal."""
        explicit = write_yaml(isolated_config / "bad.yaml", "drivers: [unclosed\n")
        assert load_config(explicit) == Config()

    def test_non_mapping_yaml_ignored(self, isolated_config: Path) -> None:
        """Test that a YAML list at top level is ignored."""
        explicit = write_yaml(isolated_config / "list.yaml", "- a\n- b\n")
        assert load_config(explicit) == Config()

    def test_unknown_sections_kept(self, isolated_config: Path) -> None:
        """Test that unknown top-level sections land in extra."""
        explicit = write_yaml(isolated_config / "x.yaml", "plugins:\n  enabled: true\n")
        assert load_config(explicit).extra == {"plugins": {"enabled": True}}

    def test_driver_sections(self, isolated_config: Path) -> None:
        """Test per-driver settings."""
        explicit = write_yaml(
            isolated_config / "d.yaml",
            "drivers:\n"
            "  neovim:\n    socket_dir: /tmp/socks\n    startup_timeout: 2\n"
            "  browser:\n    browser: firefox\n    headless: false\n",
        )
        config = load_config(explicit)
        assert config.drivers.neovim.socket_dir == "/tmp/socks"
        assert config.drivers.neovim.startup_timeout == 2.0
        assert config.drivers.browser.browser == "firefox"
        assert config.drivers.browser.headless is False


class TestConfigCache:
    """Test global config caching."""

    def test_global_config_cached(self, isolated_config: Path) -> None:
        """Test that get_config returns the same object until reset."""
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first

    def test_scoped_loads_not_cached(self, isolated_config: Path) -> None:
        """Test that loads with a cwd bypass the cache."""
        first = load_config(cwd=str(isolated_config))
        assert load_config(cwd=str(isolated_config)) is not first

    def test_reload(self, isolated_config: Path) -> None:
        """Test that reload=True rereads the files."""
        first = load_config()
        write_yaml(isolated_config / "xdg" / "ctlbridge" / "config.yaml", "drivers:\n  default: tmux\n")
        assert load_config().drivers.default == first.drivers.default
        assert load_config(reload=True).drivers.default == "tmux"
