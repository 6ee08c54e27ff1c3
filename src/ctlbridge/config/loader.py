"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from ctlbridge.config.merge import merge_configs
from ctlbridge.config.paths import get_config_paths
from ctlbridge.config.schema import (
    BrowserConfig,
    Config,
    DriversConfig,
    LoggingConfig,
    NeovimConfig,
    ShutdownConfig,
    TmuxConfig,
    TransportConfig,
)

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("ctlbridge.config")

_cached_config: Config | None = None

KNOWN_SECTIONS = {"logging", "transport", "shutdown", "drivers"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables.

    CTLBRIDGE_LOG sets logging.file and CTLBRIDGE_DRIVER sets drivers.default.
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("CTLBRIDGE_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    driver = os.environ.get("CTLBRIDGE_DRIVER")
    if driver:
        overrides.setdefault("drivers", {})["default"] = driver

    return overrides


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass."""
    log_data = _section(data, "logging")
    logging_config = LoggingConfig(
        level=log_data.get("level", "info"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    transport_data = _section(data, "transport")
    transport = TransportConfig(
        max_message_size=int(transport_data.get("max_message_size", 10 * 1024 * 1024)),
        read_chunk_size=int(transport_data.get("read_chunk_size", 64 * 1024)),
        concurrent=bool(transport_data.get("concurrent", True)),
    )

    shutdown_data = _section(data, "shutdown")
    shutdown = ShutdownConfig(close_timeout=shutdown_data.get("close_timeout", 10.0))

    drivers_data = _section(data, "drivers")
    tmux_data = _section(drivers_data, "tmux")
    neovim_data = _section(drivers_data, "neovim")
    browser_data = _section(drivers_data, "browser")
    drivers = DriversConfig(
        default=drivers_data.get("default", "memory"),
        tmux=TmuxConfig(
            binary=tmux_data.get("binary", "tmux"),
            command_timeout=tmux_data.get("command_timeout", 10.0),
        ),
        neovim=NeovimConfig(
            binary=neovim_data.get("binary", "nvim"),
            socket_dir=neovim_data.get("socket_dir"),
            startup_timeout=float(neovim_data.get("startup_timeout", 5.0)),
            command_timeout=neovim_data.get("command_timeout", 10.0),
        ),
        browser=BrowserConfig(
            browser=browser_data.get("browser", "chromium"),
            headless=bool(browser_data.get("headless", True)),
            operation_timeout=float(browser_data.get("operation_timeout", 30.0)),
            screenshot_dir=browser_data.get("screenshot_dir"),
        ),
    )

    extra = {k: v for k, v in data.items() if k not in KNOWN_SECTIONS}

    return Config(
        logging=logging_config,
        transport=transport,
        shutdown=shutdown,
        drivers=drivers,
        extra=extra,
    )


def load_config(
    config_path: str | Path | None = None,
    cwd: str | None = None,
    reload: bool = False,
) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Explicit config file (--config)
    3. Project config (<cwd>/.ctlbridge/config.yaml)
    4. User config
    5. System config

    Args:
        config_path: Explicit config file.
        cwd: Project directory for project-level config.
        reload: Force reload even if cached.

    Returns:
        Merged Config object. Only the global config (no config_path, no
        cwd) is cached.
    """
    global _cached_config

    is_global = config_path is None and cwd is None
    if _cached_config is not None and not reload and is_global:
        return _cached_config

    configs: list[dict[str, Any]] = []

    paths = get_config_paths(cwd)
    if config_path is not None:
        explicit = Path(config_path).expanduser()
        if not explicit.exists():
            _log.warning("Config file not found: %s", explicit)
        paths.append(explicit)

    for path in paths:
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    if is_global:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it if needed."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config.

    Useful for testing or forcing a reload.
    """
    global _cached_config
    _cached_config = None
