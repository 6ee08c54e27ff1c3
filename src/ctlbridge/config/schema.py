"""Configuration schema dataclasses for ctlbridge.

Defines the structure of configuration at all levels (system, user,
project, explicit file). Every field has a default so partial configs
merge together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = "info"  # trace, debug, verbose, info, warning, error
    verbose: int | None = None  # 0..4, overrides level when set
    file: str | None = None  # Log file path


@dataclass
class TransportConfig:
    """Transport loop configuration."""

    max_message_size: int = 10 * 1024 * 1024  # Bytes buffered before a newline
    read_chunk_size: int = 64 * 1024
    concurrent: bool = True  # Dispatch messages concurrently, respond in order


@dataclass
class ShutdownConfig:
    """Teardown configuration."""

    close_timeout: float | None = 10.0  # Seconds per driver close call


@dataclass
class TmuxConfig:
    binary: str = "tmux"
    command_timeout: float | None = 10.0


@dataclass
class NeovimConfig:
    binary: str = "nvim"
    socket_dir: str | None = None  # Default: system temp dir
    startup_timeout: float = 5.0
    command_timeout: float | None = 10.0


@dataclass
class BrowserConfig:
    """Browser driver defaults.

    Example config.yaml:
        drivers:
          browser:
            browser: firefox
            headless: false
            screenshot_dir: ~/shots
    """

    browser: str = "chromium"  # chromium, firefox, webkit
    headless: bool = True
    operation_timeout: float = 30.0
    screenshot_dir: str | None = None


@dataclass
class DriversConfig:
    """Driver selection and per-driver settings."""

    default: str = "memory"
    tmux: TmuxConfig = field(default_factory=TmuxConfig)
    neovim: NeovimConfig = field(default_factory=NeovimConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)


@dataclass
class Config:
    """Root configuration object.

    Aggregates all configuration sections. All fields use default factories
    to ensure partial configs work correctly with deep merging.
    """

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    shutdown: ShutdownConfig = field(default_factory=ShutdownConfig)
    drivers: DriversConfig = field(default_factory=DriversConfig)

    # Unknown top-level sections, kept for inspection
    extra: dict[str, Any] = field(default_factory=dict)
