"""Configuration management for ctlbridge.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/ctlbridge/ or %PROGRAMDATA%)
- User-level config (~/.config/ctlbridge/, ~/.ctlbridge/ or %APPDATA%)
- Project-level config (<cwd>/.ctlbridge/)
- An explicit file passed with --config
- Environment variable overrides (highest priority)

Example usage:
    from ctlbridge.config import load_config

    config = load_config(config_path="bridge.yaml", cwd="/path/to/project")
    print(config.drivers.default)
"""

from ctlbridge.config.loader import (
    dict_to_config,
    get_config,
    load_config,
    reset_config,
)
from ctlbridge.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
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

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    "dict_to_config",
    # Schema types
    "LoggingConfig",
    "TransportConfig",
    "ShutdownConfig",
    "DriversConfig",
    "TmuxConfig",
    "NeovimConfig",
    "BrowserConfig",
    # Path utilities
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
