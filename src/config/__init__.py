"""Configuration loading for the log archiver.

Configuration is read from a single YAML file (src/config/config.yaml by
default, $ARCHIVER_CONFIG or --config to override) with a top-level
``archiver:`` section. ${VAR} and ${VAR:-default} references are expanded
from the environment before the settings dataclasses are built.

Usage:
    >>> from config import load_config
    >>> config = load_config()
    >>> for group in config.enabled_groups():
    ...     print(group.name, group.source_bucket)

Settings are merged in the following priority (highest to lowest):

1. Overrides passed to load_config() (CLI flags)
2. YAML configuration file (after environment expansion)
3. Dataclass defaults
"""

from config.config import (
    ArchiverConfig,
    ArchiveSettings,
    DatabaseSettings,
    EntityRule,
    FetchSettings,
    GroupConfig,
    IdentifierSettings,
    MergeSettings,
    ProbeSettings,
    ResolverRules,
    RewriteRule,
    RunnerSettings,
    S3Settings,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    # Config functions
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
    # Config classes
    "ArchiverConfig",
    "GroupConfig",
    "S3Settings",
    "DatabaseSettings",
    "FetchSettings",
    "ProbeSettings",
    "RunnerSettings",
    "MergeSettings",
    "ArchiveSettings",
    "IdentifierSettings",
    "ResolverRules",
    "RewriteRule",
    "EntityRule",
]
