"""Archiver configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- Object storage connections (source logs, archive writer, archive reader)
- Relational store (processing state and identifier map tables)
- Stage tuning (fetch, probe, batch runner, merge, archive)
- Per-group settings (buckets, doc root, host aliases, resolver rules)

Environment variables ARE supported using ${VAR_NAME} and ${VAR_NAME:-default}
syntax in YAML files.
"""

import json
import logging
import os
import re
import sys
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MERGE_STRATEGIES = ["auto", "external", "bounded"]
ARCHIVE_WRITERS = ["s3", "rclone"]
ADDRESSING_STYLES = ["auto", "path", "virtual"]


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent.parent / "config" / "config.yaml"
CONFIG_ENV_VAR = "ARCHIVER_CONFIG"


def _build(cls, data: Optional[Dict[str, Any]], context: str):
    """Instantiate a settings dataclass from a dict, ignoring unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"{context}: expected a mapping, got {type(data).__name__}")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("%s: ignoring unknown keys %s", context, unknown)
    return cls(**{k: v for k, v in data.items() if k in known})


# =============================================================================
# CONNECTION SETTINGS
# =============================================================================


@dataclass
class S3Settings:
    """Connection settings for an S3-compatible object store.

    Credentials fall back to the boto3 default chain (environment, shared
    credentials file, profile) when the key pair is empty.
    """

    endpoint_url: Optional[str] = None
    region_name: Optional[str] = None
    profile_name: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    addressing_style: str = "auto"  # "path" for R2/MinIO style endpoints
    max_pool_connections: int = 50
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 60.0

    def validate(self, context: str) -> None:
        settings = asdict(self)
        ArchiverConfig._validate_enum(settings, "addressing_style", ADDRESSING_STYLES, context)
        ArchiverConfig._validate_min(settings, "max_pool_connections", 1, inclusive=True, context=context)
        ArchiverConfig._validate_min(settings, "connect_timeout_seconds", 0, inclusive=False, context=context)
        ArchiverConfig._validate_min(settings, "read_timeout_seconds", 0, inclusive=False, context=context)
        if bool(self.aws_access_key_id) != bool(self.aws_secret_access_key):
            raise ConfigurationError(
                f"{context}: aws_access_key_id and aws_secret_access_key must be set together"
            )


@dataclass
class DatabaseSettings:
    """Relational store holding the processing-state and identifier-map tables."""

    url: str = "sqlite:///logarchive.db"
    pool_size: int = 10
    max_overflow: int = 5
    pool_recycle_seconds: int = 3600
    pool_pre_ping: bool = True
    state_table: str = "logs"
    identifier_table: str = "html_map"
    create_tables: bool = False
    echo: bool = False

    def validate(self, context: str) -> None:
        if not self.url:
            raise ConfigurationError(f"{context}: url is required")
        settings = asdict(self)
        ArchiverConfig._validate_range(settings, "pool_size", 1, 100, context)
        ArchiverConfig._validate_min(settings, "max_overflow", 0, inclusive=True, context=context)


# =============================================================================
# STAGE SETTINGS
# =============================================================================


@dataclass
class FetchSettings:
    concurrency: int = 20
    progress_interval_seconds: float = 30.0

    def validate(self, context: str) -> None:
        settings = asdict(self)
        ArchiverConfig._validate_range(settings, "concurrency", 1, 200, context)
        ArchiverConfig._validate_min(settings, "progress_interval_seconds", 0, inclusive=False, context=context)


@dataclass
class ProbeSettings:
    """Remote existence probe.

    command is the argv prefix the probe script is appended to, e.g.
    "ssh -o BatchMode=yes archive@files.internal". An empty command runs the
    script through a local "sh -c".
    """

    enabled: bool = True
    command: str = ""
    batch_size: int = 30
    max_attempts: int = 10
    retry_delay_seconds: float = 10.0
    timeout_cap_seconds: float = 60.0
    auth_markers: List[str] = field(
        default_factory=lambda: ["Permission denied (publickey)"]
    )

    def validate(self, context: str) -> None:
        settings = asdict(self)
        ArchiverConfig._validate_range(settings, "batch_size", 1, 1000, context)
        ArchiverConfig._validate_min(settings, "max_attempts", 1, inclusive=True, context=context)
        ArchiverConfig._validate_min(settings, "retry_delay_seconds", 0, inclusive=True, context=context)
        ArchiverConfig._validate_min(settings, "timeout_cap_seconds", 0, inclusive=False, context=context)


@dataclass
class RunnerSettings:
    batch_size: int = 100
    file_timeout_seconds: float = 1800.0
    batch_timeout_seconds: float = 1800.0
    file_suffixes: List[str] = field(default_factory=lambda: [".log.gz", ".log"])
    yield_every_lines: int = 1000
    # Commit a partition even when some of its files failed
    fail_partition_on_file_errors: bool = False

    def validate(self, context: str) -> None:
        settings = asdict(self)
        ArchiverConfig._validate_range(settings, "batch_size", 1, 1000, context)
        ArchiverConfig._validate_min(settings, "file_timeout_seconds", 0, inclusive=False, context=context)
        ArchiverConfig._validate_min(settings, "batch_timeout_seconds", 0, inclusive=False, context=context)
        ArchiverConfig._validate_min(settings, "yield_every_lines", 1, inclusive=True, context=context)
        if not self.file_suffixes:
            raise ConfigurationError(f"{context}: file_suffixes must not be empty")


@dataclass
class MergeSettings:
    strategy: str = "auto"
    max_unique_lines: int = 5_000_000
    sort_command: str = "sort"
    sort_buffer_size: Optional[str] = None  # passed to sort -S, e.g. "1G"
    sort_timeout_seconds: float = 3600.0
    temp_dir: Optional[str] = None

    def validate(self, context: str) -> None:
        settings = asdict(self)
        ArchiverConfig._validate_enum(settings, "strategy", MERGE_STRATEGIES, context)
        ArchiverConfig._validate_min(settings, "max_unique_lines", 1, inclusive=True, context=context)
        ArchiverConfig._validate_min(settings, "sort_timeout_seconds", 0, inclusive=False, context=context)


@dataclass
class ArchiveSettings:
    """How the merged partition artifact is written and verified.

    key_template is formatted with date_key and group.
    """

    writer: str = "s3"
    key_template: str = "{date_key}.txt"
    rclone_command: str = "rclone"
    rclone_remote: str = "r2:"
    upload_timeout_seconds: float = 3600.0
    diagnostics_list_limit: int = 20

    def validate(self, context: str) -> None:
        settings = asdict(self)
        ArchiverConfig._validate_enum(settings, "writer", ARCHIVE_WRITERS, context)
        ArchiverConfig._validate_min(settings, "upload_timeout_seconds", 0, inclusive=False, context=context)
        ArchiverConfig._validate_range(settings, "diagnostics_list_limit", 1, 1000, context)
        if "{date_key}" not in self.key_template:
            raise ConfigurationError(f"{context}: key_template must contain {{date_key}}")


@dataclass
class IdentifierSettings:
    flush_size: int = 500

    def validate(self, context: str) -> None:
        ArchiverConfig._validate_min(asdict(self), "flush_size", 1, inclusive=True, context=context)


# =============================================================================
# RESOLVER RULES
# =============================================================================


@dataclass
class EntityRule:
    """Maps a path pattern to a row of an entity table.

    pattern must define a named group "key"; the captured value is looked up
    in table.column. When alias_table is set and the first lookup misses,
    the key is translated through alias_table (alias_from -> alias_to) and
    looked up again.
    """

    name: str = ""
    pattern: str = ""
    table: str = ""  # "database.table"
    column: str = "id"
    id_column: Optional[str] = None  # defaults to column
    site: str = ""
    status_column: Optional[str] = None
    alias_table: Optional[str] = None
    alias_from: str = "destination"
    alias_to: str = "origin"

    def validate(self, context: str) -> None:
        if not self.pattern:
            raise ConfigurationError(f"{context}: pattern is required")
        try:
            compiled = re.compile(self.pattern)
        except re.error as e:
            raise ConfigurationError(f"{context}: invalid pattern: {e}") from e
        if "key" not in compiled.groupindex:
            raise ConfigurationError(f"{context}: pattern must define a named group 'key'")
        if self.table.count(".") != 1:
            raise ConfigurationError(
                f"{context}: table must be 'database.table', got '{self.table}'"
            )


@dataclass
class RewriteRule:
    pattern: str = ""
    replacement: str = ""


@dataclass
class ResolverRules:
    """Policy table for the rule-based resolver.

    Hosts and paths are compared after normalisation (lower case, no port,
    repeated slashes collapsed).
    """

    allowed_hosts: List[str] = field(default_factory=list)
    denied_hosts: List[str] = field(default_factory=list)
    denied_path_fragments: List[str] = field(default_factory=list)
    denied_suffixes: List[str] = field(default_factory=list)
    static_pages: List[str] = field(default_factory=list)
    rewrites: List[RewriteRule] = field(default_factory=list)
    entity_rules: List[EntityRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], context: str) -> "ResolverRules":
        data = dict(data or {})
        rewrites = [
            _build(RewriteRule, item, f"{context}.rewrites[{i}]")
            for i, item in enumerate(data.pop("rewrites", None) or [])
        ]
        entity_rules = [
            _build(EntityRule, item, f"{context}.entity_rules[{i}]")
            for i, item in enumerate(data.pop("entity_rules", None) or [])
        ]
        rules = _build(cls, data, context)
        rules.rewrites = rewrites
        rules.entity_rules = entity_rules
        return rules

    def validate(self, context: str) -> None:
        for i, rewrite in enumerate(self.rewrites):
            try:
                re.compile(rewrite.pattern)
            except re.error as e:
                raise ConfigurationError(f"{context}.rewrites[{i}]: invalid pattern: {e}") from e
        for i, rule in enumerate(self.entity_rules):
            rule.validate(f"{context}.entity_rules[{i}]")


# =============================================================================
# GROUPS
# =============================================================================


@dataclass
class GroupConfig:
    """One independently archived log group.

    Each group reads its own source bucket, writes its own archive bucket,
    probes its own doc root and may point at its own database.
    """

    name: str = ""
    enabled: bool = True
    source_bucket: str = ""
    source_prefix: str = ""
    archive_bucket: str = ""
    doc_root: str = ""
    host_aliases: Dict[str, str] = field(default_factory=dict)
    database: Optional[DatabaseSettings] = None
    resolver: ResolverRules = field(default_factory=ResolverRules)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], context: str) -> "GroupConfig":
        data = dict(data or {})
        database = data.pop("database", None)
        resolver = data.pop("resolver", None)
        group = _build(cls, data, context)
        if database is not None:
            group.database = _build(DatabaseSettings, database, f"{context}.database")
        group.resolver = ResolverRules.from_dict(resolver, f"{context}.resolver")
        group.host_aliases = {
            str(k).lower(): str(v).lower() for k, v in (group.host_aliases or {}).items()
        }
        return group

    def validate(self, context: str) -> None:
        if not self.name:
            raise ConfigurationError(f"{context}: name is required")
        if not re.fullmatch(r"[A-Za-z0-9_.-]+", self.name):
            raise ConfigurationError(
                f"{context}: name may only contain letters, digits, '.', '_' and '-'"
            )
        if not self.source_bucket:
            raise ConfigurationError(f"{context}: source_bucket is required")
        if not self.archive_bucket:
            raise ConfigurationError(f"{context}: archive_bucket is required")
        if self.database is not None:
            self.database.validate(f"{context}.database")
        self.resolver.validate(f"{context}.resolver")


# =============================================================================
# ROOT CONFIG
# =============================================================================


@dataclass
class ArchiverConfig:
    """Archiver configuration.

    Configuration structure:
        archiver:
          work_dir: ...              # staging and scratch directories
          side_channel_dir: ...      # notfound-/unmapped- logs
          source: {...}              # S3Settings for the raw log buckets
          archive_writer: {...}      # S3Settings used for uploads
          archive_reader: {...}      # S3Settings used for verification
          database: {...}
          fetch: {...}
          probe: {...}
          runner: {...}
          merge: {...}
          archive: {...}
          identifiers: {...}
          groups:
            - name: main
              source_bucket: ...
              archive_bucket: ...
              doc_root: ...
              host_aliases: {...}
              resolver: {...}

    All timing values in seconds.
    """

    work_dir: str = field(default_factory=lambda: str(Path(tempfile.gettempdir()) / "logarchive"))
    side_channel_dir: str = "logs"

    source: S3Settings = field(default_factory=S3Settings)
    archive_writer: S3Settings = field(default_factory=S3Settings)
    archive_reader: S3Settings = field(default_factory=S3Settings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)

    fetch: FetchSettings = field(default_factory=FetchSettings)
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    archive: ArchiveSettings = field(default_factory=ArchiveSettings)
    identifiers: IdentifierSettings = field(default_factory=IdentifierSettings)

    groups: List[GroupConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchiverConfig":
        config = cls(
            source=_build(S3Settings, data.get("source"), "source"),
            archive_writer=_build(S3Settings, data.get("archive_writer"), "archive_writer"),
            archive_reader=_build(S3Settings, data.get("archive_reader"), "archive_reader"),
            database=_build(DatabaseSettings, data.get("database"), "database"),
            fetch=_build(FetchSettings, data.get("fetch"), "fetch"),
            probe=_build(ProbeSettings, data.get("probe"), "probe"),
            runner=_build(RunnerSettings, data.get("runner"), "runner"),
            merge=_build(MergeSettings, data.get("merge"), "merge"),
            archive=_build(ArchiveSettings, data.get("archive"), "archive"),
            identifiers=_build(IdentifierSettings, data.get("identifiers"), "identifiers"),
            groups=[
                GroupConfig.from_dict(item, f"groups[{i}]")
                for i, item in enumerate(data.get("groups") or [])
            ],
        )
        if data.get("work_dir"):
            config.work_dir = str(data["work_dir"])
        if data.get("side_channel_dir"):
            config.side_channel_dir = str(data["side_channel_dir"])
        return config

    def get_group(self, name: str) -> GroupConfig:
        for group in self.groups:
            if group.name == name:
                return group
        raise ConfigurationError(
            f"Group '{name}' not found. Available groups: {[g.name for g in self.groups]}"
        )

    def enabled_groups(self, names: Optional[List[str]] = None) -> List[GroupConfig]:
        """Groups to run, in configured order. Explicit names override enabled flags."""
        if names:
            return [self.get_group(name) for name in names]
        return [g for g in self.groups if g.enabled]

    def database_for(self, group: GroupConfig) -> DatabaseSettings:
        return group.database or self.database

    def staging_dir(self, group: str, date_key: str) -> Path:
        return Path(self.work_dir) / "staging" / group / date_key

    def scratch_dir(self, group: str, date_key: str) -> Path:
        return Path(self.work_dir) / "scratch" / group / date_key

    def validate(self) -> None:
        """Validate configuration for correctness and constraints."""
        if not self.groups:
            raise ConfigurationError("At least one group is required in archiver.groups")

        names = [g.name for g in self.groups]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate group names: {duplicates}")

        self.source.validate("source")
        self.archive_writer.validate("archive_writer")
        self.archive_reader.validate("archive_reader")
        self.database.validate("database")
        self.fetch.validate("fetch")
        self.probe.validate("probe")
        self.runner.validate("runner")
        self.merge.validate("merge")
        self.archive.validate("archive")
        self.identifiers.validate("identifiers")

        for i, group in enumerate(self.groups):
            group.validate(f"groups[{i}]")
            if self.probe.enabled and not group.doc_root:
                logger.warning(
                    "Group %s has no doc_root; probe paths will be request paths only",
                    group.name,
                )

    @staticmethod
    def _validate_enum(
        settings: Dict[str, Any],
        key: str,
        valid_values: List[Any],
        context: str
    ) -> None:
        """Validate that a setting's value is in a list of valid values."""
        if key in settings and settings[key] not in valid_values:
            raise ConfigurationError(
                f"{context}: {key} must be one of {valid_values}, "
                f"got '{settings[key]}'"
            )

    @staticmethod
    def _validate_min(
        settings: Dict[str, Any],
        key: str,
        min_value: float,
        inclusive: bool,
        context: str
    ) -> None:
        """Validate that a setting's value meets a minimum threshold."""
        if key in settings:
            value = settings[key]
            if inclusive and value < min_value:
                raise ConfigurationError(
                    f"{context}: {key} must be >= {min_value}, got {value}"
                )
            elif not inclusive and value <= min_value:
                raise ConfigurationError(
                    f"{context}: {key} must be > {min_value}, got {value}"
                )

    @staticmethod
    def _validate_range(
        settings: Dict[str, Any],
        key: str,
        min_value: float,
        max_value: float,
        context: str
    ) -> None:
        """Validate that a setting's value is within a range (inclusive)."""
        if key in settings:
            value = settings[key]
            if not (min_value <= value <= max_value):
                raise ConfigurationError(
                    f"{context}: {key} must be between {min_value} and {max_value}, got {value}"
                )


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    """Explicit path, then $ARCHIVER_CONFIG, then the packaged default."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ArchiverConfig:
    """Load archiver configuration from a config.yaml file.

    Environment variables ARE supported using ${VAR_NAME} syntax in YAML files.

    Raises:
        ConfigurationError: missing file, missing 'archiver:' section or invalid values
    """
    config_path = resolve_config_path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    logger.info("Loading configuration from file: %s", config_path)
    try:
        yaml_data = load_yaml(config_path)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}", cause=e) from e
    yaml_data = _expand_env_vars(yaml_data)

    if "archiver" not in yaml_data:
        raise ConfigurationError(
            f"Invalid config file {config_path}: missing 'archiver:' section"
        )

    archiver_data = yaml_data["archiver"] or {}

    if overrides:
        logger.debug("Applying overrides: %s", list(overrides.keys()))
        archiver_data = _deep_merge(archiver_data, overrides)

    try:
        config = ArchiverConfig.from_dict(archiver_data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration structure: {e}", cause=e) from e

    logger.debug(
        "Configuration loaded: groups=%s merge=%s writer=%s",
        [g.name for g in config.groups],
        config.merge.strategy,
        config.archive.writer,
    )

    config.validate()
    logger.debug("Configuration validation passed")

    return config


_archiver_config: Optional[ArchiverConfig] = None


def get_config() -> ArchiverConfig:
    """Get or load the singleton archiver config instance."""
    global _archiver_config
    if _archiver_config is None:
        _archiver_config = load_config()
    return _archiver_config


def set_config(config: ArchiverConfig) -> None:
    """Set the singleton archiver config instance (useful for testing)."""
    global _archiver_config
    _archiver_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _archiver_config
    _archiver_config = None


def _cli_main() -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Log Archiver Configuration Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate configuration
  python -m config.config --validate

  # Show expanded configuration
  python -m config.config --show-merged

  # JSON output for automation
  python -m config.config --validate --json
        """,
    )
    parser.add_argument("--validate", action="store_true", help="Validate configuration")
    parser.add_argument("--show-merged", action="store_true", help="Display expanded configuration as YAML")
    parser.add_argument("--config", type=Path, help="Path to config.yaml file")
    parser.add_argument("--json", action="store_true", help="Output in JSON format")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if not args.validate and not args.show_merged:
        parser.print_help()
        return 0

    try:
        config = load_config(config_path=args.config)
    except ConfigurationError as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"Validation error: {e}", file=sys.stderr)
        return 1

    output: Dict[str, Any] = {}
    if args.validate:
        if args.json:
            output["validation"] = {"passed": True, "errors": []}
        else:
            print("Configuration validation passed")
            for group in config.groups:
                print(f"  - group {group.name}: OK")

    if args.show_merged:
        config_dict = asdict(config)
        if args.json:
            output["merged_config"] = config_dict
        else:
            print(yaml.dump(config_dict, default_flow_style=False, sort_keys=False))

    if args.json:
        print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
