"""
Configuration management and loading.

Handles the YAML settings file and its defaults.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from usage_reconciler.core.billing import BillingResolver
from usage_reconciler.core.clock import DateRange
from usage_reconciler.core.errors import ConfigurationError
from usage_reconciler.core.pricing import BillingMode
from usage_reconciler.core.reconstruction import DEFAULT_CACHE_CAPACITY, ReconstructionOptions
from usage_reconciler.storage.db import DEFAULT_DB_PATH
from usage_reconciler.transcripts.fetch import DEFAULT_REMOTE_WORKERS, ReadSettings, RemoteHostConfig
from usage_reconciler.transcripts.parser import (
    DEFAULT_TRANSCRIPT_ROOT,
    LARGE_FILE_THRESHOLD_BYTES,
    PARTIAL_HEAD_LINES,
    PARTIAL_TAIL_LINES,
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class DatabaseConfig:
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class TranscriptConfig:
    """Where transcripts live and how large files are read."""
    base_path: str = DEFAULT_TRANSCRIPT_ROOT
    large_file_threshold_mb: float = LARGE_FILE_THRESHOLD_BYTES / _BYTES_PER_MB
    partial_head_lines: int = PARTIAL_HEAD_LINES
    partial_tail_lines: int = PARTIAL_TAIL_LINES
    cache_capacity: int = DEFAULT_CACHE_CAPACITY

    def __post_init__(self):
        """Validate transcript read settings."""
        if self.large_file_threshold_mb <= 0:
            raise ConfigurationError("large_file_threshold_mb must be > 0")
        if self.partial_head_lines < 1 or self.partial_tail_lines < 1:
            raise ConfigurationError("partial_head_lines and partial_tail_lines must be >= 1")
        if self.cache_capacity < 1:
            raise ConfigurationError("cache_capacity must be >= 1")

    @property
    def read_settings(self) -> ReadSettings:
        return ReadSettings(
            threshold_bytes=int(self.large_file_threshold_mb * _BYTES_PER_MB),
            head_lines=self.partial_head_lines,
            tail_lines=self.partial_tail_lines,
        )


@dataclass(frozen=True)
class BillingConfig:
    """Billing mode default, credentials location and per-agent overrides."""
    default_mode: BillingMode = BillingMode.API
    credentials_path: Optional[str] = None
    agents: Dict[str, BillingMode] = field(default_factory=dict)

    def resolver(self, detect: bool = True) -> BillingResolver:
        return BillingResolver(
            overrides=self.agents,
            credentials_path=Path(self.credentials_path).expanduser() if self.credentials_path else None,
            default=self.default_mode,
            detect=detect,
        )


@dataclass(frozen=True)
class ReconstructionConfig:
    max_remote_workers: int = DEFAULT_REMOTE_WORKERS

    def __post_init__(self):
        if self.max_remote_workers < 1:
            raise ConfigurationError("max_remote_workers must be >= 1")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ConfigurationError(f"logging level must be one of: {list(LOG_LEVELS)}")

    @property
    def level_number(self) -> int:
        return getattr(logging, self.level)


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    database: DatabaseConfig = DatabaseConfig()
    transcripts: TranscriptConfig = TranscriptConfig()
    remotes: Tuple[RemoteHostConfig, ...] = ()
    billing: BillingConfig = BillingConfig()
    reconstruction: ReconstructionConfig = ReconstructionConfig()
    logging: LoggingConfig = LoggingConfig()

    def get_remote(self, remote_id: str) -> RemoteHostConfig:
        for remote in self.remotes:
            if remote.id == remote_id:
                return remote
        raise ConfigurationError(f"Unknown remote '{remote_id}'")

    def reconstruction_options(
        self,
        include_local: bool = True,
        include_remote: bool = False,
        date_range: Optional[DateRange] = None,
        dry_run: bool = False,
    ) -> ReconstructionOptions:
        """Reconstruction options built from this configuration."""
        return ReconstructionOptions(
            include_local=include_local,
            include_remote=include_remote,
            remote_hosts=self.remotes,
            date_range=date_range,
            dry_run=dry_run,
            base_path=self.transcripts.base_path,
            read_settings=self.transcripts.read_settings,
            max_remote_workers=self.reconstruction.max_remote_workers,
            cache_capacity=self.transcripts.cache_capacity,
        )


def default_config() -> AppConfig:
    """Configuration used when no settings file is given."""
    return AppConfig()


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional; unknown keys are rejected so that a typo
    never silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigurationError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    allowed_top_keys = {'database', 'transcripts', 'remotes', 'billing', 'reconstruction', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown_keys)}")

    database = _section(raw_config, 'database', {'path'})
    transcripts = _section(raw_config, 'transcripts', {
        'base_path', 'large_file_threshold_mb', 'partial_head_lines', 'partial_tail_lines', 'cache_capacity',
    })
    billing = _section(raw_config, 'billing', {'default_mode', 'credentials_path', 'agents'})
    reconstruction = _section(raw_config, 'reconstruction', {'max_remote_workers'})
    logging_data = _section(raw_config, 'logging', {'level'})

    try:
        return AppConfig(
            database=DatabaseConfig(path=str(database.get('path', DEFAULT_DB_PATH))),
            transcripts=TranscriptConfig(
                base_path=str(transcripts.get('base_path', DEFAULT_TRANSCRIPT_ROOT)),
                large_file_threshold_mb=_number(transcripts, 'large_file_threshold_mb',
                                                TranscriptConfig.large_file_threshold_mb, float),
                partial_head_lines=_number(transcripts, 'partial_head_lines', PARTIAL_HEAD_LINES, int),
                partial_tail_lines=_number(transcripts, 'partial_tail_lines', PARTIAL_TAIL_LINES, int),
                cache_capacity=_number(transcripts, 'cache_capacity', DEFAULT_CACHE_CAPACITY, int),
            ),
            remotes=_parse_remotes(raw_config.get('remotes') or []),
            billing=_parse_billing(billing),
            reconstruction=ReconstructionConfig(
                max_remote_workers=_number(reconstruction, 'max_remote_workers', DEFAULT_REMOTE_WORKERS, int),
            ),
            logging=LoggingConfig(level=str(logging_data.get('level', 'INFO')).upper()),
        )
    except ConfigurationError:
        raise
    except ValueError as e:
        raise ConfigurationError(str(e))


def _section(raw_config: Dict[str, Any], name: str, allowed_keys: set) -> Dict[str, Any]:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {name}: {sorted(unknown_keys)}")
    return data


def _number(data: Dict[str, Any], key: str, default, kind):
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"'{key}' must be a number")
    if kind is int and value != int(value):
        raise ConfigurationError(f"'{key}' must be a whole number")
    return kind(value)


def _parse_remotes(data: Any) -> Tuple[RemoteHostConfig, ...]:
    """Parse the ``remotes`` list.

    Raises:
        ConfigurationError: If an entry is malformed or an id repeats
    """
    if not isinstance(data, list):
        raise ConfigurationError("'remotes' must be a list")

    allowed_keys = {'id', 'host', 'user', 'identity_file', 'port', 'base_path'}
    remotes = []
    seen = set()
    for index, entry in enumerate(data):
        path = f"remotes[{index}]"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{path} must be a dictionary")
        unknown_keys = set(entry.keys()) - allowed_keys
        if unknown_keys:
            raise ConfigurationError(f"Unknown keys in {path}: {sorted(unknown_keys)}")
        if 'host' not in entry:
            raise ConfigurationError(f"Missing required 'host' in {path}")

        remote_id = str(entry.get('id', entry['host']))
        if remote_id in seen:
            raise ConfigurationError(f"Duplicate remote id '{remote_id}'")
        seen.add(remote_id)

        port = entry.get('port')
        if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
            raise ConfigurationError(f"'port' in {path} must be an integer")

        remotes.append(RemoteHostConfig(
            id=remote_id,
            host=str(entry['host']),
            user=entry.get('user'),
            port=port,
            identity_file=entry.get('identity_file'),
            base_path=str(entry.get('base_path', DEFAULT_TRANSCRIPT_ROOT)),
        ))
    return tuple(remotes)


def _parse_billing(data: Dict[str, Any]) -> BillingConfig:
    agents_data = data.get('agents') or {}
    if not isinstance(agents_data, dict):
        raise ConfigurationError("'billing.agents' must be a dictionary")

    agents = {}
    for agent_type, mode in agents_data.items():
        agents[str(agent_type)] = BillingMode.parse(mode)

    credentials_path = data.get('credentials_path')
    return BillingConfig(
        default_mode=BillingMode.parse(data.get('default_mode', BillingMode.API.value)),
        credentials_path=str(credentials_path) if credentials_path else None,
        agents=agents,
    )
