"""Configuration management system for Session Recorder.

This module provides a hierarchical configuration system using YAML files and
Python dataclasses. It supports loading, saving, and updating configuration
values at runtime with proper defaults.

Key Features:
- YAML-based configuration files
- Dataclass-based type safety
- Hierarchical configuration sections
- Default values for all settings
- Environment overrides for backend credentials
- Backward compatibility with missing fields

Configuration Sections:
- storage: Local database and recordings directory
- backend: Remote backend URL, key and storage bucket
- submission: Upload retry and points settings
- sync: Pull-sync cooldown
- metadata: Debounce window for metadata snapshots
- capture: Screenshot interval and poll settings
- privacy: Sensitive window exclusions

Example:
    >>> from recorder.config import ConfigManager
    >>> config_mgr = ConfigManager()
    >>> print(config_mgr.config.submission.max_attempts)
    3
    >>> config_mgr.update('sync', 'ttl_seconds', 300)
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional
import yaml

logger = logging.getLogger(__name__)


@dataclass
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding sessions.sqlite and recordings/ (default: ~/session-recorder-data)
    """
    data_dir: str = "~/session-recorder-data"

    @property
    def root(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def db_path(self) -> Path:
        return self.root / "sessions.sqlite"

    @property
    def recordings_dir(self) -> Path:
        return self.root / "recordings"


@dataclass
class BackendConfig:
    """Remote backend configuration.

    Attributes:
        url: Base URL of the backend project (env: SUPABASE_URL)
        anon_key: Public API key (env: SUPABASE_ANON_KEY)
        bucket: Object storage bucket for screenshots and metadata (default: recordings)
        timeout_seconds: Per-request timeout (default: 30)
    """
    url: str = ""
    anon_key: str = ""
    bucket: str = "recordings"
    timeout_seconds: float = 30.0


@dataclass
class SubmissionConfig:
    """Submission pipeline configuration.

    Attributes:
        max_attempts: Upload attempts per screenshot before rollback (default: 3)
        backoff_base_seconds: First retry delay, doubled on each attempt (default: 1.0)
        points_per_minute: Points credited per whole minute of session (default: 5)
    """
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    points_per_minute: int = 5


@dataclass
class SyncConfig:
    """Pull-sync configuration.

    Attributes:
        ttl_seconds: Suppress repeat syncs for this long after a success (default: 120)
    """
    ttl_seconds: float = 120.0


@dataclass
class MetadataConfig:
    """Metadata snapshot configuration.

    Attributes:
        debounce_seconds: Burst window collapsed into one regeneration (default: 1.5)
    """
    debounce_seconds: float = 1.5


@dataclass
class CaptureConfig:
    """Screenshot capture configuration.

    Attributes:
        interval_seconds: Time between screenshots (default: 30)
        poll_interval_seconds: Active window poll interval (default: 1.0)
        source_id: mss monitor index to capture, 1 is the primary monitor (default: 1)
    """
    interval_seconds: int = 30
    poll_interval_seconds: float = 1.0
    source_id: int = 1


@dataclass
class PrivacyConfig:
    """Privacy controls and exclusion rules.

    Recording does not start while a matching window is focused, and an
    active recording is paused when one gains focus.

    Attributes:
        excluded_apps: App names treated as sensitive
        excluded_titles: Window title keywords treated as sensitive
    """
    excluded_apps: list[str] = field(default_factory=lambda: [
        "1password",
        "keepass",
        "bitwarden",
        "gnome-keyring"
    ])
    excluded_titles: list[str] = field(default_factory=lambda: [
        "password",
        "private browsing",
        "incognito",
        "inprivate"
    ])


@dataclass
class Config:
    """Top-level configuration container."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)


_SECTIONS = {
    'storage': StorageConfig,
    'backend': BackendConfig,
    'submission': SubmissionConfig,
    'sync': SyncConfig,
    'metadata': MetadataConfig,
    'capture': CaptureConfig,
    'privacy': PrivacyConfig,
}


class ConfigManager:
    """Manages configuration loading, saving, and updates.

    Handles YAML configuration file I/O with merging of user settings with
    defaults. Backend credentials can also come from the environment.

    Attributes:
        DEFAULT_PATH: Default configuration file location
        path: Actual configuration file path being used
        config: Current configuration object

    Example:
        >>> config_mgr = ConfigManager()
        >>> config_mgr.config.metadata.debounce_seconds = 3.0
        >>> config_mgr.save()
    """

    DEFAULT_PATH = Path("~/.config/session-recorder/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None, environ: Optional[dict] = None):
        """Initialize ConfigManager.

        Args:
            path: Custom config file path (uses DEFAULT_PATH if None)
            environ: Environment mapping for overrides (uses os.environ if None)
        """
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self._environ = os.environ if environ is None else environ
        self.config = self._load()

    def _load(self) -> Config:
        """Load configuration from YAML file.

        Returns:
            Config object with loaded or default values

        Note:
            Missing fields use defaults from dataclass definitions.
            Invalid YAML returns default Config.
        """
        config = None
        if self.path.exists():
            try:
                with open(self.path) as f:
                    data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {self.path}")
                config = self._dict_to_config(data)
            except (yaml.YAMLError, OSError, TypeError) as e:
                logger.warning(f"Failed to load config from {self.path}: {e}")
                logger.info("Using default configuration")
        else:
            logger.info(f"No config file at {self.path}, using defaults")

        config = config or Config()
        self._apply_env_overrides(config)
        return config

    def _dict_to_config(self, data: dict) -> Config:
        """Construct Config from dictionary, ignoring unknown keys."""
        def filter_known_fields(data_dict: dict, dataclass_type) -> dict:
            known_fields = {f.name for f in dataclasses.fields(dataclass_type)}
            filtered = {k: v for k, v in data_dict.items() if k in known_fields}
            unknown = set(data_dict.keys()) - known_fields
            if unknown:
                logger.debug(f"Ignoring unknown config fields: {unknown}")
            return filtered

        sections = {}
        for name, section_type in _SECTIONS.items():
            section_data = filter_known_fields(data.get(name) or {}, section_type)
            sections[name] = section_type(**section_data)
        return Config(**sections)

    def _apply_env_overrides(self, config: Config) -> None:
        url = self._environ.get("SUPABASE_URL")
        key = self._environ.get("SUPABASE_ANON_KEY")
        if url:
            config.backend.url = url
        if key:
            config.backend.anon_key = key

    def save(self) -> None:
        """Save current configuration to YAML file.

        Creates parent directories if they don't exist.

        Raises:
            OSError: If file write fails
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                yaml.dump(
                    asdict(self.config),
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    indent=2
                )
            logger.info(f"Saved configuration to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.path}: {e}")
            raise

    def update(self, section: str, key: str, value) -> bool:
        """Update a single configuration value and save.

        Args:
            section: Config section name (e.g., 'sync', 'submission')
            key: Setting name within section (e.g., 'ttl_seconds')
            value: New value to set

        Returns:
            True if value was changed and saved, False if unchanged or invalid
        """
        section_obj = getattr(self.config, section, None)
        if section_obj is None:
            logger.warning(f"Invalid config section: {section}")
            return False

        if not hasattr(section_obj, key):
            logger.warning(f"Invalid config key: {section}.{key}")
            return False

        old_value = getattr(section_obj, key)
        if old_value != value:
            setattr(section_obj, key, value)
            self.save()
            logger.info(f"Updated {section}.{key}: {old_value} -> {value}")
            return True

        logger.debug(f"No change for {section}.{key} (already {value})")
        return False

    def to_dict(self) -> dict:
        return asdict(self.config)

    def reload(self) -> None:
        """Reload configuration from file."""
        self.config = self._load()
        logger.info("Configuration reloaded")

