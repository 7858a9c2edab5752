"""Configuration parsing for ccmetrics.

Parses ~/.claude/ccmetrics.toml (or the legacy installer JSON file) into a
single Config object that is passed explicitly into each component.
"""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_ENV_VAR = "CCMETRICS_CONFIG"
DEFAULT_STATE_DIR = Path.home() / ".claude"
DEFAULT_CONFIG_NAME = "ccmetrics.toml"
LEGACY_CONFIG_NAME = ".ccmetrics-config.json"

DEFAULT_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
DEFAULT_PROFILE_URL = "https://api.anthropic.com/api/oauth/profile"


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


@dataclass
class StoreConfig:
    """Remote session store (insert-only REST table)."""

    url: str = ""
    key: str = ""
    table: str = "sessions"
    timeout: float = 5.0

    @property
    def endpoint(self) -> str:
        """Full URL rows are POSTed to."""
        return f"{self.url.rstrip('/')}/rest/v1/{self.table}"

    def validate(self) -> None:
        """Check that submission credentials are present.

        Raises:
            ConfigError: If the store URL or key is missing.
        """
        missing = [name for name in ("url", "key") if not getattr(self, name)]
        if missing:
            raise ConfigError(
                f"Missing store credentials in config: {', '.join(missing)}"
            )


@dataclass
class EnrichmentConfig:
    """Usage and profile lookups against the assistant's account API."""

    enabled: bool = True
    usage_url: str = DEFAULT_USAGE_URL
    profile_url: str = DEFAULT_PROFILE_URL
    credentials_path: Path = field(
        default_factory=lambda: DEFAULT_STATE_DIR / ".credentials.json"
    )
    timeout: float = 3.0  # seconds, session-end path
    background_timeout: float = 2.0  # seconds, status-tick refresh
    refresh_interval: int = 300  # seconds between background refreshes


@dataclass
class QueueConfig:
    """Durable retry queue settings."""

    max_size: int = 100
    drain_batch: int = 10
    drain_pause: float = 0.5  # seconds between successful sends


@dataclass
class CacheConfig:
    """Metrics cache settings."""

    retention_days: int = 30


@dataclass
class Config:
    """Main configuration container."""

    developer_email: str = ""
    debug: bool = False
    state_dir: Path = DEFAULT_STATE_DIR
    store: StoreConfig = field(default_factory=StoreConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    config_path: Path | None = None

    @property
    def developer(self) -> str:
        """Developer identity recorded with each session."""
        return self.developer_email or os.environ.get("USER", "unknown")

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / "metrics_cache"

    @property
    def queue_dir(self) -> Path:
        return self.state_dir / "metrics_queue"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "ccmetrics.log"

    @classmethod
    def load(cls, path: Path | None = None) -> Config:
        """Load configuration from a file.

        Args:
            path: Path to config file. If None, uses $CCMETRICS_CONFIG, then
                  ~/.claude/ccmetrics.toml, then the legacy JSON file.

        Returns:
            Loaded configuration.

        Raises:
            FileNotFoundError: If no config file found.
            ConfigError: If config file is invalid.
        """
        if path is None:
            path = cls._find_config()

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        if path.suffix == ".json":
            try:
                data = json.loads(path.read_text())
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {path}: {e}") from e
            return cls._convert(cls._from_legacy_dict, data, path)

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}") from e

        return cls._convert(cls._from_dict, data, path)

    @classmethod
    def _convert(cls, build, data: Any, path: Path) -> Config:
        """Run a section parser, reporting bad values as ConfigError."""
        try:
            return build(data, path)
        except ConfigError:
            raise
        except (TypeError, ValueError, AttributeError, OverflowError) as e:
            raise ConfigError(f"Invalid value in {path}: {e}") from e

    @classmethod
    def load_or_default(cls, path: Path | None = None) -> Config:
        """Load configuration or return default if not found."""
        try:
            return cls.load(path)
        except FileNotFoundError:
            return cls()

    @classmethod
    def _find_config(cls) -> Path:
        """Find the config file, preferring the environment override."""
        override = os.environ.get(CONFIG_ENV_VAR)
        if override:
            return Path(override).expanduser()

        for name in (DEFAULT_CONFIG_NAME, LEGACY_CONFIG_NAME):
            config_path = DEFAULT_STATE_DIR / name
            if config_path.exists():
                return config_path

        # Return expected path even if it doesn't exist
        return DEFAULT_STATE_DIR / DEFAULT_CONFIG_NAME

    @classmethod
    def _from_dict(cls, data: dict[str, Any], path: Path) -> Config:
        """Create a Config from a parsed TOML document."""
        main_section = data.get("ccmetrics", {})
        state_dir = Path(main_section.get("state_dir", DEFAULT_STATE_DIR)).expanduser()

        store_data = data.get("store", {})
        store = StoreConfig(
            url=store_data.get("url", ""),
            key=store_data.get("key", ""),
            table=store_data.get("table", "sessions"),
            timeout=float(store_data.get("timeout", 5.0)),
        )

        enrichment_data = data.get("enrichment", {})
        credentials_path = enrichment_data.get("credentials_path")
        enrichment = EnrichmentConfig(
            enabled=enrichment_data.get("enabled", True),
            usage_url=enrichment_data.get("usage_url", DEFAULT_USAGE_URL),
            profile_url=enrichment_data.get("profile_url", DEFAULT_PROFILE_URL),
            credentials_path=(
                Path(credentials_path).expanduser()
                if credentials_path
                else state_dir / ".credentials.json"
            ),
            timeout=float(enrichment_data.get("timeout", 3.0)),
            background_timeout=float(enrichment_data.get("background_timeout", 2.0)),
            refresh_interval=int(enrichment_data.get("refresh_interval", 300)),
        )

        queue_data = data.get("queue", {})
        queue = QueueConfig(
            max_size=int(queue_data.get("max_size", 100)),
            drain_batch=int(queue_data.get("drain_batch", 10)),
            drain_pause=float(queue_data.get("drain_pause", 0.5)),
        )

        cache_data = data.get("cache", {})
        cache = CacheConfig(
            retention_days=int(cache_data.get("retention_days", 30)),
        )

        if queue.max_size < 1:
            raise ConfigError("queue.max_size must be at least 1")

        return cls(
            developer_email=main_section.get("developer_email", ""),
            debug=bool(main_section.get("debug", False)),
            state_dir=state_dir,
            store=store,
            enrichment=enrichment,
            queue=queue,
            cache=cache,
            config_path=path,
        )

    @classmethod
    def _from_legacy_dict(cls, data: dict[str, Any], path: Path) -> Config:
        """Create a Config from the flat JSON file written by the installer."""
        if not isinstance(data, dict):
            raise ConfigError(f"Expected a JSON object in {path}")

        state_dir = path.parent
        return cls(
            developer_email=data.get("developer_email") or "",
            debug=bool(data.get("debug", False)),
            state_dir=state_dir,
            store=StoreConfig(
                url=data.get("supabase_url") or "",
                key=data.get("supabase_key") or "",
            ),
            enrichment=EnrichmentConfig(
                credentials_path=state_dir / ".credentials.json",
            ),
            config_path=path,
        )

    def get_value(self, key_path: str) -> Any:
        """Get a configuration value by dot-separated path.

        Args:
            key_path: Dot-separated path to value (e.g. "store.table").

        Returns:
            The configuration value.

        Raises:
            KeyError: If path is invalid.
        """
        parts = key_path.split(".")
        current = self
        for part in parts:
            if hasattr(current, part):
                current = getattr(current, part)
            elif isinstance(current, dict) and part in current:
                current = current[part]
            else:
                raise KeyError(f"Invalid config path: {key_path}")
        return current
