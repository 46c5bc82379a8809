"""Configuration loading and management."""

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from chatters.hooks import Hooks
from chatters.logging import DEFAULT_LOG_DIR, parse_level
from chatters.sync.backoff import BackoffPolicy


@dataclass
class BackoffConfig:
    initial_seconds: float = 1.0
    max_seconds: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1
    max_attempts: int | None = None

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial=self.initial_seconds,
            maximum=self.max_seconds,
            multiplier=self.multiplier,
            jitter=self.jitter,
            max_attempts=self.max_attempts,
        )


@dataclass
class SyncConfig:
    page_size: int = 50
    backfill_depth: int = 200
    lane_capacity: int = 256
    notification_buffer: int = 64
    backoff: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass
class BackendConfig:
    kind: str
    enabled: bool = True
    client: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def factory_options(self) -> dict[str, Any]:
        """Options handed to the backend factory, including the client path."""
        options = dict(self.options)
        if self.client:
            options["client"] = self.client
        return options


def _default_backends() -> dict[str, BackendConfig]:
    return {"local": BackendConfig(kind="local")}


@dataclass
class Config:
    device_name: str = field(default_factory=platform.node)
    log_dir: Path = DEFAULT_LOG_DIR
    log_level: str = "INFO"
    cache_db: Path | None = None
    sync: SyncConfig = field(default_factory=SyncConfig)
    hooks: Hooks = field(default_factory=Hooks)
    backends: dict[str, BackendConfig] = field(default_factory=_default_backends)

    def enabled_backends(self) -> dict[str, BackendConfig]:
        return {backend_id: b for backend_id, b in self.backends.items() if b.enabled}


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def _positive(section: str, name: str, value: Any) -> int:
    value = int(value)
    if value <= 0:
        raise ValueError(f"{section}.{name} must be positive, got {value}")
    return value


def _parse_backends(data: dict[str, Any]) -> dict[str, BackendConfig]:
    backends = {}
    for backend_id, backend_data in data.items():
        backend_id = str(backend_id)
        if ":" in backend_id or not backend_id:
            raise ValueError(f"Invalid backend id {backend_id!r}: must be non-empty and contain no ':'")
        backend_data = backend_data or {}
        if "kind" not in backend_data:
            raise ValueError(f"Backend {backend_id} is missing 'kind'")
        client = backend_data.get("client")
        backends[backend_id] = BackendConfig(
            kind=str(backend_data["kind"]),
            enabled=bool(backend_data.get("enabled", True)),
            client=expand_env_var(client) if client else None,
            options=dict(backend_data.get("options") or {}),
        )
    return backends


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file.

    Raises:
        ValueError: if a value is out of range or a backend entry is invalid
    """
    if config_path is None:
        # Look for config in standard locations
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "chatters" / "config.yaml",
            Path("/etc/chatters/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    # Parse sync config
    sync_data = data.get("sync") or {}
    backoff_data = sync_data.get("backoff") or {}
    max_attempts = backoff_data.get("max_attempts")
    backoff = BackoffConfig(
        initial_seconds=float(backoff_data.get("initial_seconds", 1.0)),
        max_seconds=float(backoff_data.get("max_seconds", 60.0)),
        multiplier=float(backoff_data.get("multiplier", 2.0)),
        jitter=float(backoff_data.get("jitter", 0.1)),
        max_attempts=int(max_attempts) if max_attempts is not None else None,
    )
    # raises ValueError for out-of-range backoff values
    backoff.policy()

    sync = SyncConfig(
        page_size=_positive("sync", "page_size", sync_data.get("page_size", 50)),
        backfill_depth=int(sync_data.get("backfill_depth", 200)),
        lane_capacity=_positive("sync", "lane_capacity", sync_data.get("lane_capacity", 256)),
        notification_buffer=_positive("sync", "notification_buffer", sync_data.get("notification_buffer", 64)),
        backoff=backoff,
    )
    if sync.backfill_depth < 0:
        raise ValueError(f"sync.backfill_depth must be non-negative, got {sync.backfill_depth}")

    hooks_data = data.get("hooks") or {}
    hooks = Hooks(on_new_message=hooks_data.get("on_new_message"))

    backends = _parse_backends(data["backends"]) if data.get("backends") else _default_backends()

    cache_db = data.get("cache_db")

    log_level = str(data.get("log_level", "INFO")).upper()
    parse_level(log_level)

    # Determine device name
    device_name = expand_env_var(str(data.get("device_name", "")))
    if not device_name:
        device_name = platform.node()

    return Config(
        device_name=device_name,
        log_dir=expand_path(data.get("log_dir", str(DEFAULT_LOG_DIR))),
        log_level=log_level,
        cache_db=expand_path(cache_db) if cache_db else None,
        sync=sync,
        hooks=hooks,
        backends=backends,
    )
