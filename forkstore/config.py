"""Configuration loading for forkstore."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    machine_id: str = "forkstore-node"


@dataclass
class StorageConfig:
    """Configuration for the SQLite log store."""

    db_path: str = "~/.forkstore/store.db"
    busy_timeout_seconds: float = 5.0
    max_save_retries: int = 3


@dataclass
class SyncConfig:
    """Configuration for exchanging logs with a peer."""

    enabled: bool = True
    peer_url: str = ""
    batch_size: int = 500
    max_retries: int = 3
    timeout_seconds: float = 30.0
    sync_interval_minutes: int = 5


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8420


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with FORKSTORE_ prefix."""
    return os.environ.get(f"FORKSTORE_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if machine_id := _get_env("MACHINE_ID"):
        config.node.machine_id = machine_id

    # Storage overrides
    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path
    if busy_timeout := _get_env("BUSY_TIMEOUT"):
        config.storage.busy_timeout_seconds = float(busy_timeout)

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = sync_enabled.lower() in ("true", "1", "yes")
    if peer_url := _get_env("SYNC_PEER_URL"):
        config.sync.peer_url = peer_url
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.sync_interval_minutes = int(sync_interval)

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    machine_id=data["node"].get("machine_id", config.node.machine_id)
                )

            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    db_path=storage_data.get("db_path", config.storage.db_path),
                    busy_timeout_seconds=storage_data.get(
                        "busy_timeout_seconds", config.storage.busy_timeout_seconds
                    ),
                    max_save_retries=storage_data.get(
                        "max_save_retries", config.storage.max_save_retries
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    peer_url=sync_data.get("peer_url", config.sync.peer_url),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    max_retries=sync_data.get("max_retries", config.sync.max_retries),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    sync_interval_minutes=sync_data.get(
                        "sync_interval_minutes", config.sync.sync_interval_minutes
                    ),
                )

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )

    # Apply environment variable overrides
    return _apply_env_overrides(config)
