"""Configuration for the sync bridge."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any


def _env(name: str, default: str | None = None) -> str | None:
    return os.environ.get(f"SYNCBRIDGE_{name}", default)


@dataclass
class ServerConfig:
    """Operator API server configuration."""
    host: str = "0.0.0.0"
    port: int = 8060
    reload: bool = False


@dataclass
class ProtocolRef:
    """Locates one protocol on the source engine."""
    package: str
    protocol: str
    # Fixed instance id; discovered from the engine when unset
    instance_id: str | None = None


def _default_protocols() -> dict[str, ProtocolRef]:
    return {
        "device": ProtocolRef(package="deviceManagement", protocol="DeviceManagement"),
        "tenant": ProtocolRef(package="tenantManagement", protocol="TenantManagement"),
    }


@dataclass
class EngineConfig:
    """Source engine write API and notification stream."""
    url: str = field(default_factory=lambda: _env("ENGINE_URL", "http://localhost:12000"))
    api_prefix: str = "/npl"
    stream_path: str = "/api/streams"
    oidc_url: str | None = field(default_factory=lambda: _env("OIDC_URL"))
    client_id: str = "syncbridge"
    username: str | None = field(default_factory=lambda: _env("ENGINE_USERNAME"))
    password: str | None = field(default_factory=lambda: _env("ENGINE_PASSWORD"))
    timeout_seconds: float = 10.0
    connect_timeout_seconds: float = 5.0
    # Synchronous retries for caller-initiated writes
    write_max_attempts: int = 2
    protocols: dict[str, ProtocolRef] = field(default_factory=_default_protocols)

    @classmethod
    def from_dict(cls, data: dict) -> EngineConfig:
        data = dict(data)
        protocols = _default_protocols()
        for kind, ref in (data.pop("protocols", None) or {}).items():
            protocols[kind] = ProtocolRef(**ref)
        return cls(protocols=protocols, **data)


@dataclass
class QueryServiceConfig:
    """Read-model query service."""
    url: str = field(default_factory=lambda: _env("QUERY_URL", "http://localhost:5555/graphql"))
    timeout_seconds: float = 10.0
    connect_timeout_seconds: float = 5.0


@dataclass
class LegacyConfig:
    """Legacy platform REST API."""
    url: str = field(default_factory=lambda: _env("LEGACY_URL", "http://localhost:9090"))
    username: str | None = field(default_factory=lambda: _env("LEGACY_USERNAME"))
    password: str | None = field(default_factory=lambda: _env("LEGACY_PASSWORD"))
    timeout_seconds: float = 10.0
    connect_timeout_seconds: float = 5.0
    max_connections: int = 20
    # Refresh the login token this long before it expires
    token_refresh_margin_seconds: float = 60.0


@dataclass
class RetryConfig:
    """Backoff policy for applying events to the legacy platform."""
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    max_attempts: int = 5
    max_elapsed_seconds: float = 120.0


@dataclass
class FeedConfig:
    """Notification feed subscription."""
    # One consumer loop per entity type
    entity_types: list[str] = field(default_factory=lambda: ["device", "tenant"])
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0


@dataclass
class CacheConfig:
    """Read-your-writes cache configuration."""
    enabled: bool = True
    ttl_seconds: float = 30.0
    max_size: int = 10000
    sweep_interval_seconds: float = 15.0


@dataclass
class StorageConfig:
    """Dead-letter and cursor storage."""
    db_path: str = field(default_factory=lambda: _env("DB_PATH", "syncbridge.db"))


@dataclass
class RoutingConfig:
    """Client-side request routing."""
    # YAML rule table; built-in rules when unset
    rules_file: str | None = None


@dataclass
class TelemetryConfig:
    """Telemetry configuration."""
    enabled: bool = True
    sink_type: str = "console"  # console | file
    sink_config: dict[str, Any] = field(default_factory=dict)

    # Batching
    batch_size: int = 500
    flush_interval_seconds: float = 1.0

    # Queue
    max_queue_size: int = 10000


@dataclass
class Config:
    """Main configuration container."""
    server: ServerConfig = field(default_factory=ServerConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    query: QueryServiceConfig = field(default_factory=QueryServiceConfig)
    legacy: LegacyConfig = field(default_factory=LegacyConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    @classmethod
    def from_dict(cls, data: dict) -> Config:
        """Create config from dictionary."""
        return cls(
            server=ServerConfig(**(data.get("server") or {})),
            engine=EngineConfig.from_dict(data.get("engine") or {}),
            query=QueryServiceConfig(**(data.get("query") or {})),
            legacy=LegacyConfig(**(data.get("legacy") or {})),
            retry=RetryConfig(**(data.get("retry") or {})),
            feed=FeedConfig(**(data.get("feed") or {})),
            cache=CacheConfig(**(data.get("cache") or {})),
            storage=StorageConfig(**(data.get("storage") or {})),
            routing=RoutingConfig(**(data.get("routing") or {})),
            telemetry=TelemetryConfig(**(data.get("telemetry") or {})),
        )

    @classmethod
    def from_yaml(cls, path: str) -> Config:
        """Load config from YAML file."""
        import yaml
        with open(path, "r") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_json(cls, path: str) -> Config:
        """Load config from JSON file."""
        import json
        with open(path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data)


def load_config(path: str | None = None) -> Config:
    """Load config from `path`, $SYNCBRIDGE_CONFIG, or defaults."""
    path = path or _env("CONFIG")
    if not path:
        return Config()
    if path.endswith(".json"):
        return Config.from_json(path)
    return Config.from_yaml(path)
