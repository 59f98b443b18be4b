"""Core data models for caddy-fleet.

Defines the schemas for:
- Instance descriptors (what servers are managed)
- Metrics snapshots (what an instance reported, and when)
- Audit entries (what control actions were attempted)
- Remote views (sites, server info, health reports, config documents)
"""

from __future__ import annotations

import enum
import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# --- Enums ---


class InstanceStatus(enum.StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"
    UPDATING = "updating"


class AuditAction(enum.StrEnum):
    CREATE_INSTANCE = "create_instance"
    UPDATE_INSTANCE = "update_instance"
    DELETE_INSTANCE = "delete_instance"
    TEST_CONNECTION = "test_connection"
    REFRESH_STATUS = "refresh_status"
    RELOAD_CONFIG = "reload_config"
    STOP_SERVER = "stop_server"
    START_SERVER = "start_server"
    RESTART_SERVER = "restart_server"
    CREATE_SITE = "create_site"
    DELETE_SITE = "delete_site"
    VIEW_CONFIG = "view_config"
    VIEW_LOGS = "view_logs"


# --- Instance Schema ---


class InstanceSpec(BaseModel):
    """Caller input for creating or updating an instance."""

    name: str = Field(..., min_length=1)
    endpoint: str = Field(..., pattern=r"^https?://\S+$")
    credential_ref: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be blank")
        return v.strip()

    @field_validator("endpoint")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("credential_ref")
    @classmethod
    def _empty_ref_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class InstanceDescriptor(BaseModel):
    """A managed server, as recorded in the registry."""

    id: str
    name: str
    endpoint: str
    credential_ref: str | None = None
    status: InstanceStatus = InstanceStatus.UNKNOWN
    tags: list[str] = Field(default_factory=list)
    last_checked_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("tags")
    @classmethod
    def _tags_as_sorted_set(cls, v: list[str]) -> list[str]:
        return sorted(set(v))

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    @property
    def is_online(self) -> bool:
        return self.status == InstanceStatus.ONLINE


# --- Metrics Schema ---


class SiteMetrics(BaseModel):
    """Per-site counters inside a snapshot."""

    model_config = ConfigDict(frozen=True)

    requests: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    avg_latency_ms: float = 0.0


class MetricsSnapshot(BaseModel):
    """A point-in-time measurement pulled from one instance.

    Immutable once built; the metrics store keys it by
    ``(instance_id, captured_at)`` at second resolution.
    """

    model_config = ConfigDict(frozen=True)

    instance_id: str
    captured_at: datetime
    uptime_seconds: int = 0
    request_count: int = 0
    bytes_total: int = 0
    status_code_counts: dict[str, int] = Field(default_factory=dict)
    per_site: dict[str, SiteMetrics] = Field(default_factory=dict)


class PrometheusSnapshot(BaseModel):
    """Structured counters extracted from exposition text."""

    requests_total: float = 0.0
    requests_by_code: dict[str, float] = Field(default_factory=dict)
    requests_by_host: dict[str, float] = Field(default_factory=dict)
    response_sizes: dict[str, float] = Field(default_factory=dict)
    request_durations: dict[str, float] = Field(default_factory=dict)
    process_start_time: float | None = None


class FleetAggregate(BaseModel):
    """Totals across several instances over a time range."""

    total_requests: int = 0
    total_bytes: int = 0
    latest_per_instance: list[MetricsSnapshot] = Field(default_factory=list)


# --- Remote Views ---


class Site(BaseModel):
    """An HTTP server block configured on an instance."""

    name: str
    listen: list[str] = Field(default_factory=list)
    config: Any = None


class ServerInfo(BaseModel):
    """Identity facts reported by an instance's admin API."""

    instance_id: str = "unknown"
    version: str = "unknown"
    arch: str = "unknown"
    os: str = "unknown"
    num_cpu: int = 0


class HealthReport(BaseModel):
    """Outcome of a health check. Never raised, always returned."""

    instance_id: str
    healthy: bool
    checked_at: datetime
    error: str | None = None
    server_info: ServerInfo | None = None


class ConfigDocument:
    """A remote configuration document carried as opaque JSON.

    ``raw`` holds the bytes exactly as the instance returned them so a
    read/modify/write cycle can send them back untouched. ``data`` is a
    decoded view, built on first access.
    """

    def __init__(self, raw: bytes) -> None:
        self._raw = raw
        self._data: Any = None
        self._decoded = False

    @classmethod
    def from_data(cls, data: Any) -> ConfigDocument:
        return cls(json.dumps(data).encode("utf-8"))

    @property
    def raw(self) -> bytes:
        return self._raw

    @property
    def data(self) -> Any:
        if not self._decoded:
            text = self._raw.decode("utf-8").strip()
            self._data = json.loads(text) if text else None
            self._decoded = True
        return self._data

    def get_path(self, *keys: str) -> Any:
        """Walk nested mappings; return ``None`` as soon as a key is missing."""
        node = self.data
        for key in keys:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return node

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfigDocument):
            return NotImplemented
        return self._raw == other._raw

    def __hash__(self) -> int:
        return hash(self._raw)

    def __repr__(self) -> str:
        return f"ConfigDocument({len(self._raw)} bytes)"


# --- Audit Schema ---


class AuditEntry(BaseModel):
    """A single entry in the append-only audit log."""

    id: str = ""
    timestamp: datetime | None = None
    actor_id: str
    instance_id: str | None = None
    instance_name: str | None = None
    action: AuditAction
    details: str = ""
    source_address: str = ""
    succeeded: bool = True
    error_message: str | None = None

    @field_validator("actor_id", mode="before")
    @classmethod
    def _canonical_actor(cls, v: Any) -> str:
        return str(v)

    @model_validator(mode="after")
    def _error_iff_failed(self) -> AuditEntry:
        if self.succeeded and self.error_message is not None:
            raise ValueError("error_message must be empty when succeeded is true")
        if not self.succeeded and not self.error_message:
            raise ValueError("error_message is required when succeeded is false")
        return self
