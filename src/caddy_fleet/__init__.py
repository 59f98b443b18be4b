"""caddy-fleet: control plane for a fleet of web servers driven through their admin APIs."""

__version__ = "0.1.0"

from caddy_fleet.audit.logger import AuditLog
from caddy_fleet.client.admin import AdminClient, ClientTimeouts
from caddy_fleet.config import FleetConfig, find_config, load_config
from caddy_fleet.errors import (
    CredentialUnavailableError,
    FleetError,
    InstanceNotFoundError,
    InvalidInstanceError,
    RemoteError,
    StorageError,
    UnreachableError,
)
from caddy_fleet.fleet.service import FleetService
from caddy_fleet.metrics.parser import parse_exposition
from caddy_fleet.metrics.store import MetricsStore
from caddy_fleet.models import (
    AuditAction,
    AuditEntry,
    ConfigDocument,
    FleetAggregate,
    HealthReport,
    InstanceDescriptor,
    InstanceSpec,
    InstanceStatus,
    MetricsSnapshot,
    ServerInfo,
    Site,
)
from caddy_fleet.registry.store import InstanceRegistry

__all__ = [
    "AdminClient",
    "AuditAction",
    "AuditEntry",
    "AuditLog",
    "ClientTimeouts",
    "ConfigDocument",
    "CredentialUnavailableError",
    "FleetAggregate",
    "FleetConfig",
    "FleetError",
    "FleetService",
    "HealthReport",
    "InstanceDescriptor",
    "InstanceNotFoundError",
    "InstanceRegistry",
    "InstanceSpec",
    "InstanceStatus",
    "InvalidInstanceError",
    "MetricsSnapshot",
    "MetricsStore",
    "RemoteError",
    "ServerInfo",
    "Site",
    "StorageError",
    "UnreachableError",
    "find_config",
    "load_config",
    "parse_exposition",
]
