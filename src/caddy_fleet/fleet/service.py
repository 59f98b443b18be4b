"""FleetService — the composition root for fleet control.

Wires the instance registry, the metrics store and the audit log together
with per-instance admin clients. Stores are constructed once by the caller
(or by ``from_config``) and injected; nothing here is process-global.

Usage::

    from caddy_fleet.fleet.service import FleetService

    fleet = FleetService.from_config(load_config())
    inst = fleet.create_instance({"name": "edge-1", "endpoint": "http://10.0.0.5:2019"})
    fleet.test_connection(inst.id)
    snapshot = fleet.collect_metrics(inst.id)

The service does not write audit entries itself: the caller (the CLI, or an
HTTP layer) appends one per control action via ``fleet.audit``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from caddy_fleet.audit.logger import AuditLog
from caddy_fleet.client.admin import AdminClient, ClientTimeouts
from caddy_fleet.config import FleetConfig
from caddy_fleet.errors import (
    CredentialUnavailableError,
    FleetError,
    InstanceNotFoundError,
    RemoteError,
    UnreachableError,
)
from caddy_fleet.metrics.parser import parse_exposition
from caddy_fleet.metrics.store import MetricsStore
from caddy_fleet.models import (
    ConfigDocument,
    FleetAggregate,
    HealthReport,
    InstanceDescriptor,
    InstanceSpec,
    InstanceStatus,
    MetricsSnapshot,
    PrometheusSnapshot,
    Site,
    SiteMetrics,
)
from caddy_fleet.registry.store import InstanceRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[InstanceDescriptor, ClientTimeouts], AdminClient]


def _default_client_factory(
    instance: InstanceDescriptor, timeouts: ClientTimeouts,
) -> AdminClient:
    return AdminClient.from_descriptor(instance, timeouts=timeouts)


def build_snapshot(
    instance_id: str,
    parsed: PrometheusSnapshot,
    captured_at: datetime,
) -> MetricsSnapshot:
    """Turn parsed exposition counters into a MetricsSnapshot."""
    uptime = 0
    if parsed.process_start_time:
        uptime = max(0, int(captured_at.timestamp() - parsed.process_start_time))

    status_codes = {
        code: int(count) for code, count in parsed.requests_by_code.items() if code
    }
    per_site = {
        host: SiteMetrics(requests=int(count))
        for host, count in parsed.requests_by_host.items()
        if host
    }

    return MetricsSnapshot(
        instance_id=instance_id,
        captured_at=captured_at,
        uptime_seconds=uptime,
        request_count=int(parsed.requests_total),
        bytes_total=int(parsed.response_sizes.get("total", 0.0)),
        status_code_counts=status_codes,
        per_site=per_site,
    )


class FleetService:
    """Fleet control operations over a registry, metrics store and audit log."""

    def __init__(
        self,
        registry: InstanceRegistry,
        metrics: MetricsStore,
        audit: AuditLog,
        timeouts: ClientTimeouts | None = None,
        metrics_retention: timedelta = timedelta(days=30),
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._registry = registry
        self._metrics = metrics
        self._audit = audit
        self._timeouts = timeouts or ClientTimeouts()
        self._retention = metrics_retention
        self._client_factory = client_factory or _default_client_factory

    @classmethod
    def from_config(
        cls,
        config: FleetConfig,
        client_factory: ClientFactory | None = None,
    ) -> FleetService:
        """Construct every store under ``config.data_dir``."""
        return cls(
            registry=InstanceRegistry(config.registry_path),
            metrics=MetricsStore(config.metrics_dir),
            audit=AuditLog(config.audit_path, max_entries=config.audit_max_entries),
            timeouts=config.timeouts,
            metrics_retention=timedelta(days=config.metrics_retention_days),
            client_factory=client_factory,
        )

    @property
    def registry(self) -> InstanceRegistry:
        return self._registry

    @property
    def metrics(self) -> MetricsStore:
        return self._metrics

    @property
    def audit(self) -> AuditLog:
        return self._audit

    @property
    def timeouts(self) -> ClientTimeouts:
        return self._timeouts

    # --- Instance CRUD ---

    def list_instances(self, tag: str | None = None) -> list[InstanceDescriptor]:
        if tag is not None:
            return self._registry.list_by_tag(tag)
        return self._registry.list()

    def get_instance(self, instance_id: str) -> InstanceDescriptor:
        return self._registry.get(instance_id)

    def create_instance(self, spec: InstanceSpec | dict) -> InstanceDescriptor:
        return self._registry.create(spec)

    def update_instance(
        self, instance_id: str, spec: InstanceSpec | dict,
    ) -> InstanceDescriptor:
        return self._registry.update(instance_id, spec)

    def delete_instance(self, instance_id: str) -> None:
        self._registry.delete(instance_id)

    # --- Status ---

    def test_connection(self, instance_id: str) -> InstanceStatus:
        """Ping an instance and record online/offline.

        Unreachable is an outcome, not an error: the instance is marked
        offline and the call returns. Credential and remote errors leave the
        status untouched and propagate.
        """
        client = self._client(instance_id)
        try:
            client.ping(timeout=self._timeouts.default)
        except UnreachableError as exc:
            logger.info("Instance %s unreachable: %s", instance_id, exc.reason)
            self._registry.set_status(instance_id, InstanceStatus.OFFLINE)
            return InstanceStatus.OFFLINE

        self._registry.set_status(instance_id, InstanceStatus.ONLINE)
        return InstanceStatus.ONLINE

    def refresh_status(self, instance_id: str) -> InstanceStatus:
        """Best-effort status refresh; never raises for remote failures.

        Raises:
            InstanceNotFoundError: If *instance_id* is not registered.
        """
        instance = self._registry.get(instance_id)
        try:
            client = self._client_factory(instance, self._timeouts)
        except CredentialUnavailableError as exc:
            logger.warning("Cannot build client for %s: %s", instance_id, exc)
            status = InstanceStatus.UNKNOWN
        else:
            try:
                client.ping()
                status = InstanceStatus.ONLINE
            except (UnreachableError, RemoteError) as exc:
                logger.debug("Ping failed for %s: %s", instance_id, exc)
                status = InstanceStatus.OFFLINE

        self._registry.set_status(instance_id, status)
        return status

    def refresh_all(self) -> list[threading.Thread]:
        """Start one background refresh per instance and return immediately.

        The returned threads are daemons; nothing waits on them here.
        """
        threads: list[threading.Thread] = []
        for instance in self._registry.list():
            thread = threading.Thread(
                target=self._refresh_quietly,
                args=(instance.id,),
                name=f"refresh-{instance.id}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    def _refresh_quietly(self, instance_id: str) -> None:
        try:
            self.refresh_status(instance_id)
        except InstanceNotFoundError:
            logger.debug("Instance %s removed before refresh", instance_id)
        except Exception:
            logger.exception("Background refresh failed for %s", instance_id)

    def health_check(self, instance_id: str) -> HealthReport:
        """Ping and enrich with server identity; failures become reports."""
        now = datetime.now(tz=UTC)
        try:
            client = self._client(instance_id)
            client.ping()
        except InstanceNotFoundError:
            raise
        except FleetError as exc:
            return HealthReport(
                instance_id=instance_id, healthy=False, checked_at=now, error=str(exc),
            )

        info = None
        try:
            info = client.server_info()
        except FleetError as exc:
            logger.debug("Server info unavailable for %s: %s", instance_id, exc)

        return HealthReport(
            instance_id=instance_id, healthy=True, checked_at=now, server_info=info,
        )

    # --- Configuration ---

    def get_config(self, instance_id: str) -> ConfigDocument:
        return self._client(instance_id).get_config()

    def reload_config(self, instance_id: str, config: bytes | ConfigDocument) -> None:
        """Push a new configuration, marking the instance ``updating`` meanwhile.

        On failure the previous status is restored (``offline`` if the
        instance turned out to be unreachable) and the error re-raised.
        """
        instance = self._registry.get(instance_id)
        client = self._client_factory(instance, self._timeouts)

        self._registry.set_status(instance_id, InstanceStatus.UPDATING)
        try:
            client.reload_config(config)
        except UnreachableError:
            self._registry.set_status(instance_id, InstanceStatus.OFFLINE)
            raise
        except Exception:
            self._registry.set_status(instance_id, instance.status)
            raise
        self._registry.set_status(instance_id, InstanceStatus.ONLINE)
        logger.info("Reloaded configuration on %s", instance_id)

    def stop_instance(self, instance_id: str) -> None:
        self._client(instance_id).stop()
        logger.info("Stop requested for %s", instance_id)

    # --- Sites ---

    def list_sites(self, instance_id: str) -> list[Site]:
        return self._client(instance_id).list_sites()

    def put_site(self, instance_id: str, name: str, config: Any) -> None:
        self._client(instance_id).create_or_update_site(name, config)

    def delete_site(self, instance_id: str, name: str) -> None:
        self._client(instance_id).delete_site(name)

    # --- Metrics ---

    def collect_metrics(self, instance_id: str) -> MetricsSnapshot:
        """Fetch, parse and persist one snapshot. All-or-nothing."""
        text = self._client(instance_id).get_metrics_text()
        parsed = parse_exposition(text)
        captured_at = datetime.now(tz=UTC).replace(microsecond=0)
        snapshot = build_snapshot(instance_id, parsed, captured_at)
        self._metrics.save(instance_id, snapshot)
        return snapshot

    def metrics_history(
        self,
        instance_id: str,
        start: datetime,
        end: datetime | None = None,
    ) -> list[MetricsSnapshot]:
        return self._metrics.query_range(instance_id, start, end or datetime.now(tz=UTC))

    def latest_metrics(self, instance_id: str) -> MetricsSnapshot | None:
        return self._metrics.latest(instance_id)

    def analytics(
        self,
        start: datetime,
        end: datetime | None = None,
        tag: str | None = None,
    ) -> FleetAggregate:
        """Aggregate stored metrics over registered instances."""
        ids = [inst.id for inst in self.list_instances(tag=tag)]
        return self._metrics.aggregate(ids, start, end or datetime.now(tz=UTC))

    def prune_metrics(self, age: timedelta | None = None) -> int:
        return self._metrics.prune_older_than(age if age is not None else self._retention)

    # --- Internals ---

    def _client(self, instance_id: str) -> AdminClient:
        instance = self._registry.get(instance_id)
        return self._client_factory(instance, self._timeouts)
