"""Instance registry.

File-backed (single JSON document) catalog of managed instances.

Every mutation rewrites the whole document through a temporary file and an
atomic rename, so readers of the file only ever see the old or the new
version. In memory, the catalog is guarded by a reader/writer lock: reads
share, mutations are exclusive for both the in-memory update and the disk
write. A failed write rolls the in-memory change back.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from caddy_fleet.errors import InstanceNotFoundError, InvalidInstanceError, StorageError
from caddy_fleet.models import InstanceDescriptor, InstanceSpec, InstanceStatus

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when the registry file exists but cannot be loaded."""


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Writers are preferred: once a writer is waiting, new readers block
    until it has finished.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _validate_spec(spec: InstanceSpec | dict) -> InstanceSpec:
    if isinstance(spec, InstanceSpec):
        return spec
    try:
        return InstanceSpec(**spec)
    except (ValidationError, TypeError) as exc:
        raise InvalidInstanceError(f"Invalid instance spec: {exc}") from exc


class InstanceRegistry:
    """JSON-backed registry of instance descriptors.

    Loads the document on construction: a missing file is an empty
    registry, a corrupt one raises ``RegistryError``.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = ReadWriteLock()
        self._instances: dict[str, InstanceDescriptor] = {}
        self._issued_ids: set[str] = set()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._instances)

    def __contains__(self, instance_id: object) -> bool:
        with self._lock.read():
            return instance_id in self._instances

    # --- Reads ---

    def list(self) -> list[InstanceDescriptor]:
        """Return all descriptors, oldest first."""
        with self._lock.read():
            items = sorted(self._instances.values(), key=lambda i: (i.created_at, i.id))
            return [inst.model_copy(deep=True) for inst in items]

    def get(self, instance_id: str) -> InstanceDescriptor:
        """Look up a descriptor by id. Raises InstanceNotFoundError if absent."""
        with self._lock.read():
            inst = self._instances.get(instance_id)
            if inst is None:
                raise InstanceNotFoundError(instance_id)
            return inst.model_copy(deep=True)

    def list_by_tag(self, tag: str) -> list[InstanceDescriptor]:
        """Return all descriptors carrying *tag*."""
        return [inst for inst in self.list() if inst.has_tag(tag)]

    # --- Mutations ---

    def create(self, spec: InstanceSpec | dict) -> InstanceDescriptor:
        """Register a new instance with ``status=unknown``."""
        spec = _validate_spec(spec)
        now = datetime.now(tz=UTC)

        with self._lock.write():
            instance_id = self._new_id()
            inst = InstanceDescriptor(
                id=instance_id,
                name=spec.name,
                endpoint=spec.endpoint,
                credential_ref=spec.credential_ref,
                status=InstanceStatus.UNKNOWN,
                tags=spec.tags,
                created_at=now,
                updated_at=now,
            )
            self._instances[instance_id] = inst
            try:
                self._save()
            except StorageError:
                del self._instances[instance_id]
                raise
            self._issued_ids.add(instance_id)

        logger.info("Registered instance %s (%s) at %s", inst.id, inst.name, inst.endpoint)
        return inst.model_copy(deep=True)

    def update(self, instance_id: str, spec: InstanceSpec | dict) -> InstanceDescriptor:
        """Replace name, endpoint, credential_ref and tags of an instance."""
        spec = _validate_spec(spec)

        with self._lock.write():
            previous = self._require(instance_id)
            updated = previous.model_copy(
                update={
                    "name": spec.name,
                    "endpoint": spec.endpoint,
                    "credential_ref": spec.credential_ref,
                    "tags": sorted(set(spec.tags)),
                    "updated_at": datetime.now(tz=UTC),
                },
                deep=True,
            )
            self._replace(instance_id, updated, previous)

        logger.info("Updated instance %s", instance_id)
        return updated.model_copy(deep=True)

    def delete(self, instance_id: str) -> None:
        """Permanently remove an instance."""
        with self._lock.write():
            previous = self._require(instance_id)
            del self._instances[instance_id]
            try:
                self._save()
            except StorageError:
                self._instances[instance_id] = previous
                raise

        logger.info("Deleted instance %s", instance_id)

    def set_status(self, instance_id: str, status: InstanceStatus) -> None:
        """Record a status observation and stamp ``last_checked_at``."""
        status = InstanceStatus(status)
        with self._lock.write():
            previous = self._require(instance_id)
            now = datetime.now(tz=UTC)
            updated = previous.model_copy(
                update={"status": status, "last_checked_at": now, "updated_at": now},
                deep=True,
            )
            self._replace(instance_id, updated, previous)

        if previous.status != status:
            logger.info(
                "Instance %s status %s -> %s", instance_id, previous.status, status,
            )

    # --- Internals (caller holds the lock) ---

    def _require(self, instance_id: str) -> InstanceDescriptor:
        inst = self._instances.get(instance_id)
        if inst is None:
            raise InstanceNotFoundError(instance_id)
        return inst

    def _replace(
        self,
        instance_id: str,
        updated: InstanceDescriptor,
        previous: InstanceDescriptor,
    ) -> None:
        self._instances[instance_id] = updated
        try:
            self._save()
        except StorageError:
            self._instances[instance_id] = previous
            raise

    def _new_id(self) -> str:
        while True:
            candidate = f"inst-{uuid.uuid4().hex[:12]}"
            if candidate not in self._instances and candidate not in self._issued_ids:
                return candidate

    def _load(self) -> None:
        """Read the registry document, if present."""
        if not self._path.exists():
            logger.debug("No registry at %s, starting empty", self._path)
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryError(f"Cannot load registry {self._path}: {exc}") from exc

        if not isinstance(raw, list):
            raise RegistryError(f"Registry must be a JSON array: {self._path}")

        for i, entry in enumerate(raw):
            try:
                inst = InstanceDescriptor(**entry)
            except (ValidationError, TypeError) as exc:
                raise RegistryError(
                    f"Invalid instance at index {i} in {self._path}: {exc}"
                ) from exc
            if inst.id in self._instances:
                raise RegistryError(f"Duplicate instance ID {inst.id} in {self._path}")
            self._instances[inst.id] = inst
            self._issued_ids.add(inst.id)

        logger.debug("Loaded %d instance(s) from %s", len(self._instances), self._path)

    def _save(self) -> None:
        """Rewrite the whole document atomically (tmp file + rename)."""
        items = sorted(self._instances.values(), key=lambda i: (i.created_at, i.id))
        payload = json.dumps(
            [inst.model_dump(mode="json") for inst in items], indent=2, sort_keys=True,
        )
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload + "\n", encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            raise StorageError(f"Failed to write registry {self._path}: {exc}") from exc
