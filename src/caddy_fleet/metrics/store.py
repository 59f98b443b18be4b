"""Per-instance metrics snapshot archive.

Layout::

    <root>/<instance_id>/<YYYYMMDDTHHMMSSZ>.json

One directory per instance, one file per snapshot, named by its UTC capture
time at second resolution. Two captures within the same second share a
filename and the later one replaces the earlier. Writes (save, prune) are
serialized under a store-level lock; reads are not.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from caddy_fleet.errors import InvalidInstanceError, StorageError
from caddy_fleet.models import FleetAggregate, MetricsSnapshot

logger = logging.getLogger(__name__)

FILENAME_FORMAT = "%Y%m%dT%H%M%SZ"
SNAPSHOT_SUFFIX = ".json"


def snapshot_filename(captured_at: datetime) -> str:
    """Return the sortable filename for a capture time."""
    return _as_utc(captured_at).strftime(FILENAME_FORMAT) + SNAPSHOT_SUFFIX


def parse_snapshot_filename(name: str) -> datetime | None:
    """Parse a snapshot filename back to its UTC timestamp, or None."""
    if not name.endswith(SNAPSHOT_SUFFIX):
        return None
    try:
        parsed = datetime.strptime(name[: -len(SNAPSHOT_SUFFIX)], FILENAME_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class MetricsStore:
    """Filesystem-backed time series of MetricsSnapshot records."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def instance_ids(self) -> list[str]:
        """Ids of every instance with a snapshot directory."""
        if not self._root.is_dir():
            return []
        return sorted(p.name for p in self._root.iterdir() if p.is_dir())

    def save(self, instance_id: str, snapshot: MetricsSnapshot) -> Path:
        """Persist *snapshot*, creating the instance directory on demand.

        Returns the written file path.

        Raises:
            InvalidInstanceError: If *snapshot* belongs to another instance.
            StorageError: If the file cannot be written.
        """
        if snapshot.instance_id != instance_id:
            raise InvalidInstanceError(
                f"Snapshot for {snapshot.instance_id!r} cannot be saved under {instance_id!r}"
            )
        inst_dir = self._instance_dir(instance_id)
        path = inst_dir / snapshot_filename(snapshot.captured_at)
        payload = json.dumps(snapshot.model_dump(mode="json"), indent=2, sort_keys=True)

        with self._lock:
            try:
                inst_dir.mkdir(parents=True, exist_ok=True)
                tmp_path = path.with_name(path.name + ".tmp")
                tmp_path.write_text(payload + "\n", encoding="utf-8")
                tmp_path.replace(path)
            except OSError as exc:
                raise StorageError(f"Failed to write snapshot {path}: {exc}") from exc

        logger.debug("Saved snapshot %s for %s", path.name, instance_id)
        return path

    def query_range(
        self,
        instance_id: str,
        start: datetime,
        end: datetime,
    ) -> list[MetricsSnapshot]:
        """Snapshots captured in ``[start, end)``, oldest first."""
        start, end = _as_utc(start), _as_utc(end)
        snapshots: list[MetricsSnapshot] = []
        for timestamp, path in sorted(self._iter_files(instance_id)):
            if not start <= timestamp < end:
                continue
            snapshot = self._read(path)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def latest(self, instance_id: str) -> MetricsSnapshot | None:
        """The most recent readable snapshot, or None."""
        candidates = sorted(self._iter_files(instance_id), reverse=True)
        for _timestamp, path in candidates:
            snapshot = self._read(path)
            if snapshot is not None:
                return snapshot
        return None

    def prune_older_than(self, age: timedelta, now: datetime | None = None) -> int:
        """Delete snapshots captured before ``now - age``.

        Returns the number of files removed.
        """
        cutoff = _as_utc(now or datetime.now(tz=UTC)) - age
        removed = 0
        with self._lock:
            for instance_id in self.instance_ids():
                for timestamp, path in self._iter_files(instance_id):
                    if timestamp >= cutoff:
                        continue
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        continue
                    except OSError as exc:
                        raise StorageError(f"Failed to remove snapshot {path}: {exc}") from exc
                    removed += 1

        if removed:
            logger.info("Pruned %d snapshot(s) older than %s", removed, cutoff.isoformat())
        return removed

    def aggregate(
        self,
        instance_ids: Iterable[str],
        start: datetime,
        end: datetime,
    ) -> FleetAggregate:
        """Sum requests and bytes over a range; collect each latest snapshot."""
        total_requests = 0
        total_bytes = 0
        latest: list[MetricsSnapshot] = []

        for instance_id in instance_ids:
            for snapshot in self.query_range(instance_id, start, end):
                total_requests += snapshot.request_count
                total_bytes += snapshot.bytes_total
            newest = self.latest(instance_id)
            if newest is not None:
                latest.append(newest)

        return FleetAggregate(
            total_requests=total_requests,
            total_bytes=total_bytes,
            latest_per_instance=latest,
        )

    # --- Internals ---

    def _instance_dir(self, instance_id: str) -> Path:
        if (
            not instance_id
            or instance_id in (".", "..")
            or "/" in instance_id
            or "\\" in instance_id
        ):
            raise InvalidInstanceError(f"Invalid instance id for metrics: {instance_id!r}")
        return self._root / instance_id

    def _iter_files(self, instance_id: str) -> Iterator[tuple[datetime, Path]]:
        """Yield (timestamp, path) for every well-named snapshot file."""
        inst_dir = self._instance_dir(instance_id)
        try:
            entries = list(inst_dir.iterdir())
        except (FileNotFoundError, NotADirectoryError):
            return
        for entry in entries:
            timestamp = parse_snapshot_filename(entry.name)
            if timestamp is None or not entry.is_file():
                continue
            yield timestamp, entry

    @staticmethod
    def _read(path: Path) -> MetricsSnapshot | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return MetricsSnapshot(**data)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.warning("Skipping unreadable snapshot %s: %s", path, exc)
            return None
