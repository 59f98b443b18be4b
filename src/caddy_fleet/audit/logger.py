"""Append-only, rotating audit log of fleet control actions.

Each entry is one JSON line. ``append`` opens the file in append mode and
writes a single line, never touching earlier bytes; a crash mid-write can
at worst leave a partial final line, which readers skip.

Once the entry count exceeds ``max_entries`` the file is rewritten (tmp
file + rename) keeping only the newest entries. Appends, rotation and
clear are serialized under one lock.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from caddy_fleet.errors import StorageError
from caddy_fleet.models import AuditAction, AuditEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000


class AuditError(Exception):
    """Raised when the audit log is misconfigured."""


def generate_audit_id(now: datetime | None = None) -> str:
    """Sortable, unique entry id: ``aud-<UTC timestamp>-<random hex>``."""
    now = now or datetime.now(tz=UTC)
    return f"aud-{now.strftime('%Y%m%d%H%M%S%f')}-{secrets.token_hex(4)}"


class AuditLog:
    """JSON-lines audit log with size-capped rotation.

    Thread-safe via a lock on write operations.
    """

    def __init__(
        self,
        log_path: str | Path,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise AuditError(f"max_entries must be >= 1, got {max_entries}")
        self._path = Path(log_path)
        self._max_entries = max_entries
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Stamp *entry* with a fresh id and timestamp and append it.

        Returns the stored entry. The caller's object is not modified.

        Raises:
            StorageError: If the log file cannot be written.
        """
        now = datetime.now(tz=UTC)
        stored = entry.model_copy(update={"id": generate_audit_id(now), "timestamp": now})
        json_line = json.dumps(stored.model_dump(mode="json"), sort_keys=True)

        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                prefix = "" if self._ends_with_newline() else "\n"
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(prefix + json_line + "\n")
            except OSError as exc:
                raise StorageError(f"Failed to append to audit log {self._path}: {exc}") from exc

            entries = self._read_entries()
            if len(entries) > self._max_entries:
                self._rotate(entries)

        return stored

    def record(
        self,
        action: AuditAction,
        actor_id: Any,
        *,
        instance_id: str | None = None,
        instance_name: str | None = None,
        details: str = "",
        source_address: str = "",
        error: BaseException | str | None = None,
    ) -> AuditEntry:
        """Build and append an entry; a non-None *error* marks it failed."""
        entry = AuditEntry(
            actor_id=actor_id,
            instance_id=instance_id,
            instance_name=instance_name,
            action=action,
            details=details,
            source_address=source_address,
            succeeded=error is None,
            error_message=None if error is None else (str(error) or type(error).__name__),
        )
        return self.append(entry)

    # --- Queries (newest first) ---

    def recent(self, limit: int | None = 50) -> list[AuditEntry]:
        """The newest *limit* entries; ``None`` means all."""
        return self._query(limit=limit)

    def for_instance(self, instance_id: str, limit: int | None = 50) -> list[AuditEntry]:
        return self._query(limit=limit, instance_id=instance_id)

    def for_actor(self, actor_id: Any, limit: int | None = 50) -> list[AuditEntry]:
        """Entries by *actor_id*, compared on its string form."""
        return self._query(limit=limit, actor_id=str(actor_id))

    def for_action(self, action: AuditAction | str, limit: int | None = 50) -> list[AuditEntry]:
        return self._query(limit=limit, action=AuditAction(action))

    def read_entries(self) -> list[AuditEntry]:
        """All readable entries, oldest first."""
        return self._read_entries()

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            try:
                if self._path.exists():
                    self._path.write_text("", encoding="utf-8")
            except OSError as exc:
                raise StorageError(f"Failed to clear audit log {self._path}: {exc}") from exc
        logger.info("Cleared audit log %s", self._path)

    # --- Internals ---

    def _query(
        self,
        limit: int | None,
        instance_id: str | None = None,
        actor_id: str | None = None,
        action: AuditAction | None = None,
    ) -> list[AuditEntry]:
        if limit is not None and limit <= 0:
            return []
        matched: list[AuditEntry] = []
        for entry in reversed(self._read_entries()):
            if instance_id is not None and entry.instance_id != instance_id:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if action is not None and entry.action != action:
                continue
            matched.append(entry)
            if limit is not None and len(matched) >= limit:
                break
        return matched

    def _read_entries(self) -> list[AuditEntry]:
        """Parse the whole file, skipping blank and unparsable lines."""
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        try:
            with self._path.open("r", encoding="utf-8", errors="replace") as f:
                for i, line in enumerate(f):
                    stripped = line.strip()
                    if not stripped:
                        continue
                    try:
                        entries.append(AuditEntry(**json.loads(stripped)))
                    except (json.JSONDecodeError, ValidationError, TypeError) as e:
                        logger.warning(
                            "Skipping corrupt audit entry at line %d in %s: %s",
                            i + 1, self._path, e,
                        )
        except OSError as exc:
            raise StorageError(f"Failed to read audit log {self._path}: {exc}") from exc

        return entries

    def _ends_with_newline(self) -> bool:
        """False when a previous write left an unterminated final line."""
        try:
            with self._path.open("rb") as f:
                f.seek(0, 2)
                if f.tell() == 0:
                    return True
                f.seek(-1, 2)
                return f.read(1) == b"\n"
        except FileNotFoundError:
            return True

    def _rotate(self, entries: list[AuditEntry]) -> None:
        """Keep only the newest ``max_entries`` entries (caller holds the lock)."""
        kept = entries[-self._max_entries:]
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                for entry in kept:
                    f.write(json.dumps(entry.model_dump(mode="json"), sort_keys=True) + "\n")
            tmp_path.replace(self._path)
        except OSError as exc:
            raise StorageError(f"Failed to rotate audit log {self._path}: {exc}") from exc

        logger.debug(
            "Rotated audit log %s: dropped %d entr(ies)",
            self._path, len(entries) - len(kept),
        )
