"""Tests for the rotating JSON-lines audit log."""

import json
import threading
from pathlib import Path

import pytest

from caddy_fleet.audit.logger import AuditError, AuditLog, generate_audit_id
from caddy_fleet.errors import RemoteError
from caddy_fleet.models import AuditAction, AuditEntry


@pytest.fixture()
def log_path(tmp_path: Path) -> Path:
    return tmp_path / "audit.jsonl"


def _entry(n: int = 0, **overrides) -> AuditEntry:
    fields = {
        "actor_id": "alice",
        "instance_id": f"inst-{n}",
        "action": AuditAction.RELOAD_CONFIG,
        "details": f"entry {n}",
    }
    fields.update(overrides)
    return AuditEntry(**fields)


# --- Writing ---


class TestAppend:
    def test_creates_file_and_parents(self, tmp_path: Path):
        path = tmp_path / "nested" / "audit.jsonl"
        AuditLog(path).append(_entry())
        assert path.exists()

    def test_stamps_id_and_timestamp(self, log_path: Path):
        original = _entry()
        stored = AuditLog(log_path).append(original)
        assert stored.id.startswith("aud-")
        assert stored.timestamp is not None
        assert original.id == ""
        assert original.timestamp is None

    def test_one_json_line_per_entry(self, log_path: Path):
        log = AuditLog(log_path)
        for n in range(3):
            log.append(_entry(n))
        lines = log_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 3
        assert json.loads(lines[1])["details"] == "entry 1"

    def test_ids_unique(self, log_path: Path):
        log = AuditLog(log_path)
        ids = {log.append(_entry(n)).id for n in range(50)}
        assert len(ids) == 50

    def test_repairs_unterminated_line(self, log_path: Path):
        log_path.write_text('{"partial": ', encoding="utf-8")
        log = AuditLog(log_path)
        log.append(_entry(1))
        entries = log.read_entries()
        assert [e.details for e in entries] == ["entry 1"]

    def test_invalid_max_entries(self, log_path: Path):
        with pytest.raises(AuditError):
            AuditLog(log_path, max_entries=0)


class TestRecord:
    def test_success(self, log_path: Path):
        entry = AuditLog(log_path).record(
            AuditAction.CREATE_INSTANCE, "alice",
            instance_id="inst-1", instance_name="edge-1", source_address="cli@host",
        )
        assert entry.succeeded
        assert entry.error_message is None
        assert entry.source_address == "cli@host"

    def test_failure_from_exception(self, log_path: Path):
        entry = AuditLog(log_path).record(
            AuditAction.RELOAD_CONFIG, 7,
            instance_id="inst-1", error=RemoteError(400, "bad config"),
        )
        assert not entry.succeeded
        assert entry.error_message == "bad config"
        assert entry.actor_id == "7"

    def test_failure_with_empty_message(self, log_path: Path):
        entry = AuditLog(log_path).record(
            AuditAction.STOP_SERVER, "alice", error=RuntimeError(),
        )
        assert entry.error_message == "RuntimeError"


# --- Queries ---


class TestQueries:
    def test_recent_newest_first(self, log_path: Path):
        log = AuditLog(log_path)
        for n in range(5):
            log.append(_entry(n))
        recent = log.recent(5)
        assert [e.details for e in recent] == [f"entry {n}" for n in range(4, -1, -1)]

    def test_recent_limit(self, log_path: Path):
        log = AuditLog(log_path)
        for n in range(5):
            log.append(_entry(n))
        assert [e.details for e in log.recent(2)] == ["entry 4", "entry 3"]
        assert log.recent(0) == []
        assert len(log.recent(None)) == 5

    def test_empty_log(self, log_path: Path):
        assert AuditLog(log_path).recent() == []

    def test_for_instance(self, log_path: Path):
        log = AuditLog(log_path)
        log.append(_entry(1))
        log.append(_entry(2))
        log.append(_entry(1, details="again"))
        assert [e.details for e in log.for_instance("inst-1")] == ["again", "entry 1"]

    def test_for_actor_compares_strings(self, log_path: Path):
        log = AuditLog(log_path)
        log.append(_entry(1, actor_id=42))
        log.append(_entry(2, actor_id="bob"))
        assert [e.instance_id for e in log.for_actor(42)] == ["inst-1"]
        assert [e.instance_id for e in log.for_actor("42")] == ["inst-1"]

    def test_for_action(self, log_path: Path):
        log = AuditLog(log_path)
        log.append(_entry(1))
        log.append(_entry(2, action=AuditAction.STOP_SERVER))
        assert [e.instance_id for e in log.for_action("stop_server")] == ["inst-2"]

    def test_skips_corrupt_lines(self, log_path: Path):
        log = AuditLog(log_path)
        log.append(_entry(1))
        with log_path.open("a", encoding="utf-8") as f:
            f.write("not json\n")
            f.write('{"actor_id": "x"}\n')
        log.append(_entry(2))
        assert [e.details for e in log.recent(None)] == ["entry 2", "entry 1"]


# --- Rotation ---


class TestRotation:
    def test_max_three_keeps_newest(self, log_path: Path):
        log = AuditLog(log_path, max_entries=3)
        for n in range(5):
            log.append(_entry(n))
        remaining = log.recent(None)
        assert [e.details for e in remaining] == ["entry 4", "entry 3", "entry 2"]
        assert len(log_path.read_text(encoding="utf-8").splitlines()) == 3

    def test_never_exceeds_max(self, log_path: Path):
        log = AuditLog(log_path, max_entries=10)
        for n in range(25):
            log.append(_entry(n))
            assert len(log.recent(None)) <= 10

    def test_rotation_survives_reopen(self, log_path: Path):
        AuditLog(log_path, max_entries=100).append(_entry(0))
        for n in range(1, 4):
            AuditLog(log_path, max_entries=2).append(_entry(n))
        assert [e.details for e in AuditLog(log_path).read_entries()] == ["entry 2", "entry 3"]


class TestClear:
    def test_clear(self, log_path: Path):
        log = AuditLog(log_path)
        log.append(_entry())
        log.clear()
        assert log.recent(None) == []
        log.append(_entry(9))
        assert len(log.recent(None)) == 1

    def test_clear_missing_file(self, log_path: Path):
        AuditLog(log_path).clear()
        assert not log_path.exists()


class TestConcurrency:
    def test_parallel_appends(self, log_path: Path):
        log = AuditLog(log_path, max_entries=1000)

        def worker(base: int) -> None:
            for n in range(10):
                log.append(_entry(base + n))

        threads = [threading.Thread(target=worker, args=(i * 10,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log.recent(None)) == 80


def test_generate_audit_id_format():
    audit_id = generate_audit_id()
    prefix, stamp, suffix = audit_id.split("-")
    assert prefix == "aud"
    assert len(stamp) == 20
    assert len(suffix) == 8
