"""Tests for caddy-fleet data models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from caddy_fleet.models import (
    AuditAction,
    AuditEntry,
    ConfigDocument,
    InstanceDescriptor,
    InstanceSpec,
    InstanceStatus,
    MetricsSnapshot,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


# --- InstanceSpec ---


class TestInstanceSpec:
    def test_minimal(self):
        spec = InstanceSpec(name="edge-1", endpoint="http://10.0.0.5:2019")
        assert spec.credential_ref is None
        assert spec.tags == []

    def test_strips_name_and_trailing_slash(self):
        spec = InstanceSpec(name="  edge-1 ", endpoint="https://edge.example.com:2019/")
        assert spec.name == "edge-1"
        assert spec.endpoint == "https://edge.example.com:2019"

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            InstanceSpec(name="   ", endpoint="http://a:2019")

    @pytest.mark.parametrize("endpoint", ["", "10.0.0.5:2019", "ftp://host", "http://"])
    def test_bad_endpoint_rejected(self, endpoint: str):
        with pytest.raises(ValidationError):
            InstanceSpec(name="x", endpoint=endpoint)

    def test_blank_credential_ref_is_none(self):
        spec = InstanceSpec(name="x", endpoint="http://a:2019", credential_ref="  ")
        assert spec.credential_ref is None


# --- InstanceDescriptor ---


class TestInstanceDescriptor:
    def _make(self, **overrides) -> InstanceDescriptor:
        fields = {
            "id": "inst-abc",
            "name": "edge-1",
            "endpoint": "http://a:2019",
            "created_at": NOW,
            "updated_at": NOW,
        }
        fields.update(overrides)
        return InstanceDescriptor(**fields)

    def test_defaults_to_unknown(self):
        inst = self._make()
        assert inst.status == InstanceStatus.UNKNOWN
        assert inst.last_checked_at is None
        assert not inst.is_online

    def test_tags_deduplicated_and_sorted(self):
        inst = self._make(tags=["prod", "eu", "prod"])
        assert inst.tags == ["eu", "prod"]
        assert inst.has_tag("eu")
        assert not inst.has_tag("us")

    def test_status_from_string(self):
        inst = self._make(status="online")
        assert inst.status == InstanceStatus.ONLINE
        assert inst.is_online

    def test_json_round_trip(self):
        inst = self._make(tags=["a"], credential_ref="/etc/token")
        restored = InstanceDescriptor(**inst.model_dump(mode="json"))
        assert restored == inst


# --- MetricsSnapshot ---


class TestMetricsSnapshot:
    def test_frozen(self):
        snap = MetricsSnapshot(instance_id="inst-1", captured_at=NOW)
        with pytest.raises(ValidationError):
            snap.request_count = 5  # type: ignore[misc]

    def test_defaults(self):
        snap = MetricsSnapshot(instance_id="inst-1", captured_at=NOW)
        assert snap.request_count == 0
        assert snap.status_code_counts == {}
        assert snap.per_site == {}


# --- ConfigDocument ---


class TestConfigDocument:
    def test_raw_preserved_byte_for_byte(self):
        raw = b'{"b": 1,   "a": {"x": [1, 2]}}'
        doc = ConfigDocument(raw)
        assert doc.raw == raw
        assert doc.data == {"b": 1, "a": {"x": [1, 2]}}

    def test_get_path(self):
        doc = ConfigDocument.from_data({"apps": {"http": {"servers": {"srv0": {}}}}})
        assert doc.get_path("apps", "http", "servers") == {"srv0": {}}
        assert doc.get_path("apps", "tls") is None
        assert doc.get_path("apps", "http", "servers", "srv0", "listen") is None

    def test_get_path_through_non_mapping(self):
        doc = ConfigDocument.from_data({"apps": [1, 2]})
        assert doc.get_path("apps", "http") is None

    def test_empty_body_is_none(self):
        assert ConfigDocument(b"").data is None
        assert ConfigDocument(b"null\n").data is None

    def test_equality_on_bytes(self):
        assert ConfigDocument(b"{}") == ConfigDocument(b"{}")
        assert ConfigDocument(b"{}") != ConfigDocument(b"{ }")
        assert len({ConfigDocument(b"{}"), ConfigDocument(b"{}")}) == 1


# --- AuditEntry ---


class TestAuditEntry:
    def test_success_entry(self):
        entry = AuditEntry(actor_id="alice", action=AuditAction.RELOAD_CONFIG)
        assert entry.succeeded
        assert entry.error_message is None

    def test_failure_requires_message(self):
        with pytest.raises(ValidationError):
            AuditEntry(actor_id="alice", action="stop_server", succeeded=False)

    def test_success_rejects_message(self):
        with pytest.raises(ValidationError):
            AuditEntry(actor_id="alice", action="stop_server", error_message="boom")

    def test_actor_coerced_to_string(self):
        entry = AuditEntry(actor_id=42, action="view_config")
        assert entry.actor_id == "42"

    def test_unknown_action_rejected(self):
        with pytest.raises(ValidationError):
            AuditEntry(actor_id="alice", action="format_disk")
