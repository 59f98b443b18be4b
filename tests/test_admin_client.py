"""Tests for the admin API client (urllib mocked)."""

import io
import json
import socket
import urllib.error
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from caddy_fleet.client.admin import AdminClient, ClientTimeouts
from caddy_fleet.errors import (
    CredentialUnavailableError,
    InvalidInstanceError,
    RemoteError,
    UnreachableError,
)
from caddy_fleet.models import ConfigDocument, InstanceDescriptor

URLOPEN = "caddy_fleet.client.admin.urllib.request.urlopen"
ENDPOINT = "http://10.0.0.5:2019"


def _response(body: bytes = b"", status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status = status
    resp.read.return_value = body
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


def _http_error(code: int, body: bytes) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(ENDPOINT, code, "error", {}, io.BytesIO(body))


def _sent_request(mock_urlopen: MagicMock):
    return mock_urlopen.call_args[0][0]


# --- Headers and construction ---


class TestRequestBasics:
    @patch(URLOPEN)
    def test_ping_headers(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response(b'"abc"')
        AdminClient(ENDPOINT, credential="tok").ping()

        req = _sent_request(mock_urlopen)
        assert req.full_url == f"{ENDPOINT}/id"
        assert req.method == "GET"
        assert req.get_header("Content-type") == "application/json"
        assert req.get_header("Accept") == "application/json"
        assert req.get_header("Authorization") == "Bearer tok"
        assert mock_urlopen.call_args[1]["timeout"] == 5.0

    @patch(URLOPEN)
    def test_no_credential_no_auth_header(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response()
        AdminClient(ENDPOINT).ping()
        assert _sent_request(mock_urlopen).get_header("Authorization") is None

    @patch(URLOPEN)
    def test_ping_timeout_override(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response()
        AdminClient(ENDPOINT).ping(timeout=10.0)
        assert mock_urlopen.call_args[1]["timeout"] == 10.0

    def test_trailing_slash_stripped(self):
        assert AdminClient(ENDPOINT + "/").endpoint == ENDPOINT

    def test_from_descriptor_loads_credential(self, tmp_path: Path):
        token = tmp_path / "token"
        token.write_text("from-file\n", encoding="utf-8")
        now = datetime.now(tz=UTC)
        inst = InstanceDescriptor(
            id="inst-1", name="edge", endpoint=ENDPOINT, credential_ref=str(token),
            created_at=now, updated_at=now,
        )
        timeouts = ClientTimeouts(ping=1.0)
        client = AdminClient.from_descriptor(inst, timeouts=timeouts)
        assert client.endpoint == ENDPOINT
        assert client.timeouts is timeouts
        assert client._credential == "from-file"

    def test_from_descriptor_unreadable_credential(self, tmp_path: Path):
        now = datetime.now(tz=UTC)
        inst = InstanceDescriptor(
            id="inst-1", name="edge", endpoint=ENDPOINT,
            credential_ref=str(tmp_path / "missing"), created_at=now, updated_at=now,
        )
        with pytest.raises(CredentialUnavailableError):
            AdminClient.from_descriptor(inst)


# --- Failure mapping ---


class TestFailureMapping:
    @patch(URLOPEN)
    def test_connection_refused(self, mock_urlopen: MagicMock):
        mock_urlopen.side_effect = urllib.error.URLError(ConnectionRefusedError(111, "refused"))
        with pytest.raises(UnreachableError) as exc_info:
            AdminClient(ENDPOINT).ping()
        assert exc_info.value.endpoint == ENDPOINT

    @patch(URLOPEN)
    def test_timeout(self, mock_urlopen: MagicMock):
        mock_urlopen.side_effect = socket.timeout("timed out")
        with pytest.raises(UnreachableError, match="timed out"):
            AdminClient(ENDPOINT).ping()

    @patch(URLOPEN)
    def test_http_error_body_verbatim(self, mock_urlopen: MagicMock):
        mock_urlopen.side_effect = _http_error(400, b'{"error":"loading config: bad"}')
        with pytest.raises(RemoteError) as exc_info:
            AdminClient(ENDPOINT).reload_config(b"{}")
        assert exc_info.value.status == 400
        assert str(exc_info.value) == '{"error":"loading config: bad"}'

    @patch(URLOPEN)
    def test_non_2xx_without_http_error(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response(b"moved", status=302)
        with pytest.raises(RemoteError) as exc_info:
            AdminClient(ENDPOINT).get_config()
        assert exc_info.value.status == 302
        assert exc_info.value.body == "moved"


# --- Configuration ---


class TestConfig:
    @patch(URLOPEN)
    def test_get_config(self, mock_urlopen: MagicMock):
        raw = b'{"apps": {"http": {}}}\n'
        mock_urlopen.return_value = _response(raw)
        doc = AdminClient(ENDPOINT).get_config()
        assert _sent_request(mock_urlopen).full_url == f"{ENDPOINT}/config/"
        assert doc.raw == raw
        assert doc.data == {"apps": {"http": {}}}

    @patch(URLOPEN)
    def test_reload_sends_bytes_untouched(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response()
        raw = b'{ "apps" :{"http":{}} }'
        AdminClient(ENDPOINT).reload_config(ConfigDocument(raw))

        req = _sent_request(mock_urlopen)
        assert req.full_url == f"{ENDPOINT}/load"
        assert req.method == "POST"
        assert req.data == raw
        assert mock_urlopen.call_args[1]["timeout"] == 30.0

    @patch(URLOPEN)
    def test_stop(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response()
        AdminClient(ENDPOINT, timeouts=ClientTimeouts(long=45.0)).stop()
        req = _sent_request(mock_urlopen)
        assert req.full_url == f"{ENDPOINT}/stop"
        assert req.method == "POST"
        assert mock_urlopen.call_args[1]["timeout"] == 45.0


# --- Server info ---


class TestServerInfo:
    @patch(URLOPEN)
    def test_bare_string(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response(b'"d5f8c1"')
        info = AdminClient(ENDPOINT).server_info()
        assert info.instance_id == "d5f8c1"
        assert info.version == "unknown"

    @patch(URLOPEN)
    def test_object(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response(
            json.dumps({"id": "abc", "version": "v2.8.4", "num_cpu": 8}).encode(),
        )
        info = AdminClient(ENDPOINT).server_info()
        assert info.instance_id == "abc"
        assert info.version == "v2.8.4"
        assert info.num_cpu == 8

    @patch(URLOPEN)
    def test_not_json(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response(b"plain-id")
        assert AdminClient(ENDPOINT).server_info().instance_id == "plain-id"

    @patch(URLOPEN)
    def test_empty(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response(b"")
        assert AdminClient(ENDPOINT).server_info().instance_id == "unknown"


# --- Metrics ---


class TestMetrics:
    @patch(URLOPEN)
    def test_metrics_text(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response(b"caddy_http_requests_total 1\n")
        text = AdminClient(ENDPOINT).get_metrics_text()
        req = _sent_request(mock_urlopen)
        assert req.full_url == f"{ENDPOINT}/metrics"
        assert req.get_header("Accept") == "application/json"
        assert text == "caddy_http_requests_total 1\n"


# --- Sites ---


class TestSites:
    @patch(URLOPEN)
    def test_list_sites(self, mock_urlopen: MagicMock):
        config = {
            "apps": {"http": {"servers": {
                "srv1": {"listen": [":8080"]},
                "srv0": {"listen": [":443", ":80"], "routes": []},
            }}},
        }
        mock_urlopen.return_value = _response(json.dumps(config).encode())
        sites = AdminClient(ENDPOINT).list_sites()
        assert [s.name for s in sites] == ["srv0", "srv1"]
        assert sites[0].listen == [":443", ":80"]
        assert sites[0].config == {"listen": [":443", ":80"], "routes": []}

    @patch(URLOPEN)
    @pytest.mark.parametrize("config", [{}, {"apps": {}}, {"apps": {"http": {"servers": []}}}])
    def test_list_sites_missing_structure(self, mock_urlopen: MagicMock, config):
        mock_urlopen.return_value = _response(json.dumps(config).encode())
        assert AdminClient(ENDPOINT).list_sites() == []

    @patch(URLOPEN)
    def test_list_sites_without_listen(self, mock_urlopen: MagicMock):
        config = {"apps": {"http": {"servers": {"srv0": {"routes": []}}}}}
        mock_urlopen.return_value = _response(json.dumps(config).encode())
        sites = AdminClient(ENDPOINT).list_sites()
        assert sites[0].listen == []

    @patch(URLOPEN)
    def test_put_site(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response()
        AdminClient(ENDPOINT).create_or_update_site("my site", {"listen": [":80"]})
        req = _sent_request(mock_urlopen)
        assert req.method == "PUT"
        assert req.full_url == f"{ENDPOINT}/config/apps/http/servers/my%20site"
        assert json.loads(req.data) == {"listen": [":80"]}

    @patch(URLOPEN)
    def test_delete_site(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value = _response()
        AdminClient(ENDPOINT).delete_site("srv0")
        req = _sent_request(mock_urlopen)
        assert req.method == "DELETE"
        assert req.full_url == f"{ENDPOINT}/config/apps/http/servers/srv0"

    def test_empty_site_name(self):
        with pytest.raises(InvalidInstanceError):
            AdminClient(ENDPOINT).delete_site("")
