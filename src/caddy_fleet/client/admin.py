"""Client for one instance's administrative HTTP API.

Stateless: one ``AdminClient`` per instance per operation, built from the
instance descriptor. Every request carries JSON content negotiation
headers, a bearer credential when one is configured, and a bounded
timeout.

Uses stdlib ``urllib.request`` — no extra dependencies required.

Failure mapping:
- network-level failures (refused, timeout, DNS) -> ``UnreachableError``
- non-2xx responses -> ``RemoteError`` with the body verbatim
"""

from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from caddy_fleet.credentials.loader import load_credential
from caddy_fleet.errors import InvalidInstanceError, RemoteError, UnreachableError
from caddy_fleet.models import ConfigDocument, InstanceDescriptor, ServerInfo, Site

logger = logging.getLogger(__name__)

SITES_PATH = "/config/apps/http/servers"


@dataclass(frozen=True)
class ClientTimeouts:
    """Timeouts per call class, in seconds."""

    ping: float = 5.0
    default: float = 10.0
    long: float = 30.0


class AdminClient:
    """Authenticated client for a single instance's admin API.

    Usage::

        client = AdminClient.from_descriptor(instance)
        client.ping()
        doc = client.get_config()
        client.reload_config(doc.raw)
    """

    def __init__(
        self,
        endpoint: str,
        credential: str | None = None,
        timeouts: ClientTimeouts | None = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._credential = credential
        self._timeouts = timeouts or ClientTimeouts()

    @classmethod
    def from_descriptor(
        cls,
        instance: InstanceDescriptor,
        timeouts: ClientTimeouts | None = None,
    ) -> AdminClient:
        """Build a client for *instance*, loading its credential file.

        Raises:
            CredentialUnavailableError: If ``credential_ref`` cannot be read.
        """
        return cls(
            instance.endpoint,
            credential=load_credential(instance.credential_ref),
            timeouts=timeouts,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def timeouts(self) -> ClientTimeouts:
        return self._timeouts

    # --- Reachability ---

    def ping(self, timeout: float | None = None) -> None:
        """Probe ``GET /id``. Raises UnreachableError or RemoteError."""
        self._request("GET", "/id", timeout=timeout or self._timeouts.ping)

    def server_info(self, timeout: float | None = None) -> ServerInfo:
        """Best-effort identity lookup via ``GET /id``.

        The admin API may answer with a bare id string, a JSON object or
        nothing useful; unknown fields stay at their defaults.
        """
        body = self._request("GET", "/id", timeout=timeout or self._timeouts.ping)
        text = body.decode("utf-8", errors="replace").strip()
        if not text:
            return ServerInfo()
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return ServerInfo(instance_id=text)
        if isinstance(data, dict):
            known = {k: v for k, v in data.items() if k in ServerInfo.model_fields}
            if "id" in data and "instance_id" not in known:
                known["instance_id"] = str(data["id"])
            try:
                return ServerInfo(**known)
            except ValueError:
                return ServerInfo()
        return ServerInfo(instance_id=str(data))

    # --- Configuration ---

    def get_config(self) -> ConfigDocument:
        """Fetch the full running configuration (``GET /config/``)."""
        body = self._request("GET", "/config/", timeout=self._timeouts.default)
        return ConfigDocument(body)

    def reload_config(self, config: bytes | ConfigDocument) -> None:
        """Replace the running configuration (``POST /load``).

        The bytes are sent as-is; nothing is re-serialized.
        """
        body = config.raw if isinstance(config, ConfigDocument) else config
        self._request("POST", "/load", body=body, timeout=self._timeouts.long)

    def stop(self) -> None:
        """Ask the instance to shut down (``POST /stop``)."""
        self._request("POST", "/stop", timeout=self._timeouts.long)

    # --- Metrics ---

    def get_metrics_text(self) -> str:
        """Fetch Prometheus exposition text (``GET /metrics``)."""
        body = self._request("GET", "/metrics", timeout=self._timeouts.default)
        return body.decode("utf-8", errors="replace")

    # --- Sites ---

    def list_sites(self) -> list[Site]:
        """Derive sites from ``apps.http.servers.<name>.listen``.

        An absent or unconventional structure yields an empty list.
        """
        servers = self.get_config().get_path("apps", "http", "servers")
        if not isinstance(servers, dict):
            return []

        sites: list[Site] = []
        for name in sorted(servers):
            server = servers[name]
            listen: list[str] = []
            if isinstance(server, dict) and isinstance(server.get("listen"), list):
                listen = [str(addr) for addr in server["listen"]]
            sites.append(Site(name=name, listen=listen, config=server))
        return sites

    def create_or_update_site(self, name: str, config: Any) -> None:
        """``PUT`` a server block under ``apps.http.servers.<name>``."""
        body = json.dumps(config).encode("utf-8")
        self._request("PUT", self._site_path(name), body=body, timeout=self._timeouts.default)

    def delete_site(self, name: str) -> None:
        """``DELETE`` the server block ``apps.http.servers.<name>``."""
        self._request("DELETE", self._site_path(name), timeout=self._timeouts.default)

    # --- Transport ---

    @staticmethod
    def _site_path(name: str) -> str:
        if not name:
            raise InvalidInstanceError("site name must not be empty")
        return f"{SITES_PATH}/{urllib.parse.quote(name, safe='')}"

    def _request(
        self,
        method: str,
        path: str,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """Perform one request and return the response body.

        Raises:
            UnreachableError: On connection, DNS or timeout failures.
            RemoteError: On any non-2xx response.
        """
        url = self._endpoint + path
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._credential:
            headers["Authorization"] = f"Bearer {self._credential}"

        req = urllib.request.Request(url, data=body, headers=headers, method=method)
        logger.debug("%s %s", method, url)
        try:
            with urllib.request.urlopen(  # noqa: S310
                req, timeout=timeout or self._timeouts.default,
            ) as resp:
                status = resp.status
                payload = resp.read()
        except urllib.error.HTTPError as e:
            text = _read_error_body(e)
            logger.debug("%s %s -> HTTP %d", method, url, e.code)
            raise RemoteError(e.code, text, url=url) from e
        except urllib.error.URLError as e:
            raise UnreachableError(self._endpoint, str(e.reason)) from e
        except (TimeoutError, ConnectionError, http.client.HTTPException) as e:
            raise UnreachableError(self._endpoint, str(e) or type(e).__name__) from e

        if not 200 <= status < 300:
            raise RemoteError(status, payload.decode("utf-8", errors="replace"), url=url)
        return payload


def _read_error_body(error: urllib.error.HTTPError) -> str:
    try:
        return error.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
