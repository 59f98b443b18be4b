"""Error taxonomy shared by every fleet component.

Local failures (``InstanceNotFoundError``, ``InvalidInstanceError``,
``CredentialUnavailableError``, ``StorageError``) are never retried.
Remote failures are split in two: ``UnreachableError`` means the admin API
could not be reached at all (it drives the online/offline transitions),
``RemoteError`` means the instance answered with a non-2xx response and
carries its body verbatim.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all caddy-fleet errors."""


class InstanceNotFoundError(FleetError):
    """Raised when an instance id is not in the registry."""

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance not found: {instance_id}")


class InvalidInstanceError(FleetError):
    """Raised when caller input for an instance is malformed."""


class CredentialUnavailableError(FleetError):
    """Raised when a credential file cannot be read."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Credential file unreadable: {path} ({reason})")


class UnreachableError(FleetError):
    """Raised on network-level failures: refused, timed out, DNS."""

    def __init__(self, endpoint: str, reason: str) -> None:
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Instance unreachable at {endpoint}: {reason}")


class RemoteError(FleetError):
    """Raised when a remote instance answers with a non-2xx status.

    ``str(exc)`` is the remote body so operators see the instance's own
    diagnostic text.
    """

    def __init__(self, status: int, body: str, url: str = "") -> None:
        self.status = status
        self.body = body
        self.url = url
        super().__init__(body or f"Remote error: HTTP {status}")


class StorageError(FleetError):
    """Raised when local storage cannot be read or written."""
