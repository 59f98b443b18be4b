"""File-backed bearer credentials.

An instance descriptor never holds its credential inline; it holds a
``credential_ref`` path. The credential is read at client construction
time so a rotated token is picked up on the next call.
"""

from __future__ import annotations

from pathlib import Path

from caddy_fleet.errors import CredentialUnavailableError


def load_credential(credential_ref: str | Path | None) -> str | None:
    """Read a bearer credential from *credential_ref*.

    Returns ``None`` when no reference is configured. Surrounding
    whitespace (typically a trailing newline) is stripped.

    Raises:
        CredentialUnavailableError: If the file cannot be read or decoded.
    """
    if credential_ref is None or str(credential_ref).strip() == "":
        return None

    path = Path(credential_ref).expanduser()
    try:
        token = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as exc:
        raise CredentialUnavailableError(str(path), str(exc)) from exc

    return token or None
