from __future__ import annotations

import re
from urllib.parse import unquote, urlsplit

_DRIVE_PATH = re.compile(r"^[A-Za-z]:[\\/]")
_DRIVE_URI_PATH = re.compile(r"^/[A-Za-z]:[\\/]")


def has_prefix(value: str, prefix: str) -> bool:
    return value == prefix or value.startswith(f"{prefix}/")


def normalize_spec_root_input(value: str | None) -> str | None:
    """Trim a user supplied spec root and turn ``file://`` URIs into host paths."""
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if not normalized.lower().startswith("file://"):
        return normalized

    parts = urlsplit(normalized)
    host = parts.netloc
    path = unquote(parts.path)
    if host and host.lower() != "localhost":
        return f"//{host}{path}"
    if _DRIVE_URI_PATH.match(path):
        return path[1:]
    return path or None


def is_absolute_spec_root_input(value: str) -> bool:
    if value.startswith("/"):
        return True
    if value.startswith("\\\\"):
        return True
    return bool(_DRIVE_PATH.match(value))
