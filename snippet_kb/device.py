"""Device identity used to bind vault key material to this installation."""

from __future__ import annotations

import hashlib
import platform
import uuid

_MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")


def _hardware_node() -> str:
    """MAC-derived node id, or "" when uuid.getnode() had to make one up."""
    node = uuid.getnode()
    # Multicast bit set: a random per-process value, not a hardware address.
    if (node >> 40) & 1:
        return ""
    return f"{node:012x}"


def _machine_id() -> str:
    for path in _MACHINE_ID_PATHS:
        try:
            with open(path, encoding="utf-8") as fh:
                value = fh.read().strip()
        except OSError:
            continue
        if value:
            return value
    return ""


def device_identity(override: str = "") -> str:
    """Return a stable, non-secret identifier for this machine.

    Hashes the host name, the hardware node id (or the OS machine id when
    no hardware address is readable), the OS and the machine architecture.
    A non-empty *override* is returned unchanged.
    """
    if override:
        return override
    parts = [
        platform.node(),
        _hardware_node() or _machine_id(),
        platform.system(),
        platform.machine(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
