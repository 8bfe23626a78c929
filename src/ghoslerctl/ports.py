"""Port allocation helpers for ghoslerctl."""
from __future__ import annotations

import socket


class PortAllocationError(RuntimeError):
    """Raised when no usable port can be found."""


MAX_PORT = 65535


def is_port_available(port: int, *, host: str = "0.0.0.0") -> bool:  # noqa: S104
    """Return True when *port* can be bound on *host*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(start: int, *, host: str = "0.0.0.0") -> int:  # noqa: S104
    """Return *start* when free, otherwise the next bindable port above it."""
    if start < 1 or start > MAX_PORT:
        raise PortAllocationError(f"Start port {start} is outside the valid TCP range.")

    candidate = start
    while candidate <= MAX_PORT:
        if is_port_available(candidate, host=host):
            return candidate
        candidate += 1
    raise PortAllocationError(f"No free port found at or above {start}.")


__all__ = ["PortAllocationError", "find_available_port", "is_port_available"]
