"""Tests for free-port discovery."""
from __future__ import annotations

import socket

import pytest

from ghoslerctl import ports
from ghoslerctl.ports import PortAllocationError, find_available_port, is_port_available


def test_find_available_port_skips_taken_ports(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ports that cannot be bound are skipped in ascending order."""
    taken = {2369, 2370}
    monkeypatch.setattr(ports, "is_port_available", lambda port, host: port not in taken)

    assert find_available_port(2369) == 2371


def test_find_available_port_returns_start_when_free(monkeypatch: pytest.MonkeyPatch) -> None:
    """The preferred port is used when it is free."""
    monkeypatch.setattr(ports, "is_port_available", lambda port, host: True)

    assert find_available_port(2369) == 2369


def test_find_available_port_exhausts_range(monkeypatch: pytest.MonkeyPatch) -> None:
    """Running past the TCP range raises PortAllocationError."""
    monkeypatch.setattr(ports, "is_port_available", lambda port, host: False)

    with pytest.raises(PortAllocationError, match="No free port"):
        find_available_port(65530)


@pytest.mark.parametrize("start", [0, 65536])
def test_find_available_port_rejects_invalid_start(start: int) -> None:
    """Start values outside 1..65535 are rejected."""
    with pytest.raises(PortAllocationError):
        find_available_port(start)


def test_is_port_available_detects_bound_socket() -> None:
    """A port held by another socket is reported as unavailable."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        port = holder.getsockname()[1]

        assert is_port_available(port, host="127.0.0.1") is False
