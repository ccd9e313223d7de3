"""Shared pytest configuration and fakes for Factorio Panel tests.

This module provides:
- src/ on sys.path for flat-layout imports
- FakeRconServer / FakeTransport: in-memory stand-in for the RCON socket
  that records commands, connections and concurrent round-trips
- gateway fixture wired to the fake transport
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

# Add src/ to Python path for absolute imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from exceptions import AuthenticationError, RconConnectionError  # noqa: E402
from rcon_gateway import LUA_PROBE_COMMAND, LUA_PROBE_SENTINEL, RconGateway  # noqa: E402


class FakeRconServer:
    """Scriptable RCON server shared by every FakeTransport it hands out.

    Type Contract:
        - commands: List[str] every command received, in order
        - connections: int number of successful logins
        - probe_replies: List[str] replies to the Lua probe, consumed in order;
          when empty the probe echoes the sentinel
        - responses: Dict[str, str] canned replies (default "ok <command>")
        - fail_next_run: Optional[Exception] raised once by the next run()
        - reject_password: bool makes connect() raise AuthenticationError
        - run_delay: float seconds each run() blocks
        - max_in_flight: int highest number of overlapping run() calls seen
    """

    def __init__(self) -> None:
        self.commands: List[str] = []
        self.connections = 0
        self.closed = 0
        self.probe_replies: List[str] = []
        self.responses: Dict[str, str] = {}
        self.fail_next_run: Optional[Exception] = None
        self.reject_password = False
        self.run_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    @property
    def probe_count(self) -> int:
        return self.commands.count(LUA_PROBE_COMMAND)

    def reply(self, command: str) -> str:
        if command == LUA_PROBE_COMMAND:
            if self.probe_replies:
                return self.probe_replies.pop(0)
            return f"{LUA_PROBE_SENTINEL}\n"
        return self.responses.get(command, f"ok {command}")


class FakeTransport:
    """Blocking transport double matching RconTransport's interface."""

    def __init__(self, server: FakeRconServer) -> None:
        self.server = server
        self.connected = False

    @property
    def authenticated(self) -> bool:
        return self.connected

    def connect(self) -> None:
        if self.server.reject_password:
            raise AuthenticationError("RCON authentication failed")
        self.connected = True
        self.server.connections += 1

    def run(self, command: str) -> str:
        if not self.connected:
            raise RconConnectionError("RCON transport is not connected")

        with self.server._lock:
            self.server.in_flight += 1
            self.server.max_in_flight = max(self.server.max_in_flight, self.server.in_flight)
        try:
            if self.server.run_delay:
                time.sleep(self.server.run_delay)
            self.server.commands.append(command)
            if self.server.fail_next_run is not None:
                error, self.server.fail_next_run = self.server.fail_next_run, None
                raise error
            return self.server.reply(command)
        finally:
            with self.server._lock:
                self.server.in_flight -= 1

    def close(self) -> None:
        if self.connected:
            self.server.closed += 1
        self.connected = False


@pytest.fixture
def rcon_server() -> FakeRconServer:
    """Fresh fake RCON server per test."""
    return FakeRconServer()


@pytest.fixture
def make_gateway(rcon_server: FakeRconServer) -> Callable[..., RconGateway]:
    """Factory for gateways talking to rcon_server.

    Usage:
        gateway = make_gateway(timeout=0.1)
    """

    def _make(timeout: float = 1.0) -> RconGateway:
        return RconGateway(
            host="localhost",
            port=27015,
            password="test123",
            timeout=timeout,
            transport_factory=lambda: FakeTransport(rcon_server),
        )

    return _make


@pytest.fixture
def gateway(make_gateway: Callable[..., RconGateway]) -> RconGateway:
    """Gateway wired to the fake RCON server."""
    return make_gateway()
