# Copyright (c) 2025 Stephen Clau
#
# This file is part of Factorio Panel.
#
# Factorio Panel is dual-licensed:
#
# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms
#
# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com
#
# SPDX-License-Identifier: AGPL-3.0-only OR Commercial


"""
RCON gateway for the Factorio server console.

Owns the one live RCON connection and exposes send_command() as the single
way to talk to the server:
- Lazy connect on first use, reconnect on the next call after any failure
  (no background reconnect loop)
- One command on the wire at a time (asyncio.Lock around acquire + send)
- Lua unlock handshake before the first script command of each connection

Factorio answers the first /sc or /c of a game session with an
achievement-disable warning instead of running it. The handshake sends a
harmless probe until the sentinel comes back, at most LUA_UNLOCK_ATTEMPTS
times, then proceeds either way.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

import structlog

try:
    from .exceptions import AuthenticationError, RconConnectionError, RconTimeoutError
    from .rcon_client import RconTransport
except ImportError:
    from exceptions import AuthenticationError, RconConnectionError, RconTimeoutError
    from rcon_client import RconTransport

logger = structlog.get_logger()

T = TypeVar("T")

SCRIPT_COMMAND_PREFIXES = ("/sc ", "/silent-command ", "/c ", "/command ")
LUA_PROBE_SENTINEL = "__lua_ok__"
LUA_PROBE_COMMAND = f'/sc rcon.print("{LUA_PROBE_SENTINEL}")'
LUA_UNLOCK_ATTEMPTS = 3

# Extra slack on top of the socket timeout before the round-trip is abandoned
TIMEOUT_GRACE = 5.0


def is_script_command(command: str) -> bool:
    """Return True if command runs Lua (/sc, /silent-command, /c, /command)."""
    return command.startswith(SCRIPT_COMMAND_PREFIXES)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"


@dataclass
class PlayerInfo:
    """Player line from /players."""

    name: str
    online: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "online": self.online}


_PLAYER_LINE = re.compile(r"^\s*(.+?)\s+\(online\)|^\s*(.+?)\s+\(offline\)")
_FIRST_INT = re.compile(r"(\d+)")
_VERSION = re.compile(r"(\d[\d.]*)")
_USERNAME = re.compile(r"[A-Za-z0-9_.-]{1,60}")


class RconGateway:
    """Serialized, self-healing access to the Factorio RCON console."""

    def __init__(
        self,
        host: str,
        port: int,
        password: str,
        timeout: float = 10.0,
        transport_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        """
        Initialize gateway (does not connect).

        Args:
            host: RCON host address
            port: RCON port
            password: RCON password
            timeout: Transport read timeout in seconds
            transport_factory: Builds a fresh transport per connection
                (defaults to RconTransport with the values above)
        """
        self.host = host
        self.port = port
        self.timeout = timeout

        if transport_factory is None:

            def transport_factory() -> RconTransport:
                return RconTransport(host, port, password, timeout=timeout)

        self._transport_factory = transport_factory
        self._transport: Optional[Any] = None
        self._state = ConnectionState.DISCONNECTED
        self._lua_unlocked = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.AUTHENTICATED

    @property
    def lua_unlocked(self) -> bool:
        return self._lua_unlocked

    async def send_command(self, command: str) -> str:
        """
        Execute an RCON command and return the raw response.

        Script commands trigger the Lua unlock handshake first (once per
        connection). The response is returned untrimmed.

        Raises:
            ValueError: command is not a non-empty string
            AuthenticationError: Password rejected while connecting
            RconConnectionError: Transport failed; calling again reconnects
            RconTimeoutError: Round-trip exceeded the transport timeout
        """
        if not isinstance(command, str) or not command.strip():
            raise ValueError("command must be a non-empty string")

        async with self._lock:
            if is_script_command(command):
                await self._ensure_lua_unlocked()

            transport = await self._acquire()
            response = await self._run_blocking(transport.run, command)

        logger.debug(
            "rcon_command_executed",
            command=command[:50],
            response_length=len(response),
        )
        return response

    async def close(self) -> None:
        """Drop the connection. The next send_command() reconnects."""
        async with self._lock:
            if self._state is not ConnectionState.DISCONNECTED:
                self._mark_disconnected("closed")

    async def _acquire(self) -> Any:
        """Return the live transport, connecting if needed. Caller holds the lock."""
        if self._state is ConnectionState.AUTHENTICATED and self._transport is not None:
            return self._transport

        self._state = ConnectionState.CONNECTING
        self._lua_unlocked = False
        self._transport = self._transport_factory()

        logger.info("rcon_connecting", host=self.host, port=self.port)
        await self._run_blocking(self._transport.connect)

        self._state = ConnectionState.AUTHENTICATED
        logger.info("rcon_connected", host=self.host, port=self.port)
        return self._transport

    async def _ensure_lua_unlocked(self) -> None:
        """Run the probe until the sentinel is echoed. Caller holds the lock."""
        if self._lua_unlocked:
            return

        transport = await self._acquire()

        for attempt in range(1, LUA_UNLOCK_ATTEMPTS + 1):
            response = await self._run_blocking(transport.run, LUA_PROBE_COMMAND)
            logger.debug("rcon_lua_probe", attempt=attempt, response=response[:200])
            if LUA_PROBE_SENTINEL in response:
                self._lua_unlocked = True
                logger.info("rcon_lua_unlocked", attempts=attempt)
                return

        # Non-fatal: the caller's command is still attempted
        logger.warning("rcon_lua_unlock_failed", attempts=LUA_UNLOCK_ATTEMPTS)
        self._lua_unlocked = True

    async def _run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        """
        Run a blocking transport call in a worker thread with a hard timeout.

        Any failure drops the connection before the error propagates.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.timeout + TIMEOUT_GRACE,
            )
        except (AuthenticationError, RconConnectionError, RconTimeoutError) as e:
            self._mark_disconnected(type(e).__name__)
            raise
        except asyncio.TimeoutError as e:
            self._mark_disconnected("timeout")
            logger.error("rcon_command_timeout", timeout=self.timeout + TIMEOUT_GRACE)
            raise RconTimeoutError(
                f"RCON round-trip timed out after {self.timeout + TIMEOUT_GRACE}s"
            ) from e
        except asyncio.CancelledError:
            # Response may still arrive on the socket; it cannot be reused
            self._mark_disconnected("cancelled")
            raise
        except Exception as e:
            self._mark_disconnected("error")
            logger.error("rcon_transport_error", error=str(e), exc_info=True)
            raise RconConnectionError(f"RCON transport error: {e}") from e

    def _mark_disconnected(self, reason: str) -> None:
        """Drop the connection and the unlock flag together."""
        transport, self._transport = self._transport, None
        self._state = ConnectionState.DISCONNECTED
        self._lua_unlocked = False

        if transport is not None:
            transport.close()

        logger.warning("rcon_disconnected", reason=reason)

    # ------------------------------------------------------------------
    # Console queries
    # ------------------------------------------------------------------

    async def get_players(self) -> List[PlayerInfo]:
        """Parse /players into online/offline entries."""
        raw = await self.send_command("/players")
        lines = [line for line in raw.split("\n") if line.strip()]

        players: List[PlayerInfo] = []
        # First line is the "Players (N):" header
        for line in lines[1:]:
            match = _PLAYER_LINE.match(line)
            if not match:
                continue
            name = (match.group(1) or match.group(2)).strip()
            players.append(PlayerInfo(name=name, online=match.group(1) is not None))
        return players

    async def get_server_status(self) -> Dict[str, Any]:
        """Collect player count, version, game time, evolution and seed."""
        # One at a time; the first failure stops the rest
        players_raw = await self.send_command("/players online count")
        version_raw = await self.send_command("/version")
        time_raw = await self.send_command("/time")
        evolution_raw = await self.send_command("/evolution")
        seed_raw = await self.send_command("/seed")

        players_match = _FIRST_INT.search(players_raw)
        version_match = _VERSION.search(version_raw)

        return {
            "players": int(players_match.group(1)) if players_match else 0,
            "version": version_match.group(1) if version_match else "unknown",
            "time": time_raw.strip(),
            "evolution": evolution_raw.strip(),
            "seed": seed_raw.strip(),
        }

    async def server_save(self, name: Optional[str] = None) -> str:
        """Trigger /server-save, optionally under a given save name."""
        command = f"/server-save {name}" if name else "/server-save"
        return await self.send_command(command)

    async def take_screenshot(self, filename: str) -> str:
        """Ask the server to render a 1920x1080 screenshot into script-output."""
        lua = " ".join(
            [
                "game.take_screenshot{",
                "surface=game.surfaces[1],",
                "position={x=0, y=0},",
                "resolution={x=1920, y=1080},",
                "zoom=0.5,",
                "show_gui=false,",
                "show_entity_info=false,",
                "anti_alias=true,",
                f'path="{filename}"',
                "}",
            ]
        )
        return await self.send_command(f"/sc {lua}")

    async def whitelist_add(self, username: str) -> str:
        """Add a player to the server whitelist."""
        return await self.send_command(f"/whitelist add {_checked_username(username)}")

    async def whitelist_remove(self, username: str) -> str:
        """Remove a player from the server whitelist."""
        return await self.send_command(f"/whitelist remove {_checked_username(username)}")

    async def server_info(self) -> str:
        """Raw /version output (RCON has no command listing the saves)."""
        return await self.send_command("/version")


def _checked_username(username: str) -> str:
    """Reject anything that is not a plain Factorio username."""
    if not isinstance(username, str) or not _USERNAME.fullmatch(username):
        raise ValueError("Invalid Factorio username")
    return username
