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
Raw RCON transport for the Factorio server console.

Thin blocking adapter over the rcon library's Source RCON client. It owns a
single socket: connect() opens and authenticates it, run() performs one
request/response round-trip, close() drops it. Library and socket errors are
translated into the panel's error taxonomy.

The transport is blocking. RconGateway drives it from worker
threads (asyncio.to_thread) and serializes access to it.
"""

from __future__ import annotations

from typing import Optional

import structlog
from rcon.exceptions import EmptyResponse, SessionTimeout, WrongPassword
from rcon.source import Client as RCONClient

try:
    from .exceptions import AuthenticationError, RconConnectionError, RconTimeoutError
except ImportError:
    from exceptions import AuthenticationError, RconConnectionError, RconTimeoutError

logger = structlog.get_logger()


class RconTransport:
    """Single authenticated RCON socket."""

    def __init__(
        self,
        host: str,
        port: int,
        password: str,
        timeout: float = 10.0,
    ) -> None:
        """
        Initialize transport (does not connect).

        Args:
            host: RCON host address
            port: RCON port
            password: RCON password
            timeout: Socket timeout in seconds for connect and reads
        """
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.client: Optional[RCONClient] = None

    @property
    def authenticated(self) -> bool:
        return self.client is not None

    def connect(self) -> None:
        """
        Open the socket and log in.

        Raises:
            AuthenticationError: Server rejected the password
            RconConnectionError: Socket could not be opened
        """
        client = RCONClient(
            self.host,
            self.port,
            timeout=self.timeout,
            passwd=self.password,
        )
        try:
            client.connect(login=True)
        except WrongPassword as e:
            client.close()
            logger.error("rcon_authentication_failed", host=self.host, port=self.port)
            raise AuthenticationError(
                f"RCON authentication failed for {self.host}:{self.port}"
            ) from e
        except (OSError, EmptyResponse, SessionTimeout) as e:
            client.close()
            raise RconConnectionError(
                f"RCON connection to {self.host}:{self.port} failed: {e}"
            ) from e

        self.client = client
        logger.debug("rcon_transport_connected", host=self.host, port=self.port)

    def run(self, command: str) -> str:
        """
        Send one command and return the raw response text.

        Raises:
            RconConnectionError: Not connected, or socket failed mid round-trip
            RconTimeoutError: Read timed out
        """
        if self.client is None:
            raise RconConnectionError("RCON transport is not connected")

        try:
            response = self.client.run(command)
        except TimeoutError as e:
            raise RconTimeoutError(
                f"RCON read timed out after {self.timeout}s"
            ) from e
        except (OSError, EmptyResponse, SessionTimeout) as e:
            raise RconConnectionError(f"RCON transport failed: {e}") from e

        return response if response else ""

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        client, self.client = self.client, None
        if client is None:
            return
        try:
            client.close()
        except OSError as e:
            logger.debug("rcon_transport_close_error", error=str(e))
