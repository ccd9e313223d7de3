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


from __future__ import annotations

import asyncio

import pytest

import rcon_gateway
from exceptions import AuthenticationError, RconConnectionError, RconTimeoutError
from rcon_gateway import (
    LUA_PROBE_COMMAND,
    LUA_PROBE_SENTINEL,
    LUA_UNLOCK_ATTEMPTS,
    ConnectionState,
    PlayerInfo,
    is_script_command,
)


# ============================================================================
# SCRIPT COMMAND DETECTION
# ============================================================================

class TestIsScriptCommand:
    @pytest.mark.parametrize(
        "command",
        ['/sc rcon.print(1)', '/silent-command game.print("x")', "/c game.tick", "/command x"],
    )
    def test_script_prefixes(self, command):
        assert is_script_command(command)

    @pytest.mark.parametrize("command", ["/version", "/players", "/scx", "/seed", "sc foo"])
    def test_plain_commands(self, command):
        assert not is_script_command(command)


# ============================================================================
# CONNECTION MANAGEMENT
# ============================================================================

@pytest.mark.asyncio
class TestConnection:
    async def test_connects_lazily_on_first_command(self, gateway, rcon_server):
        assert gateway.state is ConnectionState.DISCONNECTED
        assert rcon_server.connections == 0

        response = await gateway.send_command("/version")

        assert response == "ok /version"
        assert gateway.state is ConnectionState.AUTHENTICATED
        assert gateway.is_connected
        assert rcon_server.connections == 1

    async def test_reuses_live_connection(self, gateway, rcon_server):
        for _ in range(5):
            await gateway.send_command("/time")
        assert rcon_server.connections == 1

    async def test_response_returned_untrimmed(self, gateway, rcon_server):
        rcon_server.responses["/time"] = "  Day 3, 12:00  \n"
        assert await gateway.send_command("/time") == "  Day 3, 12:00  \n"

    async def test_reconnects_after_transport_failure(self, gateway, rcon_server):
        await gateway.send_command("/version")
        rcon_server.fail_next_run = RconConnectionError("socket closed")

        with pytest.raises(RconConnectionError):
            await gateway.send_command("/players")
        assert gateway.state is ConnectionState.DISCONNECTED
        assert rcon_server.closed == 1

        # Caller takes no special action: the next call reconnects
        assert await gateway.send_command("/version") == "ok /version"
        assert rcon_server.connections == 2

    async def test_unexpected_error_wrapped_and_resets(self, gateway, rcon_server):
        await gateway.send_command("/version")
        rcon_server.fail_next_run = RuntimeError("bad packet")

        with pytest.raises(RconConnectionError):
            await gateway.send_command("/players")
        assert gateway.state is ConnectionState.DISCONNECTED

    async def test_authentication_error_not_retained(self, gateway, rcon_server):
        rcon_server.reject_password = True

        with pytest.raises(AuthenticationError):
            await gateway.send_command("/version")
        assert gateway.state is ConnectionState.DISCONNECTED
        assert gateway._transport is None

        rcon_server.reject_password = False
        assert await gateway.send_command("/version") == "ok /version"

    async def test_close_drops_connection(self, gateway, rcon_server):
        await gateway.send_command('/sc rcon.print("x")')
        assert gateway.lua_unlocked

        await gateway.close()

        assert gateway.state is ConnectionState.DISCONNECTED
        assert not gateway.lua_unlocked
        assert rcon_server.closed == 1

    async def test_close_when_disconnected_is_noop(self, gateway, rcon_server):
        await gateway.close()
        assert rcon_server.closed == 0


# ============================================================================
# COMMAND VALIDATION
# ============================================================================

@pytest.mark.asyncio
class TestValidation:
    @pytest.mark.parametrize("command", ["", "   ", None, 42])
    async def test_rejects_invalid_command(self, gateway, rcon_server, command):
        with pytest.raises(ValueError):
            await gateway.send_command(command)
        assert rcon_server.connections == 0


# ============================================================================
# LUA UNLOCK HANDSHAKE
# ============================================================================

@pytest.mark.asyncio
class TestLuaUnlock:
    async def test_plain_commands_never_probe(self, gateway, rcon_server):
        for command in ["/version", "/players", "/time", "/evolution", "/seed"]:
            await gateway.send_command(command)

        assert rcon_server.probe_count == 0
        assert not gateway.lua_unlocked

    async def test_first_script_command_probes_before_command(self, gateway, rcon_server):
        command = '/sc rcon.print("ok")'
        await gateway.send_command(command)

        assert rcon_server.commands == [LUA_PROBE_COMMAND, command]
        assert gateway.lua_unlocked

    async def test_probe_runs_once_per_connection(self, gateway, rcon_server):
        await gateway.send_command("/sc rcon.print(1)")
        await gateway.send_command("/silent-command rcon.print(2)")
        await gateway.send_command("/c game.print(3)")

        assert rcon_server.probe_count == 1

    async def test_resends_probe_after_achievement_warning(self, gateway, rcon_server):
        rcon_server.probe_replies = [
            "Using Lua console commands will disable achievements. Please repeat the command to proceed.",
        ]

        await gateway.send_command('/sc rcon.print("ok")')

        assert rcon_server.probe_count == 2
        assert rcon_server.commands[-1] == '/sc rcon.print("ok")'
        assert gateway.lua_unlocked

    async def test_probe_bounded_when_sentinel_never_returned(self, gateway, rcon_server):
        rcon_server.probe_replies = ["warning"] * 10

        response = await gateway.send_command('/sc rcon.print("ok")')

        assert rcon_server.probe_count == LUA_UNLOCK_ATTEMPTS == 3
        assert gateway.lua_unlocked
        # The real command is still sent after the failed unlock
        assert rcon_server.commands[-1] == '/sc rcon.print("ok")'
        assert response == 'ok /sc rcon.print("ok")'

    async def test_empty_probe_response_counts_as_locked(self, gateway, rcon_server):
        rcon_server.probe_replies = ["", f"{LUA_PROBE_SENTINEL}\n"]

        await gateway.send_command("/sc game.tick")

        assert rcon_server.probe_count == 2

    async def test_connection_loss_resets_unlock(self, gateway, rcon_server):
        await gateway.send_command("/sc rcon.print(1)")
        assert rcon_server.probe_count == 1

        rcon_server.fail_next_run = RconConnectionError("closed")
        with pytest.raises(RconConnectionError):
            await gateway.send_command("/sc rcon.print(2)")
        assert not gateway.lua_unlocked

        await gateway.send_command("/sc rcon.print(3)")

        assert rcon_server.connections == 2
        assert rcon_server.probe_count == 2

    async def test_probe_failure_propagates_and_resets(self, gateway, rcon_server):
        await gateway.send_command("/version")
        rcon_server.fail_next_run = RconConnectionError("closed during probe")

        with pytest.raises(RconConnectionError):
            await gateway.send_command("/sc rcon.print(1)")

        assert gateway.state is ConnectionState.DISCONNECTED
        assert not gateway.lua_unlocked

    async def test_plain_command_after_unlock_keeps_flag(self, gateway, rcon_server):
        await gateway.send_command("/sc rcon.print(1)")
        await gateway.send_command("/version")
        await gateway.send_command("/sc rcon.print(2)")

        assert rcon_server.probe_count == 1


# ============================================================================
# SERIALIZATION & TIMEOUTS
# ============================================================================

@pytest.mark.asyncio
class TestSerialization:
    async def test_concurrent_commands_never_overlap(self, gateway, rcon_server):
        rcon_server.run_delay = 0.01

        commands = [f"/sc rcon.print({i})" if i % 2 else f"/cmd{i}" for i in range(10)]
        responses = await asyncio.gather(*(gateway.send_command(c) for c in commands))

        assert rcon_server.max_in_flight == 1
        assert responses == [f"ok {c}" for c in commands]
        assert rcon_server.probe_count == 1
        assert rcon_server.connections == 1

    async def test_timeout_resets_and_releases_lock(self, make_gateway, rcon_server, monkeypatch):
        monkeypatch.setattr(rcon_gateway, "TIMEOUT_GRACE", 0.0)
        gateway = make_gateway(timeout=0.05)

        await gateway.send_command("/sc rcon.print(1)")
        rcon_server.run_delay = 0.3

        with pytest.raises(RconTimeoutError):
            await gateway.send_command("/version")

        assert gateway.state is ConnectionState.DISCONNECTED
        assert not gateway.lua_unlocked
        assert not gateway._lock.locked()

        rcon_server.run_delay = 0.0
        assert await gateway.send_command("/seed") == "ok /seed"
        assert rcon_server.connections == 2

    async def test_cancelled_command_drops_connection(self, gateway, rcon_server):
        await gateway.send_command("/version")
        rcon_server.run_delay = 0.2

        task = asyncio.create_task(gateway.send_command("/players"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert gateway.state is ConnectionState.DISCONNECTED
        assert not gateway._lock.locked()


# ============================================================================
# CONSOLE QUERIES
# ============================================================================

@pytest.mark.asyncio
class TestConsoleQueries:
    async def test_get_players(self, gateway, rcon_server):
        rcon_server.responses["/players"] = (
            "Players (3):\n"
            "  alice (online)\n"
            "  bob (offline)\n"
            "  carol the builder (online)\n"
            "\n"
        )

        players = await gateway.get_players()

        assert players == [
            PlayerInfo("alice", True),
            PlayerInfo("bob", False),
            PlayerInfo("carol the builder", True),
        ]
        assert players[0].to_dict() == {"name": "alice", "online": True}

    async def test_get_players_empty(self, gateway, rcon_server):
        rcon_server.responses["/players"] = "Players (0):\n"
        assert await gateway.get_players() == []

    async def test_get_server_status(self, gateway, rcon_server):
        rcon_server.responses.update({
            "/players online count": "Online players (2):",
            "/version": "Version: 2.0.28 (build 80000, linux64, headless)",
            "/time": "  Map is 5 hours old\n",
            "/evolution": "Evolution factor: 0.4200\n",
            "/seed": "1234567\n",
        })

        status = await gateway.get_server_status()

        assert status == {
            "players": 2,
            "version": "2.0.28",
            "time": "Map is 5 hours old",
            "evolution": "Evolution factor: 0.4200",
            "seed": "1234567",
        }

    async def test_get_server_status_unparseable(self, gateway, rcon_server):
        rcon_server.responses.update({
            "/players online count": "no players",
            "/version": "unknown build",
        })

        status = await gateway.get_server_status()

        assert status["players"] == 0
        assert status["version"] == "unknown"

    async def test_get_server_status_stops_at_first_failure(self, gateway, rcon_server):
        rcon_server.fail_next_run = RconConnectionError("socket closed")

        with pytest.raises(RconConnectionError):
            await gateway.get_server_status()

        # No later status command is sent or left running after the failure
        await asyncio.sleep(0.05)
        assert rcon_server.commands == ["/players online count"]
        assert rcon_server.max_in_flight == 1

    async def test_get_server_status_commands_in_order(self, gateway, rcon_server):
        await gateway.get_server_status()

        assert rcon_server.commands == ["/players online count", "/version", "/time", "/evolution", "/seed"]
        assert rcon_server.max_in_flight == 1

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Version: 1.1.110 (build 62170, linux64, headless)", "1.1.110"),
            ("Version: 80000", "80000"),
            ("Factorio 2.0", "2.0"),
            ("Version: . (dev)", "unknown"),
        ],
    )
    async def test_version_parsing(self, gateway, rcon_server, raw, expected):
        rcon_server.responses["/version"] = raw
        status = await gateway.get_server_status()
        assert status["version"] == expected

    async def test_server_info_returns_raw_version(self, gateway, rcon_server):
        rcon_server.responses["/version"] = "Version: 2.0.28 (build 80000)\n"

        assert await gateway.server_info() == "Version: 2.0.28 (build 80000)\n"
        assert rcon_server.commands == ["/version"]

    async def test_server_save(self, gateway, rcon_server):
        await gateway.server_save()
        await gateway.server_save("backup_1")
        assert rcon_server.commands == ["/server-save", "/server-save backup_1"]

    async def test_take_screenshot_uses_lua(self, gateway, rcon_server):
        await gateway.take_screenshot("shot.png")

        assert rcon_server.commands[0] == LUA_PROBE_COMMAND
        sent = rcon_server.commands[1]
        assert sent.startswith("/sc game.take_screenshot{")
        assert 'path="shot.png"' in sent
        assert "resolution={x=1920, y=1080}," in sent


# ============================================================================
# WHITELIST
# ============================================================================

@pytest.mark.asyncio
class TestWhitelist:
    async def test_add(self, gateway, rcon_server):
        rcon_server.responses["/whitelist add alice"] = "Player alice added to the whitelist."

        assert await gateway.whitelist_add("alice") == "Player alice added to the whitelist."
        assert rcon_server.commands == ["/whitelist add alice"]

    async def test_remove(self, gateway, rcon_server):
        await gateway.whitelist_remove("Bob_the.Builder-2")
        assert rcon_server.commands == ["/whitelist remove Bob_the.Builder-2"]

    @pytest.mark.parametrize(
        "username",
        ["", "bob\n", "a b", "bob; /c game.print(1)", "x" * 61, None, 42],
    )
    async def test_rejects_unsafe_usernames(self, gateway, rcon_server, username):
        with pytest.raises(ValueError, match="username"):
            await gateway.whitelist_add(username)
        with pytest.raises(ValueError, match="username"):
            await gateway.whitelist_remove(username)
        assert rcon_server.commands == []
