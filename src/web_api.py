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
HTTP API for the admin panel.

Thin aiohttp handlers over RconGateway, SaveStore, PreviewGenerator,
BackupStore and the Kubernetes client. Handlers own input checks and
response formatting; the panel error taxonomy is mapped to status codes in
one middleware.
"""

from __future__ import annotations

import asyncio
import hmac
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from aiohttp import web
import structlog

try:
    from .exceptions import (
        AuthenticationError,
        BackupStorageError,
        GenerationError,
        KubernetesError,
        NotFoundError,
        OperationTimeoutError,
        PodUnavailableError,
        RconConnectionError,
        RconTimeoutError,
    )
    from .backups import backup_save, restore_backup
    from .saves import restart_with_save, sanitize_save_name
except ImportError:
    from exceptions import (
        AuthenticationError,
        BackupStorageError,
        GenerationError,
        KubernetesError,
        NotFoundError,
        OperationTimeoutError,
        PodUnavailableError,
        RconConnectionError,
        RconTimeoutError,
    )
    from backups import backup_save, restore_backup
    from saves import restart_with_save, sanitize_save_name

logger = structlog.get_logger()

SCREENSHOT_FILE = "admin-screenshot.png"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# Checked in order, so subclasses come before their bases
ERROR_STATUS: Tuple[Tuple[Type[BaseException], int, str], ...] = (
    (NotFoundError, 404, "Not found"),
    (PodUnavailableError, 503, "Factorio server pod not found"),
    (AuthenticationError, 503, "RCON authentication failed"),
    (RconConnectionError, 503, "RCON connection failed"),
    (RconTimeoutError, 504, "RCON command timed out"),
    (OperationTimeoutError, 504, "Operation timed out"),
    (GenerationError, 500, "Preview generation failed"),
    (KubernetesError, 500, "Kubernetes request failed"),
    (BackupStorageError, 503, "Backup storage unavailable"),
    (ValueError, 400, "Invalid request"),
)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


class PanelServer:
    """aiohttp server exposing the panel API."""

    def __init__(
        self,
        gateway: Any,
        store: Any,
        previews: Any,
        kube: Any,
        backups: Any,
        script_output_path: Path = Path("/factorio/script-output"),
        api_token: Optional[str] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
        screenshot_delay: float = 2.0,
    ):
        """
        Initialize panel server.

        Args:
            gateway: RconGateway
            store: SaveStore
            previews: PreviewGenerator
            kube: KubernetesClient
            backups: BackupStore
            script_output_path: Factorio script-output directory
            api_token: Bearer token for /api routes (None disables auth)
            host: Host to bind to (default: 0.0.0.0)
            port: Port to bind to (default: 8080)
            screenshot_delay: Seconds to wait for the screenshot to hit disk
        """
        self.gateway = gateway
        self.store = store
        self.previews = previews
        self.kube = kube
        self.backups = backups
        self.script_output_path = Path(script_output_path)
        self.api_token = api_token
        self.host = host
        self.port = port
        self.screenshot_delay = screenshot_delay
        self.app = web.Application(
            middlewares=[self.error_middleware, self.auth_middleware]
        )
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Configure HTTP routes."""
        router = self.app.router
        router.add_get("/health", self.health_handler)
        router.add_get("/", self.root_handler)
        router.add_post("/api/rcon/command", self.command_handler)
        router.add_get("/api/rcon/status", self.status_handler)
        router.add_get("/api/rcon/players", self.players_handler)
        router.add_get("/api/rcon/saves", self.server_info_handler)
        router.add_post("/api/rcon/saves", self.server_save_handler)
        router.add_get("/api/rcon/screenshot", self.screenshot_get_handler)
        router.add_post("/api/rcon/screenshot", self.screenshot_post_handler)
        router.add_get("/api/saves", self.saves_list_handler)
        router.add_get("/api/saves/preview", self.preview_handler)
        router.add_get("/api/saves/download", self.download_handler)
        router.add_post("/api/saves/load", self.load_handler)
        router.add_post("/api/whitelist", self.whitelist_add_handler)
        router.add_delete("/api/whitelist", self.whitelist_remove_handler)
        router.add_get("/api/backups", self.backups_list_handler)
        router.add_post("/api/backups", self.backup_create_handler)
        router.add_delete("/api/backups", self.backup_delete_handler)
        router.add_get("/api/backups/download", self.backup_download_handler)
        router.add_post("/api/backups/restore", self.backup_restore_handler)

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    @web.middleware
    async def error_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            for exc_type, status, message in ERROR_STATUS:
                if isinstance(e, exc_type):
                    log = logger.warning if status < 500 else logger.error
                    log(
                        "api_request_failed",
                        path=request.path,
                        status=status,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    detail = str(e) if status in (400, 404) else message
                    return _error(status, detail or message)

            logger.error("api_unhandled_error", path=request.path, error=str(e), exc_info=True)
            return _error(500, "Internal server error")

    @web.middleware
    async def auth_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if self.api_token and request.path.startswith("/api/"):
            header = request.headers.get("Authorization", "")
            scheme, _, token = header.partition(" ")
            if scheme.lower() != "bearer" or not hmac.compare_digest(token, self.api_token):
                logger.warning("api_unauthorized", path=request.path, remote=request.remote)
                return _error(401, "Unauthorized")
        return await handler(request)

    # ------------------------------------------------------------------
    # Service
    # ------------------------------------------------------------------

    async def health_handler(self, request: web.Request) -> web.Response:
        """
        Health check endpoint.

        Returns:
            200 OK with status info
        """
        return web.json_response({
            "status": "healthy",
            "service": "factorio-panel",
            "rcon_connected": self.gateway.is_connected,
        })

    async def root_handler(self, request: web.Request) -> web.Response:
        """Root endpoint with service info."""
        return web.json_response({
            "service": "factorio-panel",
            "endpoints": {
                "health": "/health",
                "rcon": "/api/rcon",
                "saves": "/api/saves",
                "backups": "/api/backups",
                "whitelist": "/api/whitelist",
            }
        })

    # ------------------------------------------------------------------
    # RCON
    # ------------------------------------------------------------------

    async def command_handler(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        command = body.get("command")
        if not command or not isinstance(command, str):
            return _error(400, "Invalid command")

        response = await self.gateway.send_command(command)

        # Audit trail for console commands
        logger.info(
            "rcon_command_audit",
            remote=request.remote,
            command=command,
            response=response[:500],
        )
        return web.json_response({"response": response})

    async def status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(await self.gateway.get_server_status())

    async def players_handler(self, request: web.Request) -> web.Response:
        players = await self.gateway.get_players()
        return web.json_response({"players": [p.to_dict() for p in players]})

    async def server_save_handler(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        action = body.get("action")

        if action == "save":
            save_name = body.get("saveName")
            if save_name is not None:
                save_name = sanitize_save_name(str(save_name))
                if not save_name:
                    return _error(400, "Invalid saveName")
            response = await self.gateway.server_save(save_name)
        else:
            return _error(400, "Invalid action")

        return web.json_response({"response": response})

    async def server_info_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"info": await self.gateway.server_info()})

    async def whitelist_add_handler(self, request: web.Request) -> web.Response:
        username = await _required_str(request, "factorioUsername")
        response = await self.gateway.whitelist_add(username)
        logger.info("whitelist_added", remote=request.remote, username=username)
        return web.json_response({"success": True, "response": response})

    async def whitelist_remove_handler(self, request: web.Request) -> web.Response:
        username = await _required_str(request, "factorioUsername")
        response = await self.gateway.whitelist_remove(username)
        logger.info("whitelist_removed", remote=request.remote, username=username)
        return web.json_response({"success": True, "response": response})

    async def screenshot_post_handler(self, request: web.Request) -> web.Response:
        response = await self.gateway.take_screenshot(SCREENSHOT_FILE)
        logger.info("screenshot_requested", rcon_response=response[:200])

        # Factorio writes the file asynchronously after the command returns
        await asyncio.sleep(self.screenshot_delay)

        path = self.script_output_path / SCREENSHOT_FILE
        written = await asyncio.to_thread(path.exists)
        if not written:
            logger.warning("screenshot_file_missing", path=str(path))

        return web.json_response({"ok": True, "written": written, "rconResponse": response})

    async def screenshot_get_handler(self, request: web.Request) -> web.Response:
        path = self.script_output_path / SCREENSHOT_FILE
        try:
            st = await asyncio.to_thread(path.stat)
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return _error(404, "No screenshot available")

        taken = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
        return web.Response(
            body=data,
            content_type="image/png",
            headers={
                "Cache-Control": "no-cache",
                "X-Screenshot-Time": taken.isoformat(),
            },
        )

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    async def saves_list_handler(self, request: web.Request) -> web.Response:
        saves = await self.store.list_saves()
        return web.json_response({"saves": [s.to_dict() for s in saves]})

    async def preview_handler(self, request: web.Request) -> web.Response:
        name = sanitize_save_name(request.query.get("name", ""))
        if not name:
            return _error(400, "name required")

        png = await self.previews.generate_preview(name)
        return web.Response(
            body=png,
            content_type="image/png",
            headers={"Cache-Control": "public, max-age=3600"},
        )

    async def download_handler(self, request: web.Request) -> web.Response:
        name = sanitize_save_name(request.query.get("name", ""))
        if not name:
            return _error(400, "name required")

        data = await self.store.read(name)
        return web.Response(
            body=data,
            content_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{name}.zip"'},
        )

    async def load_handler(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        name = body.get("name")
        if not name or not isinstance(name, str):
            return _error(400, "name required")
        if not sanitize_save_name(name):
            return _error(400, "Invalid name")

        safe = await restart_with_save(self.store, self.kube, name)
        return web.json_response({
            "success": True,
            "message": f"Server is restarting with save {safe}",
        })

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    async def backups_list_handler(self, request: web.Request) -> web.Response:
        backups = await self.backups.list_backups()
        return web.json_response({"backups": [b.to_dict() for b in backups]})

    async def backup_create_handler(self, request: web.Request) -> web.Response:
        save_name = await _required_str(request, "saveName")
        if not sanitize_save_name(save_name):
            return _error(400, "Invalid save name")

        key, size = await backup_save(self.store, self.backups, save_name)
        return web.json_response({"key": key, "size": size})

    async def backup_delete_handler(self, request: web.Request) -> web.Response:
        key = await _required_str(request, "key")
        await self.backups.delete(key)
        logger.info("backup_delete_requested", remote=request.remote, key=key)
        return web.json_response({"success": True})

    async def backup_download_handler(self, request: web.Request) -> web.Response:
        key = request.query.get("key", "")
        if not key:
            return _error(400, "key required")

        data = await self.backups.download(key)
        filename = sanitize_save_name(key.rsplit("/", 1)[-1].removesuffix(".zip")) or "backup"
        return web.Response(
            body=data,
            content_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{filename}.zip"'},
        )

    async def backup_restore_handler(self, request: web.Request) -> web.Response:
        key = await _required_str(request, "key")
        restored, size = await restore_backup(self.store, self.backups, key)
        return web.json_response({"restored": f"{restored}.zip", "size": size})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the HTTP server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(
            self.runner,
            self.host,
            self.port
        )
        await self.site.start()

        logger.info(
            "panel_server_started",
            host=self.host,
            port=self.port,
            auth_enabled=bool(self.api_token),
        )

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self.site is not None:
            await self.site.stop()

        if self.runner is not None:
            await self.runner.cleanup()

        logger.info("panel_server_stopped")


async def _json_body(request: web.Request) -> Dict[str, Any]:
    """Parse a JSON object body; anything else is a 400."""
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text='{"error": "Invalid JSON body"}', content_type="application/json"
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text='{"error": "JSON object expected"}', content_type="application/json"
        )
    return body


async def _required_str(request: web.Request, field: str) -> str:
    """Read a non-empty string field from the JSON body; 400 otherwise."""
    value = (await _json_body(request)).get(field)
    if not value or not isinstance(value, str):
        raise web.HTTPBadRequest(
            text=f'{{"error": "{field} required"}}', content_type="application/json"
        )
    return value
