"""
Factorio Panel - Main Entry Point

Admin API for a Factorio server running in Kubernetes:
- RCON gateway (single serialized connection with Lua unlock)
- Save listing, download and restart-with-save
- Serialized map-preview rendering inside the server pod
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional, Any

import structlog

# Import helpers with support for package vs. flat layout
try:
    # Package-style imports (python -m src.main)
    from .backups import BackupStore  # type: ignore
    from .config import Config, load_config  # type: ignore
    from .k8s_client import KubernetesClient  # type: ignore
    from .preview import PreviewGenerator  # type: ignore
    from .rcon_gateway import RconGateway  # type: ignore
    from .saves import SaveStore  # type: ignore
    from .web_api import PanelServer  # type: ignore
except ImportError:
    # Flat layout (tests and direct execution)
    from backups import BackupStore  # type: ignore
    from config import Config, load_config  # type: ignore
    from k8s_client import KubernetesClient  # type: ignore
    from preview import PreviewGenerator  # type: ignore
    from rcon_gateway import RconGateway  # type: ignore
    from saves import SaveStore  # type: ignore
    from web_api import PanelServer  # type: ignore

logger = structlog.get_logger()


def setup_logging(log_level: str, log_format: str) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (debug, info, warning, error, critical)
        log_format: Output format ("json" or "console")
    """
    level_map: dict[str, int] = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    min_level = level_map.get(log_level.lower(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger.info("logging_configured", level=log_level, format=log_format)


class Application:
    """Main application orchestrator."""

    def __init__(self) -> None:
        """Initialize application components."""
        self.config: Optional[Config] = None
        self.gateway: Optional[RconGateway] = None
        self.kube: Optional[KubernetesClient] = None
        self.store: Optional[SaveStore] = None
        self.backups: Optional[BackupStore] = None
        self.previews: Optional[PreviewGenerator] = None
        self.server: Optional[PanelServer] = None
        self.shutdown_event: asyncio.Event = asyncio.Event()

    async def setup(self) -> None:
        """Load configuration and build components (no network activity)."""
        logger.info("application_starting")

        try:
            self.config = load_config()
        except Exception as e:
            logger.error("config_load_failed", error=str(e))
            raise

        config = self.config
        setup_logging(config.log_level, config.log_format)

        if not config.saves_path.exists():
            logger.warning(
                "saves_path_not_found",
                path=str(config.saves_path),
                message="Saves volume not mounted yet",
            )

        # RCON connects lazily on the first command
        self.gateway = RconGateway(
            host=config.rcon_host,
            port=config.rcon_port,
            password=config.rcon_password,
            timeout=config.rcon_timeout,
        )

        self.kube = KubernetesClient(
            namespace=config.k8s_namespace,
            pod_label=config.pod_label,
            api_url=config.k8s_api_url,
        )

        self.store = SaveStore(config.saves_path)

        # S3 client is created on first backup request
        self.backups = BackupStore(
            bucket=config.s3_bucket,
            endpoint_url=config.s3_endpoint,
            access_key=config.s3_access_key,
            secret_key=config.s3_secret_key,
            region=config.s3_region,
        )

        self.previews = PreviewGenerator(
            store=self.store,
            kube=self.kube,
            preview_size=config.preview_size,
            factorio_binary=config.factorio_binary,
            factorio_data_path=config.factorio_data_path,
            exec_timeout=config.exec_timeout,
        )

        self.server = PanelServer(
            gateway=self.gateway,
            store=self.store,
            previews=self.previews,
            kube=self.kube,
            backups=self.backups,
            script_output_path=config.script_output_path,
            api_token=config.api_token,
            host=config.http_host,
            port=config.http_port,
        )

        logger.info(
            "application_configured",
            rcon_host=config.rcon_host,
            rcon_port=config.rcon_port,
            http_port=config.http_port,
            namespace=config.k8s_namespace,
            s3_bucket=config.s3_bucket,
        )

    async def start(self) -> None:
        """Start the HTTP server."""
        assert self.server is not None, "Server not initialized"
        await self.server.start()
        logger.info("application_running")

    async def stop(self) -> None:
        """Gracefully stop all components."""
        logger.info("application_stopping")

        if self.server is not None:
            try:
                await self.server.stop()
            except Exception as e:
                logger.error("panel_server_stop_failed", error=str(e))

        if self.gateway is not None:
            try:
                await self.gateway.close()
            except Exception as e:
                logger.error("rcon_gateway_close_failed", error=str(e))

        if self.kube is not None:
            try:
                await self.kube.close()
            except Exception as e:
                logger.error("k8s_client_close_failed", error=str(e))

        logger.info("application_stopped")

    async def run(self) -> None:
        """Main application run loop."""
        try:
            await self.setup()
            await self.start()
            await self.shutdown_event.wait()
        except Exception as e:
            logger.error("application_error", error=str(e), exc_info=True)
            raise
        finally:
            await self.stop()


async def main() -> None:
    """Main async entry point."""
    app = Application()

    # Signal handlers for graceful shutdown
    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("received_signal", signal=signal.Signals(signum).name)
        app.shutdown_event.set()

    # Only register signals on real OS (not always available on Windows/threads)
    try:
        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)
    except ValueError:
        pass

    try:
        await app.run()
    except Exception as e:
        logger.error("fatal_error", error=str(e), exc_info=True)
        sys.exit(1)


def cli() -> None:
    """Console-script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown complete.")
        sys.exit(0)


if __name__ == "__main__":
    cli()
