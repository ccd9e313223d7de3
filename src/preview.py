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
Map-preview generation for save files.

Previews are rendered by the headless Factorio binary inside the server pod
(--generate-map-preview) and cached next to the saves as
<saves>/.previews/<name>.png. A cached preview is fresh when its mtime is not
older than the save's.

The binary cannot run several instances at once (lock contention on its
data files), so renders go through a single slot. asyncio.Lock wakes waiters
in arrival order, which makes the slot FIFO.
"""

from __future__ import annotations

import asyncio
import shlex
from pathlib import Path
from typing import Any, List, Optional

import structlog

try:
    from .exceptions import GenerationError, KubernetesError, PodUnavailableError
    from .saves import SaveStore, sanitize_save_name
except ImportError:
    from exceptions import GenerationError, KubernetesError, PodUnavailableError
    from saves import SaveStore, sanitize_save_name

logger = structlog.get_logger()

PREVIEWS_DIRNAME = ".previews"


class PreviewGenerator:
    """Serialized, cached map-preview renderer."""

    def __init__(
        self,
        store: SaveStore,
        kube: Any,
        preview_size: int = 256,
        factorio_binary: str = "/opt/factorio/bin/x64/factorio",
        factorio_data_path: str = "/opt/factorio/data",
        exec_timeout: float = 30.0,
    ) -> None:
        """
        Initialize generator.

        Args:
            store: Save store (the saves volume is mounted at the same path
                in the server pod)
            kube: Client exposing find_pod() and exec(pod, argv, timeout)
            preview_size: Preview edge length in pixels
            factorio_binary: Path of the Factorio binary inside the pod
            factorio_data_path: Factorio read-data directory inside the pod
            exec_timeout: Hard timeout for one render in seconds
        """
        self.store = store
        self.kube = kube
        self.preview_size = preview_size
        self.factorio_binary = factorio_binary
        self.factorio_data_path = factorio_data_path
        self.exec_timeout = exec_timeout
        self.previews_dir = store.saves_path / PREVIEWS_DIRNAME
        self._slot = asyncio.Lock()

    def preview_path(self, name: str) -> Path:
        return self.previews_dir / f"{name}.png"

    async def generate_preview(self, save_name: str) -> bytes:
        """
        Return PNG bytes of the save's map preview, rendering it if needed.

        Raises:
            ValueError: Invalid save name
            NotFoundError: Save does not exist
            PodUnavailableError: No server pod to render in
            OperationTimeoutError: Render exceeded exec_timeout
            GenerationError: Render ran but produced no preview
        """
        name = sanitize_save_name(save_name)
        if not name:
            raise ValueError("Invalid save name")

        save_stat = await self.store.stat(name)

        cached = await self._read_if_fresh(name, save_stat.st_mtime)
        if cached is not None:
            logger.debug("preview_cache_hit", save=name)
            return cached

        if self._slot.locked():
            logger.debug("preview_waiting_for_slot", save=name)

        async with self._slot:
            # A job queued ahead of us may have produced it already
            cached = await self._read_if_fresh(name, save_stat.st_mtime)
            if cached is not None:
                logger.debug("preview_cache_hit_after_wait", save=name)
                return cached

            return await self._render(name, save_stat.st_mtime)

    async def _read_if_fresh(self, name: str, save_mtime: float) -> Optional[bytes]:
        path = self.preview_path(name)
        try:
            preview_stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            return None

        # Plain mtime comparison, no content hashing
        if preview_stat.st_mtime < save_mtime:
            return None

        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None

    async def _render(self, name: str, save_mtime: float) -> bytes:
        pod = await self.kube.find_pod()
        if not pod:
            raise PodUnavailableError("Factorio server pod not found")

        logger.info("preview_generation_started", save=name, pod=pod)

        try:
            result = await self.kube.exec(
                pod, self.build_command(name), timeout=self.exec_timeout
            )
        except KubernetesError as e:
            logger.error("preview_exec_failed", save=name, pod=pod, error=str(e))
            raise GenerationError(f"Preview generation failed for {name}") from e

        # A stale preview left over from an earlier render does not count
        rendered = await self._read_if_fresh(name, save_mtime)
        if rendered is None:
            logger.error(
                "preview_generation_failed",
                save=name,
                exit_code=result.exit_code,
                output=result.output[-2000:],
            )
            raise GenerationError(
                f"Preview generation failed for {name}", output=result.output
            )

        logger.info("preview_generated", save=name, size=len(rendered))
        return rendered

    def build_command(self, name: str) -> List[str]:
        """
        Build the in-pod shell command rendering one preview.

        Factorio needs a writable write-data dir; each render gets a throwaway
        one so it never touches the running server's.
        """
        tmp_dir = f"/tmp/fpreview-{name}"
        config_ini = f"{tmp_dir}/config.ini"
        save_path = str(self.store.saves_path / f"{name}.zip")
        previews_dir = str(self.previews_dir)
        q = shlex.quote

        script = (
            f"mkdir -p {q(tmp_dir)} {q(previews_dir)} && "
            f"printf '[path]\\nread-data={self.factorio_data_path}\\nwrite-data={tmp_dir}\\n' "
            f"> {q(config_ini)} && "
            f"{q(self.factorio_binary)} "
            f"--config {q(config_ini)} "
            f"--generate-map-preview {q(str(self.preview_path(name)))} "
            f"--map-preview-size {int(self.preview_size)} "
            f"{q(save_path)} 2>&1 ; rm -rf {q(tmp_dir)}"
        )
        return ["sh", "-c", script]

