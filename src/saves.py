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
Save-file store backed by the saves volume shared with the server pod.

Blocking filesystem calls run in worker threads so a slow volume does not
stall request handling.
"""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

try:
    from .exceptions import NotFoundError, PodUnavailableError
except ImportError:
    from exceptions import NotFoundError, PodUnavailableError

logger = structlog.get_logger()

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_save_name(name: Optional[str]) -> str:
    """Strip everything but letters, digits, '_' and '-' (autosaves start with '_')."""
    if not name:
        return ""
    return _UNSAFE_NAME_CHARS.sub("", name)


@dataclass
class SaveInfo:
    """One save archive on disk."""

    name: str
    size: int
    modified: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "modified": self.modified.isoformat(),
        }


class SaveStore:
    """Access to <saves_path>/<name>.zip archives."""

    def __init__(self, saves_path: Union[str, Path]) -> None:
        self.saves_path = Path(saves_path)

    def path_for(self, name: str) -> Path:
        """
        Resolve a save name to its archive path.

        Raises:
            ValueError: Name is empty after sanitizing
        """
        safe = sanitize_save_name(name)
        if not safe:
            raise ValueError("Invalid save name")
        return self.saves_path / f"{safe}.zip"

    async def list_saves(self) -> List[SaveInfo]:
        """List save archives, newest first. Hidden entries are skipped."""
        return await asyncio.to_thread(self._list_saves)

    def _list_saves(self) -> List[SaveInfo]:
        if not self.saves_path.is_dir():
            logger.warning("saves_dir_missing", path=str(self.saves_path))
            return []

        saves: List[SaveInfo] = []
        for entry in self.saves_path.iterdir():
            if entry.name.startswith(".") or entry.suffix != ".zip" or not entry.is_file():
                continue
            st = entry.stat()
            saves.append(
                SaveInfo(
                    name=entry.stem,
                    size=st.st_size,
                    modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                )
            )

        saves.sort(key=lambda s: s.modified, reverse=True)
        return saves

    async def stat(self, name: str) -> os.stat_result:
        """
        Stat a save archive.

        Raises:
            ValueError: Invalid name
            NotFoundError: Archive does not exist
        """
        path = self.path_for(name)
        try:
            return await asyncio.to_thread(path.stat)
        except FileNotFoundError as e:
            raise NotFoundError(f"Save not found: {path.stem}") from e

    async def read(self, name: str) -> bytes:
        """Read a save archive (NotFoundError if absent)."""
        path = self.path_for(name)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise NotFoundError(f"Save not found: {path.stem}") from e

    async def write(self, name: str, data: bytes) -> Path:
        """
        Write a save archive, replacing any existing one of the same name.

        The archive is written under a hidden temp name first so the server
        and list_saves() never see a partial file.
        """
        path = self.path_for(name)
        await asyncio.to_thread(_write_atomic, path, data)
        logger.info("save_written", save=path.stem, size=len(data))
        return path

    async def touch(self, name: str) -> None:
        """
        Bump the archive's mtime so the server treats it as the latest save.

        os.utime with explicit times needs file ownership, so the first byte is
        rewritten in place instead, which only needs write permission.
        """
        path = self.path_for(name)
        try:
            await asyncio.to_thread(_rewrite_first_byte, path)
        except FileNotFoundError as e:
            raise NotFoundError(f"Save not found: {path.stem}") from e

        logger.info("save_touched", save=path.stem)


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


def _rewrite_first_byte(path: Path) -> None:
    with open(path, "r+b") as f:
        first = f.read(1)
        f.seek(0)
        f.write(first)


async def restart_with_save(store: SaveStore, kube: Any, name: str) -> str:
    """
    Restart the server on a specific save.

    The server loads the most recent save on boot: touch the archive, then
    delete the pod so its Deployment recreates it.

    Returns:
        Sanitized save name

    Raises:
        ValueError: Invalid name
        NotFoundError: Save does not exist
        PodUnavailableError: No server pod found
        KubernetesError: Pod delete failed
    """
    safe = sanitize_save_name(name)
    await store.stat(safe)
    await store.touch(safe)

    pod = await kube.find_pod()
    if not pod:
        raise PodUnavailableError("Factorio server pod not found")

    await kube.delete_pod(pod)
    logger.info("server_restart_requested", save=safe, pod=pod)
    return safe
