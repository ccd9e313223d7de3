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
Error taxonomy for Factorio Panel.

RCON and timeout errors also subclass the matching builtins so callers that
already catch ConnectionError / TimeoutError keep working.
"""

from __future__ import annotations

from typing import Optional


class PanelError(Exception):
    """Base class for all panel errors."""


class AuthenticationError(PanelError):
    """RCON server rejected the configured password. Not retried automatically."""


class RconConnectionError(PanelError, ConnectionError):
    """Transient RCON transport failure. Retrying send_command() reconnects."""


class RconTimeoutError(PanelError, TimeoutError):
    """RCON round-trip exceeded the transport timeout."""


class OperationTimeoutError(PanelError, TimeoutError):
    """External operation (pod exec) exceeded its hard timeout."""


class NotFoundError(PanelError):
    """Referenced artifact (save file, backup, screenshot) does not exist."""


class PodUnavailableError(PanelError):
    """No Factorio server pod found to run the job on."""


class KubernetesError(PanelError):
    """Kubernetes API call failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class GenerationError(PanelError):
    """External job ran but produced no usable output."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class BackupStorageError(PanelError):
    """S3 backup storage request failed."""
