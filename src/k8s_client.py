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
In-cluster Kubernetes API client for the Factorio server pod.

Covers only what the panel needs:
- find_pod(): first pod matching the server label selector
- delete_pod(): delete a pod so its Deployment recreates it
- exec(): run a command in the pod over the exec WebSocket

Exec uses the v4.channel.k8s.io subprotocol: every binary frame starts with
a channel byte (1 stdout, 2 stderr, 3 final Status object as JSON).
"""

from __future__ import annotations

import asyncio
import json
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp
import structlog

try:
    from .exceptions import KubernetesError, OperationTimeoutError
except ImportError:
    from exceptions import KubernetesError, OperationTimeoutError

logger = structlog.get_logger()

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
DEFAULT_API_URL = "https://kubernetes.default.svc"
EXEC_PROTOCOL = "v4.channel.k8s.io"

STDOUT_CHANNEL = 1
STDERR_CHANNEL = 2
ERROR_CHANNEL = 3


@dataclass
class ExecResult:
    """Captured output of a pod exec."""

    stdout: str
    stderr: str
    status: Optional[Dict[str, Any]] = None

    @property
    def exit_code(self) -> int:
        """Exit code from the Status object (0 if the stream closed without one)."""
        if self.status is None or self.status.get("status") == "Success":
            return 0

        causes = (self.status.get("details") or {}).get("causes") or []
        for cause in causes:
            if cause.get("reason") == "ExitCode":
                try:
                    return int(cause.get("message", ""))
                except ValueError:
                    break
        return 1

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


class KubernetesClient:
    """Minimal async Kubernetes API client using the pod's service account."""

    def __init__(
        self,
        namespace: str = "factorio",
        pod_label: str = "app=factorio-factorio-server-charts",
        api_url: str = DEFAULT_API_URL,
        token_path: Optional[Path] = None,
        ca_path: Optional[Path] = None,
        request_timeout: float = 10.0,
    ) -> None:
        """
        Initialize client (no network activity).

        Args:
            namespace: Namespace of the Factorio server pod
            pod_label: Label selector identifying the server pod
            api_url: API server base URL
            token_path: Bearer token file (re-read on every request so
                projected token rotation is picked up)
            ca_path: CA bundle for the API server certificate
            request_timeout: Total timeout for plain REST calls
        """
        self.namespace = namespace
        self.pod_label = pod_label
        self.api_url = api_url.rstrip("/")
        self.token_path = token_path or SERVICE_ACCOUNT_DIR / "token"
        self.ca_path = ca_path or SERVICE_ACCOUNT_DIR / "ca.crt"
        self.request_timeout = request_timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._ssl: Union[ssl.SSLContext, bool] = True

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            if self.ca_path.exists():
                self._ssl = ssl.create_default_context(cafile=str(self.ca_path))
            # Exec streams are bounded by exec(timeout=...), REST calls per request
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.request_timeout)
            )
        return self.session

    def _headers(self) -> Dict[str, str]:
        try:
            token = self.token_path.read_text().strip()
        except FileNotFoundError:
            # e.g. talking to `kubectl proxy` outside the cluster
            logger.debug("k8s_token_missing", path=str(self.token_path))
            return {}
        return {"Authorization": f"Bearer {token}"}

    def _rest_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.request_timeout)

    def _pods_path(self) -> str:
        return f"{self.api_url}/api/v1/namespaces/{self.namespace}/pods"

    async def close(self) -> None:
        """Close the HTTP session."""
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    async def find_pod(self) -> Optional[str]:
        """
        Return the name of the first pod matching the label selector.

        Returns:
            Pod name, or None if the API refused the list call or no pod matched

        Raises:
            KubernetesError: API server unreachable
        """
        session = await self._get_session()
        try:
            async with session.get(
                self._pods_path(),
                params={"labelSelector": self.pod_label},
                headers=self._headers(),
                ssl=self._ssl,
                timeout=self._rest_timeout(),
            ) as resp:
                if resp.status != 200:
                    logger.warning(
                        "k8s_pod_list_failed",
                        status=resp.status,
                        namespace=self.namespace,
                        selector=self.pod_label,
                    )
                    return None
                pods = await resp.json()
        except aiohttp.ClientError as e:
            raise KubernetesError(f"Pod lookup failed: {e}") from e

        items = pods.get("items") or []
        if not items:
            logger.info("k8s_pod_not_found", namespace=self.namespace, selector=self.pod_label)
            return None

        name = (items[0].get("metadata") or {}).get("name")
        logger.debug("k8s_pod_found", pod=name)
        return name

    async def delete_pod(self, name: str) -> None:
        """
        Delete a pod.

        Raises:
            KubernetesError: API returned an error status or was unreachable
        """
        session = await self._get_session()
        try:
            async with session.delete(
                f"{self._pods_path()}/{name}",
                headers=self._headers(),
                ssl=self._ssl,
                timeout=self._rest_timeout(),
            ) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    logger.error("k8s_pod_delete_failed", pod=name, status=resp.status, body=body[:500])
                    raise KubernetesError(f"Failed to delete pod {name}", status=resp.status)
        except aiohttp.ClientError as e:
            raise KubernetesError(f"Pod delete failed: {e}") from e

        logger.info("k8s_pod_deleted", pod=name, namespace=self.namespace)

    async def exec(
        self,
        pod: str,
        argv: Sequence[str],
        timeout: float = 30.0,
        container: Optional[str] = None,
    ) -> ExecResult:
        """
        Run argv inside the pod and capture stdout/stderr.

        Args:
            pod: Pod name
            argv: Command and arguments (no shell unless argv invokes one)
            timeout: Hard timeout for the whole exec in seconds
            container: Container name for multi-container pods

        Raises:
            OperationTimeoutError: Exec did not finish within timeout
            KubernetesError: WebSocket handshake or transport failed
        """
        params: List[Tuple[str, str]] = [("command", arg) for arg in argv]
        params += [("stdout", "true"), ("stderr", "true")]
        if container:
            params.append(("container", container))

        logger.debug("k8s_exec_started", pod=pod, argv=list(argv[:2]))

        try:
            result = await asyncio.wait_for(
                self._exec_stream(f"{self._pods_path()}/{pod}/exec", params),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("k8s_exec_timeout", pod=pod, timeout=timeout)
            raise OperationTimeoutError(f"Exec in pod {pod} timed out after {timeout}s") from e
        except aiohttp.WSServerHandshakeError as e:
            raise KubernetesError(f"Exec handshake failed: {e.message}", status=e.status) from e
        except aiohttp.ClientError as e:
            raise KubernetesError(f"Exec failed: {e}") from e

        logger.debug(
            "k8s_exec_finished",
            pod=pod,
            exit_code=result.exit_code,
            stdout_length=len(result.stdout),
            stderr_length=len(result.stderr),
        )
        return result

    async def _exec_stream(self, url: str, params: List[Tuple[str, str]]) -> ExecResult:
        session = await self._get_session()
        stdout: List[bytes] = []
        stderr: List[bytes] = []
        status: Optional[Dict[str, Any]] = None

        async with session.ws_connect(
            url,
            params=params,
            headers=self._headers(),
            protocols=(EXEC_PROTOCOL,),
            ssl=self._ssl,
        ) as ws:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.BINARY:
                    if not msg.data:
                        continue
                    channel, payload = msg.data[0], msg.data[1:]
                    if channel == STDOUT_CHANNEL:
                        stdout.append(payload)
                    elif channel == STDERR_CHANNEL:
                        stderr.append(payload)
                    elif channel == ERROR_CHANNEL and payload:
                        try:
                            status = json.loads(payload.decode("utf-8"))
                        except ValueError as e:
                            logger.error("k8s_exec_status_malformed", payload=payload[:200])
                            raise KubernetesError("Malformed exec status") from e
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise KubernetesError(f"Exec stream error: {ws.exception()}")

        return ExecResult(
            stdout=b"".join(stdout).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr).decode("utf-8", errors="replace"),
            status=status,
        )
