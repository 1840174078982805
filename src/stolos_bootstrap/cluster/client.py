# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/cluster/client.py

from __future__ import annotations

import asyncio
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional, Protocol

from stolos_bootstrap.errors import ClusterBootstrapError, KubeconfigError

log = logging.getLogger("stolos")

# talosctl's own deadline trails the caller's, so expiry surfaces as HealthCheckTimeout
HEALTH_WAIT_GRACE = 60


@dataclass(frozen=True)
class HealthUpdate:
    """One message of the health stream. A non-empty ``error`` is fatal."""
    message: str = ""
    error: str = ""


class ClusterClient(Protocol):
    async def bootstrap(self) -> None: ...

    def health_check(self, timeout: float) -> AsyncIterator[HealthUpdate]: ...

    async def kubeconfig(self) -> bytes: ...


class TalosctlClient:
    """
    Drives the Talos API through the ``talosctl`` CLI, pointed at the first
    control plane with the bundle's talosconfig.
    """

    def __init__(self, *, talosconfig: Path, node: str, talosctl: str = "talosctl"):
        self.talosconfig = Path(talosconfig)
        self.node = node
        self.talosctl = talosctl

    # ------------------------- internal helpers -------------------------

    def _base(self) -> List[str]:
        return [
            self.talosctl,
            "--talosconfig", str(self.talosconfig),
            "--endpoints", self.node,
            "--nodes", self.node,
        ]

    async def _run(self, argv: List[str], error_cls) -> str:
        log.debug("+ %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise error_cls(f"cannot execute {argv[0]}: {exc}") from exc
        out, err = await proc.communicate()
        if proc.returncode != 0:
            raise error_cls(f"talosctl failed (rc={proc.returncode}) for {argv[len(self._base()):]!r}\n{err.decode(errors='replace')}")
        return out.decode(errors="replace")

    # ------------------------- ClusterClient -------------------------

    async def bootstrap(self) -> None:
        await self._run(self._base() + ["bootstrap"], ClusterBootstrapError)

    async def health_check(self, timeout: float) -> AsyncIterator[HealthUpdate]:
        argv = self._base() + ["health", "--wait-timeout", f"{int(timeout) + HEALTH_WAIT_GRACE}s"]
        log.debug("+ %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            yield HealthUpdate(error=f"cannot execute {argv[0]}: {exc}")
            return
        tail: List[str] = []
        try:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode(errors="replace").rstrip()
                if not line:
                    continue
                tail = (tail + [line])[-5:]
                yield HealthUpdate(message=line)
            rc = await proc.wait()
            if rc != 0:
                yield HealthUpdate(error=f"talosctl health exited rc={rc}: " + " | ".join(tail))
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

    async def kubeconfig(self) -> bytes:
        with tempfile.TemporaryDirectory(prefix="stolos-kube-") as tmp:
            target = Path(tmp) / "kubeconfig"
            await self._run(self._base() + ["kubeconfig", str(target), "--force", "--merge=false"], KubeconfigError)
            try:
                return target.read_bytes()
            except OSError as exc:
                raise KubeconfigError(f"talosctl did not write a kubeconfig: {exc}") from exc
