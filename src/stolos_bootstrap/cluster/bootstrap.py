# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/cluster/bootstrap.py

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from stolos_bootstrap.errors import (
    ClusterBootstrapError,
    HealthCheckServerFailure,
    HealthCheckTimeout,
    KubeconfigError,
)
from stolos_bootstrap.logging.log import SUCCESS
from stolos_bootstrap.utils.files import atomic_write
from .client import ClusterClient

log = logging.getLogger("stolos")

DEFAULT_HEALTH_TIMEOUT = 20 * 60.0


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: SUCCESS,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


def classify_condition(line: str) -> Severity:
    """
    Map a health condition line to a severity:
    "..." in progress, "OK" passed, "SKIP" skipped, anything else failed.
    """
    line = line.rstrip()
    if line.endswith("..."):
        return Severity.INFO
    if line.endswith("OK"):
        return Severity.SUCCESS
    if line.endswith("SKIP"):
        return Severity.WARNING
    return Severity.ERROR


class ConditionReporter:
    """Logs each distinct condition line once."""

    def __init__(self, logger: logging.Logger = log):
        self.logger = logger
        self._last: Optional[str] = None

    def report(self, line: str) -> Optional[Severity]:
        line = line.strip()
        if not line or line == self._last:
            return None
        self._last = line
        severity = classify_condition(line)
        self.logger.log(_LEVELS[severity], "health: %s", line)
        return severity


async def execute_bootstrap(client: ClusterClient) -> None:
    """Trigger etcd bootstrap on the first control plane. Called once, never retried."""
    log.info("Bootstrapping cluster")
    try:
        await client.bootstrap()
    except ClusterBootstrapError:
        raise
    except Exception as exc:
        raise ClusterBootstrapError(f"bootstrap request failed: {exc}") from exc
    log.log(SUCCESS, "Bootstrap request accepted")


async def poll_health(
    client: ClusterClient,
    timeout: float = DEFAULT_HEALTH_TIMEOUT,
    reporter: Optional[ConditionReporter] = None,
) -> None:
    """
    Drain the health stream until it ends (healthy) or reports an error.

    Raises HealthCheckServerFailure for an embedded error and
    HealthCheckTimeout when *timeout* seconds pass first.
    """
    reporter = reporter or ConditionReporter()

    async def _drain() -> None:
        stream = client.health_check(timeout)
        try:
            async for update in stream:
                if update.error:
                    raise HealthCheckServerFailure(f"cluster health check failed: {update.error}")
                if update.message:
                    reporter.report(update.message)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    try:
        await asyncio.wait_for(_drain(), timeout)
    except asyncio.TimeoutError:
        raise HealthCheckTimeout(f"cluster not healthy after {timeout:.0f}s") from None
    log.log(SUCCESS, "Cluster is healthy")


async def fetch_kubeconfig(client: ClusterClient, path: Path) -> Path:
    """Retrieve the admin kubeconfig and write it owner-only."""
    try:
        data = await client.kubeconfig()
    except KubeconfigError:
        raise
    except Exception as exc:
        raise KubeconfigError(f"cannot retrieve kubeconfig: {exc}") from exc
    try:
        atomic_write(Path(path), data, mode=0o600)
    except OSError as exc:
        raise KubeconfigError(f"cannot write kubeconfig to {path}: {exc}") from exc
    log.log(SUCCESS, "Kubeconfig written to %s", path)
    return Path(path)
