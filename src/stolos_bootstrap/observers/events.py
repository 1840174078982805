# src/stolos_bootstrap/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single bootstrap invocation
    cluster: str      # cluster name, "" until the cluster-info phase completes

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_ts() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now_ts(),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


# ---------------------------------------------------------------------
# Phase lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PhaseEntered(BaseEvent):
    name: str
    index: int
    kind: str

@dataclass(frozen=True)
class PhaseCompleted(BaseEvent):
    name: str
    index: int

@dataclass(frozen=True)
class AwaitingConfirmation(BaseEvent):
    name: str
    index: int

@dataclass(frozen=True)
class PhasesRestored(BaseEvent):
    resumed_at: str
    restored: List[str]

@dataclass(frozen=True)
class RunSucceeded(BaseEvent):
    phases: int
    duration_ms: int

@dataclass(frozen=True)
class RunFailed(BaseEvent):
    phase: str
    error_type: str
    error: str


# ---------------------------------------------------------------------
# Machine config issuance
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NodeConfigIssued(BaseEvent):
    identity: str
    role: str
    hostname: str
    address: str

@dataclass(frozen=True)
class NodeConfigFailed(BaseEvent):
    identity: str
    address: str
    error: str


# ---------------------------------------------------------------------
# Cluster bootstrap
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ClusterBootstrapped(BaseEvent):
    endpoint: str

@dataclass(frozen=True)
class HealthCheckPassed(BaseEvent):
    duration_ms: int

@dataclass(frozen=True)
class HealthCheckFailed(BaseEvent):
    error: str

@dataclass(frozen=True)
class KubeconfigWritten(BaseEvent):
    path: str

@dataclass(frozen=True)
class SecretsPublished(BaseEvent):
    namespace: str
    secrets: List[str]
