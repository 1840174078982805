# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/state/models.py

from __future__ import annotations

import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from stolos_bootstrap.config.models import ClusterParameters


class NodeRole(str, Enum):
    CONTROL_PLANE = "controlplane"
    WORKER = "worker"


class NodeRecord(BaseModel):
    """A machine that has been issued a config. Role and bytes never change."""

    identity_key: str
    role: NodeRole
    hostname: str
    address: str
    rendered_config: bytes
    first_seen_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Rendered configs carry key material; keep them lossless in JSON.
    @field_serializer("rendered_config")
    def _encode_config(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    @field_validator("rendered_config", mode="before")
    @classmethod
    def _decode_config(cls, value):
        if isinstance(value, str):
            return base64.b64decode(value.encode("ascii"), validate=True)
        return value


class GitHubApp(BaseModel):
    """Credentials GitHub returns for an app created from a manifest."""

    id: int
    name: str
    slug: str = ""
    html_url: str = ""
    client_id: str
    client_secret: str
    webhook_secret: Optional[str] = None
    pem: str


class ClusterSaveState(BaseModel):
    cluster_endpoint: Optional[str] = None
    bootstrap_config: Optional[ClusterParameters] = None
    node_records: Dict[str, NodeRecord] = Field(default_factory=dict)
    machine_disks: Dict[str, str] = Field(default_factory=dict)
    github_app: Optional[GitHubApp] = None

    def control_planes(self) -> List[NodeRecord]:
        return [r for r in self.node_records.values() if r.role == NodeRole.CONTROL_PLANE]

    def workers(self) -> List[NodeRecord]:
        return [r for r in self.node_records.values() if r.role == NodeRole.WORKER]

    def has_control_plane(self) -> bool:
        return any(r.role == NodeRole.CONTROL_PLANE for r in self.node_records.values())
