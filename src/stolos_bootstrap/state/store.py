# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/state/store.py

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from stolos_bootstrap.config.models import ClusterParameters
from stolos_bootstrap.errors import StateWriteError
from stolos_bootstrap.machineconfig.generator import ConfigBundle
from .models import ClusterSaveState, GitHubApp, NodeRecord
from .persistence import StatePersistence

log = logging.getLogger("stolos")


class ClusterStateStore:
    """
    The single owner of cumulative cluster state.

    All reads and writes go through ``lock``; the issuance service holds it
    across lookup, role decision, render, insert and persist so the
    first-control-plane decision is race free.
    """

    def __init__(
        self,
        persistence: StatePersistence,
        state: Optional[ClusterSaveState] = None,
        bundle: Optional[ConfigBundle] = None,
    ):
        self.persistence = persistence
        self._state = state or ClusterSaveState()
        self._bundle = bundle
        self.lock = threading.RLock()

    @classmethod
    def open(cls, persistence: StatePersistence) -> "ClusterStateStore":
        """Restore from disk. Raises StateLoadError on a partial snapshot."""
        result = persistence.load()
        bundle = ConfigBundle.from_files(result.bundle_files) if result.bundle_files else None
        if result.found:
            log.info(
                "Restored state from %s: %d control plane(s), %d worker(s)",
                persistence.state_path,
                len(result.state.control_planes()),
                len(result.state.workers()),
            )
        return cls(persistence, result.state, bundle)

    @contextmanager
    def locked(self) -> Iterator["ClusterStateStore"]:
        with self.lock:
            yield self

    # ------------------------- reads -------------------------

    def snapshot(self) -> ClusterSaveState:
        with self.lock:
            return self._state.model_copy(deep=True)

    @property
    def bundle(self) -> Optional[ConfigBundle]:
        with self.lock:
            return self._bundle

    @property
    def cluster_endpoint(self) -> Optional[str]:
        with self.lock:
            return self._state.cluster_endpoint

    @property
    def cluster_parameters(self) -> Optional[ClusterParameters]:
        with self.lock:
            return self._state.bootstrap_config

    @property
    def github_app(self) -> Optional[GitHubApp]:
        with self.lock:
            return self._state.github_app

    def lookup(self, identity_key: str) -> Optional[NodeRecord]:
        with self.lock:
            return self._state.node_records.get(identity_key)

    def has_control_plane(self) -> bool:
        with self.lock:
            return self._state.has_control_plane()

    def worker_count(self) -> int:
        with self.lock:
            return len(self._state.workers())

    def install_disk_for(self, identity_key: str, default: str) -> str:
        with self.lock:
            return self._state.machine_disks.get(identity_key, default)

    # ------------------------- writes -------------------------

    def commit_record(
        self,
        record: NodeRecord,
        *,
        bundle: Optional[ConfigBundle] = None,
        cluster_endpoint: Optional[str] = None,
    ) -> None:
        """
        Insert *record* (plus a newly created bundle and endpoint) and persist.

        If the write fails the in-memory insert is rolled back and
        StateWriteError propagates, so nothing is ever handed out that a
        restart would not reproduce.
        """
        with self.lock:
            if record.identity_key in self._state.node_records:
                raise ValueError(f"node {record.identity_key} already has a record")

            prev_bundle = self._bundle
            prev_endpoint = self._state.cluster_endpoint

            self._state.node_records[record.identity_key] = record
            if bundle is not None:
                self._bundle = bundle
            if cluster_endpoint is not None and prev_endpoint is None:
                self._state.cluster_endpoint = cluster_endpoint

            try:
                self.persistence.save(
                    self._state,
                    bundle.to_files() if bundle is not None else None,
                )
            except StateWriteError:
                del self._state.node_records[record.identity_key]
                self._bundle = prev_bundle
                self._state.cluster_endpoint = prev_endpoint
                raise

    def save(self) -> bool:
        """Best-effort save for non-issuance changes. Failures are logged, not raised."""
        with self.lock:
            try:
                self.persistence.save(self._state)
            except StateWriteError as exc:
                log.error("Failed to persist bootstrap state: %s", exc)
                return False
            return True

    def set_cluster_parameters(self, params: ClusterParameters) -> None:
        with self.lock:
            self._state.bootstrap_config = params
            self.save()

    def set_github_app(self, app: GitHubApp) -> None:
        with self.lock:
            self._state.github_app = app
            self.save()

    def set_machine_disk(self, identity_key: str, disk: str) -> None:
        with self.lock:
            self._state.machine_disks[identity_key] = disk
            self.save()

    def seed_machine_disks(self, disks: dict[str, str]) -> None:
        """Apply configured disks without overriding selections already recorded."""
        with self.lock:
            changed = False
            for identity, disk in disks.items():
                if identity not in self._state.machine_disks:
                    self._state.machine_disks[identity] = disk
                    changed = True
            if changed:
                self.save()

