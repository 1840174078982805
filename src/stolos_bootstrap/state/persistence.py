# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/state/persistence.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from stolos_bootstrap.errors import StateLoadError, StateWriteError
from stolos_bootstrap.utils.files import atomic_write
from .models import ClusterSaveState

log = logging.getLogger("stolos")

STATE_FILE = "bootstrap-state.json"


@dataclass
class LoadResult:
    state: ClusterSaveState
    bundle_files: Optional[Dict[str, bytes]]
    found: bool


class StatePersistence:
    """
    Snapshot file plus the config bundle blobs, side by side in *state_dir*.

    The snapshot is rewritten wholesale on every save. Bundle blobs are only
    rewritten when a bundle is passed in.
    """

    def __init__(self, state_dir: str | Path, bundle_files: Iterable[str]):
        self.state_dir = Path(state_dir)
        self.bundle_files = tuple(bundle_files)

    @property
    def state_path(self) -> Path:
        return self.state_dir / STATE_FILE

    def exists(self) -> bool:
        return self.state_path.is_file()

    def load(self) -> LoadResult:
        if not self.exists():
            return LoadResult(ClusterSaveState(), None, found=False)

        try:
            state = ClusterSaveState.model_validate_json(self.state_path.read_bytes())
        except (OSError, ValidationError, ValueError) as exc:
            raise StateLoadError(f"cannot restore {self.state_path}: {exc}") from exc

        present = [n for n in self.bundle_files if (self.state_dir / n).is_file()]
        if state.cluster_endpoint is None:
            # No control plane was ever committed. Bundle files without an
            # endpoint are left over from a save whose snapshot write failed.
            if present:
                log.warning("Ignoring bundle files without a committed control plane: %s", ", ".join(present))
            return LoadResult(state, None, found=True)
        if len(present) != len(self.bundle_files):
            missing = sorted(set(self.bundle_files) - set(present))
            raise StateLoadError(
                f"snapshot {self.state_path} is present but bundle files are missing: {', '.join(missing)}"
            )

        files: Dict[str, bytes] = {}
        for name in self.bundle_files:
            try:
                files[name] = (self.state_dir / name).read_bytes()
            except OSError as exc:
                raise StateLoadError(f"cannot read bundle file {name}: {exc}") from exc
        return LoadResult(state, files, found=True)

    def save(self, state: ClusterSaveState, bundle_files: Optional[Dict[str, bytes]] = None) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            if bundle_files is not None:
                for name, blob in bundle_files.items():
                    atomic_write(self.state_dir / name, blob)
            atomic_write(self.state_path, state.model_dump_json(indent=2).encode())
        except OSError as exc:
            raise StateWriteError(f"cannot write state to {self.state_dir}: {exc}") from exc
        log.debug("State saved to %s (%d node records)", self.state_path, len(state.node_records))

    def remove(self) -> list[Path]:
        removed = []
        for p in [self.state_path, *(self.state_dir / n for n in self.bundle_files)]:
            if p.exists():
                p.unlink()
                removed.append(p)
        return removed
