# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/machineconfig/service.py

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from stolos_bootstrap.config.models import ClusterParameters
from stolos_bootstrap.errors import GenerationError, StateWriteError
from stolos_bootstrap.logging.log import log_success
from stolos_bootstrap.observers.dispatcher import EventBus
from stolos_bootstrap.observers.events import NodeConfigFailed, NodeConfigIssued, new_ctx
from stolos_bootstrap.state.models import NodeRecord, NodeRole
from stolos_bootstrap.state.store import ClusterStateStore
from .generator import ConfigGenerator

log = logging.getLogger("stolos")

CONTROL_PLANE_HOSTNAME = "controlplane-0"
KUBE_API_PORT = 6443

IssuanceListener = Callable[[NodeRecord], None]


def cluster_endpoint_for(address: str) -> str:
    return f"https://{address}:{KUBE_API_PORT}"


def worker_hostname(index: int) -> str:
    return f"worker-{index}"


class MachineConfigService:
    """
    Decides a booting machine's role and hands out its config.

    The first machine ever to ask becomes the control plane; everyone after
    is a worker. A machine that asks again gets the exact bytes it got the
    first time.
    """

    def __init__(
        self,
        *,
        store: ClusterStateStore,
        generator: ConfigGenerator,
        params: Callable[[], Optional[ClusterParameters]],
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
    ):
        self.store = store
        self.generator = generator
        self._params = params
        self.bus = bus or EventBus()
        self.run_id = run_id
        self._listeners: List[IssuanceListener] = []
        self._listeners_lock = threading.Lock()

    # ------------------------- listeners -------------------------

    def add_listener(self, listener: IssuanceListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: IssuanceListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, record: NodeRecord) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record)
            except Exception:
                log.exception("Issuance listener failed for %s", record.identity_key)

    def _ctx(self) -> dict:
        params = self._params()
        return new_ctx(params.cluster_name if params else "", self.run_id)

    # ------------------------- issuance -------------------------

    def handle_request(self, identity_key: str, source_address: str) -> bytes:
        """
        Return the config for *identity_key*, creating and persisting a record
        the first time it is seen.

        Raises GenerationError when the generator fails (nothing is cached) and
        StateWriteError when the new record could not be persisted (nothing is
        handed out).
        """
        if not identity_key:
            raise ValueError("identity_key is required")

        try:
            record = self._issue(identity_key, source_address)
        except (GenerationError, StateWriteError) as exc:
            log.error("Config issuance for %s (%s) failed: %s", identity_key, source_address, exc)
            self.bus.emit(NodeConfigFailed(**self._ctx(), identity=identity_key,
                                           address=source_address, error=str(exc)))
            raise

        if record is None:
            cached = self.store.lookup(identity_key)
            log.info("Re-serving cached %s config to %s (%s)", cached.role.value, identity_key, source_address)
            return cached.rendered_config

        log_success(log, "Issued %s config %s to %s (%s)",
                    record.role.value, record.hostname, identity_key, source_address)
        self.bus.emit(NodeConfigIssued(**self._ctx(), identity=identity_key, role=record.role.value,
                                       hostname=record.hostname, address=source_address))
        self._notify(record)
        return record.rendered_config

    def _issue(self, identity_key: str, source_address: str) -> Optional[NodeRecord]:
        """Returns the new record, or None when one already existed."""
        with self.store.locked() as store:
            if store.lookup(identity_key) is not None:
                return None

            params = self._params()
            if params is None:
                raise GenerationError("cluster parameters have not been collected yet")

            role = NodeRole.WORKER if store.has_control_plane() else NodeRole.CONTROL_PLANE

            new_bundle = None
            endpoint = None
            if role == NodeRole.CONTROL_PLANE:
                # the bundle embeds the endpoint, so it is always created for this machine
                endpoint = cluster_endpoint_for(source_address)
                bundle = new_bundle = self._call_generator(
                    lambda: self.generator.create_bundle(params, endpoint)
                )
            else:
                bundle = store.bundle
                if bundle is None:
                    raise GenerationError("control plane exists but no config bundle is loaded")

            if role == NodeRole.CONTROL_PLANE:
                hostname = CONTROL_PLANE_HOSTNAME
            else:
                hostname = worker_hostname(store.worker_count())

            disk = store.install_disk_for(identity_key, params.talos_install_disk)
            rendered = self._call_generator(
                lambda: self.generator.render(bundle, role, hostname=hostname, install_disk=disk)
            )

            record = NodeRecord(
                identity_key=identity_key,
                role=role,
                hostname=hostname,
                address=source_address,
                rendered_config=rendered,
            )
            store.commit_record(record, bundle=new_bundle, cluster_endpoint=endpoint)
            return record

    @staticmethod
    def _call_generator(fn):
        try:
            return fn()
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"config generation failed: {exc}") from exc
