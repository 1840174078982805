# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/orchestrator/plan.py

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional

from stolos_bootstrap.cluster.bootstrap import execute_bootstrap, fetch_kubeconfig, poll_health
from stolos_bootstrap.cluster.client import ClusterClient, TalosctlClient
from stolos_bootstrap.cluster.secrets import KubernetesSecretSink, SecretSink, publish_platform_secrets
from stolos_bootstrap.config.fields import Prompt, collect_cluster_parameters
from stolos_bootstrap.config.models import BootstrapConfig, ClusterParameters
from stolos_bootstrap.errors import (
    ConfigError,
    HealthCheckError,
    MalformedCallback,
    ProviderDenied,
    SecretSyncError,
)
from stolos_bootstrap.image.factory import ImageFactoryClient, config_kernel_arg
from stolos_bootstrap.logging.log import log_success
from stolos_bootstrap.machineconfig.generator import TALOSCONFIG_FILE, ConfigGenerator
from stolos_bootstrap.machineconfig.server import ConfigServer
from stolos_bootstrap.machineconfig.service import MachineConfigService
from stolos_bootstrap.observers.dispatcher import EventBus
from stolos_bootstrap.observers.events import (
    ClusterBootstrapped,
    HealthCheckFailed,
    HealthCheckPassed,
    KubeconfigWritten,
    SecretsPublished,
    new_ctx,
)
from stolos_bootstrap.rendezvous.github_app import (
    MANIFEST_CALLBACK_PATH,
    MANIFEST_FORM_PATH,
    MANIFEST_PROVIDER,
    create_github_app,
)
from stolos_bootstrap.rendezvous.hub import RendezvousHub
from stolos_bootstrap.rendezvous.providers import OAuthClient, OAuthToken, authenticate, get_provider, open_browser
from stolos_bootstrap.rendezvous.server import CallbackServer
from stolos_bootstrap.state.models import ClusterSaveState, NodeRecord, NodeRole
from stolos_bootstrap.state.store import ClusterStateStore
from .engine import PhaseContext
from .phase import Phase, PhaseKind

log = logging.getLogger("stolos")

CLUSTER_INFO = "cluster-info"
PROVIDER_AUTH = "provider-auth"
TALOS_IMAGE = "talos-image"
BOOT = "boot"
WAIT_CONTROL_PLANE = "wait-control-plane"
WAIT_WORKERS = "wait-workers"
CLUSTER_BOOTSTRAP = "cluster-bootstrap"
PUBLISH_SECRETS = "publish-secrets"

# Where a run restarts once a control plane has been issued
RESUME_PHASE = WAIT_WORKERS

AUTH_ATTEMPTS = 2


def talosctl_client(rt: "BootstrapRuntime") -> ClusterClient:
    control_planes = rt.store.snapshot().control_planes()
    if not control_planes:
        raise ConfigError("no control plane has been issued a config")
    return TalosctlClient(talosconfig=rt.state_dir / TALOSCONFIG_FILE, node=control_planes[0].address)


@dataclass
class BootstrapRuntime:
    """Everything the phases share: config, the store and the long-lived servers."""

    config: BootstrapConfig
    store: ClusterStateStore
    generator: ConfigGenerator
    hub: RendezvousHub = field(default_factory=RendezvousHub)
    bus: EventBus = field(default_factory=EventBus)
    run_id: Optional[str] = None
    prompt: Optional[Prompt] = None
    open_browser: Callable[[str], bool] = open_browser
    image_factory: Optional[ImageFactoryClient] = None
    cluster_client_factory: Callable[["BootstrapRuntime"], ClusterClient] = talosctl_client
    secret_sink_factory: Callable[[Path], SecretSink] = KubernetesSecretSink.from_kubeconfig
    auth_timeout: float = 600.0
    config_host: str = "0.0.0.0"

    service: MachineConfigService = field(init=False)
    config_server: Optional[ConfigServer] = field(default=None, init=False)
    tokens: Dict[str, OAuthToken] = field(default_factory=dict, init=False)
    image_path: Optional[Path] = field(default=None, init=False)
    kubeconfig_path: Optional[Path] = field(default=None, init=False)

    def __post_init__(self):
        self.service = MachineConfigService(
            store=self.store,
            generator=self.generator,
            params=lambda: self.store.cluster_parameters,
            bus=self.bus,
            run_id=self.run_id,
        )

    @property
    def state_dir(self) -> Path:
        return Path(self.config.state_dir)

    @property
    def cluster_name(self) -> str:
        params = self.store.cluster_parameters
        return params.cluster_name if params else ""

    @property
    def params(self) -> ClusterParameters:
        params = self.store.cluster_parameters
        if params is None:
            raise ConfigError("cluster parameters have not been collected")
        return params

    def ctx(self) -> dict:
        return new_ctx(self.cluster_name, self.run_id)

    def prepare(self) -> None:
        self.store.seed_machine_disks(self.config.machine_disks)

    async def ensure_config_server(self) -> ConfigServer:
        if self.config_server is None:
            self.config_server = ConfigServer(self.service, host=self.config_host, port=self.params.http_port)
        await self.config_server.ensure_started()
        return self.config_server

    async def aclose(self) -> None:
        if self.config_server is not None:
            await self.config_server.stop()


# ---------------------------------------------------------------------
# Phase bodies
# ---------------------------------------------------------------------
def boot_instructions(params: ClusterParameters) -> str:
    return (
        "Boot your machines from the Talos image.\n"
        f"They fetch their config with {config_kernel_arg(params.http_hostname, params.http_port)}\n"
        "The first machine to ask becomes the control plane; boot it first."
    )


def node_summary(state: ClusterSaveState, min_workers: int) -> str:
    lines = [f"{len(state.workers())}/{min_workers} workers joined"]
    for record in sorted(state.node_records.values(), key=lambda r: r.first_seen_at):
        lines.append(f"  {record.hostname:<16} {record.role.value:<13} {record.address:<16} {record.identity_key}")
    return "\n".join(lines)


# ---------------------------------------------------------------------
# Entry actions
# ---------------------------------------------------------------------
async def collect_cluster_info(rt: BootstrapRuntime, ctx: PhaseContext) -> None:
    existing = rt.store.cluster_parameters
    if existing is not None and rt.store.has_control_plane():
        log.info("Using saved cluster parameters for %s", existing.cluster_name)
    elif rt.config.cluster is not None:
        rt.store.set_cluster_parameters(rt.config.cluster)
    elif rt.prompt is not None:
        params = await asyncio.to_thread(collect_cluster_parameters, rt.prompt)
        rt.store.set_cluster_parameters(params)
    elif existing is None:
        raise ConfigError("cluster parameters are not in the config file and no prompt is available")
    log.info("Cluster %s: Kubernetes %s, Talos %s (%s)", rt.params.cluster_name,
             rt.params.kubernetes_version, rt.params.talos_version, rt.params.talos_architecture)
    ctx.complete()


async def _authenticate_provider(rt: BootstrapRuntime, client: OAuthClient, ctx: PhaseContext) -> OAuthToken:
    attempt = 1
    while True:
        try:
            return await authenticate(
                rt.hub, client,
                timeout=rt.auth_timeout,
                cancel=ctx.cancelled,
                open_browser=rt.open_browser,
            )
        except (ProviderDenied, MalformedCallback) as exc:
            if attempt >= AUTH_ATTEMPTS:
                raise
            attempt += 1
            log.warning("%s authorization failed (%s); retrying with a fresh session", client.provider.name, exc)


def _needs_github_app(rt: BootstrapRuntime) -> bool:
    github = rt.config.github
    return github is not None and github.create_app and rt.store.github_app is None


async def _authorize(rt: BootstrapRuntime, ctx: PhaseContext, names: List[str], *, create_app: bool) -> None:
    providers = {name: get_provider(name) for name in names}
    routes = {n: p.callback_path for n, p in providers.items()}
    pages = None
    if create_app:
        routes[MANIFEST_PROVIDER] = MANIFEST_CALLBACK_PATH
        pages = {MANIFEST_FORM_PATH: ""}
    server = CallbackServer(rt.hub, routes, pages=pages, port=rt.config.callback_port)
    await server.start()
    try:
        for name, provider in providers.items():
            client = OAuthClient(provider, rt.config.oauth[name], callback_base=server.base_url)
            rt.tokens[name] = await _authenticate_provider(rt, client, ctx)
            log_success(log, "Authorized %s", name)
        if create_app:
            app = await create_github_app(
                rt.hub, server.pages, rt.config.github,
                callback_base=server.base_url,
                timeout=rt.auth_timeout,
                cancel=ctx.cancelled,
                open_browser=rt.open_browser,
            )
            rt.store.set_github_app(app)
    finally:
        await server.stop()


async def authenticate_providers(rt: BootstrapRuntime, ctx: PhaseContext) -> None:
    names = list(rt.config.oauth)
    create_app = _needs_github_app(rt)
    if not names and not create_app:
        log.info("Nothing to authorize, skipping")
        ctx.complete()
        return
    await _authorize(rt, ctx, names, create_app=create_app)
    ctx.complete()


async def generate_image(rt: BootstrapRuntime, ctx: PhaseContext) -> None:
    settings = rt.config.image
    if not settings.enabled:
        log.info("Image generation disabled, skipping")
        ctx.complete()
        return
    factory = rt.image_factory or ImageFactoryClient(base_url=settings.factory_url, timeout=settings.timeout_seconds)
    output_dir = settings.output_dir or rt.state_dir
    rt.image_path = await asyncio.to_thread(factory.build_image, rt.params, output_dir)
    log_success(log, "Talos image ready: %s", rt.image_path)
    ctx.complete()


async def start_config_server(rt: BootstrapRuntime, ctx: PhaseContext) -> None:
    await rt.ensure_config_server()
    ctx.set_body(boot_instructions(rt.params))
    log.info(ctx.phase.body)
    ctx.complete()


async def wait_for_control_plane(rt: BootstrapRuntime, ctx: PhaseContext) -> None:
    loop = asyncio.get_running_loop()
    issued = asyncio.Event()

    def on_issue(record: NodeRecord) -> None:
        if record.role == NodeRole.CONTROL_PLANE:
            loop.call_soon_threadsafe(issued.set)

    # register before checking so an issuance in between is not missed
    rt.service.add_listener(on_issue)
    try:
        if not rt.store.has_control_plane():
            await issued.wait()
    finally:
        rt.service.remove_listener(on_issue)
    ctx.complete()


async def wait_for_workers(rt: BootstrapRuntime, ctx: PhaseContext) -> None:
    # re-attaches the issuance server when resuming straight into this phase
    await rt.ensure_config_server()
    target = rt.config.min_workers
    loop = asyncio.get_running_loop()
    joined = asyncio.Event()

    def on_issue(record: NodeRecord) -> None:
        if record.role == NodeRole.WORKER:
            loop.call_soon_threadsafe(joined.set)

    rt.service.add_listener(on_issue)
    try:
        while True:
            ctx.set_body(node_summary(rt.store.snapshot(), target))
            if rt.store.worker_count() >= target:
                break
            await joined.wait()
            joined.clear()
            log.info("%d/%d workers joined", rt.store.worker_count(), target)
    finally:
        rt.service.remove_listener(on_issue)
    ctx.complete()


async def bootstrap_cluster(rt: BootstrapRuntime, ctx: PhaseContext) -> None:
    client = rt.cluster_client_factory(rt)
    await execute_bootstrap(client)
    rt.bus.emit(ClusterBootstrapped(**rt.ctx(), endpoint=rt.store.cluster_endpoint or ""))

    started = time.monotonic()
    try:
        await poll_health(client, rt.config.health_timeout_minutes * 60.0)
    except HealthCheckError as exc:
        rt.bus.emit(HealthCheckFailed(**rt.ctx(), error=str(exc)))
        raise
    rt.bus.emit(HealthCheckPassed(**rt.ctx(), duration_ms=int((time.monotonic() - started) * 1000)))

    rt.kubeconfig_path = await fetch_kubeconfig(client, rt.state_dir / "kubeconfig")
    rt.bus.emit(KubeconfigWritten(**rt.ctx(), path=str(rt.kubeconfig_path)))
    ctx.complete()


async def publish_secrets(rt: BootstrapRuntime, ctx: PhaseContext) -> None:
    settings = rt.config.secrets
    if not settings.enabled:
        log.info("Secret propagation disabled, skipping")
        ctx.complete()
        return
    if rt.kubeconfig_path is None:
        raise SecretSyncError("no kubeconfig available for the new cluster")

    # tokens live only in memory, so a resumed run has to ask again
    missing = [name for name in rt.config.oauth if name not in rt.tokens]
    create_app = _needs_github_app(rt)
    if missing or create_app:
        log.warning("Credentials missing in this run (%s), authorizing again",
                    ", ".join(missing + (["GitHub App"] if create_app else [])))
        await _authorize(rt, ctx, missing, create_app=create_app)

    def _publish() -> List[str]:
        sink = rt.secret_sink_factory(rt.kubeconfig_path)
        return publish_platform_secrets(
            sink,
            namespace=settings.namespace,
            secret_name=settings.secret_name,
            params=rt.params,
            github=rt.config.github,
            gcp=rt.config.gcp,
            tokens=rt.tokens,
            github_app=rt.store.github_app,
            event_sink_port=settings.event_sink_port,
        )

    written = await asyncio.to_thread(_publish)
    rt.bus.emit(SecretsPublished(**rt.ctx(), namespace=settings.namespace, secrets=written))
    log_success(log, "Published %s to namespace %s", ", ".join(written), settings.namespace)
    ctx.complete()


# ---------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------
def build_phases(rt: BootstrapRuntime) -> List[Phase]:
    """The fixed bootstrap sequence."""
    return [
        Phase(CLUSTER_INFO, "Cluster information", PhaseKind.FORM, partial(collect_cluster_info, rt)),
        Phase(PROVIDER_AUTH, "Provider authorization", PhaseKind.BACKGROUND, partial(authenticate_providers, rt)),
        Phase(TALOS_IMAGE, "Talos boot image", PhaseKind.BACKGROUND, partial(generate_image, rt)),
        Phase(BOOT, "Boot machines", PhaseKind.INFORMATIONAL, partial(start_config_server, rt)),
        Phase(WAIT_CONTROL_PLANE, "Waiting for the control plane", PhaseKind.BACKGROUND, partial(wait_for_control_plane, rt)),
        Phase(WAIT_WORKERS, "Waiting for workers", PhaseKind.BACKGROUND, partial(wait_for_workers, rt), auto_advance=False),
        Phase(CLUSTER_BOOTSTRAP, "Bootstrapping the cluster", PhaseKind.BACKGROUND, partial(bootstrap_cluster, rt)),
        Phase(PUBLISH_SECRETS, "Publishing platform secrets", PhaseKind.BACKGROUND, partial(publish_secrets, rt)),
    ]


def resume_index(phases: List[Phase], store: ClusterStateStore) -> int:
    """0 for a fresh run, the worker-wait phase once a control plane exists."""
    if not store.has_control_plane():
        return 0
    for i, phase in enumerate(phases):
        if phase.name == RESUME_PHASE:
            return i
    raise ValueError(f"phase list has no {RESUME_PHASE} phase")
