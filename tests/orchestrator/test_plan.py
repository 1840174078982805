import asyncio
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from helpers import Capture, FakeGenerator, FlakyPersistence, cluster_params
from stolos_bootstrap.cluster.client import HealthUpdate
from stolos_bootstrap.config.models import BootstrapConfig, GitHubInfo, ImageSettings, OAuthClientSettings
from stolos_bootstrap.errors import ClusterBootstrapError, ConfigError, ProviderDenied
from stolos_bootstrap.observers.dispatcher import EventBus
from stolos_bootstrap.observers.events import SecretsPublished
from stolos_bootstrap.orchestrator.engine import PhaseOrchestrator, RunStatus
from stolos_bootstrap.orchestrator.phase import PhaseKind
import stolos_bootstrap.orchestrator.plan as plan
from stolos_bootstrap.orchestrator.plan import (
    BOOT,
    CLUSTER_BOOTSTRAP,
    PUBLISH_SECRETS,
    WAIT_CONTROL_PLANE,
    WAIT_WORKERS,
    BootstrapRuntime,
    build_phases,
    resume_index,
)
from stolos_bootstrap.rendezvous.github_app import MANIFEST_FORM_PATH
from stolos_bootstrap.rendezvous.providers import OAuthClient, OAuthToken
from stolos_bootstrap.rendezvous.server import CallbackServer
from stolos_bootstrap.state.models import GitHubApp
from stolos_bootstrap.state.store import ClusterStateStore


class FakeClusterClient:
    def __init__(self, bootstrap_error=None):
        self.bootstrap_error = bootstrap_error
        self.calls = []

    async def bootstrap(self):
        self.calls.append("bootstrap")
        if self.bootstrap_error:
            raise self.bootstrap_error

    async def health_check(self, timeout):
        self.calls.append("health")
        yield HealthUpdate("waiting for etcd to be healthy: OK")

    async def kubeconfig(self):
        self.calls.append("kubeconfig")
        return b"apiVersion: v1\nkind: Config\n"


class FakeSink:
    def __init__(self):
        self.applied = {}

    def apply(self, namespace, name, data, labels):
        self.applied[(namespace, name)] = data


def _runtime(tmp_path: Path, monkeypatch, *, cluster=True, min_workers=2, client=None, bus=None, **cfg):
    config = BootstrapConfig(
        cluster=cluster_params() if cluster else None,
        min_workers=min_workers,
        state_dir=tmp_path,
        image=ImageSettings(enabled=False),
        **cfg,
    )
    store = ClusterStateStore.open(FlakyPersistence(tmp_path))
    sink = FakeSink()
    client = client or FakeClusterClient()
    rt = BootstrapRuntime(
        config=config,
        store=store,
        generator=FakeGenerator(),
        bus=bus or EventBus(),
        cluster_client_factory=lambda rt: client,
        secret_sink_factory=lambda path: sink,
    )
    attached = []

    async def fake_config_server(self):
        attached.append(True)

    monkeypatch.setattr(BootstrapRuntime, "ensure_config_server", fake_config_server)
    return rt, sink, client, attached


async def _boot_machines(orch, rt, machines):
    """Plays the machines: they start asking for configs once the boot phase is shown."""
    while orch.current.name not in (BOOT, WAIT_CONTROL_PLANE, WAIT_WORKERS):
        await asyncio.sleep(0.005)
    for identity, address in machines:
        await asyncio.to_thread(rt.service.handle_request, identity, address)


async def _approve(phase):
    return True


def test_phase_order_is_fixed(tmp_path: Path, monkeypatch):
    rt, *_ = _runtime(tmp_path, monkeypatch)
    phases = build_phases(rt)
    assert [p.name for p in phases] == [
        "cluster-info", "provider-auth", "talos-image", "boot",
        "wait-control-plane", "wait-workers", "cluster-bootstrap", "publish-secrets",
    ]
    assert phases[0].kind == PhaseKind.FORM
    assert phases[3].kind == PhaseKind.INFORMATIONAL
    assert [p.name for p in phases if not p.auto_advance] == ["wait-workers"]


def test_resume_index(tmp_path: Path, monkeypatch):
    rt, *_ = _runtime(tmp_path, monkeypatch)
    phases = build_phases(rt)
    assert resume_index(phases, rt.store) == 0

    rt.store.set_cluster_parameters(cluster_params())
    rt.service.handle_request("u1", "10.0.0.10")
    assert resume_index(phases, rt.store) == 5
    assert phases[5].name == WAIT_WORKERS


def test_full_run(tmp_path: Path, monkeypatch):
    capture = Capture()
    rt, sink, client, attached = _runtime(tmp_path, monkeypatch, bus=EventBus([capture]))
    phases = build_phases(rt)
    orch = PhaseOrchestrator(phases, bus=rt.bus, confirm=_approve, cluster=lambda: rt.cluster_name)

    async def scenario():
        machines = asyncio.ensure_future(_boot_machines(
            orch, rt, [("u1", "10.0.0.10"), ("u2", "10.0.0.11"), ("u3", "10.0.0.12")]
        ))
        outcome = await asyncio.wait_for(orch.run(), 10)
        await machines
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.status == RunStatus.SUCCEEDED, outcome.error
    assert client.calls == ["bootstrap", "health", "kubeconfig"]
    assert (tmp_path / "kubeconfig").read_bytes().startswith(b"apiVersion")
    assert sink.applied[("stolos-system", "stolos-system-config")]["CLUSTER_NAME"] == "lab"
    assert capture.of(SecretsPublished)[0].cluster == "lab"
    assert attached  # config server started for the boot phase

    saved = FlakyPersistence(tmp_path).load().state
    assert sorted(r.hostname for r in saved.node_records.values()) == ["controlplane-0", "worker-0", "worker-1"]


def test_resume_skips_earlier_phases_and_reattaches_issuance(tmp_path: Path, monkeypatch):
    # first run got as far as issuing the control plane
    first, *_ = _runtime(tmp_path, monkeypatch)
    first.store.set_cluster_parameters(cluster_params())
    first.service.handle_request("u1", "10.0.0.10")

    # restart with no cluster section and no prompt: cluster-info must not run
    rt, sink, client, attached = _runtime(tmp_path, monkeypatch, cluster=False, min_workers=1)
    phases = build_phases(rt)
    start = resume_index(phases, rt.store)
    orch = PhaseOrchestrator(phases, start_index=start, confirm=_approve)

    async def scenario():
        machines = asyncio.ensure_future(_boot_machines(orch, rt, [("u1", "10.0.0.10"), ("u2", "10.0.0.11")]))
        outcome = await asyncio.wait_for(orch.run(), 10)
        await machines
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.ok, outcome.error
    assert attached == [True]
    assert all(p.completed for p in phases[:start])
    assert rt.store.lookup("u2").hostname == "worker-0"
    # the control plane kept its original config
    assert rt.store.lookup("u1").address == "10.0.0.10"


def test_bootstrap_failure_fails_the_run(tmp_path: Path, monkeypatch):
    client = FakeClusterClient(bootstrap_error=ConnectionError("apid down"))
    rt, sink, _, _ = _runtime(tmp_path, monkeypatch, min_workers=0, client=client)
    orch = PhaseOrchestrator(build_phases(rt), confirm=_approve)

    async def scenario():
        machines = asyncio.ensure_future(_boot_machines(orch, rt, [("u1", "10.0.0.10")]))
        outcome = await asyncio.wait_for(orch.run(), 10)
        await machines
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.status == RunStatus.FAILED
    assert outcome.phase == CLUSTER_BOOTSTRAP
    assert isinstance(outcome.error, ClusterBootstrapError)
    assert client.calls == ["bootstrap"]
    assert sink.applied == {}


def test_missing_cluster_parameters_fail_the_first_phase(tmp_path: Path, monkeypatch):
    rt, *_ = _runtime(tmp_path, monkeypatch, cluster=False)
    outcome = asyncio.run(asyncio.wait_for(PhaseOrchestrator(build_phases(rt)).run(), 5))
    assert outcome.status == RunStatus.FAILED
    assert outcome.phase == "cluster-info"
    assert isinstance(outcome.error, ConfigError)


def test_prompted_cluster_parameters_are_saved(tmp_path: Path, monkeypatch):
    rt, *_ = _runtime(tmp_path, monkeypatch, cluster=False)
    answers = {"cluster_name": "prompted", "http_hostname": "10.9.9.9"}
    rt.prompt = lambda spec, default: answers.get(spec.name, "")
    phases = build_phases(rt)
    # stop the run once the form is done
    orch = PhaseOrchestrator(phases[:1])
    assert asyncio.run(asyncio.wait_for(orch.run(), 5)).ok
    assert rt.store.cluster_parameters.cluster_name == "prompted"
    assert FlakyPersistence(tmp_path).load().state.bootstrap_config.http_hostname == "10.9.9.9"


def test_secrets_phase_needs_a_kubeconfig(tmp_path: Path, monkeypatch):
    rt, *_ = _runtime(tmp_path, monkeypatch)
    rt.store.set_cluster_parameters(cluster_params())
    publish = [p for p in build_phases(rt) if p.name == PUBLISH_SECRETS]
    outcome = asyncio.run(asyncio.wait_for(PhaseOrchestrator(publish).run(), 5))
    assert outcome.status == RunStatus.FAILED
    assert "kubeconfig" in str(outcome.error)


@pytest.mark.parametrize("phase_name", [WAIT_CONTROL_PLANE, WAIT_WORKERS])
def test_waiting_phases_drop_their_listeners_when_the_run_ends(tmp_path: Path, monkeypatch, phase_name):
    rt, *_ = _runtime(tmp_path, monkeypatch, min_workers=5)
    rt.store.set_cluster_parameters(cluster_params())
    if phase_name == WAIT_WORKERS:
        rt.service.handle_request("u1", "10.0.0.10")
    waiting = [p for p in build_phases(rt) if p.name == phase_name]
    orch = PhaseOrchestrator(waiting)

    async def scenario():
        run = asyncio.ensure_future(orch.run())
        while not rt.service._listeners:
            await asyncio.sleep(0.005)
        orch.abort("operator quit")
        return await asyncio.wait_for(run, 5)

    outcome = asyncio.run(scenario())

    assert outcome.status == RunStatus.ABORTED
    assert rt.service._listeners == []
    # a late machine must not reach a finished run
    rt.service.handle_request("u7", "10.0.0.17")


def _resumed_runtime(tmp_path: Path, monkeypatch, **cfg):
    # a first run issued the control plane, then the process exited
    first, *_ = _runtime(tmp_path, monkeypatch)
    first.store.set_cluster_parameters(cluster_params())
    first.service.handle_request("u1", "10.0.0.10")

    async def no_server(self):
        return None

    monkeypatch.setattr(CallbackServer, "start", no_server)
    monkeypatch.setattr(CallbackServer, "stop", no_server)
    return _runtime(tmp_path, monkeypatch, cluster=False, min_workers=0, **cfg)


def _resume(rt):
    phases = build_phases(rt)
    orch = PhaseOrchestrator(phases, start_index=resume_index(phases, rt.store), confirm=_approve)
    return asyncio.run(asyncio.wait_for(orch.run(), 10))


def test_resumed_run_authorizes_again_before_publishing_credentials(tmp_path: Path, monkeypatch):
    rt, sink, _, _ = _resumed_runtime(
        tmp_path, monkeypatch, oauth={"github": OAuthClientSettings(client_id="id", client_secret="s")},
    )
    monkeypatch.setattr(OAuthClient, "exchange", lambda self, code: OAuthToken("github", "tok"))
    opened = []

    def browser(url):
        opened.append(url)
        state = parse_qs(urlparse(url).query)["state"][0]
        rt.hub.deliver_code("github", "c0de", state)
        return True

    rt.open_browser = browser

    outcome = _resume(rt)

    assert outcome.ok, outcome.error
    assert len(opened) == 1
    creds = sink.applied[("stolos-system", "stolos-system-config-credentials")]
    assert creds["GITHUB_ACCESS_TOKEN"] == "tok"


def test_resumed_run_fails_when_authorization_fails(tmp_path: Path, monkeypatch):
    rt, sink, _, _ = _resumed_runtime(
        tmp_path, monkeypatch, oauth={"github": OAuthClientSettings(client_id="id", client_secret="s")},
    )

    def browser(url):
        rt.hub.deliver_error("github", "access_denied")
        return True

    rt.open_browser = browser

    outcome = _resume(rt)

    assert outcome.status == RunStatus.FAILED
    assert outcome.phase == PUBLISH_SECRETS
    assert isinstance(outcome.error, ProviderDenied)
    assert ("stolos-system", "stolos-system-config-credentials") not in sink.applied


def test_github_app_is_created_once_and_published(tmp_path: Path, monkeypatch):
    created = []

    async def fake_create(hub, pages, github, **kw):
        assert MANIFEST_FORM_PATH in pages
        created.append(github.app_name)
        return GitHubApp(id=7, name=github.app_name, client_id="Iv1.x", client_secret="shh", pem="PEM")

    monkeypatch.setattr(plan, "create_github_app", fake_create)
    github = GitHubInfo(repo_owner="acme", repo_name="platform", base_domain="acme.dev", create_app=True)
    rt, sink, _, _ = _resumed_runtime(tmp_path, monkeypatch, github=github)

    assert _resume(rt).ok
    assert created == ["Stolos Platform"]
    creds = sink.applied[("stolos-system", "stolos-system-config-credentials")]
    assert creds["GITHUB_APP_ID"] == "7"
    assert creds["GITHUB_APP_PRIVATE_KEY"] == "PEM"
    assert FlakyPersistence(tmp_path).load().state.github_app.client_id == "Iv1.x"

    # the saved app is reused on the next resume
    again, sink2, _, _ = _runtime(tmp_path, monkeypatch, cluster=False, min_workers=0, github=github)
    assert _resume(again).ok
    assert created == ["Stolos Platform"]
    assert sink2.applied[("stolos-system", "stolos-system-config-credentials")]["GITHUB_APP_CLIENT_ID"] == "Iv1.x"
