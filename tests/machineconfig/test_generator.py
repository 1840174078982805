import subprocess
from pathlib import Path

import pytest
import yaml

from helpers import cluster_params
from stolos_bootstrap.errors import GenerationError
from stolos_bootstrap.machineconfig.generator import (
    ConfigBundle,
    TalosctlConfigGenerator,
    merge_patch,
    patch_machine_document,
)
from stolos_bootstrap.state.models import NodeRole

BASE_CP = """\
version: v1alpha1
machine:
  type: controlplane
  install:
    disk: /dev/sda
    image: ghcr.io/siderolabs/installer:v1.11.1
cluster:
  controlPlane:
    endpoint: https://10.0.0.10:6443
---
apiVersion: v1alpha1
kind: HostnameConfig
auto: stable
"""

TALOSCONFIG = """\
context: lab
contexts:
  lab:
    endpoints: []
    ca: abc
"""


class DummyCP:
    def __init__(self, rc=0, out="", err=""):
        self.returncode = rc
        self.stdout = out
        self.stderr = err


def _fake_talosctl(calls, rc=0):
    def fake_run(argv, check=False, text=False, capture_output=False):
        calls.append(list(argv))
        patch_arg = argv[argv.index("--config-patch") + 1]
        calls.append(Path(patch_arg.lstrip("@")).read_text())
        if rc == 0:
            out = Path(argv[argv.index("--output-dir") + 1])
            out.mkdir(parents=True)
            (out / "controlplane.yaml").write_text(BASE_CP)
            (out / "worker.yaml").write_text(BASE_CP.replace("type: controlplane", "type: worker"))
            (out / "talosconfig").write_text(TALOSCONFIG)
        return DummyCP(rc, err="boom" if rc else "")
    return fake_run


def test_merge_patch_merges_nested_and_replaces_scalars():
    base = {"machine": {"install": {"disk": "/dev/sda", "wipe": False}, "type": "worker"}}
    merge_patch(base, {"machine": {"install": {"disk": "/dev/vda"}}})
    assert base == {"machine": {"install": {"disk": "/dev/vda", "wipe": False}, "type": "worker"}}


def test_patch_only_touches_the_machine_document():
    out = patch_machine_document(BASE_CP.encode(), {"machine": {"network": {"hostname": "worker-3"}}})
    docs = list(yaml.safe_load_all(out))
    assert docs[0]["machine"]["network"]["hostname"] == "worker-3"
    assert docs[0]["machine"]["install"]["disk"] == "/dev/sda"
    assert docs[1] == {"apiVersion": "v1alpha1", "kind": "HostnameConfig", "auto": "stable"}


def test_patch_without_machine_document_fails():
    with pytest.raises(GenerationError):
        patch_machine_document(b"kind: Other\n", {"machine": {}})


def test_create_bundle_runs_talosctl_gen_config(monkeypatch):
    calls = []
    monkeypatch.setattr(subprocess, "run", _fake_talosctl(calls))

    params = cluster_params(talos_extra_args="console=ttyS0 net.ifnames=0")
    bundle = TalosctlConfigGenerator().create_bundle(params, "https://10.0.0.10:6443")

    argv, patch_text = calls[0], calls[1]
    assert argv[:5] == ["talosctl", "gen", "config", "lab", "https://10.0.0.10:6443"]
    assert "--install-image" in argv and "ghcr.io/siderolabs/installer:v1.11.1" in argv
    assert "--kubernetes-version" in argv and "1.34.1" in argv

    patch = yaml.safe_load(patch_text)
    assert patch["machine"]["network"]["kubespan"]["enabled"] is True
    assert patch["cluster"]["discovery"]["enabled"] is True
    assert patch["machine"]["install"]["extraKernelArgs"] == ["console=ttyS0", "net.ifnames=0"]

    talosconfig = yaml.safe_load(bundle.talosconfig)
    assert talosconfig["contexts"]["lab"]["endpoints"] == ["10.0.0.10"]
    assert talosconfig["contexts"]["lab"]["nodes"] == ["10.0.0.10"]


def test_talosctl_failure_is_a_generation_error(monkeypatch):
    monkeypatch.setattr(subprocess, "run", _fake_talosctl([], rc=1))
    with pytest.raises(GenerationError, match="rc=1"):
        TalosctlConfigGenerator().create_bundle(cluster_params(), "https://10.0.0.10:6443")


def test_render_sets_hostname_and_disk():
    bundle = ConfigBundle(
        controlplane=BASE_CP.encode(),
        worker=BASE_CP.replace("type: controlplane", "type: worker").encode(),
        talosconfig=TALOSCONFIG.encode(),
    )
    gen = TalosctlConfigGenerator()
    out = gen.render(bundle, NodeRole.WORKER, hostname="worker-0", install_disk="/dev/nvme0n1")
    doc = next(yaml.safe_load_all(out))
    assert doc["machine"]["type"] == "worker"
    assert doc["machine"]["network"]["hostname"] == "worker-0"
    assert doc["machine"]["install"]["disk"] == "/dev/nvme0n1"
    # rendering is deterministic
    assert gen.render(bundle, NodeRole.WORKER, hostname="worker-0", install_disk="/dev/nvme0n1") == out


def test_bundle_round_trips_through_named_files():
    bundle = ConfigBundle(controlplane=b"a", worker=b"b", talosconfig=b"c")
    files = bundle.to_files()
    assert set(files) == {"controlplane.yaml", "worker.yaml", "talosconfig"}
    assert ConfigBundle.from_files(files) == bundle
