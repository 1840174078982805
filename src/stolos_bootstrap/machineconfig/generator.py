# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/machineconfig/generator.py

from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Protocol

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from stolos_bootstrap.config.models import ClusterParameters
from stolos_bootstrap.errors import GenerationError, StateLoadError
from stolos_bootstrap.state.models import NodeRole

log = logging.getLogger("stolos")

TEMPLATES_DIR = Path(__file__).parent / "templates"

CONTROLPLANE_FILE = "controlplane.yaml"
WORKER_FILE = "worker.yaml"
TALOSCONFIG_FILE = "talosconfig"
BUNDLE_FILES = (CONTROLPLANE_FILE, WORKER_FILE, TALOSCONFIG_FILE)


@dataclass(frozen=True)
class ConfigBundle:
    """
    Cluster-wide secrets and base configs, created once per cluster.

    Every node config is derived from one of the two base documents, so the
    bundle must outlive the process (see StatePersistence).
    """
    controlplane: bytes
    worker: bytes
    talosconfig: bytes

    def to_files(self) -> Dict[str, bytes]:
        return {
            CONTROLPLANE_FILE: self.controlplane,
            WORKER_FILE: self.worker,
            TALOSCONFIG_FILE: self.talosconfig,
        }

    @classmethod
    def from_files(cls, files: Dict[str, bytes]) -> "ConfigBundle":
        try:
            return cls(
                controlplane=files[CONTROLPLANE_FILE],
                worker=files[WORKER_FILE],
                talosconfig=files[TALOSCONFIG_FILE],
            )
        except KeyError as exc:
            raise StateLoadError(f"config bundle is missing {exc.args[0]}") from exc

    def base_for(self, role: NodeRole) -> bytes:
        return self.controlplane if role == NodeRole.CONTROL_PLANE else self.worker


class ConfigGenerator(Protocol):
    def create_bundle(self, params: ClusterParameters, endpoint: str) -> ConfigBundle: ...

    def render(
        self,
        bundle: ConfigBundle,
        role: NodeRole,
        *,
        hostname: str,
        install_disk: str,
    ) -> bytes: ...


def merge_patch(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Strategic-merge-lite: nested dicts merge, everything else replaces (mutates base)."""
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge_patch(base[key], value)
        else:
            base[key] = value
    return base


def patch_machine_document(raw: bytes, patch: Dict[str, Any]) -> bytes:
    """
    Apply *patch* to the v1alpha1 machine document of a (possibly multi-doc)
    Talos config, leaving any other documents untouched.
    """
    try:
        docs: List[Any] = [d for d in yaml.safe_load_all(raw) if d is not None]
    except yaml.YAMLError as exc:
        raise GenerationError(f"base machine config is not valid YAML: {exc}") from exc

    for doc in docs:
        if isinstance(doc, dict) and doc.get("version") == "v1alpha1" and "machine" in doc:
            merge_patch(doc, patch)
            break
    else:
        raise GenerationError("base machine config has no v1alpha1 machine document")

    return yaml.safe_dump_all(docs, sort_keys=False, explicit_start=len(docs) > 1).encode()


class TalosctlConfigGenerator:
    """
    Generates the cluster bundle with ``talosctl gen config`` and derives
    per-node configs by patching hostname and install disk.

    Testable by mocking subprocess.run.
    """

    def __init__(self, talosctl: str = "talosctl", templates_dir: Path = TEMPLATES_DIR):
        self.talosctl = talosctl
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            undefined=StrictUndefined,
            autoescape=False,
        )

    # ------------------------- internal helpers -------------------------

    def _cluster_patch(self, params: ClusterParameters) -> str:
        try:
            return self.env.get_template("cluster-patch.yaml.j2").render(
                cluster_name=params.cluster_name,
                install_disk=params.talos_install_disk,
                install_image=params.installer_image,
                extra_kernel_args=params.extra_kernel_args(),
            )
        except TemplateError as exc:
            raise GenerationError(f"cannot render cluster patch: {exc}") from exc

    def _run(self, argv: List[str]) -> subprocess.CompletedProcess:
        log.debug("+ %s", " ".join(argv))
        try:
            cp = subprocess.run(argv, check=False, text=True, capture_output=True)
        except OSError as exc:
            raise GenerationError(f"cannot execute {argv[0]}: {exc}") from exc
        if cp.returncode != 0:
            raise GenerationError(f"talosctl failed (rc={cp.returncode}) for {argv!r}\n{cp.stderr or ''}")
        return cp

    @staticmethod
    def _point_talosconfig(raw: bytes, address: str) -> bytes:
        data = yaml.safe_load(raw) or {}
        for ctx in (data.get("contexts") or {}).values():
            ctx["endpoints"] = [address]
            ctx["nodes"] = [address]
        return yaml.safe_dump(data, sort_keys=False).encode()

    # ------------------------- ConfigGenerator -------------------------

    def create_bundle(self, params: ClusterParameters, endpoint: str) -> ConfigBundle:
        address = endpoint.split("//", 1)[-1].rsplit(":", 1)[0]
        with tempfile.TemporaryDirectory(prefix="stolos-gen-") as tmp:
            out = Path(tmp)
            patch_file = out / "cluster-patch.yaml"
            patch_file.write_text(self._cluster_patch(params))

            argv = [
                self.talosctl, "gen", "config", params.cluster_name, endpoint,
                "--kubernetes-version", params.kubernetes_version,
                "--talos-version", params.talos_version,
                "--install-disk", params.talos_install_disk,
                "--install-image", params.installer_image,
                "--with-docs=false",
                "--with-examples=false",
                "--config-patch", f"@{patch_file}",
                "--output-dir", str(out / "bundle"),
            ]
            self._run(argv)

            files: Dict[str, bytes] = {}
            for name in BUNDLE_FILES:
                p = out / "bundle" / name
                if not p.is_file():
                    raise GenerationError(f"talosctl did not produce {name}")
                files[name] = p.read_bytes()

        files[TALOSCONFIG_FILE] = self._point_talosconfig(files[TALOSCONFIG_FILE], address)
        log.info("Generated config bundle for cluster %s (endpoint %s)", params.cluster_name, endpoint)
        return ConfigBundle.from_files(files)

    def render(
        self,
        bundle: ConfigBundle,
        role: NodeRole,
        *,
        hostname: str,
        install_disk: str,
    ) -> bytes:
        patch = {
            "machine": {
                "network": {"hostname": hostname},
                "install": {"disk": install_disk},
            }
        }
        return patch_machine_document(bundle.base_for(role), patch)
