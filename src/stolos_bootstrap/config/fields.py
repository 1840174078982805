# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/config/fields.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from stolos_bootstrap.errors import ConfigError
from stolos_bootstrap.utils.net import outbound_ip
from .models import ClusterParameters


@dataclass(frozen=True)
class FieldSpec:
    """
    One operator-facing input of the cluster-info form.

    ``default_factory`` is evaluated lazily, when the form is shown.
    """
    name: str
    prompt: str
    type: type = str
    default: Any = None
    default_factory: Optional[Callable[[], Any]] = None
    required: bool = True
    help: str = ""

    def resolve_default(self) -> Any:
        if self.default_factory is not None:
            return self.default_factory()
        return self.default

    def coerce(self, raw: str) -> Any:
        if self.type is bool:
            lowered = raw.strip().lower()
            if lowered in ("y", "yes", "true", "1"):
                return True
            if lowered in ("n", "no", "false", "0"):
                return False
            raise ConfigError(f"{self.name}: expected yes/no, got {raw!r}")
        try:
            return self.type(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"{self.name}: {exc}") from exc


CLUSTER_FIELDS: List[FieldSpec] = [
    FieldSpec("cluster_name", "Cluster name", default="mycluster"),
    FieldSpec("kubernetes_version", "Kubernetes version", default="1.34.1"),
    FieldSpec("talos_version", "Talos version", default="v1.11.1"),
    FieldSpec("talos_architecture", "Talos architecture (amd64/arm64)", default="amd64"),
    FieldSpec(
        "talos_extra_args", "Extra kernel args", default="", required=False,
        help="space separated, appended to the image kernel command line",
    ),
    FieldSpec("talos_install_disk", "Install disk", default="/dev/sda"),
    FieldSpec("talos_overlay_image", "Overlay image", default="", required=False),
    FieldSpec("talos_overlay_name", "Overlay name", default="", required=False),
    FieldSpec("http_hostname", "Config server hostname", default_factory=outbound_ip),
    FieldSpec("http_port", "Config server port", type=int, default=8082),
]


Prompt = Callable[[FieldSpec, Any], str]


def collect_fields(specs: List[FieldSpec], prompt: Prompt) -> Dict[str, Any]:
    """
    Ask for every field through *prompt* and return typed values.

    An empty answer keeps the default. A required field left empty with no
    default raises ConfigError.
    """
    values: Dict[str, Any] = {}
    for spec in specs:
        default = spec.resolve_default()
        raw = prompt(spec, default)
        if raw is None or str(raw).strip() == "":
            if spec.required and default in (None, ""):
                raise ConfigError(f"{spec.name} is required")
            values[spec.name] = default if default is not None else ""
        else:
            values[spec.name] = spec.coerce(str(raw))
    return values


def collect_cluster_parameters(prompt: Prompt) -> ClusterParameters:
    return ClusterParameters.model_validate(collect_fields(CLUSTER_FIELDS, prompt))
