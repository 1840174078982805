# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/config/models.py

from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from stolos_bootstrap.utils.net import outbound_ip


class ClusterParameters(BaseModel):
    """Cluster-wide inputs for config generation, collected once per bootstrap."""

    cluster_name: str = "mycluster"
    kubernetes_version: str = "1.34.1"
    talos_version: str = "v1.11.1"
    talos_architecture: str = "amd64"
    talos_extra_args: str = ""            # space separated kernel args
    talos_install_disk: str = "/dev/sda"
    talos_overlay_image: str = ""
    talos_overlay_name: str = ""

    # Where booting nodes reach the issuance server
    http_hostname: str = Field(default_factory=outbound_ip)
    http_port: int = 8082

    @property
    def installer_image(self) -> str:
        return f"ghcr.io/siderolabs/installer:{self.talos_version}"

    def extra_kernel_args(self) -> List[str]:
        return self.talos_extra_args.split()


class GitHubInfo(BaseModel):
    repo_owner: str
    repo_name: str
    base_domain: str
    load_balancer_ip: Optional[str] = None

    # Register the platform GitHub App through the manifest flow
    create_app: bool = False
    app_name: str = "Stolos Platform"
    owner_type: Literal["organization", "user"] = "organization"


class GCPInfo(BaseModel):
    project_id: str
    region: str


class OAuthClientSettings(BaseModel):
    client_id: str
    client_secret: str
    scopes: Optional[List[str]] = None    # provider defaults when unset


class ImageSettings(BaseModel):
    enabled: bool = True
    factory_url: str = "https://factory.talos.dev"
    output_dir: Optional[Path] = None     # defaults to the state dir
    timeout_seconds: int = 600


class SecretSettings(BaseModel):
    enabled: bool = True
    namespace: str = "stolos-system"
    secret_name: str = "stolos-system-config"
    event_sink_port: str = "8082"


class BootstrapConfig(BaseModel):
    """Top-level bootstrap-config.yaml."""

    # None means the operator is prompted during the cluster-info phase
    cluster: Optional[ClusterParameters] = None
    github: Optional[GitHubInfo] = None
    gcp: Optional[GCPInfo] = None
    oauth: Dict[str, OAuthClientSettings] = Field(default_factory=dict)

    min_workers: int = Field(default=3, ge=0)
    machine_disks: Dict[str, str] = Field(default_factory=dict)   # identity -> install disk
    state_dir: Path = Path(".")
    callback_port: int = 9999
    health_timeout_minutes: int = Field(default=20, ge=1)

    image: ImageSettings = ImageSettings()
    secrets: SecretSettings = SecretSettings()
