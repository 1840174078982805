# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/cluster/secrets.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from stolos_bootstrap.config.models import ClusterParameters, GCPInfo, GitHubInfo
from stolos_bootstrap.errors import SecretSyncError
from stolos_bootstrap.rendezvous.providers import OAuthToken
from stolos_bootstrap.state.models import GitHubApp

log = logging.getLogger("stolos")

PLATFORM_LABELS = {
    "app.kubernetes.io/name": "stolos-platform",
    "app.kubernetes.io/component": "stolos-backend",
    "app.kubernetes.io/managed-by": "stolos-bootstrap",
}


class SecretSink(Protocol):
    def apply(self, namespace: str, name: str, data: Dict[str, str], labels: Dict[str, str]) -> None: ...


class KubernetesSecretSink:
    """Create-or-merge Opaque secrets in the freshly bootstrapped cluster."""

    def __init__(self, api: client.CoreV1Api):
        self.api = api

    @classmethod
    def from_kubeconfig(cls, path: Path) -> "KubernetesSecretSink":
        api_client = config.new_client_from_config(config_file=str(path))
        return cls(client.CoreV1Api(api_client))

    def ensure_namespace(self, namespace: str) -> None:
        try:
            self.api.read_namespace(namespace)
            return
        except ApiException as exc:
            if exc.status != 404:
                raise SecretSyncError(f"cannot read namespace {namespace}: {exc.status} {exc.reason}") from exc
        log.info("Creating namespace %s", namespace)
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
        try:
            self.api.create_namespace(body)
        except ApiException as exc:
            if exc.status != 409:
                raise SecretSyncError(f"cannot create namespace {namespace}: {exc.status} {exc.reason}") from exc

    def apply(self, namespace: str, name: str, data: Dict[str, str], labels: Dict[str, str]) -> None:
        self.ensure_namespace(namespace)
        try:
            self.api.read_namespaced_secret(name, namespace)
        except ApiException as exc:
            if exc.status != 404:
                raise SecretSyncError(f"cannot read secret {namespace}/{name}: {exc.status} {exc.reason}") from exc
            body = client.V1Secret(
                metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
                type="Opaque",
                string_data=data,
            )
            try:
                self.api.create_namespaced_secret(namespace, body)
            except ApiException as create_exc:
                raise SecretSyncError(
                    f"cannot create secret {namespace}/{name}: {create_exc.status} {create_exc.reason}"
                ) from create_exc
            log.info("Created secret %s/%s (%d keys)", namespace, name, len(data))
            return

        # existing keys not in *data* are kept
        patch = {"metadata": {"labels": labels}, "stringData": data}
        try:
            self.api.patch_namespaced_secret(name, namespace, patch)
        except ApiException as exc:
            raise SecretSyncError(f"cannot update secret {namespace}/{name}: {exc.status} {exc.reason}") from exc
        log.info("Updated secret %s/%s (%d keys)", namespace, name, len(data))


def platform_secret_data(
    params: ClusterParameters,
    github: Optional[GitHubInfo],
    gcp: Optional[GCPInfo],
    event_sink_port: str,
) -> Dict[str, str]:
    data = {"CLUSTER_NAME": params.cluster_name}
    if github is not None:
        data["BASE_DOMAIN"] = github.base_domain
        data["TALOS_EVENT_SINK_HOSTNAME"] = f"grpc.backend.{github.base_domain}"
        data["TALOS_EVENT_SINK_PORT"] = event_sink_port
        data["GITHUB_REPO_OWNER"] = github.repo_owner
        data["GITHUB_REPO_NAME"] = github.repo_name
        if github.load_balancer_ip:
            data["LOAD_BALANCER_IP"] = github.load_balancer_ip
    if gcp is not None:
        data["GCP_PROJECT_ID"] = gcp.project_id
        data["GCP_REGION"] = gcp.region
    return data


def token_secret_data(tokens: Dict[str, OAuthToken]) -> Dict[str, str]:
    data: Dict[str, str] = {}
    for name, token in sorted(tokens.items()):
        prefix = name.upper()
        data[f"{prefix}_ACCESS_TOKEN"] = token.access_token
        if token.refresh_token:
            data[f"{prefix}_REFRESH_TOKEN"] = token.refresh_token
    return data


def app_secret_data(app: GitHubApp) -> Dict[str, str]:
    data = {
        "GITHUB_APP_ID": str(app.id),
        "GITHUB_APP_CLIENT_ID": app.client_id,
        "GITHUB_APP_CLIENT_SECRET": app.client_secret,
        "GITHUB_APP_PRIVATE_KEY": app.pem,
    }
    if app.webhook_secret:
        data["GITHUB_APP_WEBHOOK_SECRET"] = app.webhook_secret
    return data


def publish_platform_secrets(
    sink: SecretSink,
    *,
    namespace: str,
    secret_name: str,
    params: ClusterParameters,
    github: Optional[GitHubInfo] = None,
    gcp: Optional[GCPInfo] = None,
    tokens: Optional[Dict[str, OAuthToken]] = None,
    github_app: Optional[GitHubApp] = None,
    event_sink_port: str = "8082",
) -> List[str]:
    """Push platform config and provider credentials. Returns the secret names written."""
    written = []
    sink.apply(namespace, secret_name, platform_secret_data(params, github, gcp, event_sink_port), PLATFORM_LABELS)
    written.append(secret_name)

    token_data = token_secret_data(tokens or {})
    if github_app is not None:
        token_data.update(app_secret_data(github_app))
    if token_data:
        creds_name = f"{secret_name}-credentials"
        sink.apply(namespace, creds_name, token_data, PLATFORM_LABELS)
        written.append(creds_name)
    return written
