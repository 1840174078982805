# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/rendezvous/github_app.py

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Callable, Dict, MutableMapping, Optional
from urllib.parse import urlencode

import requests
from pydantic import ValidationError

from stolos_bootstrap.config.models import GitHubInfo
from stolos_bootstrap.errors import ManifestConversionError
from stolos_bootstrap.logging.log import log_success
from stolos_bootstrap.state.models import GitHubApp
from .hub import RendezvousHub
from .providers import capture_code, open_browser
from .server import render_manifest_form

log = logging.getLogger("stolos")

GITHUB_API = "https://api.github.com"

MANIFEST_PROVIDER = "github-app"
MANIFEST_FORM_PATH = "/github/app-manifest"
MANIFEST_CALLBACK_PATH = "/github/app-manifest/callback"

# Served by the platform backend once it is deployed
WEBHOOK_PATH = "/api/v1/github_webhook"
INSTALL_CALLBACK_PATH = "/api/v1/github_callback"

DEFAULT_EVENTS = ["workflow_run", "workflow_dispatch"]
DEFAULT_PERMISSIONS = {
    "contents": "write",
    "issues": "write",
    "organization_projects": "write",
    "workflows": "write",
    "actions": "write",
    "discussions": "write",
    "pages": "write",
    "pull_requests": "write",
    "secrets": "write",
    "repository_hooks": "write",
}


def app_manifest(github: GitHubInfo, *, redirect_url: str) -> Dict[str, Any]:
    """The manifest GitHub turns into an app on the owner's new-app page."""
    backend = f"https://api.{github.base_domain}"
    return {
        "name": github.app_name,
        "url": "https://stolos.cloud",
        "hook_attributes": {"url": backend + WEBHOOK_PATH, "active": True},
        "redirect_url": redirect_url,
        "callback_urls": [backend + INSTALL_CALLBACK_PATH],
        "description": "Lets the Stolos platform commit to and run workflows in the cluster templates repository.",
        "public": False,
        "default_events": list(DEFAULT_EVENTS),
        "default_permissions": dict(DEFAULT_PERMISSIONS),
        "request_oauth_on_install": True,
        "setup_on_update": True,
    }


def new_app_url(owner: str, owner_type: str, state: str) -> str:
    if owner_type == "user":
        base = "https://github.com/settings/apps/new"
    else:
        base = f"https://github.com/organizations/{owner}/settings/apps/new"
    return f"{base}?{urlencode({'state': state})}"


def exchange_manifest_code(code: str, *, api_url: str = GITHUB_API, timeout: int = 30) -> GitHubApp:
    """POST /app-manifests/{code}/conversions; GitHub answers 201 with the app credentials."""
    try:
        r = requests.post(
            f"{api_url.rstrip('/')}/app-manifests/{code}/conversions",
            headers={"Accept": "application/vnd.github+json"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise ManifestConversionError(MANIFEST_PROVIDER, f"manifest conversion request failed: {exc}") from exc

    if r.status_code != 201:
        raise ManifestConversionError(MANIFEST_PROVIDER, f"manifest conversion failed: {r.status_code} {r.text}")

    try:
        return GitHubApp.model_validate(r.json())
    except (ValueError, ValidationError) as exc:
        raise ManifestConversionError(MANIFEST_PROVIDER, f"unexpected manifest conversion response: {exc}") from exc


async def create_github_app(
    hub: RendezvousHub,
    pages: MutableMapping[str, str],
    github: GitHubInfo,
    *,
    callback_base: str,
    timeout: Optional[float] = None,
    cancel: Optional[asyncio.Event] = None,
    open_browser: Callable[[str], bool] = open_browser,
) -> GitHubApp:
    """
    Register the platform GitHub App.

    The operator's browser loads a local page that posts the manifest to
    GitHub; GitHub redirects back to the manifest callback with a one-time
    code, which is converted into the app credentials.
    """
    base = callback_base.rstrip("/")
    state = secrets.token_urlsafe(16)
    manifest = app_manifest(github, redirect_url=base + MANIFEST_CALLBACK_PATH)
    pages[MANIFEST_FORM_PATH] = render_manifest_form(
        new_app_url(github.repo_owner, github.owner_type, state), manifest
    )
    try:
        code = await capture_code(
            hub, MANIFEST_PROVIDER,
            url=base + MANIFEST_FORM_PATH,
            state=state,
            timeout=timeout,
            cancel=cancel,
            open_browser=open_browser,
        )
    finally:
        pages[MANIFEST_FORM_PATH] = ""

    app = await asyncio.to_thread(exchange_manifest_code, code)
    log_success(log, "GitHub App %s created (id %d)", app.name, app.id)
    return app
