# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/rendezvous/providers.py

from __future__ import annotations

import asyncio
import logging
import secrets
import webbrowser
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import requests

from stolos_bootstrap.config.models import OAuthClientSettings
from stolos_bootstrap.errors import TokenExchangeError, UnknownProvider
from .hub import RendezvousHub

log = logging.getLogger("stolos")


@dataclass(frozen=True)
class OAuthProvider:
    name: str
    callback_path: str
    authorize_url: str
    token_url: str
    default_scopes: Tuple[str, ...]
    extra_auth_params: Tuple[Tuple[str, str], ...] = ()


PROVIDERS: Dict[str, OAuthProvider] = {
    "github": OAuthProvider(
        name="github",
        callback_path="/oauth/github/callback",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        default_scopes=("repo",),
    ),
    "gcp": OAuthProvider(
        name="gcp",
        callback_path="/oauth/gcp/callback",
        authorize_url="https://accounts.google.com/o/oauth2/auth",
        token_url="https://oauth2.googleapis.com/token",
        default_scopes=(
            "https://www.googleapis.com/auth/cloud-platform",
            "https://www.googleapis.com/auth/iam",
        ),
        extra_auth_params=(("access_type", "offline"), ("prompt", "consent")),
    ),
}


def get_provider(name: str) -> OAuthProvider:
    try:
        return PROVIDERS[name]
    except KeyError:
        raise UnknownProvider(name, f"unsupported provider (known: {', '.join(sorted(PROVIDERS))})") from None


@dataclass(frozen=True)
class OAuthToken:
    provider: str
    access_token: str
    token_type: str = "bearer"
    scope: str = ""
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


class OAuthClient:
    """Authorization-code flow for one provider."""

    def __init__(self, provider: OAuthProvider, settings: OAuthClientSettings, *, callback_base: str):
        self.provider = provider
        self.settings = settings
        self.redirect_uri = callback_base.rstrip("/") + provider.callback_path

    @property
    def scopes(self) -> Tuple[str, ...]:
        return tuple(self.settings.scopes) if self.settings.scopes else self.provider.default_scopes

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            **dict(self.provider.extra_auth_params),
        }
        return f"{self.provider.authorize_url}?{urlencode(params)}"

    def exchange(self, code: str) -> OAuthToken:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "redirect_uri": self.redirect_uri,
        }
        try:
            r = requests.post(
                self.provider.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=30,
            )
        except requests.RequestException as exc:
            raise TokenExchangeError(self.provider.name, f"token request failed: {exc}") from exc

        if r.status_code != 200:
            raise TokenExchangeError(self.provider.name, f"token exchange failed: {r.status_code} {r.text}")

        body = r.json()
        # GitHub answers 200 with an error body
        if "error" in body or "access_token" not in body:
            raise TokenExchangeError(
                self.provider.name,
                f"token exchange failed: {body.get('error_description') or body.get('error') or 'no access_token'}",
            )

        return OAuthToken(
            provider=self.provider.name,
            access_token=body["access_token"],
            token_type=body.get("token_type", "bearer"),
            scope=body.get("scope", ""),
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
        )


def open_browser(url: str) -> bool:
    try:
        return webbrowser.open(url)
    except webbrowser.Error:
        return False


async def capture_code(
    hub: RendezvousHub,
    provider: str,
    *,
    url: str,
    state: str,
    timeout: Optional[float] = None,
    cancel: Optional[asyncio.Event] = None,
    open_browser: Callable[[str], bool] = open_browser,
) -> str:
    """
    Send the operator to *url* and wait for the callback that carries the
    code back through *hub*. The callback must echo *state*.
    """
    waiter = asyncio.ensure_future(
        hub.await_callback(provider, timeout=timeout, cancel=cancel, expect_state=state)
    )
    # let the waiter register its session before the browser can call back
    await asyncio.sleep(0)
    if waiter.done():
        # cancelled or busy before a session existed
        return await waiter

    if not open_browser(url):
        log.info("Open this link to continue with %s: %s", provider, url)
    else:
        log.info("Opened browser for %s", provider)

    try:
        return await waiter
    finally:
        if not waiter.done():
            waiter.cancel()


async def authenticate(
    hub: RendezvousHub,
    client: OAuthClient,
    *,
    timeout: Optional[float] = None,
    cancel: Optional[asyncio.Event] = None,
    open_browser: Callable[[str], bool] = open_browser,
) -> OAuthToken:
    """
    Run one authorization round trip: open the consent page, wait for the
    callback through *hub*, exchange the code for a token.
    """
    state = secrets.token_urlsafe(16)
    code = await capture_code(
        hub, client.provider.name,
        url=client.authorization_url(state),
        state=state,
        timeout=timeout,
        cancel=cancel,
        open_browser=open_browser,
    )
    return await asyncio.to_thread(client.exchange, code)
