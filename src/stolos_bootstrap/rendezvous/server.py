# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/rendezvous/server.py

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from stolos_bootstrap.utils.http_server import BackgroundServer
from .hub import RendezvousHub

log = logging.getLogger("stolos")

_pages = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    undefined=StrictUndefined,
    autoescape=select_autoescape(["html", "j2"]),
)


def render_page(provider: str, ok: bool, message: str = "") -> str:
    return _pages.get_template("callback.html.j2").render(provider=provider, ok=ok, message=message)


def render_manifest_form(action: str, manifest: Dict[str, Any]) -> str:
    """Self-submitting form that posts *manifest* to GitHub's new-app page."""
    return _pages.get_template("manifest_form.html.j2").render(
        action=action, manifest=json.dumps(manifest), app_name=manifest.get("name", "")
    )


def build_callback_app(
    hub: RendezvousHub,
    routes: Dict[str, str],
    pages: Optional[MutableMapping[str, str]] = None,
) -> FastAPI:
    """
    *routes* maps provider name to callback path, e.g.
    ``{"github": "/oauth/github/callback"}``.

    *pages* maps extra GET paths to HTML looked up per request, so a flow
    can set its page after the server is up. An empty page is a 404.
    """
    app = FastAPI(title="Stolos OAuth callbacks", docs_url=None, redoc_url=None)

    def _handler(provider: str):
        def callback(
            code: Optional[str] = None,
            error: Optional[str] = None,
            error_description: Optional[str] = None,
            state: Optional[str] = None,
        ) -> HTMLResponse:
            if error:
                reason = f"{error}: {error_description}" if error_description else error
                hub.deliver_error(provider, reason)
                return HTMLResponse(render_page(provider, False, f"OAuth error: {reason}"), status_code=400)
            if not code:
                hub.deliver_malformed(provider)
                return HTMLResponse(render_page(provider, False, "no authorization code received"), status_code=400)
            hub.deliver_code(provider, code, state)
            return HTMLResponse(render_page(provider, True))
        return callback

    for provider, path in routes.items():
        app.add_api_route(path, _handler(provider), methods=["GET"], response_class=HTMLResponse,
                          name=f"{provider}_callback")

    def _page(path: str):
        def page() -> HTMLResponse:
            html = (pages or {}).get(path)
            if not html:
                raise HTTPException(status_code=404, detail="page not ready")
            return HTMLResponse(html)
        return page

    for path in pages or {}:
        app.add_api_route(path, _page(path), methods=["GET"], response_class=HTMLResponse)

    return app


class CallbackServer:
    def __init__(
        self,
        hub: RendezvousHub,
        routes: Dict[str, str],
        *,
        pages: Optional[MutableMapping[str, str]] = None,
        host: str = "127.0.0.1",
        port: int = 9999,
    ):
        self.port = port
        self.pages = pages if pages is not None else {}
        self._http = BackgroundServer(
            build_callback_app(hub, routes, self.pages), host=host, port=port, name="oauth-callback"
        )

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.port}"

    async def start(self) -> None:
        await self._http.start()

    async def stop(self) -> None:
        await self._http.stop()
