# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/machineconfig/server.py

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Response

from stolos_bootstrap.errors import GenerationError, StateWriteError
from stolos_bootstrap.utils.http_server import BackgroundServer
from .service import MachineConfigService

log = logging.getLogger("stolos")

YAML_MEDIA_TYPE = "application/yaml"


def build_app(service: MachineConfigService) -> FastAPI:
    """HTTP surface booting machines fetch their config from (talos.config= kernel arg)."""
    app = FastAPI(title="Stolos machine config", docs_url=None, redoc_url=None)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    # Sync handler: runs in the threadpool, the store lock serializes requests.
    @app.get("/machineconfig")
    def machineconfig(
        request: Request,
        m: Optional[str] = None,
        u: Optional[str] = None,
        h: Optional[str] = None,
        s: Optional[str] = None,
    ) -> Response:
        identity = (u or "").strip() or (m or "").strip()
        if not identity:
            raise HTTPException(status_code=400, detail="missing machine identifier (u or m)")

        address = request.client.host if request.client else ""
        log.debug("machineconfig request u=%s m=%s h=%s s=%s from %s", u, m, h, s, address)
        try:
            data = service.handle_request(identity, address)
        except (GenerationError, StateWriteError) as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return Response(content=data, media_type=YAML_MEDIA_TYPE)

    return app


class ConfigServer:
    """The issuance HTTP server. ``ensure_started`` is safe to call repeatedly."""

    def __init__(self, service: MachineConfigService, *, host: str = "0.0.0.0", port: int = 8082):
        self.service = service
        self._http = BackgroundServer(build_app(service), host=host, port=port, name="machine-config")

    @property
    def running(self) -> bool:
        return self._http.running

    async def ensure_started(self) -> None:
        await self._http.start()

    async def stop(self) -> None:
        await self._http.stop()
