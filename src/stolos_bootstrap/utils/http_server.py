# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/utils/http_server.py

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import uvicorn

log = logging.getLogger("stolos")


class BackgroundServer:
    """
    Runs a uvicorn server as a task on the caller's event loop.

    ``start`` returns once the socket is bound, so a port clash surfaces as
    an exception instead of a silent dead task.
    """

    def __init__(self, app, *, host: str, port: int, name: str):
        self.app = app
        self.host = host
        self.port = port
        self.name = name
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except SystemExit as exc:
            # uvicorn calls sys.exit() when it cannot bind
            raise OSError(f"{self.name} server could not bind {self.host}:{self.port}") from exc

    async def start(self, startup_timeout: float = 10.0) -> None:
        if self.running:
            return
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        # the orchestrator owns signal handling
        self._server.install_signal_handlers = lambda: None
        self._task = asyncio.create_task(self._serve(), name=f"http:{self.name}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + startup_timeout
        while not self._server.started:
            if self._task.done():
                exc = self._task.exception()
                self._task = self._server = None
                raise exc or OSError(f"{self.name} server exited before it started")
            if loop.time() > deadline:
                await self.stop()
                raise TimeoutError(f"{self.name} server did not start within {startup_timeout}s")
            await asyncio.sleep(0.05)
        log.info("%s listening on %s:%d", self.name, self.host, self.port)

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._task = None
            self._server = None
        log.debug("%s stopped", self.name)
