# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/rendezvous/hub.py

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from stolos_bootstrap.errors import (
    MalformedCallback,
    ProviderDenied,
    RendezvousBusy,
    RendezvousCancelled,
    RendezvousTimeout,
)

log = logging.getLogger("stolos")


@dataclass
class _Session:
    provider: str
    loop: asyncio.AbstractEventLoop
    future: asyncio.Future
    expect_state: Optional[str] = None


def _resolve(fut: asyncio.Future, value=None, exc: Optional[BaseException] = None) -> None:
    # First delivery wins; later ones are dropped.
    if fut.done():
        return
    if exc is not None:
        fut.set_exception(exc)
    else:
        fut.set_result(value)


class RendezvousHub:
    """
    Pairs an in-flight provider flow with the HTTP callback that completes it.

    One session per provider at a time. Deliveries come from server threads
    and never block; a delivery with nobody waiting is dropped.
    """

    def __init__(self):
        self._sessions: Dict[str, _Session] = {}
        self._lock = threading.Lock()

    def active(self, provider: str) -> bool:
        with self._lock:
            return provider in self._sessions

    async def await_callback(
        self,
        provider: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
        expect_state: Optional[str] = None,
    ) -> str:
        """
        Wait for the authorization code of *provider*.

        Raises ProviderDenied / MalformedCallback for bad callbacks,
        RendezvousCancelled when *cancel* is (or becomes) set and
        RendezvousTimeout after *timeout* seconds. The session is removed on
        every path.
        """
        if cancel is not None and cancel.is_set():
            raise RendezvousCancelled(provider, "cancelled before the callback was awaited")

        loop = asyncio.get_running_loop()
        session = _Session(provider, loop, loop.create_future(), expect_state)
        with self._lock:
            if provider in self._sessions:
                raise RendezvousBusy(provider, "a callback is already being awaited")
            self._sessions[provider] = session

        cancel_task: Optional[asyncio.Task] = None
        try:
            waiters = {session.future}
            if cancel is not None:
                cancel_task = asyncio.ensure_future(cancel.wait())
                waiters.add(cancel_task)

            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if session.future in done:
                return session.future.result()
            if cancel_task is not None and cancel_task in done:
                raise RendezvousCancelled(provider, "cancelled while waiting for the callback")
            raise RendezvousTimeout(provider, f"no callback within {timeout}s")
        finally:
            with self._lock:
                if self._sessions.get(provider) is session:
                    del self._sessions[provider]
            if cancel_task is not None:
                cancel_task.cancel()
            if not session.future.done():
                session.future.cancel()

    # ------------------------- deliveries (any thread) -------------------------

    def _deliver(self, provider: str, value=None, exc: Optional[BaseException] = None) -> bool:
        with self._lock:
            session = self._sessions.get(provider)
        if session is None:
            log.debug("Dropping %s callback: nobody is waiting", provider)
            return False
        try:
            session.loop.call_soon_threadsafe(_resolve, session.future, value, exc)
        except RuntimeError:
            # loop already closed
            log.debug("Dropping %s callback: waiter loop is closed", provider)
            return False
        return True

    def deliver_code(self, provider: str, code: str, state: Optional[str] = None) -> bool:
        with self._lock:
            session = self._sessions.get(provider)
        if session is not None and session.expect_state is not None and state != session.expect_state:
            log.warning("%s callback carried an unexpected state parameter", provider)
            return self._deliver(provider, exc=MalformedCallback(provider))
        return self._deliver(provider, value=code)

    def deliver_error(self, provider: str, reason: str) -> bool:
        return self._deliver(provider, exc=ProviderDenied(provider, reason))

    def deliver_malformed(self, provider: str) -> bool:
        return self._deliver(provider, exc=MalformedCallback(provider))
