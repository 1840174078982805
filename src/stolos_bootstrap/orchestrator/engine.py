# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/orchestrator/engine.py

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from stolos_bootstrap.logging.log import log_success
from stolos_bootstrap.observers.dispatcher import EventBus
from stolos_bootstrap.observers.events import (
    AwaitingConfirmation,
    PhaseCompleted,
    PhaseEntered,
    PhasesRestored,
    RunFailed,
    RunSucceeded,
    new_ctx,
)
from .phase import Phase

log = logging.getLogger("stolos")

Confirm = Callable[[Phase], Awaitable[bool]]


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RunOutcome:
    status: RunStatus
    phase: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCEEDED


class PhaseContext:
    """Handle given to an entry action. Safe to use from any thread."""

    def __init__(self, orchestrator: "PhaseOrchestrator", phase: Phase):
        self._orchestrator = orchestrator
        self.phase = phase

    @property
    def name(self) -> str:
        return self.phase.name

    @property
    def cancelled(self) -> asyncio.Event:
        """Set once the run is over, whatever the outcome."""
        return self._orchestrator.cancelled

    def complete(self) -> None:
        self._orchestrator.complete(self.phase.name)

    def fail(self, exc: BaseException) -> None:
        self._orchestrator.fail(self.phase.name, exc)

    def set_body(self, text: str) -> None:
        self.phase.body = text


class PhaseOrchestrator:
    """
    Walks a fixed, ordered list of phases.

    A single loop owns the current index. Entry actions run as tasks, once per
    phase, and report back through ``complete`` / ``fail``, which may be
    called from any thread. The loop advances when the current phase is
    completed and either auto-advances or has been confirmed.

    A failing entry action stops the run with a FAILED outcome naming the
    phase and the exception; nothing is retried.
    """

    def __init__(
        self,
        phases: List[Phase],
        *,
        start_index: int = 0,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        cluster: Callable[[], str] = lambda: "",
        confirm: Optional[Confirm] = None,
    ):
        if not phases:
            raise ValueError("at least one phase is required")
        names = [p.name for p in phases]
        if len(set(names)) != len(names):
            raise ValueError(f"phase names must be unique: {names}")
        if not 0 <= start_index < len(phases):
            raise ValueError(f"start_index {start_index} out of range for {len(phases)} phases")

        self.phases = phases
        self._by_name: Dict[str, Phase] = {p.name: p for p in phases}
        self._index = start_index
        self._start_index = start_index
        self.bus = bus or EventBus()
        self.run_id = run_id
        self._cluster = cluster
        self._confirm = confirm

        for p in phases[:start_index]:
            p.restore(True)

        self.cancelled = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeups: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._failure: Optional[Tuple[str, BaseException]] = None
        self._aborted: Optional[str] = None
        self._confirmed = False
        self._confirm_requested = False

    # ------------------------- state -------------------------

    @property
    def index(self) -> int:
        return self._index

    @property
    def current(self) -> Phase:
        return self.phases[self._index]

    def phase(self, name: str) -> Phase:
        return self._by_name[name]

    def _ctx(self) -> dict:
        return new_ctx(self._cluster(), self.run_id)

    # ------------------------- signals (any thread) -------------------------

    def _post(self, kind: str, payload=None) -> None:
        loop = self._loop
        if loop is None or self._wakeups is None:
            # run() has not started or is already over
            log.debug("Dropping %s signal: orchestrator is not running", kind)
            return
        loop.call_soon_threadsafe(self._wakeups.put_nowait, (kind, payload))

    def complete(self, name: str) -> None:
        if name not in self._by_name:
            raise KeyError(f"unknown phase {name!r}")
        self._post("complete", name)

    def fail(self, name: str, exc: BaseException) -> None:
        self._post("fail", (name, exc))

    def confirm(self) -> None:
        self._post("confirm")

    def abort(self, reason: str = "aborted by operator") -> None:
        self._post("abort", reason)

    # ------------------------- loop -------------------------

    def _apply(self, kind: str, payload) -> None:
        if kind == "complete":
            phase = self._by_name[payload]
            if phase.complete():
                log_success(log, "Phase %s completed", phase.name)
                self.bus.emit(PhaseCompleted(**self._ctx(), name=phase.name, index=self.phases.index(phase)))
        elif kind == "confirm":
            if self.current.completed:
                self._confirmed = True
            else:
                log.debug("Ignoring confirmation: %s is not complete", self.current.name)
        elif kind == "fail":
            if self._failure is None:
                self._failure = payload
        elif kind == "abort":
            self._aborted = payload

    def _enter(self, index: int) -> None:
        phase = self.phases[index]
        if phase.entered:
            return
        phase.entered = True
        self._confirm_requested = False
        log.info("==> [%d/%d] %s", index + 1, len(self.phases), phase.title)
        if phase.body:
            log.info(phase.body)
        self.bus.emit(PhaseEntered(**self._ctx(), name=phase.name, index=index, kind=phase.kind.value))
        if phase.entry_action is not None:
            self._tasks.append(
                asyncio.create_task(self._run_entry(phase), name=f"phase:{phase.name}")
            )

    async def _run_entry(self, phase: Phase) -> None:
        try:
            await phase.entry_action(PhaseContext(self, phase))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.fail(phase.name, exc)

    async def _ask_confirmation(self, phase: Phase) -> None:
        try:
            ok = await self._confirm(phase)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.fail(phase.name, exc)
            return
        if ok:
            self.confirm()
        else:
            self.abort(f"operator declined to continue after {phase.name}")

    def _request_confirmation(self, phase: Phase) -> None:
        if self._confirm_requested:
            return
        self._confirm_requested = True
        log.info("%s is complete; waiting for confirmation to continue", phase.title)
        self.bus.emit(AwaitingConfirmation(**self._ctx(), name=phase.name, index=self._index))
        if self._confirm is not None:
            self._tasks.append(asyncio.create_task(self._ask_confirmation(phase), name=f"confirm:{phase.name}"))

    async def run(self) -> RunOutcome:
        self._loop = asyncio.get_running_loop()
        self._wakeups = asyncio.Queue()
        started = time.monotonic()

        if self._start_index > 0:
            restored = [p.name for p in self.phases[: self._start_index]]
            log.info("Resuming at %s (restored: %s)", self.current.name, ", ".join(restored))
            self.bus.emit(PhasesRestored(**self._ctx(), resumed_at=self.current.name, restored=restored))

        try:
            self._enter(self._index)
            while True:
                if self._failure is not None:
                    return self._failed(*self._failure)
                if self._aborted is not None:
                    log.warning("Run aborted at %s: %s", self.current.name, self._aborted)
                    return RunOutcome(RunStatus.ABORTED, self.current.name)

                phase = self.current
                if phase.completed:
                    if phase.auto_advance or self._confirmed:
                        self._confirmed = False
                        if self._index == len(self.phases) - 1:
                            duration_ms = int((time.monotonic() - started) * 1000)
                            log_success(log, "All %d phases completed", len(self.phases))
                            self.bus.emit(RunSucceeded(**self._ctx(), phases=len(self.phases), duration_ms=duration_ms))
                            return RunOutcome(RunStatus.SUCCEEDED)
                        self._index += 1
                        self._enter(self._index)
                        continue
                    self._request_confirmation(phase)

                kind, payload = await self._wakeups.get()
                self._apply(kind, payload)
        finally:
            self.cancelled.set()
            pending = [t for t in self._tasks if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self._loop = None

    def _failed(self, name: str, exc: BaseException) -> RunOutcome:
        log.error("Phase %s failed: %s: %s", name, type(exc).__name__, exc)
        self.bus.emit(RunFailed(**self._ctx(), phase=name, error_type=type(exc).__name__, error=str(exc)))
        return RunOutcome(RunStatus.FAILED, name, exc)
