import asyncio
import threading

import pytest

from helpers import Capture
from stolos_bootstrap.observers.dispatcher import EventBus
from stolos_bootstrap.observers.events import (
    AwaitingConfirmation,
    PhaseCompleted,
    PhaseEntered,
    PhasesRestored,
    RunFailed,
    RunSucceeded,
)
from stolos_bootstrap.orchestrator.engine import PhaseOrchestrator, RunStatus
from stolos_bootstrap.orchestrator.phase import Phase, PhaseKind


def _run(orch):
    return asyncio.run(asyncio.wait_for(orch.run(), 5))


def _completing(calls, name):
    async def action(ctx):
        calls.append(name)
        ctx.complete()
    return action


def test_phase_completion_is_monotonic():
    p = Phase("a", "A", PhaseKind.BACKGROUND)
    assert p.complete() is True
    assert p.complete() is False
    assert p.completed
    p.restore(False)
    assert not p.completed


def test_auto_advance_runs_every_entry_action_once():
    calls = []
    phases = [Phase(n, n.upper(), PhaseKind.BACKGROUND, _completing(calls, n)) for n in ("a", "b", "c")]
    capture = Capture()

    outcome = _run(PhaseOrchestrator(phases, bus=EventBus([capture])))

    assert outcome.status == RunStatus.SUCCEEDED
    assert outcome.ok
    assert calls == ["a", "b", "c"]
    assert [e.name for e in capture.of(PhaseEntered)] == ["a", "b", "c"]
    assert [e.name for e in capture.of(PhaseCompleted)] == ["a", "b", "c"]
    assert len(capture.of(RunSucceeded)) == 1


def test_manual_phase_waits_for_confirmation_after_completion():
    calls = []
    seen_completed = []

    async def confirm(phase):
        seen_completed.append(phase.completed)
        return True

    phases = [
        Phase("a", "A", PhaseKind.BACKGROUND, _completing(calls, "a"), auto_advance=False),
        Phase("b", "B", PhaseKind.BACKGROUND, _completing(calls, "b")),
    ]
    capture = Capture()
    outcome = _run(PhaseOrchestrator(phases, bus=EventBus([capture]), confirm=confirm))

    assert outcome.ok
    assert seen_completed == [True]
    assert calls == ["a", "b"]
    assert [e.name for e in capture.of(AwaitingConfirmation)] == ["a"]


def test_early_confirmation_is_ignored():
    entered_b = []

    async def slow(ctx):
        # an operator pressing enter before the phase is done
        ctx._orchestrator.confirm()
        await asyncio.sleep(0.05)
        assert not entered_b
        ctx.complete()

    async def b(ctx):
        entered_b.append(True)
        ctx.complete()

    async def confirm(phase):
        return True

    phases = [
        Phase("a", "A", PhaseKind.BACKGROUND, slow, auto_advance=False),
        Phase("b", "B", PhaseKind.BACKGROUND, b),
    ]
    assert _run(PhaseOrchestrator(phases, confirm=confirm)).ok
    assert entered_b == [True]


def test_declined_confirmation_aborts():
    async def confirm(phase):
        return False

    calls = []
    phases = [
        Phase("a", "A", PhaseKind.BACKGROUND, _completing(calls, "a"), auto_advance=False),
        Phase("b", "B", PhaseKind.BACKGROUND, _completing(calls, "b")),
    ]
    outcome = _run(PhaseOrchestrator(phases, confirm=confirm))
    assert outcome.status == RunStatus.ABORTED
    assert outcome.phase == "a"
    assert calls == ["a"]


def test_failing_entry_action_fails_the_run():
    boom = RuntimeError("disk on fire")

    async def failing(ctx):
        raise boom

    calls = []
    phases = [
        Phase("a", "A", PhaseKind.BACKGROUND, _completing(calls, "a")),
        Phase("b", "B", PhaseKind.BACKGROUND, failing),
        Phase("c", "C", PhaseKind.BACKGROUND, _completing(calls, "c")),
    ]
    capture = Capture()
    outcome = _run(PhaseOrchestrator(phases, bus=EventBus([capture])))

    assert outcome.status == RunStatus.FAILED
    assert outcome.phase == "b"
    assert outcome.error is boom
    assert calls == ["a"]
    failed = capture.of(RunFailed)
    assert failed[0].phase == "b"
    assert failed[0].error_type == "RuntimeError"


def test_start_index_restores_earlier_phases_without_running_them():
    calls = []
    phases = [Phase(n, n.upper(), PhaseKind.BACKGROUND, _completing(calls, n)) for n in ("a", "b", "c")]
    capture = Capture()

    outcome = _run(PhaseOrchestrator(phases, start_index=2, bus=EventBus([capture])))

    assert outcome.ok
    assert calls == ["c"]
    assert phases[0].completed and phases[1].completed
    assert capture.of(PhasesRestored)[0].restored == ["a", "b"]


def test_completion_from_another_thread():
    async def threaded(ctx):
        threading.Thread(target=ctx.complete).start()

    phases = [Phase("a", "A", PhaseKind.BACKGROUND, threaded)]
    assert _run(PhaseOrchestrator(phases)).ok


def test_long_running_entry_tasks_are_cancelled_at_the_end():
    cancelled = []

    async def lingering(ctx):
        ctx.complete()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    phases = [Phase("a", "A", PhaseKind.BACKGROUND, lingering)]
    orch = PhaseOrchestrator(phases)
    assert _run(orch).ok
    assert cancelled == [True]
    assert orch.cancelled.is_set()


def test_phase_without_action_waits_for_external_completion():
    phases = [
        Phase("info", "Info", PhaseKind.INFORMATIONAL),
    ]
    orch = PhaseOrchestrator(phases)

    async def scenario():
        task = asyncio.ensure_future(orch.run())
        await asyncio.sleep(0.01)
        assert orch.current.name == "info"
        orch.complete("info")
        return await asyncio.wait_for(task, 5)

    assert asyncio.run(scenario()).ok


def test_invalid_construction():
    with pytest.raises(ValueError):
        PhaseOrchestrator([])
    with pytest.raises(ValueError):
        PhaseOrchestrator([Phase("a", "A", PhaseKind.FORM), Phase("a", "A2", PhaseKind.FORM)])
    with pytest.raises(ValueError):
        PhaseOrchestrator([Phase("a", "A", PhaseKind.FORM)], start_index=1)
