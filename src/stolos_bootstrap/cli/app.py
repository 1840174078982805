# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/cli/app.py
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import typer

from stolos_bootstrap.config.fields import FieldSpec
from stolos_bootstrap.config.loader import load_config
from stolos_bootstrap.config.models import BootstrapConfig
from stolos_bootstrap.errors import ConfigError, StateLoadError
from stolos_bootstrap.logging.log import init_logging
from stolos_bootstrap.machineconfig.generator import BUNDLE_FILES, TalosctlConfigGenerator
from stolos_bootstrap.observers.console import ConsoleObserver
from stolos_bootstrap.observers.dispatcher import EventBus
from stolos_bootstrap.observers.jsonfile import JsonFileObserver
from stolos_bootstrap.observers.logger import LoggerObserver
from stolos_bootstrap.orchestrator.engine import PhaseOrchestrator, RunOutcome, RunStatus
from stolos_bootstrap.orchestrator.phase import Phase
from stolos_bootstrap.orchestrator.plan import BootstrapRuntime, build_phases, resume_index
from stolos_bootstrap.state.persistence import StatePersistence
from stolos_bootstrap.state.store import ClusterStateStore


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Stolos bare-metal cluster bootstrap")


def _prompt_field(spec: FieldSpec, default: Any) -> str:
    text = spec.prompt + (f" ({spec.help})" if spec.help else "")
    return typer.prompt(text, default="" if default is None else str(default), show_default=True)


async def _confirm_phase(phase: Phase) -> bool:
    typer.echo(phase.body)
    return await asyncio.to_thread(typer.confirm, f"{phase.title}: done. Continue?", default=True)


def _resolve_config(config: Optional[Path], state_dir: Optional[Path], min_workers: Optional[int]) -> BootstrapConfig:
    cfg = load_config(config) if config else BootstrapConfig()
    updates = {}
    if state_dir is not None:
        updates["state_dir"] = state_dir
    if min_workers is not None:
        updates["min_workers"] = min_workers
    return cfg.model_copy(update=updates) if updates else cfg


def _persistence(state_dir: Path) -> StatePersistence:
    return StatePersistence(state_dir, BUNDLE_FILES)


async def _run(orchestrator: PhaseOrchestrator, runtime: BootstrapRuntime) -> RunOutcome:
    try:
        return await orchestrator.run()
    finally:
        await runtime.aclose()


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def run(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="bootstrap-config.yaml"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="Where state, bundle and kubeconfig live"),
    min_workers: Optional[int] = typer.Option(None, "--min-workers", min=0),
    no_browser: bool = typer.Option(False, "--no-browser", help="Print OAuth links instead of opening them"),
    events: bool = typer.Option(False, "--events", help="Echo structured events to the console"),
    debug: bool = typer.Option(False, "--debug", help="Verbose console logging"),
):
    """Bootstrap a cluster, or resume an interrupted bootstrap."""
    logger, run_id, log_path = init_logging(verbose=debug)

    try:
        cfg = _resolve_config(config, state_dir, min_workers)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(2)

    sdir = Path(cfg.state_dir)
    sdir.mkdir(parents=True, exist_ok=True)

    observers = [LoggerObserver(logger), JsonFileObserver(sdir / "events.jsonl")]
    if events:
        observers.append(ConsoleObserver())
    bus = EventBus(observers)

    try:
        store = ClusterStateStore.open(_persistence(sdir))
    except StateLoadError as exc:
        typer.secho(f"Saved state is unusable: {exc}", fg=typer.colors.RED, err=True)
        typer.secho("Run `stolos-bootstrap reset` to start a fresh bootstrap.", err=True)
        raise typer.Exit(2)

    runtime = BootstrapRuntime(
        config=cfg,
        store=store,
        generator=TalosctlConfigGenerator(),
        bus=bus,
        run_id=run_id,
        prompt=_prompt_field,
    )
    if no_browser:
        runtime.open_browser = lambda url: False
    runtime.prepare()

    phases = build_phases(runtime)
    orchestrator = PhaseOrchestrator(
        phases,
        start_index=resume_index(phases, store),
        bus=bus,
        run_id=run_id,
        cluster=lambda: runtime.cluster_name,
        confirm=_confirm_phase,
    )

    outcome = asyncio.run(_run(orchestrator, runtime))

    if outcome.status == RunStatus.SUCCEEDED:
        typer.secho(f"Cluster {runtime.cluster_name} is ready.", fg=typer.colors.GREEN)
        if runtime.kubeconfig_path:
            typer.echo(f"kubeconfig: {runtime.kubeconfig_path}")
        return
    if outcome.status == RunStatus.ABORTED:
        typer.secho(f"Aborted at {outcome.phase}. Re-run to resume.", fg=typer.colors.YELLOW)
        raise typer.Exit(1)

    typer.secho(f"Bootstrap failed in {outcome.phase}: {outcome.error}", fg=typer.colors.RED, err=True)
    typer.echo(f"Full log: {log_path}", err=True)
    raise typer.Exit(1)


@app.command()
def status(
    state_dir: Path = typer.Option(Path("."), "--state-dir"),
):
    """Show the saved cluster endpoint and issued machines."""
    try:
        result = _persistence(state_dir).load()
    except StateLoadError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(2)

    if not result.found:
        typer.echo(f"No bootstrap state in {state_dir}")
        return

    state = result.state
    if state.bootstrap_config:
        typer.echo(f"cluster:  {state.bootstrap_config.cluster_name}")
    typer.echo(f"endpoint: {state.cluster_endpoint or '-'}")
    typer.echo(f"machines: {len(state.control_planes())} control plane, {len(state.workers())} worker(s)")
    for record in sorted(state.node_records.values(), key=lambda r: r.first_seen_at):
        typer.echo(f"  {record.hostname:<16} {record.role.value:<13} {record.address:<16} {record.identity_key}")


@app.command()
def reset(
    state_dir: Path = typer.Option(Path("."), "--state-dir"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete saved state and the config bundle so the next run starts fresh."""
    persistence = _persistence(state_dir)
    if not yes:
        typer.confirm(
            f"This forgets every issued machine config in {state_dir}. Continue?",
            abort=True,
        )
    removed = persistence.remove()
    if not removed:
        typer.echo("Nothing to remove.")
        return
    for p in removed:
        typer.echo(f"removed {p}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
