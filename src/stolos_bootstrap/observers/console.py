# src/stolos_bootstrap/observers/console.py
import typer

from .events import BaseEvent, RunFailed, RunSucceeded

_CTX_KEYS = ("ts", "run_id", "cluster")


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in _CTX_KEYS)
        line = f"[{d['ts']}] {k} cluster={d['cluster'] or '-'} {{{data}}}"
        if isinstance(event, RunFailed):
            typer.secho(line, fg=typer.colors.RED, err=True)
        elif isinstance(event, RunSucceeded):
            typer.secho(line, fg=typer.colors.GREEN)
        else:
            typer.echo(line)
