# src/valcluster/observers/console.py
import typer

from .events import BaseEvent, NodeStateChanged, ClusterStatusChanged

_COLORS = {
    "Ready": typer.colors.GREEN,
    "Healthy": typer.colors.GREEN,
    "Retrying": typer.colors.YELLOW,
    "Degraded": typer.colors.YELLOW,
    "Failed": typer.colors.RED,
}


class ConsoleObserver:
    """Prints node and cluster state changes; other events only with verbose=True."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        if isinstance(event, NodeStateChanged):
            line = f"[{d['ts']}] {event.node}: {event.old} -> {event.new}"
            if event.attempt:
                line += f" (attempt {event.attempt})"
            if event.error:
                line += f" {event.error}"
            typer.secho(line, fg=_COLORS.get(event.new))
        elif isinstance(event, ClusterStatusChanged):
            typer.secho(f"[{d['ts']}] cluster: {event.old} -> {event.new}", fg=_COLORS.get(event.new), bold=True)
        elif self.verbose:
            typer.echo(f"[{d['ts']}] {k} data={{"
                       + ", ".join(f"{x}={y}" for x, y in d.items() if x not in ('ts', 'run_id', 'cluster')) + "}")
