# src/valcluster/cli/app.py
from __future__ import annotations

import json
import signal
import threading
import time
from pathlib import Path
from typing import Optional

import typer

from valcluster.cluster.bootstrapper import ClusterBootstrapper
from valcluster.cluster.models import ClusterState, ClusterStatus, NodeState
from valcluster.config.loader import CONFIG_ENV_VAR, load_config, resolve_config_path
from valcluster.config.models import ClusterConfig
from valcluster.errors import (
    CancellationError,
    ConfigError,
    GenesisError,
    IdentityError,
    ResolutionError,
    StateFileError,
)
from valcluster.logging.log import init_logging
from valcluster.observers.console import ConsoleObserver
from valcluster.observers.dispatcher import EventBus
from valcluster.observers.jsonfile import JsonFileObserver
from valcluster.observers.logger import LoggerObserver
from valcluster.state.store import ClusterStateStore
from valcluster.supervisor.process import pid_alive, terminate_pids


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Validator cluster bootstrap CLI")

EXIT_INTERRUPTED = 130

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help=f"Cluster config (YAML or TOML). Defaults to ${CONFIG_ENV_VAR}",
)


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _load(config: Optional[Path]) -> ClusterConfig:
    try:
        return load_config(resolve_config_path(config))
    except ConfigError as e:
        typer.secho(f"config error [{e.reason.value}]: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _load_state(store: ClusterStateStore) -> Optional[dict]:
    try:
        return store.load()
    except StateFileError as e:
        typer.secho(f"state error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _print_summary(state: ClusterState) -> None:
    color = {
        ClusterStatus.HEALTHY: typer.colors.GREEN,
        ClusterStatus.DEGRADED: typer.colors.YELLOW,
    }.get(state.status, typer.colors.RED)
    typer.echo("")
    typer.secho(f"Cluster {state.status.value}", bold=True, fg=color)
    for node in sorted(state.nodes.values(), key=lambda n: (not n.is_bootstrap, n.index)):
        addr = f" gossip={node.gossip_address}" if node.gossip_address else ""
        pid = f" pid={node.pid}" if node.pid else ""
        typer.echo(f"  {node.name:<14} {node.state.value:<14}{pid}{addr}")
    failures = state.failure_summary()
    if failures:
        typer.echo("")
        typer.secho("Failed nodes:", fg=typer.colors.RED, err=True)
        for line in failures.splitlines():
            typer.echo(f"  {line}", err=True)


def _install_signal_handlers(bootstrapper: ClusterBootstrapper) -> dict:
    # the handler only flags cancellation; launch() and _watch() notice it and
    # the main flow below tears the cluster down
    def _handler(signum, _frame):
        bootstrapper.request_shutdown(reason=f"signal {signal.Signals(signum).name}")

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _handler)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _watch(bootstrapper: ClusterBootstrapper, interval: float = 1.0) -> None:
    """Foreground mode: report nodes whose process exits after becoming Ready."""
    reported = set()
    while not bootstrapper.cancel.is_set():
        time.sleep(interval)
        for name in bootstrapper.exited_nodes():
            if name not in reported:
                reported.add(name)
                typer.secho(f"[health] {name} exited after becoming Ready", fg=typer.colors.RED, err=True)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def launch(
    config: Optional[Path] = ConfigOption,
    foreground: bool = typer.Option(
        False,
        "--foreground",
        help="Keep supervising after startup; Ctrl-C tears the cluster down",
    ),
    debug: bool = typer.Option(False, "--debug"),
):
    """Start the bootstrap node, then every validator, and wait until the cluster settles."""
    cfg = _load(config)

    logger, run_id, log_path = init_logging(base_dir=cfg.log_dir / "run", verbose=debug)

    typer.echo("")
    typer.secho("Validator cluster launch", bold=True)
    typer.echo(f"  Run ID     : {run_id}")
    typer.echo(f"  Validators : {cfg.node_count}")
    typer.echo(f"  Mode       : {cfg.network_mode.value}")
    typer.echo(f"  Data dir   : {cfg.base_dir}")
    typer.echo(f"  Logs       : {log_path}")
    typer.echo("")

    events_log = JsonFileObserver(cfg.log_dir / "events" / f"{run_id}.jsonl")
    bus = EventBus(observers=[
        ConsoleObserver(verbose=debug),
        LoggerObserver(logger),
        events_log,
    ])
    bootstrapper = ClusterBootstrapper(cfg, bus=bus, run_id=run_id)
    previous = _install_signal_handlers(bootstrapper)

    try:
        try:
            state = bootstrapper.launch()
        except CancellationError as e:
            bootstrapper.teardown()
            typer.secho(f"launch interrupted: {e}", fg=typer.colors.YELLOW, err=True)
            raise typer.Exit(EXIT_INTERRUPTED)
        except (IdentityError, GenesisError, ResolutionError) as e:
            logger.error("fatal: %s", e)
            bootstrapper.teardown()
            typer.secho(f"fatal [{e.reason.value}]: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)

        _print_summary(state)

        if state.status == ClusterStatus.FAILED:
            bootstrap = state.bootstrap
            typer.secho(
                f"fatal: bootstrap node failed: {bootstrap.error if bootstrap else 'unknown error'}",
                fg=typer.colors.RED,
                err=True,
            )

        healthy = state.status == ClusterStatus.HEALTHY
        if foreground and state.status in (ClusterStatus.HEALTHY, ClusterStatus.DEGRADED):
            typer.echo("\nSupervising; press Ctrl-C to tear the cluster down.")
            _watch(bootstrapper)
            bootstrapper.teardown()
            typer.echo("Cluster stopped.")

        raise typer.Exit(0 if healthy else 1)
    finally:
        _restore_signal_handlers(previous)
        events_log.close()


@app.command()
def status(
    config: Optional[Path] = ConfigOption,
    as_json: bool = typer.Option(False, "--json", help="Print the raw state document"),
):
    """Print the last persisted cluster state."""
    cfg = _load(config)
    data = _load_state(ClusterStateStore(cfg.state_file))
    if data is None:
        typer.secho(f"No cluster state at {cfg.state_file}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(1)

    for node in data.get("nodes", []):
        node["alive"] = bool(node.get("pid")) and pid_alive(node["pid"])

    if as_json:
        typer.echo(json.dumps(data, indent=2))
        return

    typer.secho(f"Cluster {data.get('status')}  (updated {data.get('updated_at')})", bold=True)
    if data.get("entrypoint"):
        typer.echo(f"  entrypoint   : {data['entrypoint']}")
    if data.get("genesis_hash"):
        typer.echo(f"  genesis hash : {data['genesis_hash']}")
    for node in data.get("nodes", []):
        line = f"  {node['name']:<14} {node['state']:<14}"
        if node.get("pid"):
            line += f" pid={node['pid']} ({'alive' if node['alive'] else 'gone'})"
        if node.get("error"):
            line += f" error={node['error']}"
        typer.echo(line)


@app.command()
def teardown(
    config: Optional[Path] = ConfigOption,
    grace: Optional[float] = typer.Option(None, "--grace", help="Seconds before SIGKILL"),
):
    """Stop every node process recorded in the cluster state."""
    cfg = _load(config)
    store = ClusterStateStore(cfg.state_file)
    data = _load_state(store)
    if data is None:
        typer.echo(f"No cluster state at {cfg.state_file}; nothing to stop")
        return

    pids = [p for p in store.pids() if pid_alive(p)]
    typer.echo(f"Stopping {len(pids)} node process(es)...")
    terminate_pids(pids, cfg.shutdown_grace if grace is None else grace)
    store.mark_stopped()
    typer.secho(f"Cluster {NodeState.STOPPED.value}", bold=True)


if __name__ == "__main__":
    app()
