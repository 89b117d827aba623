# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/supervisor/process.py

from __future__ import annotations

import logging
import os
import resource
import signal
import subprocess
import threading
import time
from typing import Callable, Dict, Iterable, Optional, Protocol

from ..cluster.models import Node, NodeState, NodeTransition
from ..config.models import ClusterConfig, ResourceLimits
from ..errors import CancellationError, NodeStartupError
from ..utils.retry import backoff_delay, sleep_unless_cancelled
from .probes import ReadinessProbe, probe_for

log = logging.getLogger("valcluster")


class ProcessHandle(Protocol):
    pid: int

    def poll(self) -> Optional[int]: ...
    def wait(self, timeout: Optional[float] = None) -> int: ...
    def terminate(self) -> None: ...
    def kill(self) -> None: ...


Launcher = Callable[[Node], ProcessHandle]
Reporter = Callable[[NodeTransition], None]


def _rlimit_setter(limits: ResourceLimits) -> Callable[[], None]:
    def _lower(which: int, value: int) -> None:
        _, hard = resource.getrlimit(which)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        resource.setrlimit(which, (value, hard))

    def apply() -> None:
        if limits.max_open_files:
            _lower(resource.RLIMIT_NOFILE, limits.max_open_files)
        if limits.max_memory_mb:
            _lower(resource.RLIMIT_AS, limits.max_memory_mb * 1024 * 1024)

    return apply


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def terminate_pids(pids: Iterable[int], grace: float, *, poll_interval: float = 0.1) -> None:
    """
    Stop processes started by another invocation: SIGTERM, then SIGKILL for
    anything still alive after *grace* seconds.
    """
    pending = set()
    for pid in pids:
        try:
            os.kill(pid, signal.SIGTERM)
            pending.add(pid)
        except ProcessLookupError:
            continue

    deadline = time.monotonic() + grace
    while pending and time.monotonic() < deadline:
        pending = {p for p in pending if pid_alive(p)}
        if pending:
            time.sleep(poll_interval)

    for pid in pending:
        log.warning("pid %d ignored SIGTERM for %.1fs, killing", pid, grace)
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


class ProcessSupervisor:
    """
    Owns the OS processes of the nodes it launches.

    ``supervise`` runs one node's whole startup: launch, poll for readiness,
    back off and relaunch on failure, give up after ``max_startup_retries``
    attempts. Every state change is handed to ``report``; the supervisor never
    touches shared cluster state itself.
    """

    def __init__(
        self,
        config: ClusterConfig,
        *,
        probe: Optional[ReadinessProbe] = None,
        launcher: Optional[Launcher] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.config = config
        self.probe = probe or probe_for(config.readiness_probe)
        self._launcher = launcher or self._popen
        self.cancel = cancel or threading.Event()
        self._handles: Dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # process handling
    # ------------------------------------------------------------------
    def _popen(self, node: Node) -> subprocess.Popen:
        log_path = node.log_path or (self.config.log_dir / f"{node.name}.log")
        log_path.parent.mkdir(parents=True, exist_ok=True)
        limits = self.config.resource_limits
        with open(log_path, "ab") as out:
            return subprocess.Popen(
                node.launch_args,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                cwd=node.ledger_dir,
                start_new_session=True,     # survives the CLI that started it
                preexec_fn=_rlimit_setter(limits) if limits else None,
            )

    def launch(self, node: Node) -> ProcessHandle:
        if self.cancel.is_set():
            raise CancellationError(f"{node.name}: shutdown requested, not launching")
        marker = node.init_complete_file
        if marker is not None:
            marker.unlink(missing_ok=True)   # left over from a previous run

        log.debug("%s: $ %s", node.name, " ".join(node.launch_args))
        handle = self._launcher(node)
        with self._lock:
            self._handles[node.name] = handle
        if self.cancel.is_set():
            # terminate_all may have run between the check above and registration
            self.stop(node.name)
            raise CancellationError(f"{node.name}: shutdown requested during launch")
        log.info("%s: launched pid=%s", node.name, handle.pid)
        return handle

    def poll_ready(self, node: Node, handle: ProcessHandle, timeout: float) -> bool:
        """
        Poll the readiness probe every ``readiness_poll_interval`` until it
        passes (True) or *timeout* elapses (False). A process that exits first
        raises NodeStartupError.
        """
        interval = self.config.readiness_poll_interval
        deadline = time.monotonic() + timeout
        while True:
            if self.cancel.is_set():
                raise CancellationError(f"{node.name}: shutdown requested while awaiting readiness")
            rc = handle.poll()
            if rc is not None:
                raise NodeStartupError(f"{node.name}: exited with code {rc} before becoming ready")
            if self.probe(node):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.cancel.wait(min(interval, remaining))

    def backoff_for(self, attempt: int) -> float:
        b = self.config.backoff
        return backoff_delay(attempt, initial=b.initial, factor=b.factor, maximum=b.max)

    def retry(self, node: Node, delay: float) -> bool:
        """
        Wait out a backoff of *delay* seconds. Returns False if a shutdown
        arrives first, in which case the node must not be relaunched.
        """
        log.info("%s: retrying in %.1fs", node.name, delay)
        return sleep_unless_cancelled(self.cancel, delay)

    def terminate(self, handle: ProcessHandle, grace: Optional[float] = None) -> None:
        grace = self.config.shutdown_grace if grace is None else grace
        if handle.poll() is not None:
            return
        handle.terminate()
        try:
            handle.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            log.warning("pid %s ignored SIGTERM for %.1fs, killing", handle.pid, grace)
            handle.kill()
            handle.wait()

    def stop(self, name: str, grace: Optional[float] = None) -> None:
        with self._lock:
            handle = self._handles.pop(name, None)
        if handle is not None:
            self.terminate(handle, grace)

    def terminate_all(self, grace: Optional[float] = None) -> None:
        with self._lock:
            names = list(self._handles)
        for name in names:
            self.stop(name, grace)

    def handle_for(self, name: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.get(name)

    # ------------------------------------------------------------------
    # startup loop
    # ------------------------------------------------------------------
    def supervise(self, node: Node, report: Reporter) -> NodeState:
        max_attempts = self.config.max_startup_retries
        timeout = self.config.readiness_timeout
        last_error: Optional[str] = None

        for attempt in range(1, max_attempts + 1):
            if self.cancel.is_set():
                report(NodeTransition(node.name, NodeState.STOPPED, attempt - 1, last_error))
                return NodeState.STOPPED

            report(NodeTransition(node.name, NodeState.LAUNCHING, attempt))
            try:
                handle = self.launch(node)
                report(NodeTransition(node.name, NodeState.AWAITING_READY, attempt, pid=handle.pid))
                if self.poll_ready(node, handle, timeout):
                    report(NodeTransition(node.name, NodeState.READY, attempt, pid=handle.pid))
                    return NodeState.READY
                raise NodeStartupError(f"{node.name}: not ready within {timeout:g}s")
            except CancellationError:
                self.stop(node.name)
                report(NodeTransition(node.name, NodeState.STOPPED, attempt, last_error))
                return NodeState.STOPPED
            except (NodeStartupError, OSError, subprocess.SubprocessError) as e:
                last_error = str(e)
                log.warning("%s: attempt %d/%d failed: %s", node.name, attempt, max_attempts, e)
                self.stop(node.name)

            if attempt == max_attempts:
                break
            delay = self.backoff_for(attempt)
            report(NodeTransition(
                node.name, NodeState.RETRYING, attempt, last_error,
                next_attempt_at=time.monotonic() + delay,
            ))
            if not self.retry(node, delay):
                report(NodeTransition(node.name, NodeState.STOPPED, attempt, last_error))
                return NodeState.STOPPED

        report(NodeTransition(
            node.name, NodeState.FAILED, max_attempts,
            f"gave up after {max_attempts} attempts: {last_error}",
        ))
        return NodeState.FAILED
