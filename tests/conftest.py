import itertools
import subprocess
import threading
import time
from pathlib import Path

import pytest

from valcluster.config.models import ClusterConfig

# ----------------- Fake node processes -----------------

_pids = itertools.count(40000)


class FakeProcess:
    def __init__(self, name, returncode=None):
        self.name = name
        self.pid = next(_pids)
        self.returncode = returncode
        self.terminated = False

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired(self.name, timeout)
        return self.returncode

    def terminate(self):
        self.terminated = True
        if self.returncode is None:
            self.returncode = -15

    def kill(self):
        self.terminated = True
        if self.returncode is None:
            self.returncode = -9


class FakeLauncher:
    """
    behaviours: node name -> "ready" | "exit" | "hang"   (default "ready")

    "ready" writes the node's init-complete file, like the real validator
    does once it has loaded its ledger and joined gossip.
    """

    def __init__(self, behaviours=None):
        self.behaviours = behaviours or {}
        self.calls = []                 # (node name, monotonic time)
        self.processes = []
        self._lock = threading.Lock()

    def __call__(self, node):
        behaviour = self.behaviours.get(node.name, "ready")
        proc = FakeProcess(node.name, returncode=1 if behaviour == "exit" else None)
        if behaviour == "ready":
            node.init_complete_file.touch()
        with self._lock:
            self.calls.append((node.name, time.monotonic()))
            self.processes.append(proc)
        return proc

    def count(self, name):
        return sum(1 for n, _ in self.calls if n == name)


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


# ----------------- Fixtures -----------------

@pytest.fixture
def node_binary(tmp_path: Path) -> Path:
    exe = tmp_path / "bin" / "validator"
    exe.parent.mkdir()
    exe.write_text("#!/bin/sh\nexit 0\n")
    exe.chmod(0o755)
    return exe


@pytest.fixture
def make_config(tmp_path: Path, node_binary: Path):
    def _make(**overrides) -> ClusterConfig:
        data = dict(
            node_count=2,
            executable_path=node_binary,
            base_dir=tmp_path / "cluster",
            network_mode="direct",
            max_startup_retries=3,
            readiness_timeout=0.5,
            readiness_poll_interval=0.01,
            backoff={"initial": 0.01, "factor": 2.0, "max": 0.05},
            shutdown_grace=0.1,
        )
        data.update(overrides)
        return ClusterConfig.model_validate(data)
    return _make


@pytest.fixture
def fake_launcher():
    return FakeLauncher


@pytest.fixture
def capture():
    return Capture()
