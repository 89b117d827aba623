import json
import threading
import time

import pytest

from valcluster.cluster.bootstrapper import ClusterBootstrapper
from valcluster.cluster.models import ClusterStatus, NodeRole, NodeState
from valcluster.errors import CancellationError, GenesisError, IdentityError
from valcluster.identity.provisioner import IdentityProvisioner
from valcluster.network.adapter import NO_PORT_CHECK_FLAG
from valcluster.observers.dispatcher import EventBus
from valcluster.observers.events import (
    ClusterStatusChanged,
    ClusterSummary,
    EntrypointResolved,
    IdentityFailed,
    NodeStateChanged,
    TeardownRequested,
)
from valcluster.supervisor.process import ProcessSupervisor


def _bootstrapper(cfg, launcher, capture):
    sup = ProcessSupervisor(cfg, launcher=launcher)
    return ClusterBootstrapper(cfg, bus=EventBus([capture]), supervisor=sup, pump_interval=0.01)


def _changes(capture, node=None):
    return [e for e in capture.events
            if isinstance(e, NodeStateChanged) and (node is None or e.node == node)]


def _index(capture, node, new):
    for i, e in enumerate(capture.events):
        if isinstance(e, NodeStateChanged) and e.node == node and e.new == new:
            return i
    raise AssertionError(f"{node} never reached {new}")


def _opt(argv, flag):
    return argv[argv.index(flag) + 1]


def test_single_node_cluster(make_config, fake_launcher, capture):
    cfg = make_config(node_count=0)
    state = _bootstrapper(cfg, fake_launcher(), capture).launch()

    assert state.status == ClusterStatus.HEALTHY
    assert list(state.nodes) == ["bootstrap-0"]
    assert state.bootstrap.gossip_address is not None


def test_all_nodes_ready(make_config, fake_launcher, capture):
    cfg = make_config(node_count=2)
    launcher = fake_launcher()
    b = _bootstrapper(cfg, launcher, capture)

    state = b.launch()

    assert state.status == ClusterStatus.HEALTHY
    assert {n.name: n.state for n in state.nodes.values()} == {
        "bootstrap-0": NodeState.READY,
        "validator-1": NodeState.READY,
        "validator-2": NodeState.READY,
    }
    assert str(b.entrypoint) == "127.0.0.1:8001"
    for v in state.validators:
        assert _opt(v.launch_args, "--entrypoint") == "127.0.0.1:8001"
        assert v.pid is not None
    assert launcher.calls[0][0] == "bootstrap-0"
    assert [e.new for e in capture.events if isinstance(e, ClusterStatusChanged)][-1] == "Healthy"


def test_no_validator_launches_before_bootstrap_is_ready(make_config, fake_launcher, capture):
    cfg = make_config(node_count=3)
    _bootstrapper(cfg, fake_launcher(), capture).launch()

    ready = _index(capture, "bootstrap-0", "Ready")
    resolved = next(i for i, e in enumerate(capture.events) if isinstance(e, EntrypointResolved))
    assert ready < resolved
    for i in range(1, 4):
        assert _index(capture, f"validator-{i}", "Launching") > resolved


def test_failing_validator_is_isolated(make_config, fake_launcher, capture):
    cfg = make_config(node_count=2, max_startup_retries=3)
    launcher = fake_launcher({"validator-2": "exit"})

    state = _bootstrapper(cfg, launcher, capture).launch()

    assert state.status == ClusterStatus.DEGRADED
    assert state.nodes["validator-1"].state == NodeState.READY
    assert state.nodes["bootstrap-0"].state == NodeState.READY
    failed = state.nodes["validator-2"]
    assert failed.state == NodeState.FAILED
    assert failed.error.startswith("gave up after 3 attempts")
    assert launcher.count("validator-2") == 3
    assert launcher.count("validator-1") == 1
    assert "validator-2" in state.failure_summary()

    summary = [e for e in capture.events if isinstance(e, ClusterSummary)][-1]
    assert (summary.status, summary.ready, summary.failed) == ("Degraded", 2, 1)
    assert list(summary.failures) == ["validator-2"]


def test_retry_sequence_is_visible_in_events(make_config, fake_launcher, capture):
    cfg = make_config(node_count=1, max_startup_retries=2)
    _bootstrapper(cfg, fake_launcher({"validator-1": "exit"}), capture).launch()

    seq = [e.new for e in _changes(capture, "validator-1")]
    assert seq == ["Launching", "AwaitingReady", "Retrying", "Launching", "AwaitingReady", "Failed"]


def test_failed_bootstrap_fails_cluster(make_config, fake_launcher, capture):
    cfg = make_config(node_count=2, max_startup_retries=2)
    launcher = fake_launcher({"bootstrap-0": "exit"})

    state = _bootstrapper(cfg, launcher, capture).launch()

    assert state.status == ClusterStatus.FAILED
    assert state.bootstrap.state == NodeState.FAILED
    assert {n for n, _ in launcher.calls} == {"bootstrap-0"}
    assert not any(isinstance(e, EntrypointResolved) for e in capture.events)


def test_overlay_mode_adds_flag_without_touching_ports(make_config, fake_launcher, capture):
    cfg = make_config(node_count=3, network_mode="overlay")
    state = _bootstrapper(cfg, fake_launcher(), capture).launch()

    assert state.status == ClusterStatus.HEALTHY
    for node in state.nodes.values():
        assert node.launch_args.count(NO_PORT_CHECK_FLAG) == 1
        assert node.launch_args[-1] == NO_PORT_CHECK_FLAG
    boot, val = state.nodes["bootstrap-0"], state.nodes["validator-1"]
    assert _opt(boot.launch_args, "--gossip-port") == "8001"
    assert _opt(val.launch_args, "--gossip-port") == "8101"
    assert val.gossip_address is None


def test_direct_mode_has_no_overlay_flag(make_config, fake_launcher, capture):
    state = _bootstrapper(make_config(node_count=1), fake_launcher(), capture).launch()
    assert all(NO_PORT_CHECK_FLAG not in n.launch_args for n in state.nodes.values())
    assert str(state.nodes["validator-1"].gossip_address) == "127.0.0.1:8101"


def test_corrupt_validator_identity_only_fails_that_node(make_config, fake_launcher, capture):
    cfg = make_config(node_count=2)
    bad = IdentityProvisioner(cfg.base_dir).keypair_path(NodeRole.VALIDATOR, 1)
    bad.parent.mkdir(parents=True)
    bad.write_text("garbage")
    launcher = fake_launcher()

    state = _bootstrapper(cfg, launcher, capture).launch()

    assert state.status == ClusterStatus.DEGRADED
    assert state.nodes["validator-1"].state == NodeState.FAILED
    assert "identity setup failed" in state.nodes["validator-1"].error
    assert state.nodes["validator-2"].state == NodeState.READY
    assert launcher.count("validator-1") == 0
    assert bad.read_text() == "garbage"
    assert [e.node for e in capture.events if isinstance(e, IdentityFailed)] == ["validator-1"]


def test_corrupt_bootstrap_identity_aborts_launch(make_config, fake_launcher, capture):
    cfg = make_config(node_count=2)
    bad = IdentityProvisioner(cfg.base_dir).keypair_path(NodeRole.BOOTSTRAP, 0)
    bad.parent.mkdir(parents=True)
    bad.write_text("[]")
    launcher = fake_launcher()
    b = _bootstrapper(cfg, launcher, capture)

    with pytest.raises(IdentityError):
        b.launch()

    assert launcher.calls == []
    assert b.state.status == ClusterStatus.FAILED
    assert b.state.bootstrap.state == NodeState.FAILED


def test_state_file_tracks_cluster(make_config, fake_launcher, capture):
    cfg = make_config(node_count=1)
    b = _bootstrapper(cfg, fake_launcher(), capture)
    b.launch()

    data = json.loads(cfg.state_file.read_text())
    assert data["status"] == "Healthy"
    assert data["run_id"] == b.run_id
    assert data["entrypoint"] == "127.0.0.1:8001"
    assert data["genesis_hash"] == b.genesis.genesis_hash
    assert [(n["name"], n["state"]) for n in data["nodes"]] == [
        ("bootstrap-0", "Ready"), ("validator-1", "Ready"),
    ]
    assert all(n["pid"] for n in data["nodes"])


def test_rerun_reuses_identities_and_genesis(make_config, fake_launcher, capture):
    cfg = make_config(node_count=1)
    first = _bootstrapper(cfg, fake_launcher(), capture)
    first.launch()
    first.teardown()

    second = _bootstrapper(cfg, fake_launcher(), capture)
    state = second.launch()

    assert state.status == ClusterStatus.HEALTHY
    assert second.genesis.genesis_hash == first.genesis.genesis_hash
    assert state.nodes["validator-1"].identity == first.state.nodes["validator-1"].identity


def test_shutdown_during_retry_backoff(make_config, fake_launcher, capture):
    cfg = make_config(
        node_count=2,
        max_startup_retries=5,
        backoff={"initial": 30, "factor": 2.0, "max": 30},
    )
    launcher = fake_launcher({"validator-1": "exit"})
    b = _bootstrapper(cfg, launcher, capture)
    outcome = {}

    def run():
        try:
            b.launch()
        except CancellationError as e:
            outcome["error"] = e

    t = threading.Thread(target=run)
    t.start()
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        if any(e.node == "validator-1" and e.new == "Retrying" for e in _changes(capture)) \
                and any(e.node == "validator-2" and e.new == "Ready" for e in _changes(capture)):
            break
        time.sleep(0.01)
    b.shutdown(reason="test")
    t.join(timeout=5)

    assert not t.is_alive()
    assert "error" in outcome
    assert launcher.count("validator-1") == 1
    assert all(p.returncode is not None for p in launcher.processes)
    assert any(isinstance(e, TeardownRequested) for e in capture.events)

    state = b.teardown()
    assert state.status == ClusterStatus.STOPPED
    assert {n.state for n in state.nodes.values()} == {NodeState.STOPPED}
    assert all(n.pid is None for n in state.nodes.values())
    assert json.loads(cfg.state_file.read_text())["status"] == "Stopped"


def test_exited_nodes(make_config, fake_launcher, capture):
    launcher = fake_launcher()
    b = _bootstrapper(make_config(node_count=1), launcher, capture)
    b.launch()
    assert b.exited_nodes() == []

    launcher.processes[1].returncode = 137
    assert b.exited_nodes() == ["validator-1"]


def test_rerun_with_corrupt_validator_identity_keeps_genesis(make_config, fake_launcher, capture):
    cfg = make_config(node_count=2)
    first = _bootstrapper(cfg, fake_launcher(), capture)
    first.launch()
    first.teardown()

    bad = IdentityProvisioner(cfg.base_dir).keypair_path(NodeRole.VALIDATOR, 1)
    bad.unlink()
    bad.write_text("garbage")
    launcher = fake_launcher()
    second = _bootstrapper(cfg, launcher, capture)

    state = second.launch()

    assert second.genesis.genesis_hash == first.genesis.genesis_hash
    assert state.status == ClusterStatus.DEGRADED
    assert state.nodes["bootstrap-0"].state == NodeState.READY
    assert state.nodes["validator-1"].state == NodeState.FAILED
    assert "identity setup failed" in state.nodes["validator-1"].error
    assert state.nodes["validator-2"].state == NodeState.READY
    assert launcher.count("validator-1") == 0


def test_incompatible_validator_ledger_only_fails_that_node(make_config, fake_launcher, capture):
    cfg = make_config(node_count=2)
    marker = cfg.base_dir / "ledger" / "validator-1" / "genesis.hash"
    marker.parent.mkdir(parents=True)
    marker.write_text("deadbeef\n")
    launcher = fake_launcher()

    state = _bootstrapper(cfg, launcher, capture).launch()

    assert state.status == ClusterStatus.DEGRADED
    assert state.nodes["validator-1"].state == NodeState.FAILED
    assert "ledger setup failed" in state.nodes["validator-1"].error
    assert state.nodes["bootstrap-0"].state == NodeState.READY
    assert state.nodes["validator-2"].state == NodeState.READY
    assert launcher.count("validator-1") == 0
    assert marker.read_text() == "deadbeef\n"


@pytest.mark.parametrize("relpath, content", [
    ("ledger/bootstrap-0/genesis.hash", "deadbeef\n"),
    ("genesis/genesis.json", '{"cluster": "somebody else"}'),
])
def test_bootstrap_genesis_mismatch_aborts_launch(make_config, fake_launcher, capture, relpath, content):
    cfg = make_config(node_count=2)
    existing = cfg.base_dir / relpath
    existing.parent.mkdir(parents=True)
    existing.write_text(content)
    launcher = fake_launcher()
    b = _bootstrapper(cfg, launcher, capture)

    with pytest.raises(GenesisError):
        b.launch()

    assert launcher.calls == []
    assert b.state.status == ClusterStatus.FAILED
    assert b.state.bootstrap.state == NodeState.FAILED
    assert "genesis setup failed" in b.state.bootstrap.error
    assert existing.read_text() == content
    assert json.loads(cfg.state_file.read_text())["status"] == "Failed"


def test_request_shutdown_only_flags_cancellation(make_config, fake_launcher, capture):
    launcher = fake_launcher()
    b = _bootstrapper(make_config(node_count=1), launcher, capture)

    b.request_shutdown(reason="signal SIGTERM")
    b.request_shutdown(reason="signal SIGINT")

    assert b.cancel.is_set()
    assert capture.events == []

    with pytest.raises(CancellationError):
        b.launch()
    assert launcher.calls == []

    b.teardown()
    assert [e.reason for e in capture.events if isinstance(e, TeardownRequested)] == ["signal SIGTERM"]
