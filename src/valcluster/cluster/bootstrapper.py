# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/cluster/bootstrapper.py

from __future__ import annotations

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from ..config.models import ClusterConfig, NetworkMode
from ..errors import CancellationError, GenesisError, IdentityError
from ..genesis.builder import GenesisBuilder, GenesisLedger
from ..identity.provisioner import IdentityProvisioner, NodeIdentity
from ..network.adapter import NetworkModeAdapter
from ..network.entrypoint import Address, GossipEntrypointResolver
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    now_ts,
    ClusterLaunchStarted,
    IdentityProvisioned,
    IdentityFailed,
    GenesisReady,
    GenesisFailed,
    NodeCreated,
    NodeStateChanged,
    EntrypointResolved,
    ClusterStatusChanged,
    TeardownRequested,
    ClusterSummary,
)
from ..state.store import ClusterStateStore
from ..supervisor.process import ProcessSupervisor
from .launch_args import build_base_args
from .models import (
    TERMINAL_STATES,
    ClusterState,
    ClusterStatus,
    InvalidTransition,
    Node,
    NodeRole,
    NodeState,
    NodeTransition,
    StartupAttempt,
)

log = logging.getLogger("valcluster")

_STARTING = (NodeState.LAUNCHING, NodeState.AWAITING_READY, NodeState.RETRYING)


def _reason(err: Exception) -> str:
    reason = getattr(err, "reason", None)
    return reason.value if reason is not None else type(err).__name__


class ClusterBootstrapper:
    """
    Brings up one bootstrap node, then N validators wired to its gossip
    entrypoint.

    The thread that calls ``launch`` is the only writer of ``self.state``.
    Supervising tasks run on a thread pool and post ``NodeTransition``
    messages to a queue; ``_pump`` applies them one at a time, emits the
    matching events and persists the state after each change.
    """

    def __init__(
        self,
        config: ClusterConfig,
        *,
        bus: Optional[EventBus] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        provisioner: Optional[IdentityProvisioner] = None,
        genesis_builder: Optional[GenesisBuilder] = None,
        adapter: Optional[NetworkModeAdapter] = None,
        resolver: Optional[GossipEntrypointResolver] = None,
        store: Optional[ClusterStateStore] = None,
        run_id: Optional[str] = None,
        pump_interval: float = 0.1,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.supervisor = supervisor or ProcessSupervisor(config)
        self.cancel = self.supervisor.cancel
        self.provisioner = provisioner or IdentityProvisioner(config.base_dir)
        self.genesis_builder = genesis_builder or GenesisBuilder(config.base_dir)
        self.adapter = adapter or NetworkModeAdapter()
        self.resolver = resolver or GossipEntrypointResolver()
        self.store = store or ClusterStateStore(config.state_file)
        self.pump_interval = pump_interval

        self.state = ClusterState()
        self.genesis: Optional[GenesisLedger] = None
        self.entrypoint: Optional[Address] = None
        self._events: "queue.Queue[NodeTransition]" = queue.Queue()
        self._validator_identities: Dict[int, NodeIdentity] = {}
        self._validator_setup_errors: Dict[int, str] = {}
        self._stop_reason: Optional[str] = None
        self._shutdown_announced = False
        self._ctx = new_ctx(cluster=str(config.base_dir), run_id=run_id)
        self.store.annotate(run_id=self._ctx["run_id"], network_mode=config.network_mode.value)

    @property
    def run_id(self) -> str:
        return self._ctx["run_id"]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _emit(self, event_cls, **data) -> None:
        self.bus.emit(event_cls(**{**self._ctx, "ts": now_ts()}, **data))

    def _persist(self) -> None:
        try:
            self.store.save(self.state)
        except OSError as e:
            log.warning("cannot persist cluster state to %s: %s", self.store.path, e)

    def _refresh_status(self) -> None:
        old = self.state.status
        new = self.state.refresh()
        if new != old:
            log.info("cluster status %s -> %s", old.value, new.value)
            self._emit(ClusterStatusChanged, old=old.value, new=new.value)

    def _gossip_address(self, node: Node) -> Optional[Address]:
        port = self.config.ports.gossip_port(node.index)
        if node.is_bootstrap or self.config.network_mode == NetworkMode.DIRECT:
            return Address(self.config.bootstrap_host, port)
        return None

    def _set_state(self, node: Node, msg: NodeTransition) -> None:
        old = node.state
        if old == msg.state and msg.state not in _STARTING:
            return
        try:
            node.transition(msg.state)
        except InvalidTransition as e:
            log.error("dropping transition: %s", e)
            return

        if msg.state in _STARTING:
            if node.attempt is None:
                node.attempt = StartupAttempt()
            node.attempt.count = msg.attempt
            node.attempt.next_attempt_at = msg.next_attempt_at
            if msg.error:
                node.attempt.last_error = msg.error
        if msg.pid is not None:
            node.pid = msg.pid
        if msg.state == NodeState.READY:
            node.error = None
            node.gossip_address = self._gossip_address(node)
        elif msg.state in (NodeState.FAILED, NodeState.STOPPED):
            node.pid = None
            if msg.state == NodeState.FAILED:
                node.error = msg.error or node.error

        self._emit(
            NodeStateChanged,
            node=node.name,
            role=node.role.value,
            old=old.value,
            new=msg.state.value,
            attempt=msg.attempt,
            pid=node.pid,
            error=msg.error,
        )
        self._refresh_status()
        self._persist()

    def _apply(self, msg: NodeTransition) -> None:
        node = self.state.nodes.get(msg.node)
        if node is None:
            log.error("transition for unknown node %s", msg.node)
            return
        self._set_state(node, msg)

    def _pump(self, until: Callable[[], bool]) -> None:
        while not until():
            try:
                msg = self._events.get(timeout=self.pump_interval)
            except queue.Empty:
                continue
            self._apply(msg)

    def _drain(self) -> None:
        while True:
            try:
                self._apply(self._events.get_nowait())
            except queue.Empty:
                return

    def _run_node(self, node: Node) -> NodeState:
        # thread boundary: anything unexpected still ends as a reported failure
        try:
            return self.supervisor.supervise(node, self._events.put)
        except Exception as e:
            log.exception("%s: supervisor crashed", node.name)
            self._events.put(NodeTransition(node.name, NodeState.FAILED, error=f"supervisor crashed: {e}"))
            return NodeState.FAILED

    # ------------------------------------------------------------------
    # setup phase
    # ------------------------------------------------------------------
    def _record_setup_failure(self, role: NodeRole, index: int, identity: Optional[NodeIdentity], error: str) -> Node:
        node = self.state.nodes.get(f"{role.value}-{index}")
        if node is None:
            node = self.state.add(Node(name=f"{role.value}-{index}", role=role, index=index, identity=identity))
            self._emit(NodeCreated, node=node.name, role=role.value, launch_args=[])
        self._set_state(node, NodeTransition(node.name, NodeState.FAILED, error=error))
        return node

    def _provision(self, role: NodeRole, index: int) -> NodeIdentity:
        try:
            identity = self.provisioner.provision(role, index)
        except IdentityError as e:
            self._emit(IdentityFailed, node=f"{role.value}-{index}", reason=_reason(e), error=str(e))
            raise
        self._emit(IdentityProvisioned, node=identity.name, public_key=identity.public_key)
        return identity

    def _provision_validators(self) -> tuple[Dict[int, NodeIdentity], Dict[int, str]]:
        identities: Dict[int, NodeIdentity] = {}
        errors: Dict[int, str] = {}
        for index in range(1, self.config.node_count + 1):
            try:
                identities[index] = self._provision(NodeRole.VALIDATOR, index)
            except IdentityError as e:
                log.error("validator-%d: identity setup failed: %s", index, e)
                errors[index] = f"identity setup failed: {e}"
        return identities, errors

    def _genesis_members(self, bootstrap: NodeIdentity) -> List[NodeIdentity]:
        """
        Identities that go into genesis. A validator whose keypair could not be
        loaded keeps the entry recorded in an existing snapshot, so that one bad
        keypair fails only that validator instead of changing the genesis hash.
        """
        members = [bootstrap, *self._validator_identities.values()]
        if not self._validator_setup_errors:
            return members
        recorded = self.genesis_builder.recorded_validators()
        for index in sorted(self._validator_setup_errors):
            entry = recorded.get(f"{NodeRole.VALIDATOR.value}-{index}")
            if entry is None:
                continue
            members.append(NodeIdentity(
                role=NodeRole.VALIDATOR,
                index=index,
                keypair_path=self.provisioner.keypair_path(NodeRole.VALIDATOR, index),
                public_key=str(entry.get("identity", "")),
                vote_keypair_path=self.provisioner.vote_keypair_path(NodeRole.VALIDATOR, index),
                vote_public_key=str(entry.get("vote_account", "")),
            ))
            log.info("validator-%d: keeping its recorded genesis entry", index)
        return members

    def _build_genesis(self, identities: List[NodeIdentity]) -> GenesisLedger:
        try:
            genesis = self.genesis_builder.build_or_reuse(self.config, identities)
        except GenesisError as e:
            self._emit(GenesisFailed, node=None, reason=_reason(e), error=str(e))
            raise
        self._emit(GenesisReady, genesis_hash=genesis.genesis_hash, snapshot=str(genesis.snapshot_path))
        self.store.annotate(genesis_hash=genesis.genesis_hash)
        return genesis

    def _create_node(self, role: NodeRole, index: int, identity: NodeIdentity,
                     entrypoint: Optional[Address] = None) -> Node:
        node = Node(
            name=identity.name,
            role=role,
            index=index,
            identity=identity,
            rpc_port=self.config.ports.rpc_port(index),
            log_path=self.config.log_dir / f"{identity.name}.log",
        )
        try:
            node.ledger_dir = self.genesis.prepare_node_ledger(node.name)
        except GenesisError as e:
            self._emit(GenesisFailed, node=node.name, reason=_reason(e), error=str(e))
            raise
        base = build_base_args(self.config, node, self.genesis, entrypoint)
        node.launch_args = self.adapter.adapt(base, self.config.network_mode)

        self.state.add(node)
        self._emit(NodeCreated, node=node.name, role=role.value, launch_args=list(node.launch_args))
        self._persist()
        return node

    def _setup_bootstrap(self) -> Node:
        """Everything here is fatal to the cluster."""
        try:
            identity = self._provision(NodeRole.BOOTSTRAP, 0)
        except IdentityError as e:
            self._record_setup_failure(NodeRole.BOOTSTRAP, 0, None, f"identity setup failed: {e}")
            raise

        validator_ids, self._validator_setup_errors = self._provision_validators()
        self._validator_identities = validator_ids

        try:
            self.genesis = self._build_genesis(self._genesis_members(identity))
            return self._create_node(NodeRole.BOOTSTRAP, 0, identity)
        except GenesisError as e:
            self._record_setup_failure(NodeRole.BOOTSTRAP, 0, identity, f"genesis setup failed: {e}")
            raise

    def _setup_validators(self) -> List[Node]:
        nodes: List[Node] = []
        for index in range(1, self.config.node_count + 1):
            identity = self._validator_identities.get(index)
            if identity is None:
                nodes.append(self._record_setup_failure(
                    NodeRole.VALIDATOR, index, None, self._validator_setup_errors[index]
                ))
                continue
            try:
                nodes.append(self._create_node(NodeRole.VALIDATOR, index, identity, self.entrypoint))
            except GenesisError as e:
                nodes.append(self._record_setup_failure(
                    NodeRole.VALIDATOR, index, identity, f"ledger setup failed: {e}"
                ))
        return nodes

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def launch(self) -> ClusterState:
        """
        Run the whole startup sequence and return once every node has settled.

        Raises ConfigError/IdentityError/GenesisError for bootstrap setup
        failures and CancellationError if ``shutdown`` was called first.
        A bootstrap node that fails to start is reported through the returned
        state (status Failed), not raised.
        """
        self._emit(
            ClusterLaunchStarted,
            node_count=self.config.node_count,
            network_mode=self.config.network_mode.value,
        )
        self._persist()

        bootstrap = self._setup_bootstrap()

        with ThreadPoolExecutor(
            max_workers=self.config.node_count + 1,
            thread_name_prefix="supervise",
        ) as pool:
            pool.submit(self._run_node, bootstrap)
            self._pump(until=lambda: bootstrap.state in TERMINAL_STATES)

            if bootstrap.state == NodeState.READY:
                self.entrypoint = self.resolver.resolve_bootstrap_address(bootstrap)
                self.store.annotate(entrypoint=str(self.entrypoint))
                self._emit(EntrypointResolved, node=bootstrap.name, address=str(self.entrypoint))

                validators = self._setup_validators()
                for node in validators:
                    if node.state == NodeState.PENDING:
                        pool.submit(self._run_node, node)
                self._pump(until=lambda: all(n.state in TERMINAL_STATES for n in validators))

        self._drain()
        return self._finish()

    def _finish(self) -> ClusterState:
        self._refresh_status()
        nodes = self.state.nodes.values()
        self._emit(
            ClusterSummary,
            status=self.state.status.value,
            ready=sum(1 for n in nodes if n.state == NodeState.READY),
            failed=sum(1 for n in nodes if n.state == NodeState.FAILED),
            stopped=sum(1 for n in nodes if n.state == NodeState.STOPPED),
            failures={n.name: n.error or "" for n in self.state.failed_nodes()},
        )
        self._persist()
        if self.cancel.is_set():
            raise CancellationError(f"shutdown requested, cluster left {self.state.status.value}")
        return self.state

    def request_shutdown(self, reason: str) -> None:
        """
        Only flags cancellation, so it is safe inside a signal handler: no
        locks, no events, no logging. Supervising tasks stop their own
        processes when they see the flag; ``teardown`` stops the rest.
        """
        if self._stop_reason is None:
            self._stop_reason = reason
        self.cancel.set()

    def shutdown(self, reason: str = "teardown", grace: Optional[float] = None) -> None:
        """
        Stops further launches and terminates every started process. Safe to
        call from any thread but not from a signal handler (see
        ``request_shutdown``). State is updated by the owning thread when the
        supervising tasks report back.
        """
        if not self._shutdown_announced:
            self._shutdown_announced = True
            reason = self._stop_reason or reason
            log.info("shutdown requested: %s", reason)
            self._emit(TeardownRequested, reason=reason)
        self.cancel.set()
        self.supervisor.terminate_all(grace)

    def exited_nodes(self) -> List[str]:
        """Ready nodes whose process has since exited."""
        exited = []
        for node in self.state.nodes.values():
            if node.state != NodeState.READY:
                continue
            handle = self.supervisor.handle_for(node.name)
            if handle is None or handle.poll() is not None:
                exited.append(node.name)
        return exited

    def teardown(self, grace: Optional[float] = None) -> ClusterState:
        """shutdown() plus marking every remaining node Stopped. Owner thread only."""
        self.shutdown(grace=grace)
        self._drain()
        for node in list(self.state.nodes.values()):
            if node.state not in (NodeState.FAILED, NodeState.STOPPED):
                self._set_state(node, NodeTransition(node.name, NodeState.STOPPED))
        if self.state.nodes:
            self._refresh_status()
        else:
            self.state.status = ClusterStatus.STOPPED
        self._persist()
        return self.state
