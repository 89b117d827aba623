# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/cluster/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from ..identity.provisioner import NodeIdentity
    from ..network.entrypoint import Address


class NodeRole(str, Enum):
    BOOTSTRAP = "bootstrap"
    VALIDATOR = "validator"


class NodeState(str, Enum):
    PENDING = "Pending"
    LAUNCHING = "Launching"
    AWAITING_READY = "AwaitingReady"
    READY = "Ready"
    RETRYING = "Retrying"
    FAILED = "Failed"
    STOPPED = "Stopped"


class ClusterStatus(str, Enum):
    BOOTSTRAPPING = "Bootstrapping"
    CONVERGING = "Converging"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    STOPPED = "Stopped"


TERMINAL_STATES = frozenset({NodeState.READY, NodeState.FAILED, NodeState.STOPPED})

# state -> states it may move to
ALLOWED_TRANSITIONS: Dict[NodeState, frozenset] = {
    NodeState.PENDING: frozenset({NodeState.LAUNCHING, NodeState.FAILED, NodeState.STOPPED}),
    NodeState.LAUNCHING: frozenset({NodeState.AWAITING_READY, NodeState.RETRYING, NodeState.FAILED, NodeState.STOPPED}),
    NodeState.AWAITING_READY: frozenset({NodeState.READY, NodeState.RETRYING, NodeState.FAILED, NodeState.STOPPED}),
    NodeState.RETRYING: frozenset({NodeState.LAUNCHING, NodeState.FAILED, NodeState.STOPPED}),
    NodeState.READY: frozenset({NodeState.STOPPED}),
    NodeState.FAILED: frozenset({NodeState.STOPPED}),
    NodeState.STOPPED: frozenset(),
}


class InvalidTransition(ValueError):
    pass


@dataclass
class StartupAttempt:
    count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[float] = None     # monotonic deadline of the next launch


@dataclass
class Node:
    """
    One managed validator process. Only ClusterBootstrapper mutates these.
    """
    name: str
    role: NodeRole
    index: int
    identity: Optional["NodeIdentity"] = None
    ledger_dir: Optional[Path] = None
    launch_args: List[str] = field(default_factory=list)
    state: NodeState = NodeState.PENDING
    pid: Optional[int] = None
    gossip_address: Optional["Address"] = None
    rpc_port: Optional[int] = None
    log_path: Optional[Path] = None
    attempt: Optional[StartupAttempt] = None
    error: Optional[str] = None

    @property
    def is_bootstrap(self) -> bool:
        return self.role == NodeRole.BOOTSTRAP

    @property
    def init_complete_file(self) -> Optional[Path]:
        return self.ledger_dir / "init-complete" if self.ledger_dir else None

    def transition(self, new_state: NodeState) -> None:
        if new_state == self.state:
            return
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.name}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state in TERMINAL_STATES:
            # retry bookkeeping is only kept while the node is still starting
            self.attempt = None


@dataclass(frozen=True)
class NodeTransition:
    """Message posted by a supervising task; applied by the bootstrapper."""
    node: str
    state: NodeState
    attempt: int = 0
    error: Optional[str] = None
    pid: Optional[int] = None
    next_attempt_at: Optional[float] = None


def aggregate_status(nodes: Dict[str, Node]) -> ClusterStatus:
    bootstrap = next((n for n in nodes.values() if n.is_bootstrap), None)
    if bootstrap is None or bootstrap.state in (NodeState.PENDING, NodeState.LAUNCHING,
                                                NodeState.AWAITING_READY, NodeState.RETRYING):
        return ClusterStatus.BOOTSTRAPPING
    if bootstrap.state == NodeState.FAILED:
        return ClusterStatus.FAILED
    if bootstrap.state == NodeState.STOPPED:
        return ClusterStatus.STOPPED

    validators = [n for n in nodes.values() if not n.is_bootstrap]
    if any(n.state not in TERMINAL_STATES for n in validators):
        return ClusterStatus.CONVERGING
    if any(n.state == NodeState.STOPPED for n in validators):
        return ClusterStatus.STOPPED
    if any(n.state == NodeState.FAILED for n in validators):
        return ClusterStatus.DEGRADED
    return ClusterStatus.HEALTHY


@dataclass
class ClusterState:
    nodes: Dict[str, Node] = field(default_factory=dict)
    status: ClusterStatus = ClusterStatus.BOOTSTRAPPING

    def add(self, node: Node) -> Node:
        self.nodes[node.name] = node
        self.refresh()
        return node

    def refresh(self) -> ClusterStatus:
        self.status = aggregate_status(self.nodes)
        return self.status

    @property
    def bootstrap(self) -> Optional[Node]:
        return next((n for n in self.nodes.values() if n.is_bootstrap), None)

    @property
    def validators(self) -> List[Node]:
        return sorted((n for n in self.nodes.values() if not n.is_bootstrap), key=lambda n: n.index)

    def failed_nodes(self) -> List[Node]:
        return [n for n in self.nodes.values() if n.state == NodeState.FAILED]

    def failure_summary(self) -> str:
        lines = [f"{n.name}: {n.error or 'failed'}" for n in self.failed_nodes()]
        return "\n".join(lines)
