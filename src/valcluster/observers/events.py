# src/valcluster/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp, microsecond resolution
    run_id: str       # correlates all events of one launch/teardown invocation
    cluster: str      # base data directory of the cluster

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_ts() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now_ts(),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


# ---------------------------------------------------------------------
# Setup phase
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ClusterLaunchStarted(BaseEvent):
    node_count: int
    network_mode: str

@dataclass(frozen=True)
class IdentityProvisioned(BaseEvent):
    node: str
    public_key: str

@dataclass(frozen=True)
class IdentityFailed(BaseEvent):
    node: str
    reason: str
    error: str

@dataclass(frozen=True)
class GenesisReady(BaseEvent):
    genesis_hash: str
    snapshot: str

@dataclass(frozen=True)
class GenesisFailed(BaseEvent):
    node: Optional[str]     # None when the shared snapshot itself failed
    reason: str
    error: str


# ---------------------------------------------------------------------
# Node lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NodeCreated(BaseEvent):
    node: str
    role: str
    launch_args: list = field(default_factory=list)

@dataclass(frozen=True)
class NodeStateChanged(BaseEvent):
    node: str
    role: str
    old: str
    new: str
    attempt: int = 0
    pid: Optional[int] = None
    error: Optional[str] = None

@dataclass(frozen=True)
class EntrypointResolved(BaseEvent):
    node: str
    address: str


# ---------------------------------------------------------------------
# Cluster status & summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ClusterStatusChanged(BaseEvent):
    old: str
    new: str

@dataclass(frozen=True)
class TeardownRequested(BaseEvent):
    reason: str

@dataclass(frozen=True)
class ClusterSummary(BaseEvent):
    status: str
    ready: int
    failed: int
    stopped: int
    failures: Dict[str, str] = field(default_factory=dict)
