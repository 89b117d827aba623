# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/state/store.py

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..cluster.models import ClusterState, ClusterStatus, NodeState
from ..observers.events import now_ts
from ..errors import StateFileError
from ..utils.fs import atomic_write_text
from ..utils.serialize import to_jsonable

log = logging.getLogger("valcluster")


def snapshot(state: ClusterState, **extra: Any) -> Dict[str, Any]:
    nodes = []
    for n in sorted(state.nodes.values(), key=lambda n: (not n.is_bootstrap, n.index)):
        nodes.append({
            "name": n.name,
            "role": n.role,
            "index": n.index,
            "state": n.state,
            "pid": n.pid,
            "gossip_address": str(n.gossip_address) if n.gossip_address else None,
            "rpc_port": n.rpc_port,
            "public_key": n.identity.public_key if n.identity else None,
            "ledger_dir": n.ledger_dir,
            "log_path": n.log_path,
            "attempts": n.attempt.count if n.attempt else None,
            "error": n.error,
        })
    return to_jsonable({"status": state.status, "updated_at": now_ts(), "nodes": nodes, **extra})


class ClusterStateStore:
    """
    JSON copy of the ClusterState at ``<base_dir>/cluster-state.json`` so that
    ``status`` and ``teardown`` can run from a separate invocation.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._extra: Dict[str, Any] = {}

    def annotate(self, **extra: Any) -> None:
        self._extra.update(extra)

    def save(self, state: ClusterState) -> None:
        atomic_write_text(self.path, json.dumps(snapshot(state, **self._extra), indent=2) + "\n")

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise StateFileError(f"Cannot read cluster state {self.path}: {e}") from e
        nodes = data.get("nodes", []) if isinstance(data, dict) else None
        if not isinstance(nodes, list) or not all(isinstance(n, dict) for n in nodes):
            raise StateFileError(f"Cluster state {self.path} is not a cluster state document")
        return data

    def pids(self) -> List[int]:
        data = self.load() or {}
        return [n["pid"] for n in data.get("nodes", []) if n.get("pid")]

    def mark_stopped(self) -> None:
        data = self.load()
        if data is None:
            return
        for n in data.get("nodes", []):
            if n.get("state") != NodeState.FAILED.value:
                n["state"] = NodeState.STOPPED.value
            n["pid"] = None
        data["status"] = ClusterStatus.STOPPED.value
        data["updated_at"] = now_ts()
        atomic_write_text(self.path, json.dumps(data, indent=2) + "\n")
        log.debug("marked %s stopped", self.path)
