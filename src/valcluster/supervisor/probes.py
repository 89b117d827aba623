# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/supervisor/probes.py

from __future__ import annotations

import logging
from typing import Protocol

import requests

from ..cluster.models import Node

log = logging.getLogger("valcluster")


class ReadinessProbe(Protocol):
    def __call__(self, node: Node) -> bool: ...


class InitCompleteFileProbe:
    """
    Ready once the validator has created the file passed via
    ``--init-complete-file`` (written after ledger load and gossip start).
    """

    def __call__(self, node: Node) -> bool:
        marker = node.init_complete_file
        return marker is not None and marker.exists()


class RpcHealthProbe:
    """Ready once JSON-RPC ``getHealth`` on the node's RPC port answers "ok"."""

    def __init__(self, host: str = "127.0.0.1", timeout: float = 2.0):
        self.host = host
        self.timeout = timeout

    def __call__(self, node: Node) -> bool:
        if node.rpc_port is None:
            return False
        url = f"http://{self.host}:{node.rpc_port}"
        try:
            resp = requests.post(
                url,
                json={"jsonrpc": "2.0", "id": 1, "method": "getHealth"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            log.debug("%s: health probe %s not ready: %s", node.name, url, e)
            return False
        return isinstance(body, dict) and body.get("result") == "ok"


def probe_for(kind: str) -> ReadinessProbe:
    if kind == "rpc_health":
        return RpcHealthProbe()
    if kind == "init_file":
        return InitCompleteFileProbe()
    raise ValueError(f"unknown readiness probe: {kind}")
