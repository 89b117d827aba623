# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/network/entrypoint.py

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..cluster.models import Node, NodeState
from ..errors import ResolutionError, ResolutionReason

log = logging.getLogger("valcluster")


@dataclass(frozen=True)
class Address:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class GossipEntrypointResolver:
    """
    Works out the gossip address validators dial to join the cluster.
    Only valid once the bootstrap node is Ready.
    """

    def resolve_bootstrap_address(self, node: Node) -> Address:
        if node.state != NodeState.READY:
            raise ResolutionError(
                f"{node.name} is {node.state.value}; entrypoint is only known once it is Ready",
                ResolutionReason.NOT_YET_READY,
            )
        addr = node.gossip_address
        if addr is None or not addr.host or not (0 < addr.port < 65536):
            raise ResolutionError(
                f"{node.name} has no usable gossip address ({addr})",
                ResolutionReason.ADDRESS_UNAVAILABLE,
            )
        log.info("gossip entrypoint resolved: %s", addr)
        return addr
