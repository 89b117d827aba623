# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/cluster/launch_args.py

from __future__ import annotations

from typing import List, Optional

from ..config.models import ClusterConfig
from ..genesis.builder import GenesisLedger
from ..network.entrypoint import Address
from .models import Node


def build_base_args(
    config: ClusterConfig,
    node: Node,
    genesis: GenesisLedger,
    entrypoint: Optional[Address] = None,
) -> List[str]:
    """
    Command line for one validator process, before network-mode flags.
    """
    if node.identity is None or node.ledger_dir is None:
        raise ValueError(f"{node.name} has no identity or ledger yet")

    slot = node.index
    lo, hi = config.ports.dynamic_range(slot)
    argv = [
        str(config.executable_path),
        "--identity", str(node.identity.keypair_path),
        "--vote-account", str(node.identity.vote_keypair_path),
        "--ledger", str(node.ledger_dir),
        "--gossip-port", str(config.ports.gossip_port(slot)),
        "--rpc-port", str(config.ports.rpc_port(slot)),
        "--dynamic-port-range", f"{lo}-{hi}",
        "--init-complete-file", str(node.init_complete_file),
        "--expected-genesis-hash", genesis.genesis_hash,
        "--log", "-",
    ]
    argv.extend(config.extra_args)

    if not node.is_bootstrap:
        if entrypoint is None:
            raise ValueError(f"{node.name} needs the bootstrap gossip entrypoint")
        argv.extend(["--entrypoint", str(entrypoint)])
    return argv
