# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/genesis/builder.py

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List

from ..cluster.models import NodeRole
from ..config.models import ClusterConfig
from ..errors import GenesisError, GenesisReason
from ..identity.provisioner import NodeIdentity
from ..utils.fs import atomic_write_bytes, atomic_write_text

log = logging.getLogger("valcluster")

SNAPSHOT_NAME = "genesis.json"
HASH_MARKER = "genesis.hash"


def genesis_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class GenesisLedger:
    snapshot_path: Path
    genesis_hash: str
    ledger_root: Path

    def ledger_dir(self, node_name: str) -> Path:
        return self.ledger_root / node_name

    def prepare_node_ledger(self, node_name: str) -> Path:
        """
        Create (or verify) the working ledger directory of one node.

        A directory seeded from a different genesis is reported, never reset.
        """
        ledger = self.ledger_dir(node_name)
        marker = ledger / HASH_MARKER
        if marker.exists():
            existing = marker.read_text().strip()
            if existing != self.genesis_hash:
                raise GenesisError(
                    f"Ledger {ledger} was created from genesis {existing}, "
                    f"current genesis is {self.genesis_hash}",
                    GenesisReason.INCOMPATIBLE_EXISTING_LEDGER,
                )
            return ledger
        if ledger.exists() and any(p.name != "init-complete" for p in ledger.iterdir()):
            raise GenesisError(
                f"Ledger {ledger} exists without a genesis marker; refusing to reuse it",
                GenesisReason.INCOMPATIBLE_EXISTING_LEDGER,
            )

        try:
            ledger.mkdir(parents=True, exist_ok=True)
            atomic_write_bytes(ledger / SNAPSHOT_NAME, self.snapshot_path.read_bytes(), mode=0o444)
            atomic_write_text(ledger / HASH_MARKER, self.genesis_hash + "\n")
        except OSError as e:
            raise GenesisError(f"Cannot seed ledger {ledger}: {e}", GenesisReason.SNAPSHOT_WRITE_FAILED) from e
        log.debug("seeded ledger %s", ledger)
        return ledger


def _stake_for(identity: NodeIdentity, config: ClusterConfig) -> int:
    params = config.genesis_params
    if identity.role == NodeRole.BOOTSTRAP:
        return params.bootstrap_stake_lamports
    return params.validator_stake_lamports


def render_genesis(config: ClusterConfig, identities: Iterable[NodeIdentity]) -> bytes:
    """
    Canonical genesis document. Identical config and identity set give
    identical bytes: keys are sorted and nothing time- or host-dependent
    is included.
    """
    params = config.genesis_params
    ordered: List[NodeIdentity] = sorted(
        identities, key=lambda i: (i.role != NodeRole.BOOTSTRAP, i.index)
    )
    validators = [
        {
            "name": i.name,
            "identity": i.public_key,
            "vote_account": i.vote_public_key,
            "stake_lamports": _stake_for(i, config),
        }
        for i in ordered
    ]
    staked = sum(v["stake_lamports"] for v in validators)
    presets = sum(params.account_presets.values())
    if staked + presets > params.cluster_lamports:
        raise GenesisError(
            f"Genesis allocates {staked + presets} lamports but cluster_lamports is {params.cluster_lamports}",
            GenesisReason.SNAPSHOT_WRITE_FAILED,
        )

    doc = {
        "cluster_type": params.cluster_type,
        "creation_time": params.creation_time,
        "ticks_per_slot": params.ticks_per_slot,
        "slots_per_epoch": params.slots_per_epoch,
        "shard_count": params.shard_count,
        "accounts": dict(sorted(params.account_presets.items())),
        "mint_lamports": params.cluster_lamports - staked - presets,
        "validators": validators,
    }
    return json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")


class GenesisBuilder:
    """
    Produces the shared genesis snapshot at ``<base_dir>/genesis/genesis.json``.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.snapshot_path = self.base_dir / "genesis" / SNAPSHOT_NAME
        self.ledger_root = self.base_dir / "ledger"

    def recorded_validators(self) -> Dict[str, Dict[str, Any]]:
        """
        Validator entries of the existing snapshot by node name, or {} when
        there is none or it is not a document this builder rendered.
        """
        try:
            doc = json.loads(self.snapshot_path.read_bytes())
        except (OSError, ValueError):
            return {}
        if not isinstance(doc, dict) or not isinstance(doc.get("validators"), list):
            return {}
        return {v["name"]: v for v in doc["validators"] if isinstance(v, dict) and "name" in v}

    def _render(self, config: ClusterConfig, identities: Iterable[NodeIdentity]) -> bytes:
        prebaked = config.genesis_params.prebaked_snapshot
        if prebaked is None:
            return render_genesis(config, identities)
        try:
            return Path(prebaked).read_bytes()
        except OSError as e:
            raise GenesisError(
                f"Cannot read pre-baked genesis {prebaked}: {e}", GenesisReason.SNAPSHOT_WRITE_FAILED
            ) from e

    def build_or_reuse(self, config: ClusterConfig, identities: Iterable[NodeIdentity]) -> GenesisLedger:
        data = self._render(config, identities)
        digest = genesis_hash(data)

        if self.snapshot_path.exists():
            existing = genesis_hash(self.snapshot_path.read_bytes())
            if existing != digest:
                raise GenesisError(
                    f"Existing genesis {self.snapshot_path} ({existing}) does not match "
                    f"the current genesis parameters ({digest})",
                    GenesisReason.INCOMPATIBLE_EXISTING_LEDGER,
                )
            log.info("reusing genesis %s hash=%s", self.snapshot_path, digest)
        else:
            try:
                atomic_write_bytes(self.snapshot_path, data, mode=0o444)
            except OSError as e:
                raise GenesisError(
                    f"Cannot write genesis {self.snapshot_path}: {e}", GenesisReason.SNAPSHOT_WRITE_FAILED
                ) from e
            log.info("created genesis %s hash=%s", self.snapshot_path, digest)

        return GenesisLedger(
            snapshot_path=self.snapshot_path,
            genesis_hash=digest,
            ledger_root=self.ledger_root,
        )


