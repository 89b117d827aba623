# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/identity/provisioner.py

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ..cluster.models import NodeRole
from ..errors import IdentityError, IdentityReason
from ..utils.fs import atomic_write_text

log = logging.getLogger("valcluster")

_RAW = serialization.Encoding.Raw
_RAW_PUB = serialization.PublicFormat.Raw
_RAW_PRIV = serialization.PrivateFormat.Raw


@dataclass(frozen=True)
class NodeIdentity:
    role: NodeRole
    index: int
    keypair_path: Path
    public_key: str             # hex
    vote_keypair_path: Path
    vote_public_key: str        # hex

    @property
    def name(self) -> str:
        return f"{self.role.value}-{self.index}"


def _public_bytes(key: Ed25519PrivateKey) -> bytes:
    return key.public_key().public_bytes(_RAW, _RAW_PUB)


def _generate() -> bytes:
    """64-byte keypair: 32-byte seed followed by the 32-byte public key."""
    try:
        key = Ed25519PrivateKey.generate()
        seed = key.private_bytes(_RAW, _RAW_PRIV, serialization.NoEncryption())
    except (UnsupportedAlgorithm, ValueError) as e:
        raise IdentityError(f"Ed25519 key generation failed: {e}", IdentityReason.GENERATION_FAILED) from e
    return seed + _public_bytes(key)


def _read_keypair(path: Path) -> bytes:
    try:
        data = json.loads(path.read_text())
    except PermissionError as e:
        raise IdentityError(f"Cannot read keypair {path}: {e}", IdentityReason.WRITE_PERMISSION_DENIED) from e
    except (OSError, ValueError) as e:
        raise IdentityError(f"Corrupt keypair file {path}: {e}", IdentityReason.CORRUPT_EXISTING_FILE) from e

    if (
        not isinstance(data, list)
        or len(data) != 64
        or not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in data)
    ):
        raise IdentityError(
            f"Corrupt keypair file {path}: expected a JSON array of 64 bytes",
            IdentityReason.CORRUPT_EXISTING_FILE,
        )

    raw = bytes(data)
    derived = _public_bytes(Ed25519PrivateKey.from_private_bytes(raw[:32]))
    if derived != raw[32:]:
        raise IdentityError(
            f"Corrupt keypair file {path}: public key does not match seed",
            IdentityReason.CORRUPT_EXISTING_FILE,
        )
    return raw


def _write_keypair(path: Path, raw: bytes) -> None:
    try:
        atomic_write_text(path, json.dumps(list(raw)), mode=0o600)
    except PermissionError as e:
        raise IdentityError(f"Cannot write keypair {path}: {e}", IdentityReason.WRITE_PERMISSION_DENIED) from e
    except OSError as e:
        raise IdentityError(f"Cannot write keypair {path}: {e}", IdentityReason.GENERATION_FAILED) from e


class IdentityProvisioner:
    """
    Hands out node identities stored at ``<base_dir>/identities/<role>-<index>.json``.

    Provisioning is idempotent: an identity that already exists on disk is
    loaded as-is and never rotated.
    """

    def __init__(self, base_dir: Path):
        self.identity_dir = Path(base_dir) / "identities"

    def keypair_path(self, role: NodeRole, index: int) -> Path:
        return self.identity_dir / f"{role.value}-{index}.json"

    def vote_keypair_path(self, role: NodeRole, index: int) -> Path:
        return self.identity_dir / f"{role.value}-{index}-vote.json"

    def _load_or_create(self, path: Path) -> bytes:
        if path.exists():
            log.debug("reusing keypair %s", path)
            return _read_keypair(path)
        raw = _generate()
        _write_keypair(path, raw)
        log.debug("generated keypair %s", path)
        return raw

    def provision(self, role: NodeRole, index: int) -> NodeIdentity:
        node_key = self._load_or_create(self.keypair_path(role, index))
        vote_key = self._load_or_create(self.vote_keypair_path(role, index))
        identity = NodeIdentity(
            role=role,
            index=index,
            keypair_path=self.keypair_path(role, index),
            public_key=node_key[32:].hex(),
            vote_keypair_path=self.vote_keypair_path(role, index),
            vote_public_key=vote_key[32:].hex(),
        )
        log.info("identity %s pubkey=%s", identity.name, identity.public_key)
        return identity
