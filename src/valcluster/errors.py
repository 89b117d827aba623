# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/errors.py
from __future__ import annotations

from enum import Enum
from typing import Optional


class ValclusterError(RuntimeError):
    """Base class for cluster orchestration failures."""

    reason: Optional[Enum] = None

    def __init__(self, message: str, reason: Optional[Enum] = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class ConfigReason(str, Enum):
    MISSING_EXECUTABLE = "MissingExecutable"
    INVALID_NODE_COUNT = "InvalidNodeCount"
    UNKNOWN_NETWORK_MODE = "UnknownNetworkMode"
    MALFORMED_FILE = "MalformedFile"
    INVALID_VALUE = "InvalidValue"


class IdentityReason(str, Enum):
    GENERATION_FAILED = "GenerationFailed"
    CORRUPT_EXISTING_FILE = "CorruptExistingFile"
    WRITE_PERMISSION_DENIED = "WritePermissionDenied"


class GenesisReason(str, Enum):
    SNAPSHOT_WRITE_FAILED = "SnapshotWriteFailed"
    INCOMPATIBLE_EXISTING_LEDGER = "IncompatibleExistingLedger"


class ResolutionReason(str, Enum):
    NOT_YET_READY = "NotYetReady"
    ADDRESS_UNAVAILABLE = "AddressUnavailable"


class ConfigError(ValclusterError):
    """Raised when the cluster config cannot be loaded. Always fatal."""


class IdentityError(ValclusterError):
    """Raised when a node keypair cannot be generated, read or written."""


class GenesisError(ValclusterError):
    """Raised when the genesis snapshot or a node ledger cannot be prepared."""


class ResolutionError(ValclusterError):
    """Raised when the gossip entrypoint is requested out of order."""


class NodeStartupError(ValclusterError):
    """A single launch attempt did not reach readiness."""


class CancellationError(ValclusterError):
    """Raised when a shutdown was requested while the cluster was starting."""


class StateFileError(ValclusterError):
    """Raised when the persisted cluster state cannot be read back."""
