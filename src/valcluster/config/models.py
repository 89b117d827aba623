# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/config/models.py

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NetworkMode(str, Enum):
    DIRECT = "direct"
    OVERLAY = "overlay"


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value) -> float:
    """
    Accepts plain numbers (seconds) or strings like "500ms", "30s", "2m".
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        m = _DURATION_RE.match(value)
        if m:
            return float(m.group(1)) * _DURATION_UNITS[m.group(2) or "s"]
    raise ValueError(f"invalid duration: {value!r}")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class GenesisParams(_Frozen):
    cluster_type: Literal["development", "devnet", "testnet", "mainnet-beta"] = "development"
    cluster_lamports: int = Field(default=500_000_000_000_000, ge=0)   # initial token supply
    bootstrap_stake_lamports: int = Field(default=10_000_000_000, ge=0)
    validator_stake_lamports: int = Field(default=10_000_000_000, ge=0)
    ticks_per_slot: int = Field(default=64, ge=1)
    slots_per_epoch: int = Field(default=8192, ge=1)
    shard_count: int = Field(default=1, ge=1)
    account_presets: Dict[str, int] = Field(default_factory=dict)
    creation_time: int = 0                                               # fixed, keeps genesis deterministic
    prebaked_snapshot: Optional[Path] = None


class BackoffSettings(_Frozen):
    initial: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max: float = Field(default=30.0, ge=0)

    @field_validator("initial", "max", mode="before")
    @classmethod
    def _duration(cls, v):
        return parse_duration(v)


class PortPlan(_Frozen):
    """
    Slot i (bootstrap = 0, validator-i = i) gets ports offset by i * stride.

    A node binds its dynamic sockets from the bottom of its range, so the
    dynamic ranges sit above every gossip and RPC port by default.
    """
    gossip_base: int = Field(default=8001, gt=0, lt=65536)
    rpc_base: int = Field(default=8899, gt=0, lt=65536)
    dynamic_range_base: int = Field(default=20000, gt=0, lt=65536)
    dynamic_range_size: int = Field(default=30, ge=1)
    stride: int = Field(default=100, ge=0)

    def gossip_port(self, slot: int) -> int:
        return self.gossip_base + slot * self.stride

    def rpc_port(self, slot: int) -> int:
        return self.rpc_base + slot * self.stride

    def dynamic_range(self, slot: int) -> tuple[int, int]:
        start = self.dynamic_range_base + slot * self.stride
        return start, start + self.dynamic_range_size

    def fixed_ports(self, slot: int) -> Dict[str, int]:
        # rpc + 1 is the node's pubsub websocket
        rpc = self.rpc_port(slot)
        return {"gossip": self.gossip_port(slot), "rpc": rpc, "rpc pubsub": rpc + 1}

    def conflicts(self, slots: int) -> List[str]:
        """Port clashes between node slots 0..slots-1; empty when the plan is usable."""
        problems: List[str] = []
        ranges = [self.dynamic_range(s) for s in range(slots)]
        owners: Dict[int, str] = {}

        for slot in range(slots):
            lo, hi = ranges[slot]
            if hi > 65535:
                problems.append(f"slot {slot}: dynamic range {lo}-{hi} goes past 65535")
            for other in range(slot):
                olo, ohi = ranges[other]
                if lo <= ohi and olo <= hi:
                    problems.append(f"slot {slot}: dynamic range {lo}-{hi} overlaps slot {other} ({olo}-{ohi})")

            for kind, port in self.fixed_ports(slot).items():
                label = f"slot {slot} {kind} port {port}"
                if port > 65535:
                    problems.append(f"{label} goes past 65535")
                if port in owners:
                    problems.append(f"{label} is also {owners[port]}")
                owners[port] = label
                for other, (olo, ohi) in enumerate(ranges):
                    if olo <= port <= ohi:
                        problems.append(f"{label} is inside slot {other}'s dynamic range {olo}-{ohi}")
        return problems


class ResourceLimits(_Frozen):
    max_open_files: Optional[int] = Field(default=None, ge=1)
    max_memory_mb: Optional[int] = Field(default=None, ge=1)


class ClusterConfig(_Frozen):
    node_count: int = Field(ge=0)          # validators in addition to the bootstrap node
    executable_path: Path
    base_dir: Path
    network_mode: NetworkMode = NetworkMode.DIRECT
    genesis_params: GenesisParams = GenesisParams()
    max_startup_retries: int = Field(default=3, ge=1)
    readiness_timeout: float = Field(default=60.0, gt=0)
    readiness_poll_interval: float = Field(default=0.5, gt=0)
    readiness_probe: Literal["init_file", "rpc_health"] = "init_file"
    backoff: BackoffSettings = BackoffSettings()
    shutdown_grace: float = Field(default=10.0, ge=0)
    bootstrap_host: str = "127.0.0.1"
    ports: PortPlan = PortPlan()
    resource_limits: Optional[ResourceLimits] = None
    extra_args: List[str] = Field(default_factory=list)

    @field_validator("readiness_timeout", "readiness_poll_interval", "shutdown_grace", mode="before")
    @classmethod
    def _duration(cls, v):
        return parse_duration(v)

    @model_validator(mode="after")
    def _ports_fit(self):
        problems = self.ports.conflicts(self.node_count + 1)
        if problems:
            raise ValueError("port plan does not fit the cluster: " + "; ".join(problems[:5]))
        return self

    @property
    def state_file(self) -> Path:
        return self.base_dir / "cluster-state.json"

    @property
    def log_dir(self) -> Path:
        return self.base_dir / "logs"
