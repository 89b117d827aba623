# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/network/adapter.py

from __future__ import annotations

from typing import List, Sequence

from ..config.models import NetworkMode

NO_PORT_CHECK_FLAG = "--no-port-check"


class NetworkModeAdapter:
    """
    Composes node launch arguments for the deployment's network mode.

    In overlay networks (e.g. docker swarm) a node cannot probe its own
    advertised ports, so the startup self-check is switched off. Bind and
    advertised ports are left exactly as given; only the abort-on-unreachable
    behaviour changes.
    """

    def flags_for(self, mode: NetworkMode) -> List[str]:
        if mode == NetworkMode.OVERLAY:
            return [NO_PORT_CHECK_FLAG]
        return []

    def adapt(self, base_args: Sequence[str], mode: NetworkMode) -> List[str]:
        args = list(base_args)
        for flag in self.flags_for(NetworkMode(mode)):
            if flag not in args:
                args.append(flag)
        return args
