# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valcluster/observers/interface.py

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .events import BaseEvent


@runtime_checkable
class Observer(Protocol):
    """Anything with ``notify``; called on the thread that emits, in emit order."""

    def notify(self, event: BaseEvent) -> None: ...
