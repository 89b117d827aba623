# src/valcluster/observers/logger.py
from __future__ import annotations

import logging

from .events import BaseEvent, GenesisFailed, IdentityFailed, NodeStateChanged

_CONTEXT = ("ts", "run_id", "cluster")


class LoggerObserver:
    """Mirrors events into the run log; failures at WARNING/ERROR."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _level(self, event: BaseEvent) -> int:
        if isinstance(event, (IdentityFailed, GenesisFailed)):
            return logging.ERROR
        if isinstance(event, NodeStateChanged) and event.new in ("Failed", "Retrying"):
            return logging.WARNING
        return logging.INFO

    def notify(self, event: BaseEvent) -> None:
        fields = ", ".join(f"{k}={v}" for k, v in event.dict().items() if k not in _CONTEXT and v is not None)
        self.logger.log(self._level(event), "[EVENT] %s: %s", event.__class__.__name__, fields)
