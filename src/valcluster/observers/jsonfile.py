# src/valcluster/observers/jsonfile.py
from __future__ import annotations

import itertools
import json
import threading
from pathlib import Path

from ..utils.serialize import to_jsonable
from .events import BaseEvent
from .interface import Observer


class JsonFileObserver(Observer):
    """
    Timestamped event log: one JSON object per line, numbered by ``seq`` in
    emit order so orderings can be checked after the run.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self._fh = None

    def notify(self, event: BaseEvent) -> None:
        with self._lock:
            if self._fh is None:
                self._fh = self.path.open("a", buffering=1)
            record = {"seq": next(self._seq), "type": event.__class__.__name__, **to_jsonable(event.dict())}
            self._fh.write(json.dumps(record) + "\n")

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
