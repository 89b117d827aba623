# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/valcluster/logging/log.py

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

FILE_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)-7s | %(threadName)-12s | %(message)s"
CONSOLE_FORMAT = "%(levelname)-7s %(message)s"

# chatty libraries that only matter at DEBUG
_NOISY = ("urllib3", "requests")


def _reset(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "valcluster",
    verbose: bool = False,
    run_id: str | None = None,
) -> tuple[logging.Logger, str, Path]:
    """
    One log file per invocation at ``<base_dir>/<name>-<utc ts>-<run_id>.log``
    holding everything down to DEBUG, including which supervising thread
    logged each line. The console only gets INFO unless *verbose*.

    Calling it again replaces the handlers of the previous run.
    """
    run_id = run_id or str(uuid.uuid4())
    base_dir = Path(base_dir) if base_dir else Path.home() / ".valcluster" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    _reset(logger)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(ch)

    for lib in _NOISY:
        logging.getLogger(lib).setLevel(logging.DEBUG if verbose else logging.WARNING)

    logger.debug("run_id=%s log_file=%s", run_id, log_path)
    return logger, run_id, log_path
