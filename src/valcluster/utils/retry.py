# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import threading


def backoff_delay(attempt: int, *, initial: float, factor: float, maximum: float) -> float:
    """
    Delay to wait after failed attempt number *attempt* (1-based):
    initial, initial*factor, initial*factor**2, ... capped at maximum.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(initial * (factor ** (attempt - 1)), maximum)


def sleep_unless_cancelled(cancel: threading.Event, seconds: float) -> bool:
    """
    Sleep for *seconds* or until *cancel* is set.
    Returns True when the full delay elapsed, False when cancelled.
    """
    if seconds <= 0:
        return not cancel.is_set()
    return not cancel.wait(seconds)
