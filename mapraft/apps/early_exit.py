"""Application whose reducers sometimes stall, to catch workers exiting early."""

from __future__ import annotations

import time

from mapraft.mr.worker import KeyValue

_SLOW_KEYS = ("sherlock", "tom")
_SLOW_SECONDS = 3


def map_fn(filename: str, contents: str) -> list[KeyValue]:
    """Emit (filename, "1") once per input file."""
    return [KeyValue(filename, "1")]


def reduce_fn(key: str, values: list[str]) -> str:
    """Return the number of occurrences, stalling for some keys."""
    if any(part in key for part in _SLOW_KEYS):
        time.sleep(_SLOW_SECONDS)
    return str(len(values))