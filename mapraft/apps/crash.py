"""Application that sometimes crashes or stalls, to exercise task recovery.

The nocrash variants produce the same output without ever crashing.
"""

from __future__ import annotations

import os
import secrets
import time

from mapraft.mr.worker import KeyValue


def maybe_crash(enabled: bool = True) -> int:
    """Roll a number in [0, 1000); when enabled, exit on a low roll or stall on a middle one.

    Returns the roll.
    """
    roll = secrets.randbelow(1000)
    if enabled:
        if roll < 330:
            os._exit(1)
        elif roll < 660:
            time.sleep(secrets.randbelow(10 * 1000) / 1000)
    return roll


def _pairs(filename: str, contents: str) -> list[KeyValue]:
    return [
        KeyValue("a", filename),
        KeyValue("b", str(len(filename.encode("utf-8")))),
        KeyValue("c", str(len(contents.encode("utf-8")))),
        KeyValue("d", "xyzzy"),
    ]


def _joined(values: list[str]) -> str:
    return " ".join(sorted(values))


def map_fn(filename: str, contents: str) -> list[KeyValue]:
    maybe_crash(True)
    return _pairs(filename, contents)


def reduce_fn(key: str, values: list[str]) -> str:
    """Return the values sorted and space-joined, for deterministic output."""
    maybe_crash(True)
    return _joined(values)


def nocrash_map_fn(filename: str, contents: str) -> list[KeyValue]:
    maybe_crash(False)
    return _pairs(filename, contents)


def nocrash_reduce_fn(key: str, values: list[str]) -> str:
    maybe_crash(False)
    return _joined(values)