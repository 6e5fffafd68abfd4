"""Applications that check whether map or reduce tasks run in parallel."""

from __future__ import annotations

import os
import re
import time
from pathlib import Path

from mapraft.mr.worker import KeyValue


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def nparallel(phase: str) -> int:
    """Count live workers currently in phase, including this one.

    Each worker leaves a marker file named after its pid for about a second,
    and counts the markers whose process still exists.
    """
    marker = Path(f"mr-worker-{phase}-{os.getpid()}")
    marker.write_text("x")

    pattern = re.compile(rf"mr-worker-{re.escape(phase)}-([+-]?\d+)")
    running = 0
    for name in os.listdir("."):
        match = pattern.match(name)
        if match and _alive(int(match.group(1))):
            running += 1

    time.sleep(1)
    marker.unlink()
    return running


def mtiming_map_fn(filename: str, contents: str) -> list[KeyValue]:
    """Emit this worker's start time and how many map workers ran alongside it."""
    started = time.time()
    pid = os.getpid()
    n = nparallel("map")
    return [
        KeyValue(f"times-{pid}", f"{started:.1f}"),
        KeyValue(f"parallel-{pid}", str(n)),
    ]


def mtiming_reduce_fn(key: str, values: list[str]) -> str:
    return " ".join(sorted(values))


def rtiming_map_fn(filename: str, contents: str) -> list[KeyValue]:
    """Emit ("a".."j", "1") so that several reduce tasks get work."""
    return [KeyValue(key, "1") for key in "abcdefghij"]


def rtiming_reduce_fn(key: str, values: list[str]) -> str:
    """Return how many reduce workers ran alongside this one."""
    return str(nparallel("reduce"))