"""Application that counts how many times map tasks were run."""

from __future__ import annotations

import itertools
import os
import random
import time
from pathlib import Path

from mapraft.mr.worker import KeyValue

_MARKER_PREFIX = "mr-worker-jobcount"
_invocations = itertools.count()


def map_fn(filename: str, contents: str) -> list[KeyValue]:
    """Leave a marker file for this invocation, stall a while, emit one pair."""
    marker = Path(f"{_MARKER_PREFIX}-{os.getpid()}-{next(_invocations)}")
    marker.write_text("x")
    time.sleep((2000 + random.randrange(3000)) / 1000)
    return [KeyValue("a", "x")]


def reduce_fn(key: str, values: list[str]) -> str:
    """Return the number of marker files in the current directory."""
    return str(sum(1 for name in os.listdir(".") if name.startswith(_MARKER_PREFIX)))