"""Interface a Raft peer offers to its service, and the messages it sends up."""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass
from typing import Any

DEBUG = False

_log = logging.getLogger(__name__)


@dataclass
class ApplyMsg:
    """A committed command or an installed snapshot delivered to the service.

    command_valid marks a newly committed log entry; snapshot_valid marks a
    snapshot the service should switch to.
    """

    command_valid: bool = False
    command: Any = None
    command_index: int = 0

    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0


class RaftPeer(abc.ABC):
    """What a Raft peer exposes to the service built on top of it."""

    @abc.abstractmethod
    def start(self, command: Any) -> tuple[int, int, bool]:
        """Begin agreement on command; return (index, term, is_leader)."""

    @abc.abstractmethod
    def get_state(self) -> tuple[int, bool]:
        """Return the current term and whether this peer believes it leads."""

    @abc.abstractmethod
    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Let the peer discard its log up to and including index."""

    @abc.abstractmethod
    def persist_bytes(self) -> int:
        """Return the size of the persisted Raft state."""

    @abc.abstractmethod
    def kill(self) -> None:
        """Ask the peer to stop its background work."""


class MemoryStorage:
    """Thread-safe in-memory holder of a peer's persisted state and snapshot."""

    def __init__(self, raft_state: bytes = b"", snapshot: bytes = b""):
        self._lock = threading.Lock()
        self._raft_state = bytes(raft_state)
        self._snapshot = bytes(snapshot)

    def save(self, raft_state: bytes | None, snapshot: bytes | None) -> None:
        """Replace both the Raft state and the snapshot in one step."""
        with self._lock:
            self._raft_state = bytes(raft_state or b"")
            self._snapshot = bytes(snapshot or b"")

    def read_raft_state(self) -> bytes:
        with self._lock:
            return self._raft_state

    def read_snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def raft_state_size(self) -> int:
        with self._lock:
            return len(self._raft_state)


def dprintf(fmt: str, *args: Any) -> None:
    """Log a %-formatted debugging message when DEBUG is on."""
    if DEBUG:
        _log.info(fmt % args if args else fmt)