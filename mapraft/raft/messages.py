"""Raft log entries, RPC arguments and replies, and persistent-state encoding."""

from __future__ import annotations

import pickle
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class StateType(IntEnum):
    FOLLOWER = 0
    CANDIDATE = 1
    LEADER = 2


@dataclass
class LogEntry:
    """A command together with the term in which the leader received it."""

    term: int = 0
    command: Any = None


@dataclass
class PersistentState:
    """The part of a peer's state that must survive a restart."""

    current_term: int = 0
    voted_for: int = -1
    log: list[LogEntry] = field(default_factory=list)
    last_included_index: int = 0
    last_included_term: int = 0


@dataclass
class AppendEntriesArgs:
    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesReply:
    term: int = 0
    success: bool = False
    conflict_index: int = 0
    conflict_term: int = 0
    conflict_len: int = 0


@dataclass
class InstallSnapshotArgs:
    term: int = 0
    leader_id: int = 0
    last_included_index: int = 0
    last_included_term: int = 0
    data: bytes = b""


@dataclass
class InstallSnapshotReply:
    term: int = 0


@dataclass
class RequestVoteArgs:
    candidate_id: int = 0
    current_term: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


_INT_FIELDS = ("current_term", "voted_for", "last_included_index", "last_included_term")


def encode_state(state: PersistentState) -> bytes:
    """Serialise persistent state to bytes."""
    payload = {name: int(getattr(state, name)) for name in _INT_FIELDS}
    payload["log"] = [(entry.term, entry.command) for entry in state.log]
    return pickle.dumps(payload, protocol=pickle.HIGHEST_PROTOCOL)


def decode_state(data: bytes) -> PersistentState:
    """Rebuild persistent state from encode_state output; raise ValueError if malformed."""
    try:
        payload = pickle.loads(data)
    except Exception as exc:
        raise ValueError(f"cannot decode persistent state: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("cannot decode persistent state: not a record")
    try:
        fields = {name: payload[name] for name in _INT_FIELDS}
        raw_log = payload["log"]
    except KeyError as exc:
        raise ValueError(f"cannot decode persistent state: missing {exc}") from exc
    if not all(isinstance(value, int) for value in fields.values()):
        raise ValueError("cannot decode persistent state: bad field type")
    try:
        log = [LogEntry(int(term), command) for term, command in raw_log]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"cannot decode persistent state: bad log: {exc}") from exc
    return PersistentState(log=log, **fields)