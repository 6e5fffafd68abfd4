"""A single Raft peer: leader election, log replication and snapshots."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from typing import Any, Protocol, Sequence

from mapraft.raft.api import ApplyMsg, MemoryStorage, RaftPeer
from mapraft.raft.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    InstallSnapshotArgs,
    InstallSnapshotReply,
    LogEntry,
    PersistentState,
    RequestVoteArgs,
    RequestVoteReply,
    StateType,
    decode_state,
    encode_state,
)

_log = logging.getLogger(__name__)

ELECTION_TIMEOUT_MIN_MS = 150
ELECTION_TIMEOUT_MAX_MS = 300
HEARTBEAT_INTERVAL = 0.025
APPLY_INTERVAL = 0.01


class PeerEnd(Protocol):
    """Endpoint of another peer: returns the reply, or None if the call was lost."""

    def call(self, method: str, args: Any) -> Any: ...


class Raft(RaftPeer):
    """One Raft peer. Construct it, then call run() to start its background threads."""

    def __init__(
        self,
        peers: Sequence[PeerEnd],
        me: int,
        persister: MemoryStorage,
        apply_queue: "queue.Queue[ApplyMsg]",
    ):
        self.peers = list(peers)
        self.me = me
        self.persister = persister
        self.apply_queue = apply_queue
        self._lock = threading.Lock()
        self._dead = threading.Event()

        self.state = StateType.FOLLOWER
        self.current_term = 0
        self.voted_for = -1
        self.log: list[LogEntry] = []
        self.commit_index = 0
        self.last_applied = 0
        self.received = False
        self.next_index = [0] * len(self.peers)
        self.match_index = [0] * len(self.peers)
        self.last_included_index = 0
        self.last_included_term = 0
        self._inflight: set[int] = set()

        self._read_persist(persister.read_raft_state())
        self.commit_index = self.last_included_index
        self.last_applied = self.last_included_index
        if not self.log:
            self.log = [LogEntry(self.last_included_term, None)]

    # ----- public interface -------------------------------------------------

    def get_state(self) -> tuple[int, bool]:
        with self._lock:
            return self.current_term, self.state is StateType.LEADER

    def persist_bytes(self) -> int:
        with self._lock:
            return self.persister.raft_state_size()

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Discard log entries through index, which the service has captured in snapshot."""
        with self._lock:
            if index <= self.last_included_index or index > self.commit_index:
                return
            self.last_included_term = self._log_term(index)
            # The entry at index stays as the dummy head of the log.
            self.log = self.log[index - self.last_included_index:]
            self.last_included_index = index
            self.commit_index = max(self.commit_index, index)
            self.last_applied = max(self.last_applied, index)
            self._persist_snapshot(snapshot)

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Append command if leader; return (index, term, is_leader)."""
        with self._lock:
            if self.state is not StateType.LEADER:
                return -1, -1, False
            self.log.append(LogEntry(self.current_term, command))
            index, term = self._last_log_index(), self._last_log_term()
            self._persist()
            return index, term, True

    def kill(self) -> None:
        self._dead.set()

    def killed(self) -> bool:
        return self._dead.is_set()

    def run(self) -> None:
        """Start the election, heartbeat and apply threads."""
        for target in (self.election_ticker, self._broadcast_ticker, self._apply_ticker):
            threading.Thread(target=target, daemon=True).start()

    # ----- RPC handlers -----------------------------------------------------

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        with self._lock:
            if args.current_term < self.current_term:
                return RequestVoteReply(self.current_term, False)
            reply = RequestVoteReply(self.current_term, False)
            if args.current_term > self.current_term:
                self._become_follower(args.current_term)
            elif self.state is StateType.CANDIDATE:
                # Stepping down on an equal-term request helps elections converge.
                self._become_follower(args.current_term)

            last_term = self._last_log_term()
            up_to_date = args.last_log_term > last_term or (
                args.last_log_term == last_term and args.last_log_index >= self._last_log_index()
            )
            if up_to_date:
                self.received = True
                if self.voted_for in (-1, args.candidate_id):
                    self.voted_for = args.candidate_id
                    reply.vote_granted = True
                    self._persist()
            return reply

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        with self._lock:
            if args.term < self.current_term:
                return AppendEntriesReply(term=self.current_term, success=False)
            self.received = True
            if self.state is not StateType.FOLLOWER:
                self._become_follower(args.term)
            reply = AppendEntriesReply(term=self.current_term)

            if args.prev_log_index > self._last_log_index():
                reply.conflict_term = -1
                reply.conflict_len = len(self.log)
                return reply
            if self._log_term(args.prev_log_index) != args.prev_log_term:
                reply.conflict_term = self._log_term(args.prev_log_index)
                reply.conflict_index = self._find_conflict_index(args.prev_log_index, reply.conflict_term)
                return reply

            cut = args.prev_log_index + 1 - self.last_included_index
            self.log = self.log[:cut] + list(args.entries)
            self._persist()
            if args.leader_commit > self.commit_index:
                self.commit_index = min(args.leader_commit, self._last_log_index())
            reply.success = True
            return reply

    def install_snapshot(self, args: InstallSnapshotArgs) -> InstallSnapshotReply:
        with self._lock:
            if args.term < self.current_term:
                return InstallSnapshotReply(self.current_term)
            self.received = True
            if args.term > self.current_term:
                self._become_follower(args.term)
            reply = InstallSnapshotReply(self.current_term)
            if args.last_included_index <= self.last_included_index:
                return reply

            offset = args.last_included_index - self.last_included_index
            self.log = self.log[offset:] if offset < len(self.log) else [LogEntry()]
            self.last_included_index = args.last_included_index
            self.last_included_term = args.last_included_term
            self.last_applied = max(args.last_included_index, self.last_applied)
            self.commit_index = max(args.last_included_index, self.commit_index)
            self._persist_snapshot(args.data)

        msg = ApplyMsg(
            snapshot_valid=True,
            snapshot=args.data,
            snapshot_term=args.last_included_term,
            snapshot_index=args.last_included_index,
        )
        threading.Thread(target=self.apply_queue.put, args=(msg,), daemon=True).start()
        return reply

    # ----- background loops -------------------------------------------------

    def election_ticker(self) -> None:
        """Start an election whenever a timeout passes without hearing from a leader."""
        while not self.killed():
            with self._lock:
                if self.state is not StateType.LEADER and not self.received:
                    self._become_candidate()
                    self._start_election()
                self.received = False
            ms = random.randint(ELECTION_TIMEOUT_MIN_MS, ELECTION_TIMEOUT_MAX_MS)
            time.sleep(ms / 1000)

    def _broadcast_ticker(self) -> None:
        while not self.killed():
            with self._lock:
                if self.state is StateType.LEADER:
                    self._broadcast()
            time.sleep(HEARTBEAT_INTERVAL)

    def _apply_ticker(self) -> None:
        while not self.killed():
            msgs = []
            with self._lock:
                while (
                    self.last_applied < self.commit_index
                    and 0 <= self.last_applied - self.last_included_index
                    and self.last_applied - self.last_included_index + 1 < len(self.log)
                ):
                    self.last_applied += 1
                    entry = self.log[self.last_applied - self.last_included_index]
                    msgs.append(ApplyMsg(command_valid=True, command=entry.command, command_index=self.last_applied))
            for msg in msgs:
                self.apply_queue.put(msg)
            time.sleep(APPLY_INTERVAL)

    # ----- elections (lock held by caller unless noted) ---------------------

    def _become_candidate(self) -> None:
        self.state = StateType.CANDIDATE
        self.current_term += 1
        self.voted_for = self.me
        self._persist()

    def _become_follower(self, term: int) -> None:
        self.state = StateType.FOLLOWER
        if term > self.current_term:
            self.current_term = term
            self.voted_for = -1
        self._persist()
        self.received = True

    def _become_leader(self) -> None:
        self.state = StateType.LEADER
        self.voted_for = self.me
        last = self._last_log_index()
        self.next_index = [last + 1] * len(self.peers)
        self.match_index = [0] * len(self.peers)
        self.match_index[self.me] = last

    def _start_election(self) -> None:
        args = RequestVoteArgs(
            candidate_id=self.me,
            current_term=self.current_term,
            last_log_index=self._last_log_index(),
            last_log_term=self._last_log_term(),
        )
        votes = [1]
        for i in range(len(self.peers)):
            if i != self.me:
                threading.Thread(target=self._send_request_vote, args=(i, args, votes), daemon=True).start()

    def _send_request_vote(self, server: int, args: RequestVoteArgs, votes: list[int]) -> None:
        """Runs without the lock; counts votes in the shared one-element list."""
        reply = self.peers[server].call("Raft.RequestVote", args)
        if reply is None:
            return
        with self._lock:
            if reply.vote_granted:
                votes[0] += 1
                if (
                    self.state is StateType.CANDIDATE
                    and self.current_term == args.current_term
                    and votes[0] > len(self.peers) // 2
                ):
                    self._become_leader()
            elif reply.term > self.current_term:
                self._become_follower(reply.term)

    # ----- replication ------------------------------------------------------

    def _broadcast(self) -> None:
        for i in range(len(self.peers)):
            if i == self.me or i in self._inflight:
                continue
            self._inflight.add(i)
            threading.Thread(target=self._replicate, args=(i,), daemon=True).start()

    def _replicate(self, i: int) -> None:
        try:
            while True:
                with self._lock:
                    if self.state is not StateType.LEADER or self.killed():
                        return
                    if self.next_index[i] <= self.last_included_index:
                        snap_args = InstallSnapshotArgs(
                            term=self.current_term,
                            leader_id=self.me,
                            last_included_index=self.last_included_index,
                            last_included_term=self.last_included_term,
                            data=self.persister.read_snapshot(),
                        )
                        ae_args = None
                    else:
                        snap_args = None
                        ni = self.next_index[i]
                        ae_args = AppendEntriesArgs(
                            term=self.current_term,
                            leader_id=self.me,
                            prev_log_index=max(ni - 1, 0),
                            prev_log_term=self._log_term(ni - 1),
                            entries=list(self.log[ni - self.last_included_index:]),
                            leader_commit=self.commit_index,
                        )

                if snap_args is not None:
                    reply = self.peers[i].call("Raft.InstallSnapshot", snap_args)
                    if reply is None:
                        return
                    with self._lock:
                        if self.state is not StateType.LEADER or self.killed():
                            return
                        if reply.term > self.current_term:
                            self._become_follower(reply.term)
                        else:
                            self.match_index[i] = snap_args.last_included_index
                            self.next_index[i] = snap_args.last_included_index + 1
                    return

                reply = self.peers[i].call("Raft.AppendEntries", ae_args)
                if reply is None:
                    return
                with self._lock:
                    if self.state is not StateType.LEADER or self.killed():
                        return
                    if reply.term > self.current_term:
                        self._become_follower(reply.term)
                        return
                    if reply.success:
                        self.match_index[i] = ae_args.prev_log_index + len(ae_args.entries)
                        self.next_index[i] = self.match_index[i] + 1
                        self._update_commit_index()
                        return
                    if reply.conflict_term != -1:
                        found = self._find_term(reply.conflict_term)
                        self.next_index[i] = found + 1 if found is not None else reply.conflict_index
                    else:
                        self.next_index[i] = reply.conflict_len
        finally:
            with self._lock:
                self._inflight.discard(i)

    def _update_commit_index(self) -> None:
        if self.state is not StateType.LEADER:
            return
        self.match_index[self.me] = self._last_log_index()
        index = sorted(self.match_index)[len(self.match_index) // 2]
        if index > self.commit_index and self._log_term(index) == self.current_term:
            self.commit_index = index

    def _find_term(self, term: int) -> int | None:
        """Return the last absolute index holding term, or None."""
        for pos in range(len(self.log) - 1, -1, -1):
            t = self.log[pos].term
            if t == term:
                return pos + self.last_included_index
            if t < term:
                return None
        return None

    def _find_conflict_index(self, conflict_index: int, conflict_term: int) -> int:
        for i in range(conflict_index - 1, self.last_included_index - 1, -1):
            if self.log[i - self.last_included_index].term != conflict_term:
                break
            conflict_index = i
        return conflict_index

    # ----- log helpers ------------------------------------------------------

    def _last_log_index(self) -> int:
        return self.last_included_index + len(self.log) - 1

    def _last_log_term(self) -> int:
        return self.log[-1].term if self.log else 0

    def _log_term(self, index: int) -> int:
        if index == self.last_included_index:
            return self.last_included_term
        pos = index - self.last_included_index
        if pos < 0 or pos >= len(self.log):
            return -1
        return self.log[pos].term

    # ----- persistence ------------------------------------------------------

    def _persist(self) -> None:
        self._persist_snapshot(self.persister.read_snapshot())

    def _persist_snapshot(self, snapshot: bytes | None) -> None:
        state = PersistentState(
            current_term=self.current_term,
            voted_for=self.voted_for,
            log=list(self.log),
            last_included_index=self.last_included_index,
            last_included_term=self.last_included_term,
        )
        self.persister.save(encode_state(state), snapshot)

    def _read_persist(self, data: bytes) -> None:
        if not data:
            return
        try:
            ps = decode_state(data)
        except ValueError:
            _log.warning("Fail to decode.")
            return
        self.current_term = ps.current_term
        self.voted_for = ps.voted_for
        self.log = ps.log
        self.last_included_index = ps.last_included_index
        self.last_included_term = ps.last_included_term


def make(
    peers: Sequence[PeerEnd],
    me: int,
    persister: MemoryStorage,
    apply_queue: "queue.Queue[ApplyMsg]",
) -> Raft:
    """Create a Raft peer and start its background threads."""
    rf = Raft(peers, me, persister, apply_queue)
    rf.run()
    return rf