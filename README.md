# mapraft

Two small building blocks for distributed computing, using only the
standard library:

- **`mapraft.mr`**: a MapReduce framework. A coordinator hands out map
  and reduce tasks over a UNIX-domain socket. Workers run your map and
  reduce functions and write `mr-out-*` files.
- **`mapraft.raft`**: a Raft consensus peer. It handles leader election,
  log replication, persistence to a storage object and snapshots.

The package runs on POSIX systems (it uses UNIX-domain sockets and
`os.getuid`).

## Installation

```
pip install .
```

To run the tests as well:

```
pip install .[test]
pytest
```

## MapReduce

`make_coordinator(files, n_reduce, sockname)` creates a `Coordinator`,
starts serving requests on the socket and starts a background thread
that re-issues stalled tasks. `worker(mapf, reducef, sockname)` asks the
coordinator for tasks and runs them until the coordinator tells it to
exit. If `sockname` is left out, both use `coordinator_socket()`, which
returns `/var/tmp/5840-mr-<uid>`.

```python
import threading
import time

from mapraft.apps import wc
from mapraft.mr.coordinator import make_coordinator
from mapraft.mr.rpc import coordinator_socket
from mapraft.mr.worker import worker

sock = coordinator_socket()
coord = make_coordinator(["a.txt", "b.txt"], 3, sock)

threading.Thread(target=worker, args=(wc.map_fn, wc.reduce_fn, sock)).start()

while not coord.done():
    time.sleep(1)
coord.shutdown()
```

How a job runs:

- Each input file becomes one map task. The map function gets the file
  name and its contents and returns `KeyValue` pairs. Each pair goes to
  reducer `ihash(key) % n_reduce`, and is written as one JSON line to
  `mr-tmp-<task>-<reduce>` in the current directory.
- When every map task has finished, the coordinator makes one reduce
  task per reducer. Each task gets the `mr-tmp-*-<reduce>` files found
  in its working directory. The worker sorts the pairs by key and calls
  the reduce function once per key. It writes `<key> <result>` lines to
  a temporary file, then renames that file to `mr-out-<task>`.
- While tasks are still running, `poll_task` answers with a wait task.
  Once all reduce tasks are done, it answers with an exit task and
  `done()` returns `True`.
- The crash handler checks every two seconds. Any task that has been
  running for more than ten seconds goes back in its queue. You can do
  the same check yourself with `Coordinator.requeue_stale_tasks(timeout)`.
- `mark_finished` only counts a task once, while it is running. A late
  report is printed and ignored.

The socket protocol is one JSON request line and one JSON reply line
per connection. The methods are `Coordinator.Example`,
`Coordinator.PollTask` and `Coordinator.MarkFinished`.
`mapraft.mr.rpc.send_request` and `serve_requests` implement it.
`send_request` raises `ConnectionError` if nothing is listening, and
`RpcError` if the server reports an error.

### Sample applications

Each module in `mapraft.apps` provides a map function and a reduce
function:

- `wc`: word count. A word is a run of letters.
- `indexer`: an inverted index. Each result is `<count> <doc1>,<doc2>,...`.
- `crash`: `map_fn` and `reduce_fn` exit the process at random (about
  one call in three) or stall for up to ten seconds. This tests task
  recovery. `nocrash_map_fn` and `nocrash_reduce_fn` give the same
  output without crashing.
- `early_exit`: emits one pair per file. Reducing keys that contain
  "sherlock" or "tom" takes three seconds.
- `jobcount`: each map call leaves a `mr-worker-jobcount-*` marker file.
  The reduce function counts those files.
- `timing`: `mtiming_*` reports how many map workers ran at the same
  time. `rtiming_*` does the same for reduce workers. Both use
  `nparallel(phase)`, which counts the live processes that have left a
  marker file.

## Raft

```python
import queue

from mapraft.raft.api import MemoryStorage
from mapraft.raft.node import make

applied = queue.Queue()
peer = make(peers, me, MemoryStorage(), applied)
index, term, is_leader = peer.start("command")
```

`peers` holds one endpoint per peer, this one included, in the same
order on every peer. An endpoint is any object with a
`call(method, args)` method. The method is one of `"Raft.RequestVote"`,
`"Raft.AppendEntries"` or `"Raft.InstallSnapshot"`. The call returns
the reply, or `None` if the message was lost. On the receiving side,
pass the arguments to the matching handler: `request_vote`,
`append_entries` or `install_snapshot`.

`make` starts the peer's election, heartbeat and apply threads. You can
also build a `Raft` and call `run()` yourself.

- `get_state()` returns `(term, is_leader)`.
- `start(command)` appends the command if this peer is the leader and
  returns `(index, term, True)`. Otherwise it returns `(-1, -1, False)`.
- Each committed entry goes on the apply queue as an `ApplyMsg` with
  `command_valid=True`. An installed snapshot goes on the queue as an
  `ApplyMsg` with `snapshot_valid=True`.
- `snapshot(index, data)` trims the log through `index`, provided that
  index is committed and later than the last snapshot.
- `persist_bytes()` returns the size of the saved state.
- `kill()` stops the background threads.

Persistent state is encoded with `encode_state` and decoded with
`decode_state` from `mapraft.raft.messages`. It is saved to a
`MemoryStorage`.

## What the package does not do

- It has no command-line programs. You start coordinators and workers
  from your own Python code, and pass the map and reduce functions in
  directly.
- Raft peers have no network transport. You supply the endpoints that
  carry calls between peers.
- `MemoryStorage` keeps state in memory only. Nothing is written to
  disk.
- There is no key/value service built on the Raft peer.