"""Coordinator: hands out map and reduce tasks and tracks their progress."""

from __future__ import annotations

import dataclasses
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable

from mapraft.mr.rpc import (
    INTERMEDIATE_PREFIX,
    ExampleArgs,
    ExampleReply,
    Phase,
    RpcError,
    State,
    Task,
    TaskType,
    accept_loop,
    coordinator_socket,
    open_listener,
)

TASK_TIMEOUT_SECONDS = 10.0
CRASH_CHECK_INTERVAL_SECONDS = 2.0


@dataclass
class TaskMeta:
    """Bookkeeping for one task."""

    task: Task
    state: State = State.WAITING
    start_time: float = 0.0


class Coordinator:
    """Schedules map tasks, then reduce tasks, and re-issues tasks that stall."""

    def __init__(self, files: Iterable[str], n_reduce: int, workdir: str | None = None):
        self.files = list(files)
        self.reducer_num = n_reduce
        self.workdir = workdir
        self.phase = Phase.MAP
        self.metas: dict[int, TaskMeta] = {}
        self._next_id = 0
        self._map_queue: deque[Task] = deque()
        self._reduce_queue: deque[Task] = deque()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._server_thread: threading.Thread | None = None
        self._make_map_tasks()

    def example(self, args: ExampleArgs) -> ExampleReply:
        return ExampleReply(y=args.x + 1)

    def done(self) -> bool:
        """Return True once every task has finished."""
        with self._lock:
            if self.phase is Phase.ALL_DONE:
                print("All tasks are finished,the coordinator will be exit! !")
                return True
            return False

    def poll_task(self) -> Task:
        """Hand out the next task, a wait instruction, or an exit instruction."""
        with self._lock:
            if self.phase is Phase.MAP:
                return self._next_from(self._map_queue)
            if self.phase is Phase.REDUCE:
                return self._next_from(self._reduce_queue)
            if self.phase is Phase.ALL_DONE:
                return Task(task_type=TaskType.EXIT)
            raise RuntimeError("Phase undefined!")

    def mark_finished(self, task: Task) -> bool:
        """Record that a task finished; return False if it was not running."""
        with self._lock:
            if task.task_type is TaskType.MAP:
                label = "Map"
            elif task.task_type is TaskType.REDUCE:
                label = "Reduce"
            else:
                raise ValueError("The task type undefined ! ! !")
            meta = self.metas.get(task.task_id)
            if meta is not None and meta.state is State.WORKING:
                meta.state = State.DONE
                print(f"{label} task Id[{task.task_id}] is finished.")
                return True
            print(f"{label} task Id[{task.task_id}] is finished,already ! ! !")
            return False

    def requeue_stale_tasks(self, timeout: float = TASK_TIMEOUT_SECONDS) -> int:
        """Put tasks running longer than timeout back in their queue."""
        requeued = 0
        with self._lock:
            now = time.monotonic()
            for meta in self.metas.values():
                if meta.state is State.WORKING and now - meta.start_time > timeout:
                    if meta.task.task_type is TaskType.MAP:
                        self._map_queue.append(meta.task)
                    elif meta.task.task_type is TaskType.REDUCE:
                        self._reduce_queue.append(meta.task)
                    meta.state = State.WAITING
                    requeued += 1
        return requeued

    def crash_handler(self) -> None:
        """Periodically re-issue stalled tasks until the job or the server ends."""
        while not self._stop.wait(CRASH_CHECK_INTERVAL_SECONDS):
            with self._lock:
                if self.phase is Phase.ALL_DONE:
                    return
            self.requeue_stale_tasks(TASK_TIMEOUT_SECONDS)

    def serve(self, sockname: str | None = None) -> str:
        """Start answering worker requests on a Unix socket; return its path."""
        sockname = sockname or coordinator_socket()
        listener = open_listener(sockname)
        self._server_thread = threading.Thread(
            target=accept_loop, args=(listener, self.handle, self._stop), daemon=True
        )
        self._server_thread.start()
        return sockname

    def shutdown(self) -> None:
        """Stop the server and the crash handler."""
        self._stop.set()
        if self._server_thread is not None:
            self._server_thread.join()
            self._server_thread = None

    def handle(self, method: str, payload: Any) -> Any:
        """Dispatch one worker request by name."""
        if method == "Coordinator.Example":
            return self.example(ExampleArgs.from_dict(payload or {})).to_dict()
        if method == "Coordinator.PollTask":
            return self.poll_task().to_dict()
        if method == "Coordinator.MarkFinished":
            self.mark_finished(Task.from_dict(payload or {}))
            return Task().to_dict()
        raise RpcError(f"unknown method {method}")

    def _generate_task_id(self) -> int:
        task_id = self._next_id
        self._next_id += 1
        return task_id

    def _accept_meta(self, meta: TaskMeta) -> bool:
        if meta.task.task_id in self.metas:
            return False
        self.metas[meta.task.task_id] = meta
        return True

    def _make_map_tasks(self) -> None:
        for name in self.files:
            task = Task(TaskType.MAP, self._generate_task_id(), self.reducer_num, [name])
            self._accept_meta(TaskMeta(task))
            self._map_queue.append(task)

    def _make_reduce_tasks(self) -> None:
        for index in range(self.reducer_num):
            names = select_reduce_names(index, self.workdir)
            task = Task(TaskType.REDUCE, self._generate_task_id(), self.reducer_num, names)
            self._accept_meta(TaskMeta(task))
            self._reduce_queue.append(task)

    def _next_from(self, queue: deque[Task]) -> Task:
        if queue:
            task = queue.popleft()
            self._begin_task(task.task_id)
            return dataclasses.replace(task, file_names=list(task.file_names))
        if self._check_task_done():
            self._to_next_phase()
        return Task(task_type=TaskType.WAIT)

    def _begin_task(self, task_id: int) -> bool:
        meta = self.metas.get(task_id)
        if meta is None or meta.state is not State.WAITING:
            return False
        meta.state = State.WORKING
        meta.start_time = time.monotonic()
        return True

    def _check_task_done(self) -> bool:
        map_done = map_undone = reduce_done = reduce_undone = 0
        for meta in self.metas.values():
            finished = meta.state is State.DONE
            if meta.task.task_type is TaskType.MAP:
                map_done += finished
                map_undone += not finished
            elif meta.task.task_type is TaskType.REDUCE:
                reduce_done += finished
                reduce_undone += not finished
        maps_finished = map_done > 0 and map_undone == 0
        if maps_finished and reduce_done == 0 and reduce_undone == 0:
            return True
        return maps_finished and reduce_done > 0 and reduce_undone == 0

    def _to_next_phase(self) -> None:
        if self.phase is Phase.MAP:
            self._make_reduce_tasks()
            self.phase = Phase.REDUCE
        elif self.phase is Phase.REDUCE:
            self.phase = Phase.ALL_DONE


def make_coordinator(files: Iterable[str], n_reduce: int, sockname: str | None = None) -> Coordinator:
    """Create a coordinator, start serving and start the crash handler."""
    coordinator = Coordinator(files, n_reduce)
    coordinator.serve(sockname)
    threading.Thread(target=coordinator.crash_handler, daemon=True).start()
    return coordinator


def select_reduce_names(reduce_idx: int, workdir: str | None = None) -> list[str]:
    """Return the intermediate files destined for one reducer."""
    directory = workdir or os.getcwd()
    try:
        return find_files_with_prefix_suffix(directory, INTERMEDIATE_PREFIX, f"-{reduce_idx}")
    except OSError:
        print(f"cannot read directory: {directory}")
        return []


def find_files_with_prefix_suffix(directory: str, prefix: str, suffix: str) -> list[str]:
    """Return full paths of regular entries whose names match prefix and suffix."""
    with os.scandir(directory) as entries:
        names = sorted(
            entry.name
            for entry in entries
            if not entry.is_dir() and entry.name.startswith(prefix) and entry.name.endswith(suffix)
        )
    return [os.path.join(directory, name) for name in names]