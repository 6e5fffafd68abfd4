"""Worker side of the MapReduce job: fetch tasks, run map and reduce."""

from __future__ import annotations

import json
import os
import tempfile
import time
from dataclasses import dataclass
from itertools import groupby
from operator import attrgetter
from typing import Any, Callable, Iterable, Iterator, TextIO

from mapraft.mr.rpc import (
    INTERMEDIATE_PREFIX,
    ExampleArgs,
    ExampleReply,
    RpcError,
    Task,
    TaskType,
    coordinator_socket,
    send_request,
)


@dataclass(frozen=True)
class KeyValue:
    """One key/value pair emitted by a map function."""

    key: str
    value: str


MapFunc = Callable[[str, str], Iterable[KeyValue]]
ReduceFunc = Callable[[str, list], str]

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def ihash(key: str) -> int:
    """Non-negative 32-bit FNV-1a hash used to pick a reduce bucket."""
    h = _FNV_OFFSET
    for byte in key.encode("utf-8"):
        h = ((h ^ byte) * _FNV_PRIME) & 0xFFFFFFFF
    return h & 0x7FFFFFFF


def worker(mapf: MapFunc, reducef: ReduceFunc, sockname: str | None = None) -> None:
    """Ask the coordinator for tasks and run them until told to exit."""
    while True:
        task = get_task(sockname)
        if task.task_type is TaskType.MAP:
            do_map_task(mapf, task)
            call_done(task, sockname)
        elif task.task_type is TaskType.REDUCE:
            do_reduce_task(reducef, task)
            call_done(task, sockname)
        elif task.task_type is TaskType.WAIT:
            print("All tasks are in progress, please waiting...")
            time.sleep(1)
        elif task.task_type is TaskType.EXIT:
            print("Task about :[", task.task_id, "] is terminated...")
            return


def get_task(sockname: str | None = None) -> Task:
    """Fetch the next task from the coordinator."""
    reply = call("Coordinator.PollTask", {}, sockname)
    if reply is None:
        print("Fail to get a task!")
        raise RpcError("Fail to get a task!")
    task = Task.from_dict(reply)
    print(f"Receive a task, task type:{int(task.task_type)}, taskId:{task.task_id}")
    return task


def do_map_task(mapf: MapFunc, task: Task, workdir: str | None = None) -> list[str]:
    """Run mapf over the task's input and write one intermediate file per reducer."""
    directory = workdir or os.getcwd()
    filename = task.file_names[0]
    with open(os.path.join(directory, filename), encoding="utf-8", newline="") as source:
        content = source.read()

    buckets: list[list[KeyValue]] = [[] for _ in range(task.reduce_num)]
    for kv in mapf(filename, content):
        buckets[ihash(kv.key) % task.reduce_num].append(kv)

    paths = []
    for index, bucket in enumerate(buckets):
        path = os.path.join(directory, f"{INTERMEDIATE_PREFIX}{task.task_id}-{index}")
        with open(path, "w", encoding="utf-8", newline="") as out:
            out.writelines(_encode(kv) for kv in bucket)
        paths.append(path)
    return paths


def do_reduce_task(reducef: ReduceFunc, task: Task, workdir: str | None = None) -> str:
    """Group the task's intermediate pairs by key, reduce them and write mr-out-<id>."""
    directory = workdir or os.getcwd()
    pairs = shuffle(task.file_names)

    fd, tmp_path = tempfile.mkstemp(prefix="mr-tmp-reduce-", dir=directory)
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as out:
        for key, group in groupby(pairs, key=attrgetter("key")):
            values = [kv.value for kv in group]
            out.write(f"{key} {reducef(key, values)}\n")

    target = os.path.join(directory, f"mr-out-{task.task_id}")
    os.replace(tmp_path, target)
    return target


def shuffle(files: Iterable[str]) -> list[KeyValue]:
    """Read every intermediate file that exists and return its pairs sorted by key."""
    pairs: list[KeyValue] = []
    for name in files:
        try:
            stream = open(name, encoding="utf-8", newline="")
        except OSError:
            continue
        with stream:
            pairs.extend(_decode(stream))
    pairs.sort(key=attrgetter("key"))
    return pairs


def call_done(task: Task, sockname: str | None = None) -> bool:
    """Tell the coordinator that a task has finished."""
    if call("Coordinator.MarkFinished", task.to_dict(), sockname) is None:
        print("call fail!")
        return False
    return True


def call_example(sockname: str | None = None) -> ExampleReply | None:
    """Send the example request with x=99; the reply should carry 100."""
    reply = call("Coordinator.Example", ExampleArgs(x=99).to_dict(), sockname)
    if reply is None:
        print("call failed!")
        return None
    result = ExampleReply.from_dict(reply)
    print(f"reply.Y {result.y}")
    return result


def call(rpcname: str, args: Any, sockname: str | None = None) -> Any:
    """Send a request to the coordinator.

    Returns the result, or None when the coordinator reports an error.
    Raises ConnectionError when the coordinator cannot be reached.
    """
    try:
        return send_request(sockname or coordinator_socket(), rpcname, args)
    except RpcError as exc:
        print(exc)
        return None


def _encode(kv: KeyValue) -> str:
    return json.dumps({"Key": kv.key, "Value": kv.value}, separators=(",", ":"), ensure_ascii=False) + "\n"


def _decode(stream: TextIO) -> Iterator[KeyValue]:
    for line in stream:
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except ValueError:
            return
        if not isinstance(record, dict):
            return
        key = record.get("Key", "")
        value = record.get("Value", "")
        if not isinstance(key, str) or not isinstance(value, str):
            return
        yield KeyValue(key, value)