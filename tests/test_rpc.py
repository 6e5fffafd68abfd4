import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from mapraft.mr.rpc import (
    ExampleArgs,
    ExampleReply,
    RpcError,
    Task,
    TaskType,
    accept_loop,
    coordinator_socket,
    open_listener,
    send_request,
    serve_requests,
)


@pytest.fixture
def sockname():
    directory = tempfile.mkdtemp(prefix="mr")
    yield os.path.join(directory, "s")
    shutil.rmtree(directory, ignore_errors=True)


def _handler(method, payload):
    if method == "echo":
        return {"method": method, "payload": payload}
    raise ValueError("bad method " + method)


@pytest.fixture
def server(sockname):
    stop = threading.Event()
    listener = open_listener(sockname)
    thread = threading.Thread(target=accept_loop, args=(listener, _handler, stop), daemon=True)
    thread.start()
    yield sockname
    stop.set()
    thread.join(5)


def test_coordinator_socket_uses_uid():
    assert coordinator_socket() == "/var/tmp/5840-mr-" + str(os.getuid())


def test_task_round_trip():
    task = Task(TaskType.REDUCE, 7, 3, ["a", "b"])
    assert Task.from_dict(task.to_dict()) == task


def test_task_from_empty_dict_is_default():
    assert Task.from_dict({}) == Task()


def test_task_type_decoded_as_enum():
    task = Task.from_dict({"task_type": int(TaskType.EXIT)})
    assert task.task_type is TaskType.EXIT


def test_example_round_trip():
    assert ExampleArgs.from_dict(ExampleArgs(5).to_dict()) == ExampleArgs(5)
    assert ExampleReply.from_dict(ExampleReply(6).to_dict()) == ExampleReply(6)


def test_send_request_returns_result(server):
    result = send_request(server, "echo", {"k": [1, 2]})
    assert result == {"method": "echo", "payload": {"k": [1, 2]}}


def test_handler_error_becomes_rpc_error(server):
    with pytest.raises(RpcError, match="bad method nope"):
        send_request(server, "nope", None)


def test_missing_socket_raises_connection_error(sockname):
    with pytest.raises(ConnectionError):
        send_request(sockname, "echo", None)


def test_concurrent_requests(server):
    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(send_request, server, "echo", n) for n in range(8)]
        results = [future.result(timeout=5) for future in futures]
    assert [result["payload"] for result in results] == list(range(8))
    assert all(result["method"] == "echo" for result in results)


def test_serve_requests_stops_and_removes_socket(sockname):
    stop = threading.Event()
    thread = threading.Thread(target=serve_requests, args=(sockname, _handler, stop), daemon=True)
    thread.start()
    result = None
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        try:
            result = send_request(sockname, "echo", "hi")
            break
        except ConnectionError:
            time.sleep(0.02)
    assert result == {"method": "echo", "payload": "hi"}
    stop.set()
    thread.join(5)
    assert not thread.is_alive()
    assert not os.path.exists(sockname)