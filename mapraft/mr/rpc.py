"""Message types and the Unix-socket transport between coordinator and workers."""

from __future__ import annotations

import contextlib
import json
import os
import socket
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable

Handler = Callable[[str, Any], Any]

INTERMEDIATE_PREFIX = "mr-tmp-"
"""File name prefix of the intermediate files written by map tasks."""

_ACCEPT_POLL_SECONDS = 0.1


class RpcError(Exception):
    """A request reached the server but did not produce a result."""


class TaskType(IntEnum):
    MAP = 0
    REDUCE = 1
    WAIT = 2
    EXIT = 3


class Phase(IntEnum):
    MAP = 0
    REDUCE = 1
    ALL_DONE = 2


class State(IntEnum):
    WORKING = 0
    WAITING = 1
    DONE = 2


@dataclass
class Task:
    """A unit of work handed from the coordinator to a worker."""

    task_type: TaskType = TaskType.MAP
    task_id: int = 0
    reduce_num: int = 0
    file_names: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_type": int(self.task_type),
            "task_id": self.task_id,
            "reduce_num": self.reduce_num,
            "file_names": list(self.file_names),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            task_type=TaskType(data.get("task_type", TaskType.MAP)),
            task_id=int(data.get("task_id", 0)),
            reduce_num=int(data.get("reduce_num", 0)),
            file_names=list(data.get("file_names") or []),
        )


@dataclass
class ExampleArgs:
    x: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExampleArgs:
        return cls(x=int(data.get("x", 0)))


@dataclass
class ExampleReply:
    y: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"y": self.y}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExampleReply:
        return cls(y=int(data.get("y", 0)))


def coordinator_socket() -> str:
    """Return a per-user Unix-domain socket path for the coordinator."""
    return "/var/tmp/5840-mr-" + str(os.getuid())


def send_request(sockname: str, method: str, payload: Any) -> Any:
    """Send one request and return the server's result.

    Raises ConnectionError when the server cannot be reached and RpcError
    when the server answers with an error or a malformed reply.
    """
    request = json.dumps({"method": method, "params": payload}).encode("utf-8") + b"\n"
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        try:
            sock.connect(sockname)
        except OSError as exc:
            raise ConnectionError(f"dialing: {exc}") from exc
        sock.sendall(request)
        with sock.makefile("rb") as stream:
            line = stream.readline()
    if not line:
        raise RpcError("connection closed without a reply")
    try:
        response = json.loads(line)
    except ValueError as exc:
        raise RpcError(f"malformed reply: {exc}") from exc
    if "error" in response:
        raise RpcError(response["error"])
    return response.get("result")


def open_listener(sockname: str) -> socket.socket:
    """Bind and listen on a Unix-domain socket, replacing any stale one."""
    with contextlib.suppress(FileNotFoundError):
        os.remove(sockname)
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        server.bind(sockname)
        server.listen()
    except OSError:
        server.close()
        raise
    return server


def accept_loop(server: socket.socket, handler: Handler, stop_event: threading.Event) -> None:
    """Answer requests on a listening socket until stop_event is set."""
    sockname = server.getsockname()
    server.settimeout(_ACCEPT_POLL_SECONDS)
    try:
        while not stop_event.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError:
                if stop_event.is_set():
                    break
                raise
            conn.setblocking(True)
            threading.Thread(target=_serve_connection, args=(conn, handler), daemon=True).start()
    finally:
        server.close()
        if isinstance(sockname, str) and sockname:
            with contextlib.suppress(FileNotFoundError):
                os.remove(sockname)


def serve_requests(sockname: str, handler: Handler, stop_event: threading.Event) -> None:
    """Listen on sockname and dispatch requests to handler until stopped."""
    accept_loop(open_listener(sockname), handler, stop_event)


def _serve_connection(conn: socket.socket, handler: Handler) -> None:
    with conn, conn.makefile("rwb") as stream:
        line = stream.readline()
        if not line:
            return
        try:
            request = json.loads(line)
            result = handler(request["method"], request.get("params"))
            response = {"result": result}
        except Exception as exc:  # every failure goes back to the caller
            response = {"error": str(exc) or type(exc).__name__}
        stream.write(json.dumps(response).encode("utf-8") + b"\n")
        stream.flush()