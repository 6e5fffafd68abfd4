import os
import shutil
import tempfile
import threading
from collections import Counter

import pytest

from mapraft.mr.coordinator import (
    Coordinator,
    find_files_with_prefix_suffix,
    make_coordinator,
    select_reduce_names,
)
from mapraft.mr.rpc import ExampleArgs, Phase, RpcError, Task, TaskType
from mapraft.mr.worker import KeyValue, call_example, worker


@pytest.fixture
def sockname():
    directory = tempfile.mkdtemp(prefix="mr")
    yield os.path.join(directory, "s")
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def inputs(tmp_path):
    a = tmp_path / "a.txt"
    b = tmp_path / "b.txt"
    a.write_text("x y x")
    b.write_text("y z")
    return [str(a), str(b)]


def _finish_maps(coordinator, workdir):
    tasks = [coordinator.poll_task(), coordinator.poll_task()]
    for task in tasks:
        for index in range(coordinator.reducer_num):
            (workdir / f"mr-tmp-{task.task_id}-{index}").write_text("")
        assert coordinator.mark_finished(task)
    return tasks


def test_map_tasks_handed_out_in_order(inputs, tmp_path):
    c = Coordinator(inputs, 3, str(tmp_path))
    first, second = c.poll_task(), c.poll_task()
    assert [first.task_id, second.task_id] == [0, 1]
    assert [first.file_names, second.file_names] == [[inputs[0]], [inputs[1]]]
    assert {first.task_type, second.task_type} == {TaskType.MAP}
    assert first.reduce_num == 3


def test_poll_waits_while_maps_running(inputs, tmp_path):
    c = Coordinator(inputs, 2, str(tmp_path))
    c.poll_task()
    c.poll_task()
    assert c.poll_task().task_type is TaskType.WAIT
    assert c.phase is Phase.MAP
    assert c.done() is False


def test_reduce_phase_after_maps(inputs, tmp_path):
    c = Coordinator(inputs, 2, str(tmp_path))
    _finish_maps(c, tmp_path)
    assert c.poll_task().task_type is TaskType.WAIT
    assert c.phase is Phase.REDUCE
    reduces = [c.poll_task(), c.poll_task()]
    assert [t.task_id for t in reduces] == [2, 3]
    for index, task in enumerate(reduces):
        assert task.task_type is TaskType.REDUCE
        assert [os.path.basename(p) for p in task.file_names] == [f"mr-tmp-0-{index}", f"mr-tmp-1-{index}"]


def test_full_lifecycle_reaches_exit(inputs, tmp_path):
    c = Coordinator(inputs, 1, str(tmp_path))
    _finish_maps(c, tmp_path)
    c.poll_task()
    reduce_task = c.poll_task()
    assert c.mark_finished(reduce_task)
    assert c.poll_task().task_type is TaskType.WAIT
    assert c.phase is Phase.ALL_DONE
    assert c.poll_task().task_type is TaskType.EXIT
    assert c.done() is True


def test_mark_finished_twice_reports_already_done(inputs, tmp_path):
    c = Coordinator(inputs, 1, str(tmp_path))
    task = c.poll_task()
    assert c.mark_finished(task) is True
    assert c.mark_finished(task) is False


def test_mark_finished_rejects_unknown_type(inputs, tmp_path):
    c = Coordinator(inputs, 1, str(tmp_path))
    with pytest.raises(ValueError):
        c.mark_finished(Task(task_type=TaskType.WAIT))


def test_requeue_stale_tasks(inputs, tmp_path):
    c = Coordinator(inputs, 1, str(tmp_path))
    first = c.poll_task()
    assert c.requeue_stale_tasks(3600) == 0
    assert c.requeue_stale_tasks(-1) == 1
    assert c.poll_task().task_id == 1
    assert c.poll_task().task_id == first.task_id


def test_example_adds_one(inputs, tmp_path):
    c = Coordinator(inputs, 1, str(tmp_path))
    assert c.example(ExampleArgs(41)).y == 42


def test_handle_dispatch(inputs, tmp_path):
    c = Coordinator(inputs, 1, str(tmp_path))
    reply = c.handle("Coordinator.PollTask", {})
    assert Task.from_dict(reply).file_names == [inputs[0]]
    with pytest.raises(RpcError):
        c.handle("Coordinator.Nope", {})


def test_find_files_with_prefix_suffix(tmp_path):
    for name in ["mr-tmp-0-1", "mr-tmp-3-1", "mr-tmp-0-11", "other-1", "mr-tmp-2-2"]:
        (tmp_path / name).write_text("")
    (tmp_path / "mr-tmp-dir-1").mkdir()
    found = find_files_with_prefix_suffix(str(tmp_path), "mr-tmp-", "-1")
    assert found == [str(tmp_path / "mr-tmp-0-1"), str(tmp_path / "mr-tmp-3-1")]


def test_find_files_missing_directory_raises(tmp_path):
    with pytest.raises(OSError):
        find_files_with_prefix_suffix(str(tmp_path / "missing"), "mr-tmp-", "-0")


def test_select_reduce_names_missing_directory_is_empty(tmp_path):
    assert select_reduce_names(0, str(tmp_path / "missing")) == []


def test_make_coordinator_serves_example(inputs, sockname):
    c = make_coordinator(inputs, 1, sockname)
    try:
        assert call_example(sockname).y == 100
    finally:
        c.shutdown()
    assert not os.path.exists(sockname)


def test_end_to_end_word_count(inputs, tmp_path, sockname, monkeypatch):
    monkeypatch.chdir(tmp_path)
    c = Coordinator(inputs, 2, str(tmp_path))
    c.serve(sockname)
    errors = []

    def run():
        try:
            worker(
                lambda name, text: [KeyValue(w, "1") for w in text.split()],
                lambda key, values: str(len(values)),
                sockname,
            )
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    thread.join(30)
    c.shutdown()
    assert errors == []
    assert not thread.is_alive()
    assert c.done() is True

    counts = {}
    for name in os.listdir(tmp_path):
        if name.startswith("mr-out-"):
            for line in (tmp_path / name).read_text().splitlines():
                key, value = line.split(" ")
                counts[key] = value
    expected = Counter(" ".join(open(p).read() for p in inputs).split())
    assert counts == {k: str(v) for k, v in expected.items()}