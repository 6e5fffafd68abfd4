import os
from unittest import mock

from mapraft.apps.jobcount import map_fn, reduce_fn
from mapraft.mr.worker import KeyValue


@mock.patch("time.sleep")
def test_map_returns_single_pair(sleep_mock, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert map_fn("in.txt", "data") == [KeyValue("a", "x")]
    seconds = sleep_mock.call_args.args[0]
    assert 2.0 <= seconds < 5.0


@mock.patch("time.sleep")
def test_map_writes_distinct_marker_files(sleep_mock, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert map_fn("a", "") == [KeyValue("a", "x")]
    assert map_fn("b", "") == [KeyValue("a", "x")]
    markers = [p for p in tmp_path.iterdir() if p.name.startswith(f"mr-worker-jobcount-{os.getpid()}-")]
    assert len(markers) == 2
    assert all(p.read_text() == "x" for p in markers)


@mock.patch("time.sleep")
def test_reduce_counts_invocations(sleep_mock, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "unrelated.txt").write_text("y")
    for _ in range(3):
        map_fn("f", "")
    assert reduce_fn("a", ["x", "x", "x"]) == "3"


def test_reduce_empty_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert reduce_fn("a", []) == "0"