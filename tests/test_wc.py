from mapraft.apps.wc import map_fn, reduce_fn
from mapraft.mr.worker import KeyValue


def test_map_splits_on_non_letters():
    result = map_fn("ignored.txt", "Hello, world! hello")
    assert [kv.key for kv in result] == ["Hello", "world", "hello"]


def test_map_values_are_all_one():
    result = map_fn("x", "a b c a")
    assert {kv.value for kv in result} == {"1"}
    assert len(result) == 4


def test_map_digits_separate_words():
    assert map_fn("x", "abc123def") == [KeyValue("abc", "1"), KeyValue("def", "1")]


def test_map_keeps_unicode_letters():
    assert [kv.key for kv in map_fn("x", "naïve café")] == ["naïve", "café"]


def test_map_empty_contents():
    assert map_fn("x", "  ,,, 42 ") == []


def test_map_ignores_filename():
    assert map_fn("one", "foo bar") == map_fn("two", "foo bar")


def test_reduce_counts_values():
    assert reduce_fn("word", ["1", "1", "1"]) == "3"


def test_reduce_empty():
    assert reduce_fn("word", []) == "0"