from mapraft.apps.indexer import map_fn, reduce_fn


def test_map_emits_each_word_once():
    result = map_fn("doc1", "a b a c b")
    keys = [kv.key for kv in result]
    assert sorted(keys) == ["a", "b", "c"]
    assert len(keys) == len(set(keys))


def test_map_values_are_document_name():
    result = map_fn("doc1", "alpha beta")
    assert {kv.value for kv in result} == {"doc1"}


def test_map_no_words():
    assert map_fn("doc1", "123 !!! ") == []


def test_reduce_sorts_and_counts():
    assert reduce_fn("w", ["z.txt", "a.txt"]) == "2 a.txt,z.txt"


def test_reduce_single():
    assert reduce_fn("w", ["only"]) == "1 only"


def test_reduce_count_matches_values():
    values = ["c", "b", "a", "d"]
    count, joined = reduce_fn("w", values).split(" ", 1)
    assert int(count) == len(values)
    assert joined.split(",") == sorted(values)