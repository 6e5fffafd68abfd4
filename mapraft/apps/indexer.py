"""Indexing application: for each word, list the documents containing it."""

from __future__ import annotations

from itertools import groupby

from mapraft.mr.worker import KeyValue


def _words(text: str) -> list[str]:
    return ["".join(run) for is_letter, run in groupby(text, key=str.isalpha) if is_letter]


def map_fn(document: str, value: str) -> list[KeyValue]:
    """Emit (word, document) once for each distinct word in the document."""
    return [KeyValue(word, document) for word in dict.fromkeys(_words(value))]


def reduce_fn(key: str, values: list[str]) -> str:
    """Return the document count followed by the sorted, comma-joined documents."""
    documents = sorted(values)
    return f"{len(documents)} {','.join(documents)}"