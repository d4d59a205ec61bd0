"""Tests for result classification."""

from datetime import timedelta

import pytest

from rewrite_cli.models import EditResult, SourceUnit
from rewrite_cli.results import classify, format_duration


def unit(path: str, text: str = "x\n") -> SourceUnit:
    return SourceUnit(path, "plain_text", text=text)


def test_each_result_lands_in_one_category():
    created = EditResult(None, unit("new.txt"), ("r",), timedelta(minutes=1))
    deleted = EditResult(unit("old.txt"), None, ("r",), timedelta(minutes=2))
    moved = EditResult(unit("a.txt"), unit("b/a.txt"), ("r",))
    modified = EditResult(unit("m.txt"), unit("m.txt", "y\n"), ("r",), timedelta(seconds=30))
    same = EditResult(unit("s.txt"), unit("s.txt"), ("r",))
    empty = EditResult(None, None)

    classification = classify([modified, same, moved, deleted, empty, created])

    assert classification.created == (created,)
    assert classification.deleted == (deleted,)
    assert classification.moved == (moved,)
    assert classification.modified == (modified,)
    assert classification.discarded == 2
    assert classification.ordered == [created, deleted, moved, modified]
    assert classification.time_saved == timedelta(minutes=3, seconds=30)
    assert len(classification) == 4


def test_input_order_is_kept_within_a_category():
    first = EditResult(unit("b.txt"), unit("b.txt", "1\n"))
    second = EditResult(unit("a.txt"), unit("a.txt", "2\n"))
    assert classify([first, second]).modified == (first, second)


def test_empty_classification():
    classification = classify([])
    assert classification.is_empty
    assert classification.time_saved == timedelta(0)


@pytest.mark.parametrize("duration,text", [
    (timedelta(0), "0s"),
    (timedelta(seconds=59), "59s"),
    (timedelta(minutes=5), "5m"),
    (timedelta(hours=1, minutes=5, seconds=30), "1h 5m 30s"),
    (timedelta(hours=2, seconds=1), "2h 1s"),
    (timedelta(days=1), "24h"),
])
def test_format_duration(duration, text):
    assert format_duration(duration) == text
