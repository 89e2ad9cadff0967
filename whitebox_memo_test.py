import pytest

from pickleval.memo import MemoTable
from pickleval.value import Global


def test_put_get():
    memo = MemoTable()
    value = [1, 2]
    memo.put(3, value)
    assert memo.get(3) is value
    assert memo.id_of(value) == 3
    assert 3 in memo
    assert len(memo) == 1


def test_missing_id():
    memo = MemoTable()
    with pytest.raises(KeyError):
        memo.get(0)
    assert 0 not in memo


def test_negative_put():
    with pytest.raises(ValueError):
        MemoTable().put(-1, [])


def test_identity_not_equality():
    memo = MemoTable()
    a = []
    b = []
    memo.memoize(a)
    assert memo.id_of(a) == 0
    assert memo.id_of(b) is None


def test_globals_by_value():
    memo = MemoTable()
    memo.memoize(Global("m", "n"))
    assert memo.id_of(Global("m", "n")) == 0


def test_memoize_counts_up():
    memo = MemoTable()
    assert [memo.memoize([]) for _ in range(3)] == [0, 1, 2]
    assert len(memo) == 3


def test_overwrite_drops_stale_identity():
    memo = MemoTable()
    a = []
    b = []
    memo.put(0, a)
    memo.put(0, b)
    assert memo.get(0) is b
    assert memo.id_of(a) is None
    assert memo.id_of(b) == 0
    assert len(memo) == 1


def test_track_uses_hidden_ids():
    memo = MemoTable()
    value = {}
    idx = memo.track(value)
    assert idx < 0
    assert memo.track(value) == idx
    assert memo.id_of(value) == idx
    assert len(memo) == 0
    memo.put(0, value)
    assert memo.id_of(value) == 0


def test_clear():
    memo = MemoTable()
    memo.memoize([])
    memo.track({})
    memo.clear()
    assert len(memo) == 0
    assert memo.memoize([]) == 0


def test_untrack():
    memo = MemoTable()
    tracked = bytearray(b"x")
    named = []
    memo.track(tracked)
    memo.put(0, named)
    memo.untrack(tracked)
    memo.untrack(named)
    assert memo.id_of(tracked) is None
    assert memo.id_of(named) == 0
    assert memo.get(0) is named
