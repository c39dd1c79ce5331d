import pytest

from taskconsole.id_data import IdData, Include
from taskconsole.stats import TaskStats


class _Data:
    def __init__(self, label):
        self.label = label
        self.dirty = True

    def take_unsent(self):
        dirty, self.dirty = self.dirty, False
        return dirty

    def is_unsent(self):
        return self.dirty

    def to_proto(self):
        return self.label


def _clean_dropped(created, dropped):
    stats = TaskStats(created)
    stats.drop_task(dropped)
    stats.take_unsent()
    return stats


def test_insert_get_contains_len():
    data = IdData()
    item = _Data("a")
    data.insert(1, item)
    assert data.get(1) is item
    assert data.get(2) is None
    assert 1 in data
    assert 2 not in data
    assert len(data) == 1


def test_since_last_update_yields_each_change_once():
    data = IdData()
    data.insert(1, _Data("a"))
    data.insert(2, _Data("b"))
    assert sorted(id for id, _ in data.since_last_update()) == [1, 2]
    assert list(data.since_last_update()) == []
    data.get(2).dirty = True
    assert [id for id, _ in data.since_last_update()] == [2]


def test_as_proto_all_and_updated_only():
    data = IdData()
    data.insert(3, _Data("x"))
    data.insert(4, _Data("y"))
    assert data.as_proto(Include.UPDATED_ONLY) == {3: "x", 4: "y"}
    assert data.as_proto(Include.UPDATED_ONLY) == {}
    assert data.as_proto(Include.ALL) == {3: "x", 4: "y"}


def test_as_proto_all_does_not_clear_dirty():
    data = IdData()
    data.insert(1, _Data("x"))
    data.as_proto(Include.ALL)
    assert data.get(1).is_unsent() is True


def test_as_proto_of_stats():
    stats = IdData()
    task = TaskStats(1.0)
    stats.insert(7, task)
    snapshot = stats.as_proto(Include.ALL)
    assert list(snapshot) == [7]
    assert snapshot[7].created_at == 1.0


def test_drop_closed_removes_expired():
    data, stats = IdData(), IdData()
    data.insert(1, _Data("a"))
    stats.insert(1, _clean_dropped(0.0, 1.0))
    data.drop_closed(stats, now=20.0, retention=5.0, has_watchers=False)
    assert 1 not in stats
    assert 1 not in data


def test_drop_closed_keeps_within_retention():
    data, stats = IdData(), IdData()
    data.insert(1, _Data("a"))
    stats.insert(1, _clean_dropped(0.0, 1.0))
    data.drop_closed(stats, now=3.0, retention=5.0, has_watchers=False)
    assert 1 in stats
    assert 1 in data


def test_drop_closed_keeps_live_entries():
    data, stats = IdData(), IdData()
    data.insert(1, _Data("a"))
    stats.insert(1, TaskStats(0.0))
    data.drop_closed(stats, now=1e9, retention=0.0, has_watchers=True)
    assert len(stats) == 1
    assert len(data) == 1


def test_drop_closed_dirty_with_watchers_is_dropped():
    data, stats = IdData(), IdData()
    data.insert(1, _Data("a"))
    task = TaskStats(0.0)
    task.drop_task(1.0)
    stats.insert(1, task)
    data.drop_closed(stats, now=1.0, retention=100.0, has_watchers=True)
    assert len(stats) == 0
    assert len(data) == 0


def test_drop_closed_dirty_without_watchers_is_kept():
    data, stats = IdData(), IdData()
    data.insert(1, _Data("a"))
    task = TaskStats(0.0)
    task.drop_task(1.0)
    stats.insert(1, task)
    data.drop_closed(stats, now=1.0, retention=100.0, has_watchers=False)
    assert 1 in stats


def test_drop_closed_clock_going_backwards_counts_as_zero():
    data, stats = IdData(), IdData()
    data.insert(1, _Data("a"))
    stats.insert(1, _clean_dropped(0.0, 50.0))
    data.drop_closed(stats, now=10.0, retention=0.0, has_watchers=False)
    assert 1 in stats


def test_drop_closed_removes_data_without_stats():
    data, stats = IdData(), IdData()
    data.insert(1, _Data("a"))
    data.insert(2, _Data("b"))
    stats.insert(2, TaskStats(0.0))
    data.drop_closed(stats, now=0.0, retention=10.0, has_watchers=False)
    assert [id for id, _ in data.all()] == [2]


def test_as_proto_rejects_unknown_mode():
    with pytest.raises(ValueError):
        IdData().as_proto("everything")