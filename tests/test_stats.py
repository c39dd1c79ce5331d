import pytest

from taskconsole.attribute import AttributeUpdate, UpdateOp
from taskconsole.proto import Field, FieldValue, Id
from taskconsole.stats import (
    AsyncOpStats,
    Histogram,
    PollStats,
    ResourceStats,
    TaskStats,
    WakeOp,
    WakeOpKind,
)


def test_wake_op_is_wake():
    assert WakeOp(WakeOpKind.WAKE).is_wake()
    assert WakeOp(WakeOpKind.WAKE_BY_REF).is_wake()
    assert not WakeOp(WakeOpKind.CLONE).is_wake()
    assert not WakeOp(WakeOpKind.DROP).is_wake()


def test_with_self_wake_only_changes_wakes():
    assert WakeOp(WakeOpKind.WAKE).with_self_wake(True) == WakeOp(WakeOpKind.WAKE, True)
    assert WakeOp(WakeOpKind.CLONE).with_self_wake(True) == WakeOp(WakeOpKind.CLONE)


def test_clone_and_drop_counts():
    stats = TaskStats(1.0)
    stats.record_wake_op(WakeOp(WakeOpKind.CLONE), 2.0)
    stats.record_wake_op(WakeOp(WakeOpKind.CLONE), 2.0)
    stats.record_wake_op(WakeOp(WakeOpKind.DROP), 3.0)
    data = stats.to_proto()
    assert data.waker_clones == 2
    assert data.waker_drops == 1
    assert data.wakes == 0
    assert data.last_wake is None


def test_wake_by_value_counts_a_drop():
    stats = TaskStats(1.0)
    stats.record_wake_op(WakeOp(WakeOpKind.WAKE), 5.0)
    stats.record_wake_op(WakeOp(WakeOpKind.WAKE_BY_REF), 4.0)
    data = stats.to_proto()
    assert data.wakes == 2
    assert data.waker_drops == 1
    assert data.last_wake == 5.0


def test_self_wake_counts_wake_twice():
    stats = TaskStats(1.0)
    stats.record_wake_op(WakeOp(WakeOpKind.WAKE_BY_REF, self_wake=True), 2.0)
    data = stats.to_proto()
    assert data.wakes == 2
    assert data.self_wakes == 0


def test_poll_records_times_and_histogram():
    start, end = 10.0, 12.0
    stats = TaskStats(1.0)
    stats.start_poll(start)
    stats.end_poll(end)
    poll = stats.to_proto().poll_stats
    assert poll.polls == 1
    assert poll.first_poll == start
    assert poll.last_poll_started == start
    assert poll.last_poll_ended == end
    assert poll.busy_time == end - start
    histogram = Histogram.deserialize(stats.serialize_histogram())
    assert len(histogram) == 1
    assert histogram.count_at(int((end - start) * 1_000_000_000)) == 1


def test_nested_polls_count_once():
    stats = PollStats()
    stats.start_poll(1.0)
    stats.start_poll(2.0)
    stats.end_poll(3.0)
    assert stats.to_proto().last_poll_ended is None
    stats.end_poll(4.0)
    data = stats.to_proto()
    assert data.polls == 1
    assert data.busy_time == 4.0 - 1.0


def test_drop_task_keeps_first_timestamp():
    stats = TaskStats(1.0)
    assert stats.dropped_at() is None
    stats.drop_task(5.0)
    stats.drop_task(9.0)
    assert stats.dropped_at() == 5.0
    assert stats.to_proto().dropped_at == 5.0


def test_take_unsent_clears_dirty_flag():
    stats = TaskStats(1.0)
    assert stats.is_unsent()
    assert stats.take_unsent()
    assert not stats.is_unsent()
    assert not stats.take_unsent()
    stats.start_poll(2.0)
    assert stats.is_unsent()


def test_histogram_round_trip():
    histogram = Histogram()
    for value in (0, 5, 5, 300, 1_000_000):
        histogram.record(value)
    data = histogram.serialize()
    assert data[:4] == bytes.fromhex("1c849303")
    restored = Histogram.deserialize(data)
    assert len(restored) == len(histogram)
    assert restored.count_at(5) == 2
    assert restored.count_at(300) == 1
    assert restored.max == histogram.max
    assert restored.serialize() == data


def test_histogram_exact_below_sub_bucket_count():
    histogram = Histogram()
    histogram.record(200)
    assert histogram.max == 200
    assert histogram.count_at(199) == 0


def test_histogram_rejects_negative_value():
    with pytest.raises(ValueError):
        Histogram().record(-1)


def test_histogram_rejects_bad_cookie():
    data = bytearray(Histogram().serialize())
    data[0] ^= 0xFF
    with pytest.raises(ValueError):
        Histogram.deserialize(bytes(data))


def test_resource_attributes_in_proto():
    stats = ResourceStats(1.0, inherit_child_attributes=True, parent_id=3)
    update = AttributeUpdate(Field(name="permits", value=FieldValue.from_u64(4)), UpdateOp.OVERRIDE)
    stats.take_unsent()
    stats.update_attribute(7, update)
    assert stats.is_unsent()
    data = stats.to_proto()
    assert data.attributes == [update.to_attribute()]
    data.attributes[0].field.value = FieldValue.from_u64(99)
    assert stats.to_proto().attributes == [update.to_attribute()]


def test_drop_resource():
    stats = ResourceStats(1.0)
    stats.drop_resource(3.0)
    stats.drop_resource(4.0)
    assert stats.dropped_at() == 3.0
    assert stats.to_proto().dropped_at == 3.0


def test_async_op_task_id():
    stats = AsyncOpStats(1.0)
    assert stats.task_id() is None
    assert stats.to_proto().task_id is None
    stats.take_unsent()
    stats.set_task_id(5)
    assert stats.is_unsent()
    assert stats.task_id() == 5
    assert stats.to_proto().task_id == Id(5)


def test_async_op_poll_and_drop():
    stats = AsyncOpStats(1.0, parent_id=2)
    stats.start_poll(2.0)
    stats.end_poll(3.0)
    stats.drop_async_op(6.0)
    data = stats.to_proto()
    assert data.poll_stats.polls == 1
    assert data.dropped_at == 6.0
    assert stats.dropped_at() == 6.0
    assert stats.stats.parent_id == 2