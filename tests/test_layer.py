import json
import queue
from dataclasses import dataclass

from taskconsole.config import ConsoleConfig
from taskconsole.events import (
    AsyncResourceOpEvent,
    MetadataEvent,
    PollOpEvent,
    ResourceEvent,
    SpawnEvent,
)
from taskconsole.layer import ConsoleLayer
from taskconsole.proto import Location


@dataclass(eq=False)
class Callsite:
    name: str
    target: str = "app"
    kind: str = "span"

    def is_span(self):
        return self.kind == "span"

    def is_event(self):
        return self.kind == "event"


SPAWN = Callsite("runtime.spawn", "tokio::task")
WAKER = Callsite("waker", "runtime::waker", "event")
RESOURCE = Callsite("runtime.resource", "tokio::sync")
ASYNC_OP = Callsite("runtime.resource.async_op", "tokio::sync")
POLL_OP = Callsite("poll", "runtime::resource::poll_op", "event")
RE_STATE = Callsite("state", "runtime::resource::state_update", "event")
ALL = (SPAWN, WAKER, RESOURCE, ASYNC_OP, POLL_OP, RE_STATE)


def _drain(layer):
    events = []
    while True:
        try:
            events.append(layer.events.get_nowait())
        except queue.Empty:
            return events


def _layer(config=None):
    layer, _server = ConsoleLayer.build(config or ConsoleConfig())
    for callsite in ALL:
        layer.register_callsite(callsite)
    _drain(layer)
    return layer


def test_register_callsite_announces_metadata():
    layer, _server = ConsoleLayer.new()
    assert layer.register_callsite(SPAWN) is True
    events = _drain(layer)
    assert events == [MetadataEvent(SPAWN)]


def test_spawn_extracts_fields_and_location():
    layer = _layer()
    layer.on_new_span(
        SPAWN, {"task.name": "a", "loc.file": "f.rs", "loc.line": 3, "loc.col": 4}, 1
    )
    (event,) = _drain(layer)
    assert isinstance(event, SpawnEvent)
    assert event.id == 1
    assert event.location == Location(file="f.rs", line=3, column=4)
    assert [field.name for field in event.fields] == ["task.name"]
    assert layer.spans[1].stats is event.stats


def test_enter_and_exit_count_a_poll():
    layer = _layer()
    layer.on_new_span(SPAWN, {}, 1)
    layer.on_enter(1)
    layer.on_exit(1)
    poll_stats = layer.spans[1].stats.to_proto().poll_stats
    assert poll_stats.polls == 1
    assert poll_stats.last_poll_ended >= poll_stats.last_poll_started


def test_self_wake_counts_more_than_outside_wake():
    layer = _layer()
    layer.on_new_span(SPAWN, {}, 1)
    layer.on_new_span(SPAWN, {}, 2)
    layer.on_enter(1)
    layer.on_event(WAKER, {"op": "waker.wake_by_ref", "task.id": 1})
    layer.on_exit(1)
    layer.on_event(WAKER, {"op": "waker.wake_by_ref", "task.id": 2})
    inside = layer.spans[1].stats
    outside = layer.spans[2].stats
    assert inside.wakes > outside.wakes
    assert outside.wakes > 0


def test_waker_clone_is_counted():
    layer = _layer()
    layer.on_new_span(SPAWN, {}, 1)
    layer.on_event(WAKER, {"op": "waker.clone", "task.id": 1})
    stats = layer.spans[1].stats
    assert stats.waker_clones == 1
    assert stats.wakes == 0


def test_close_drops_task_and_forgets_span():
    layer = _layer()
    layer.on_new_span(SPAWN, {}, 1)
    stats = layer.spans[1].stats
    assert stats.dropped_at() is None
    layer.on_close(1)
    assert stats.dropped_at() is not None
    assert 1 not in layer.spans


def test_resource_async_op_and_poll_op():
    layer = _layer()
    layer.on_new_span(SPAWN, {}, 1)
    layer.on_enter(1)
    layer.on_new_span(RESOURCE, {"concrete_type": "Sleep", "kind": "timer"}, 10)
    layer.on_enter(10)
    layer.on_new_span(ASYNC_OP, {"source": "Sleep::new_timeout"}, 11, parent_id=10)
    layer.on_enter(11)
    layer.on_event(POLL_OP, {"op_name": "poll_elapsed", "is_ready": False})
    events = _drain(layer)

    (resource,) = [e for e in events if isinstance(e, ResourceEvent)]
    assert resource.concrete_type == "Sleep"
    assert resource.parent_id is None
    (async_op,) = [e for e in events if isinstance(e, AsyncResourceOpEvent)]
    assert async_op.resource_id == 10
    assert async_op.source == "Sleep::new_timeout"
    (poll,) = [e for e in events if isinstance(e, PollOpEvent)]
    assert (poll.task_id, poll.async_op_id, poll.resource_id) == (1, 11, 10)
    assert poll.op_name == "poll_elapsed"
    assert layer.spans[11].stats.task_id() == 1


def test_async_op_outside_resource_is_ignored():
    layer = _layer()
    layer.on_new_span(ASYNC_OP, {"source": "Sleep::new_timeout"}, 11)
    assert _drain(layer) == []
    assert layer.spans[11].stats is None


def test_state_update_accumulates_attribute():
    layer = _layer()
    layer.on_new_span(RESOURCE, {"concrete_type": "Sleep", "kind": "timer"}, 10)
    layer.on_enter(10)
    update = {"duration": 5, "duration.op": "add", "duration.unit": "ms"}
    layer.on_event(RE_STATE, update)
    layer.on_event(RE_STATE, update)
    (attribute,) = layer.spans[10].stats.to_proto().attributes
    assert attribute.unit == "ms"
    assert attribute.field.name == "duration"
    assert attribute.field.value.value == 10


def test_parent_resource_inherits_child_attributes():
    layer = _layer()
    layer.on_new_span(
        RESOURCE,
        {"concrete_type": "Mutex", "kind": "sync", "inherits_child_attrs": True},
        10,
    )
    layer.on_enter(10)
    layer.on_new_span(RESOURCE, {"concrete_type": "Semaphore", "kind": "sync"}, 20)
    layer.on_enter(20)
    layer.on_event(RE_STATE, {"locked": True})
    child = layer.spans[20].stats
    parent = layer.spans[10].stats
    assert child.parent_id == 10
    assert len(child.to_proto().attributes) == len(parent.to_proto().attributes) == 1


def test_full_buffer_drops_and_triggers_flush():
    layer, _server = ConsoleLayer.build(ConsoleConfig().with_event_buffer_capacity(1))
    layer.register_callsite(Callsite("one"))
    layer.register_callsite(Callsite("two"))
    assert layer.shared.dropped_tasks.value == 1
    assert layer.events.qsize() == 1
    assert layer.shared.flush.is_triggered()


def test_recording_writes_events(tmp_path):
    path = tmp_path / "recording.json"
    layer, _server = ConsoleLayer.build(ConsoleConfig().with_recording_path(path))
    layer.register_callsite(SPAWN)
    layer.on_new_span(SPAWN, {"task.name": "a"}, 1)
    layer.on_enter(1)
    layer.on_exit(1)
    layer.on_close(1)
    layer.close()
    lines = path.read_text().splitlines()
    assert lines[0] == '{"v":1}'
    kinds = [next(iter(json.loads(line))) for line in lines[1:]]
    assert kinds == ["Spawn", "Enter", "Exit", "Close"]


def test_close_ends_event_channel():
    layer = _layer()
    layer.close()
    layer.register_callsite(SPAWN)
    assert _drain(layer) == [None]


def test_unknown_span_ids_are_ignored():
    layer = _layer()
    layer.on_enter(99)
    layer.on_exit(99)
    layer.on_close(99)
    assert layer.spans == {}
    assert _drain(layer) == []