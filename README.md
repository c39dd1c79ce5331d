# taskconsole

`taskconsole` collects what an asynchronous runtime is doing and hands it to
console clients in the same process. It tracks:

- **tasks**: when they were spawned, polled, woken and dropped, with a
  histogram of poll times
- **resources**: timers, locks, semaphores and the like, with state attributes
  that are added to, subtracted from or overridden by update events
- **async operations** on those resources, and the poll operations made
  through them

Three parts work together:

- `taskconsole.layer.ConsoleLayer` receives span and event notifications from
  your instrumentation and turns them into events.
- `taskconsole.aggregator.Aggregator` folds those events into the current state.
- `taskconsole.server.Server` gives clients streams of that state.

The package uses only the standard library.

## Installation

```
pip install taskconsole
```

## Configuration

`taskconsole.config.ConsoleConfig` is an immutable dataclass. Each `with_*`
method returns a modified copy, so calls can be chained. Intervals and retention
are given in seconds.

```python
from taskconsole.config import ConsoleConfig

config = (
    ConsoleConfig()
    .with_event_buffer_capacity(4096)
    .with_client_buffer_capacity(256)
    .with_publish_interval(0.5)
    .with_retention(600)
    .with_recording_path("events.jsonl")
)
```

| Setting                  | Purpose                                                         | Default                  |
|--------------------------|-----------------------------------------------------------------|--------------------------|
| `event_buffer_capacity`  | Events queued from the layer to the aggregator before dropping  | 102400                   |
| `client_buffer_capacity` | Updates queued for each watcher before it is dropped            | 4096                     |
| `publish_interval`       | Seconds between updates sent to watchers                        | 1.0                      |
| `retention`              | Seconds that data of closed tasks and resources is kept         | 3600.0                   |
| `server_addr`            | A `(host, port)` pair stored on the `Server`                    | `("127.0.0.1", 6669)`    |
| `recording_path`         | File that receives a JSON-lines recording of events            | `None`                   |

Capacities and the publish interval must be positive and retention must not be
negative; otherwise `ValueError` is raised. Once the event buffer's free
capacity falls to `flush_under_capacity()` (half of the buffer), the layer
asks the aggregator to drain it. Events that do not fit in a full buffer are
dropped and counted; the counts are reported to watchers as `dropped_events`.

## Feeding the layer

```python
from taskconsole.layer import ConsoleLayer

layer, server = ConsoleLayer.build(config)   # or ConsoleLayer.new() for defaults
```

Callsites are described by `taskconsole.proto.Metadata` objects and compared by
identity, so create each one once:

1. Register it with `layer.register_callsite(meta)`.
2. Report spans with `on_new_span(meta, values, id, parent_id)`, where
   `values` is a mapping or a sequence of `(name, value)` pairs.
3. Report events with `on_event(meta, values)`.
4. Report span activity with `on_enter(id)`, `on_exit(id)` and `on_close(id)`.

Values are dispatched by type: booleans, non-negative integers (unsigned),
negative integers (signed) and strings are kept as such; anything else is kept
by its `repr`.

The layer recognises these span names and event targets:

| Name or target                                              | Meaning                                          |
|-------------------------------------------------------------|--------------------------------------------------|
| span `runtime.spawn`, or `task` with target `tokio::task`   | a spawned task; `loc.file`, `loc.line`, `loc.col` give its location |
| target `runtime::waker` or `tokio::task::waker`             | waker operation: `op` is `waker.wake`, `waker.wake_by_ref`, `waker.clone` or `waker.drop`; `task.id` names the task |
| span `runtime.resource`                                     | a resource: `concrete_type`, `kind`, `is_internal`, `inherits_child_attrs` |
| span `runtime.resource.async_op`                            | an async operation: `source`, `inherits_child_attrs` |
| target `runtime::resource::poll_op`                         | a poll operation: `op_name`, `is_ready`          |
| target `runtime::resource::state_update`                    | an attribute update for the entered resource     |
| target `runtime::resource::async_op::state_update`          | an attribute update for the entered async op     |

A state update carries one value field plus optional `<name>.op` (`add`,
`sub` or `override`) and `<name>.unit` fields.

The entered-span stack is kept per thread, and the event channel is a
thread-safe queue, so the layer can be fed from any thread. Call
`layer.close()` when you are done: it closes the event channel, which ends
aggregation, and finishes the recording if one was configured.

## Serving clients

`Server.serve()` is a coroutine that runs the aggregator until its command or
event channel closes; it can be started only once. While it runs, clients in
the same event loop use:

- `await server.watch_updates()`: returns a `taskconsole.events.Watch`. Its
  first update (`taskconsole.proto.Update`) holds the full state; later ones
  hold only what changed. Read them with `await watch.get()` or
  `watch.get_nowait()`.
- `await server.watch_task_details(task_id)`: returns a `Watch` of
  `TaskDetails` for one task, including its poll-time histogram serialized in
  the V2 histogram format (`taskconsole.stats.Histogram.deserialize` reads it).
- `await server.pause()` stops periodic publishing; `await server.resume()`
  starts it again.

A watcher whose queue is full when an update is due is dropped. Failed requests
raise `taskconsole.server.StatusError` with a `code`:

- `invalid_argument`: the task id is missing or 0
- `not_found`: the task is unknown
- `internal`: the aggregator is no longer running

```python
import asyncio

from taskconsole.config import ConsoleConfig
from taskconsole.layer import ConsoleLayer
from taskconsole.proto import Metadata


async def main() -> None:
    layer, server = ConsoleLayer.build(ConsoleConfig().with_publish_interval(0.1))
    serving = asyncio.create_task(server.serve())

    watch = await server.watch_updates()
    initial = await watch.get()          # full state

    spawn = Metadata(name="runtime.spawn", target="tokio::task")
    layer.register_callsite(spawn)
    layer.on_new_span(spawn, {"task.name": "worker"}, id=1)
    layer.on_enter(1)
    layer.on_exit(1)

    update = await watch.get()           # changes since the first update
    print(update.task_update.new_tasks)

    layer.close()
    await serving


asyncio.run(main())
```

## Recordings

With a recording path set, a `taskconsole.record.Recorder` writes one JSON
object per line from a background thread: first the header `{"v":1}`, then one
line per spawn, enter, exit, close and waker event, for example
`{"Enter":{"id":1,"at":{"secs_since_epoch":1700000000,"nanos_since_epoch":0}}}`.
A `Recorder` can also be used on its own as a context manager; leaving the
block writes the queued events and closes the file.

```python
from taskconsole.record import EnterRecord, Recorder

with Recorder("events.jsonl") as recorder:
    recorder.record(EnterRecord(id=1, at=1700000000.0))
```

## What this package does not do

- It opens no network socket and speaks no wire protocol. `server_addr` is only
  stored on the `Server`; clients must call its coroutines from the same
  process and event loop.
- It installs no hooks into `asyncio` or `logging`. Nothing is collected unless
  your instrumentation calls the layer's methods.
- It has no command-line program and reads no environment variables; all
  settings go through `ConsoleConfig`.
- It does not read recordings back.