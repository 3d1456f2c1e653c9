# logpipe

`logpipe` is an in-process event pipeline for shipping logs. An input plugin
feeds raw records into a `Pipeline`. The pipeline decodes them into JSON
events, puts them into ordered streams, and a pool of processor threads runs
them through a chain of action plugins. Then it hands them to an output
plugin. When the output commits an event, the pipeline tells the input, so the
input can save its offsets in order.

The package needs nothing beyond the Python standard library (3.10 or later).

## Modules

- `logpipe.pipeline`: `Pipeline`, `Decoder`, `StrictModeError`.
- `logpipe.plugin`: plugin interfaces (`InputPlugin`, `ActionPlugin`,
  `OutputPlugin`), plugin descriptions (`PluginStaticInfo`,
  `PluginRuntimeInfo`, `InputPluginInfo`, `OutputPluginInfo`,
  `ActionPluginStaticInfo`, `ActionPluginInfo`), `Settings`, `ActionResult`,
  `MatchCondition`, `MatchMode`, `match_mode_from_string`.
- `logpipe.event`: `Event`, `EventPool`, `EventKind`, `EventStage`,
  `EventStatus`.
- `logpipe.stream`: `Stream` and `Streamer`, the ordered queues and the
  component that hands them to processors.
- `logpipe.processor`: `Processor`, which runs events through the actions.
- `logpipe.batch`: `Batch`, `BatcherOptions`, `Batcher`.
- `logpipe.antispam`: `Antispamer`.
- `logpipe.metrics`: `CounterVec`, `GaugeVec`, `Registry`,
  `MetricsController`, `MetricsHolder`.
- `logpipe.action_watcher`: `ActionWatcher`, `Sample`, `WatchTimeout`.
- `logpipe.handlers`: debug views of a pipeline and `build_routes`.
- `logpipe.delta_wrapper`: `DeltaWrapper`.
- `logpipe.util`: `LogLevel`, `parse_level_as_number`,
  `parse_level_as_string`, `parse_format_name`, `create_nested_field`,
  `AtomicInt`.

## Quick look

Log levels follow RFC 5424:

```python
from logpipe.util import LogLevel, parse_level_as_number, parse_level_as_string

assert parse_level_as_number("warn") == LogLevel.WARNING
assert parse_level_as_string("3") == "error"
assert parse_level_as_number("nonsense") == LogLevel.UNKNOWN
```

Match modes are parsed from their configuration names. A condition can match
exact values or prefixes:

```python
from logpipe.plugin import MatchCondition, MatchMode, match_mode_from_string

assert match_mode_from_string(" OR_prefix ") == MatchMode.OR_PREFIX
assert match_mode_from_string("xor") == MatchMode.UNKNOWN

cond = MatchCondition(field=["k8s_pod"], values=["payment-api"])
assert cond.value_exists("payment-api-abcd", by_prefix=True)
assert not cond.value_exists("payment-api-abcd", by_prefix=False)
```

A batch is ready once it reaches its count limit, reaches its byte limit, or
holds events for longer than its timeout:

```python
from logpipe.batch import Batch
from logpipe.event import Event

batch = Batch(max_size_count=2, max_size_bytes=0, timeout=1.0)
batch.append(Event(size=10))
batch.append(Event(size=10))
assert batch.is_ready()
```

A `DeltaWrapper` turns a growing total into the amount it grew by:

```python
from logpipe.delta_wrapper import DeltaWrapper

totals = DeltaWrapper()
assert totals.update_value(10) == 10
assert totals.update_value(25) == 15
assert totals.get() == 25
```

## Building a pipeline

1. Create `Pipeline(name, settings, registry=None, parsers=None)`.
   `Settings` holds the decoder name, the capacity of the event pool, the
   maintenance interval and event timeout (in seconds), the antispam
   threshold, the average and maximum event size, the stream field and strict
   mode. An unknown decoder name raises `ValueError`.
2. Attach an input with `set_input`, actions with `add_action` and an output
   with `set_output`. Every action's `PluginStaticInfo.factory` must return a
   `(plugin, config)` pair. Each processor creates its own action instances
   from it.
3. Call `start()`. The input feeds records through
   `ingest(source_id, source_name, offset, data, is_new_source)`. This returns
   the event's sequence id, or `0` when the record is dropped: empty, too
   long, spam, rejected by `pass_event`, or not decodable. The output reports
   delivered events with `commit(event)` and problems with `error(message)`.
4. Call `stop()` to shut everything down.

Decoding:

- `json` parses the record as JSON.
- `raw` stores the record, minus its last byte, under `message`.
- `auto` uses the decoder the input gave with `suggest_decoder`, and falls
  back to JSON.
- `cri`, `postgres` and `nginx_error` call a parser function that you supply
  in the `parsers` mapping, keyed by `Decoder`. The function fills the event
  body and raises `ValueError` on bad input.

In strict mode, malformed input and reported errors raise `StrictModeError`.
A Postgres parse failure always raises it.

The pipeline starts one processor per CPU, or one after
`disable_parallelism()`. While every processor stays busy, it keeps doubling
their number. `use_spread()` spreads events over processors instead of
grouping them by stream. `disable_streams()` ignores the stream field.
`maintenance_tick()` runs one maintenance round and returns how the counters
moved since the previous round. It is also run in the background every
maintenance interval.

## Debug views

`logpipe.handlers.build_routes(pipeline)` returns a dict that maps each path
to a handler taking no arguments:

- `/pipelines/<name>` returns a dump of the streams and the event pool.
- `/pipelines/<name>/ban_list` returns the sources the antispam has banned.
- `/pipelines/<name>/<n>/info` returns the received, discarded and passed
  counts of action `n`.
- `/pipelines/<name>/<n>/sample` returns the event before and after action
  `n`.

Plugin endpoints are listed under their plugin's index. The input has index 0
and the output has the last index. The pipeline handlers return a `Response`
with a status, a body and a content type.

## What the package does not do

- It ships no input, action or output plugins. You provide them by
  implementing the plugin interfaces.
- It ships no CRI, Postgres or nginx error log parsers. Those decoders work
  only with parsers you pass in.
- It has no HTTP server. `build_routes` gives you handlers to mount in a
  server of your choice.
- Metrics live only in memory in `Registry` objects. No exporter or metrics
  endpoint is included.
- It has no configuration file loader and no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```