"""The pipeline: decodes input, routes events into streams and runs processors over them."""

from __future__ import annotations

import logging
import os
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping

from .antispam import Antispamer
from .delta_wrapper import DeltaWrapper
from .event import MISSING, Event, EventPool, node_as_string
from .metrics import MetricsController, MetricsHolder, Registry
from .plugin import (
    DEFAULT_FIELD_VALUE,
    METRICS_GEN_INTERVAL,
    ActionPluginStaticInfo,
    PluginDefaultParams,
    PluginParams,
)
from .processor import Processor
from .stream import Streamer
from .util import AtomicInt

DEFAULT_STREAM_FIELD = "stream"
DEFAULT_CAPACITY = 1024
DEFAULT_AVG_INPUT_EVENT_SIZE = 4 * 1024
DEFAULT_MAX_INPUT_EVENT_SIZE = 0
DEFAULT_MAINTENANCE_INTERVAL = 5.0
DEFAULT_EVENT_TIMEOUT = 30.0
DEFAULT_STREAM_NAME = DEFAULT_FIELD_VALUE

EVENT_SEQ_ID_ERROR = 0

ANTISPAM_UNBAN_ITERATIONS = 4

_GROW_INTERVAL = 0.1
_MAX_PROCS_WARNING = 10000


class Decoder(str, Enum):
    """How raw input bytes are turned into an event body."""

    NO = "no"
    JSON = "json"
    RAW = "raw"
    CRI = "cri"
    POSTGRES = "postgres"
    NGINX_ERROR = "nginx_error"
    AUTO = "auto"


class StrictModeError(RuntimeError):
    """A malformed input or a reported error that must stop the pipeline."""


Parser = Callable[[dict, bytes], None]


@dataclass
class _ActionBinding:
    """An action plugin instance bound to its static description."""

    action_info: ActionPluginStaticInfo
    plugin: Any
    id: str


def _parse_decoder(name: str) -> Decoder:
    try:
        decoder = Decoder(name)
    except ValueError:
        decoder = Decoder.NO
    return decoder


class Pipeline:
    """Connects one input, a chain of actions and one output."""

    def __init__(
        self,
        name: str,
        settings: Any,
        registry: Registry | None = None,
        parsers: Mapping[Decoder, Parser] | None = None,
    ) -> None:
        decoder = _parse_decoder(settings.decoder)
        if decoder is Decoder.NO:
            raise ValueError(f"unknown decoder {settings.decoder!r} for pipeline {name!r}")

        self.name = name
        self.settings = settings
        self.logger = logging.getLogger(f"logpipe.pipeline.{name}")
        self.decoder = decoder
        self.suggested_decoder = Decoder.NO
        self.parsers: dict[Decoder, Parser] = dict(parsers or {})

        self.started = False
        self.use_spread_mode = False
        self.streams_disabled = False
        self.single_proc = False
        self._should_stop = threading.Event()

        self.action_params = PluginDefaultParams(name, settings)
        self.metrics_ctl = MetricsController("pipeline_" + name, registry)
        self.metrics_holder = MetricsHolder(name, registry, METRICS_GEN_INTERVAL)
        self.streamer = Streamer(settings.event_timeout)
        self.event_pool = EventPool(settings.capacity, settings.avg_event_size)
        self.antispamer = Antispamer(
            settings.antispam_threshold,
            ANTISPAM_UNBAN_ITERATIONS,
            settings.maintenance_interval,
            self.metrics_ctl,
        )

        self.input: Any = None
        self.input_info: Any = None
        self.output: Any = None
        self.output_info: Any = None
        self.action_infos: list[ActionPluginStaticInfo] = []
        self.procs: list[Processor] = []
        self.proc_count = AtomicInt(0)
        self.active_procs = AtomicInt(0)

        self.event_log_enabled = False
        self.event_log: list[str] = []
        self._event_log_lock = threading.Lock()
        self.in_sample = b""
        self.out_sample = b""
        self.input_events = AtomicInt()
        self.input_size = AtomicInt()
        self.output_events = AtomicInt()
        self.output_size = AtomicInt()
        self.read_ops = AtomicInt()
        self.max_size = 0

        self._deltas = {
            key: DeltaWrapper()
            for key in ("input_events", "input_size", "output_events", "output_size", "reads")
        }
        self._threads: list[threading.Thread] = []

        self._register_metrics()
        self.event_pool_capacity_metric.set(float(settings.capacity))

    def _register_metrics(self) -> None:
        ctl = self.metrics_ctl
        self.in_use_events_metric = ctl.register_gauge(
            "event_pool_in_use_events", "Count of pool events which is used for processing"
        )
        self.event_pool_capacity_metric = ctl.register_gauge(
            "event_pool_capacity", "Pool capacity value"
        )
        self.input_events_count_metric = ctl.register_counter(
            "input_events_count", "Count of events on pipeline input"
        )
        self.input_event_size_metric = ctl.register_counter(
            "input_events_size", "Size of events on pipeline input"
        )
        self.output_events_count_metric = ctl.register_counter(
            "output_events_count", "Count of events on pipeline output"
        )
        self.output_event_size_metric = ctl.register_counter(
            "output_events_size", "Size of events on pipeline output"
        )
        self.read_ops_metric = ctl.register_counter("read_ops_count", "Read OPS count")
        self.wrong_event_cri_format_metric = ctl.register_counter(
            "wrong_event_cri_format", "Wrong event CRI format counter"
        )
        self.max_event_size_exceeded_metric = ctl.register_counter(
            "max_event_size_exceeded", "Max event size exceeded counter"
        )

    def inc_read_ops(self) -> None:
        self.read_ops.inc()

    def inc_max_event_size_exceeded(self) -> None:
        self.max_event_size_exceeded_metric.inc()

    def set_input(self, info: Any) -> None:
        self.input_info = info
        self.input = info.plugin

    def set_output(self, info: Any) -> None:
        self.output_info = info
        self.output = info.plugin

    def add_action(self, info: ActionPluginStaticInfo) -> None:
        self.action_infos.append(info)
        self.metrics_holder.add_action(info.metric_name, info.metric_labels)

    def _require_plugins(self) -> None:
        if self.input is None:
            raise RuntimeError(f"input isn't set for pipeline {self.name!r}")
        if self.output is None:
            raise RuntimeError(f"output isn't set for pipeline {self.name!r}")

    def start(self) -> None:
        """Start output, processors, input and the background maintenance."""
        self._require_plugins()
        self._init_procs()
        self.metrics_holder.start()

        output_type = getattr(self.output_info, "type", "") or "output"
        self.logger.info("starting output plugin %r", output_type)
        self.output.register_metrics(self.metrics_ctl)
        self.output.start(
            self.output_info.config,
            PluginParams(
                defaults=self.action_params,
                controller=self,
                logger=self.logger.getChild("output " + output_type),
            ),
        )

        self.logger.info("starting processors, count=%d", len(self.procs))
        for proc in self.procs:
            proc.register_metrics(self.metrics_ctl)
            proc.start(self.action_params, self.logger)

        input_type = getattr(self.input_info, "type", "") or "input"
        self.logger.info("starting input plugin %r", input_type)
        self.input.register_metrics(self.metrics_ctl)
        self.input.start(
            self.input_info.config,
            PluginParams(
                defaults=self.action_params,
                controller=self,
                logger=self.logger.getChild("input " + input_type),
            ),
        )

        self.streamer.start()
        self._spawn(self._maintenance_loop, f"pipeline-{self.name}-maintenance")
        if not self.use_spread_mode:
            self._spawn(self._grow_procs, f"pipeline-{self.name}-grow")
        self.started = True

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def stop(self) -> None:
        """Stop processors, streams and both plugins."""
        self.logger.info(
            "stopping pipeline %r, total committed=%d", self.name, self.output_events.load()
        )
        for proc in self.procs:
            proc.stop()
        self.streamer.stop()
        self.input.stop()
        self.output.stop()
        self._should_stop.set()

    def ingest(
        self,
        source_id: int,
        source_name: str,
        offset: int,
        data: bytes | str,
        is_new_source: bool,
    ) -> int:
        """Decode one input record and put it into its stream; return its sequence id.

        Returns EVENT_SEQ_ID_ERROR when the record is dropped.
        """
        if isinstance(data, str):
            data = data.encode()
        length = len(data)

        is_empty = length == 0 or data == b"\n"
        is_spam = self.antispamer.is_spam(source_id, source_name, is_new_source)
        is_long = self.settings.max_event_size != 0 and length > self.settings.max_event_size
        if is_long:
            self.inc_max_event_size_exceeded()
        if is_empty or is_spam or is_long:
            return EVENT_SEQ_ID_ERROR

        self.input_events.inc()
        self.input_size.inc(length)

        event = self.event_pool.get()
        decoder = self.suggested_decoder if self.decoder is Decoder.AUTO else self.decoder
        if decoder is Decoder.NO:
            decoder = Decoder.JSON

        context = f"offset={offset}, length={length}, source={source_id}:{source_name}"
        if decoder is Decoder.JSON:
            try:
                event.parse_json(data)
            except ValueError as exc:
                self._bad_input(f"wrong json format {context}, err={exc}, json={data!r}")
                self.event_pool.back(event)
                return EVENT_SEQ_ID_ERROR
        elif decoder is Decoder.RAW:
            event.root = {"message": data[:-1].decode("utf-8", errors="replace")}
        else:
            parser = self.parsers.get(decoder)
            if parser is None:
                self.event_pool.back(event)
                raise ValueError(f"no parser for decoder {decoder.value!r} in pipeline {self.name!r}")
            event.root = {}
            try:
                parser(event.root, data)
            except ValueError as exc:
                message = f"wrong {decoder.value} format {context}, err={exc}, data={data!r}"
                self.event_pool.back(event)
                if decoder is Decoder.POSTGRES:
                    raise StrictModeError(message) from exc
                if decoder is Decoder.CRI:
                    self.wrong_event_cri_format_metric.inc()
                self._bad_input(message)
                return EVENT_SEQ_ID_ERROR

        event.offset = offset
        event.source_id = source_id
        event.source_name = source_name
        event.stream_name = DEFAULT_STREAM_NAME
        event.size = length
        return self.stream_event(event)

    def _bad_input(self, message: str) -> None:
        if self.settings.is_strict:
            raise StrictModeError(message)
        self.logger.error(message)

    def stream_event(self, event: Event) -> int:
        """Put a decoded event into the stream chosen for it."""
        stream_id = event.source_id
        if self.use_spread_mode:
            # spread events across all processors
            stream_id = event.seq_id % self.proc_count.load()

        if not self.streams_disabled:
            node = event.dig(self.settings.stream_field)
            if node is not MISSING:
                event.stream_name = node_as_string(node)
            if not self.input.pass_event(event):
                self.event_pool.back(event)
                return EVENT_SEQ_ID_ERROR

        if not self.in_sample:
            self.in_sample = event.encode_to_string().encode()

        return self.streamer.put_event(stream_id, event.stream_name, event)

    def commit(self, event: Event) -> None:
        """Mark an event as delivered by the output."""
        self._finalize(event, True, True)

    def error(self, message: str) -> None:
        """Report an output error; fatal in strict mode."""
        if self.settings.is_strict:
            raise StrictModeError(message)
        self.logger.error(message)

    def _finalize(self, event: Event, notify_input: bool, back_event: bool) -> None:
        if event.is_timeout_kind():
            return

        if notify_input:
            self.input.commit(event)
            self.output_events.inc()
            self.output_size.inc(event.size)
            if not self.out_sample and random.getrandbits(1):
                self.out_sample = event.encode_to_string().encode()
            self.max_size = max(self.max_size, event.size)

        if event.stream is not None:
            event.stream.commit(event)

        if not back_event:
            return

        if self.event_log_enabled:
            with self._event_log_lock:
                self.event_log.append(event.encode_to_string())

        self.event_pool.back(event)

    def _init_procs(self) -> None:
        count = 1 if self.single_proc else (os.cpu_count() or 1)
        self.logger.info("starting pipeline %r: procs=%d", self.name, count)
        self.proc_count = AtomicInt(count)
        self.active_procs = AtomicInt(0)
        self.procs = [self._new_proc() for _ in range(count)]

    def _new_proc(self) -> Processor:
        proc = Processor(
            self.metrics_holder,
            self.active_procs,
            self.output,
            self.streamer,
            self._finalize,
        )
        for index, info in enumerate(self.action_infos):
            plugin, _config = info.factory()
            proc.add_action_plugin(_ActionBinding(info, plugin, f"{proc.id}_{index}"))
        return proc

    def _grow_procs(self) -> None:
        last_idle = time.monotonic()
        while not self._should_stop.wait(_GROW_INTERVAL):
            if self.proc_count.load() != self.active_procs.load():
                last_idle = time.monotonic()
            if time.monotonic() - last_idle > _GROW_INTERVAL:
                self._expand_procs()

    def _expand_procs(self) -> None:
        if self.single_proc:
            return
        current = self.proc_count.load()
        target = current * 2
        self.logger.info("processors count expanded from %d to %d", current, target)
        if target > _MAX_PROCS_WARNING:
            self.logger.warning("too many processors: %d", target)
        for _ in range(target - current):
            proc = self._new_proc()
            self.procs.append(proc)
            proc.register_metrics(self.metrics_ctl)
            proc.start(self.action_params, self.logger)
        self.proc_count.swap(target)

    def _maintenance_loop(self) -> None:
        interval = self.settings.maintenance_interval
        if interval <= 0:
            interval = DEFAULT_MAINTENANCE_INTERVAL
        while not self._should_stop.wait(interval):
            self.maintenance_tick()

    def maintenance_tick(self) -> dict[str, float]:
        """Run one maintenance round and return how the counters moved since the last one."""
        self.antispamer.maintenance()
        self.metrics_holder.maintenance()

        deltas = {
            "input_events": self._deltas["input_events"].update_value(self.input_events.load()),
            "input_size": self._deltas["input_size"].update_value(self.input_size.load()),
            "output_events": self._deltas["output_events"].update_value(self.output_events.load()),
            "output_size": self._deltas["output_size"].update_value(self.output_size.load()),
            "reads": self._deltas["reads"].update_value(self.read_ops.load()),
        }
        self.input_events_count_metric.add(deltas["input_events"])
        self.input_event_size_metric.add(deltas["input_size"])
        self.output_events_count_metric.add(deltas["output_events"])
        self.output_event_size_metric.add(deltas["output_size"])
        self.read_ops_metric.add(deltas["reads"])
        self.in_use_events_metric.set(float(self.event_pool.in_use_events.load()))

        self._log_changes(deltas)

        if self.in_sample:
            self.logger.info("%r pipeline input event sample: %s", self.name, self.in_sample)
            self.in_sample = b""
        if self.out_sample:
            self.logger.info("%r pipeline output event sample: %s", self.name, self.out_sample)
            self.out_sample = b""
        return deltas

    def _log_changes(self, deltas: dict[str, float]) -> None:
        input_size = self.input_size.load()
        input_events = self.input_events.load()
        in_use = self.event_pool.in_use_events.load()
        capacity = self.settings.capacity
        interval = self.settings.maintenance_interval or DEFAULT_MAINTENANCE_INTERVAL
        mb = 1024.0 * 1024.0
        self.logger.info(
            "%r pipeline stats interval=%ds, active procs=%d/%d, events outside pool=%d/%d, "
            "events in pool=%d/%d, out=%d|%.1fMb, rate=%d/s|%.1fMb/s, read ops=%d/s, "
            "total=%d|%.1fMb, avg size=%d, max size=%d",
            self.name,
            int(interval),
            self.active_procs.load(),
            self.proc_count.load(),
            in_use,
            capacity,
            capacity - in_use,
            capacity,
            int(deltas["input_events"]),
            deltas["input_size"] / mb,
            int(deltas["input_events"] / interval),
            deltas["input_size"] / interval / mb,
            int(deltas["reads"] / interval),
            input_events,
            input_size / mb,
            input_size // max(input_size, 1),
            self.max_size,
        )

    def use_spread(self) -> None:
        """Spread events over all processors instead of grouping them by stream."""
        if self.started:
            raise RuntimeError("don't use Pipeline.use_spread after the pipeline has started")
        self.use_spread_mode = True

    def disable_streams(self) -> None:
        self.streams_disabled = True

    def suggest_decoder(self, decoder: Decoder | str) -> None:
        """Set the decoder used when the configured one is ``auto``."""
        self.suggested_decoder = Decoder(decoder)

    def disable_parallelism(self) -> None:
        self.single_proc = True

    def enable_event_log(self) -> None:
        self.event_log_enabled = True

    def get_event_log_item(self, index: int) -> str:
        with self._event_log_lock:
            if index >= len(self.event_log):
                raise IndexError(f"can't find log item with index {index}")
            return self.event_log[index]

    def events_total(self) -> int:
        """Return how many events the output has committed."""
        return self.output_events.load()