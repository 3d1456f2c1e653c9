"""In-process metric collectors and the per-action counters of a pipeline."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .event import MISSING, Event, EventStatus, all_event_statuses, node_as_string
from .plugin import DEFAULT_FIELD_VALUE, METRICS_GEN_INTERVAL
from .util import AtomicInt

PROM_NAMESPACE = "file_d"
BUILD_VERSION = "dev"


class _MetricVec:
    """A family of values keyed by label values."""

    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: Iterable[str] = (),
        const_labels: Mapping[str, str] | None = None,
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        self.name = "_".join(part for part in (namespace, subsystem, name) if part)
        self.help = help_text
        self.label_names = tuple(label_names)
        self.const_labels = dict(const_labels or {})
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    @property
    def identity(self) -> tuple:
        return self.name, tuple(sorted(self.const_labels.items()))

    def _key(self, label_values: tuple) -> tuple[str, ...]:
        if len(label_values) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, "
                f"got {len(label_values)}"
            )
        return tuple(str(v) for v in label_values)

    def _add(self, delta: float, label_values: tuple) -> None:
        key = self._key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + delta

    def _get(self, label_values: tuple) -> float:
        key = self._key(label_values)
        with self._lock:
            return self._values.get(key, 0.0)

    def samples(self) -> dict[tuple[str, ...], float]:
        with self._lock:
            return dict(self._values)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.const_labels!r})"


class CounterVec(_MetricVec):
    """Monotonically increasing values."""

    def inc(self, *label_values: str) -> None:
        self._add(1.0, label_values)

    def add(self, value: float, *label_values: str) -> None:
        if value < 0:
            raise ValueError("counter cannot decrease in value")
        self._add(float(value), label_values)

    def value(self, *label_values: str) -> float:
        """Return the current value for the given label values (zero if never set)."""
        return self._get(label_values)


class GaugeVec(_MetricVec):
    """Values that can go up and down."""

    def set(self, value: float, *label_values: str) -> None:
        key = self._key(label_values)
        with self._lock:
            self._values[key] = float(value)

    def inc(self, *label_values: str) -> None:
        self._add(1.0, label_values)

    def dec(self, *label_values: str) -> None:
        self._add(-1.0, label_values)

    def value(self, *label_values: str) -> float:
        """Return the current value for the given label values (zero if never set)."""
        return self._get(label_values)


class Registry:
    """Holds collectors; two with the same name and constant labels cannot coexist."""

    def __init__(self) -> None:
        self._collectors: dict[tuple, _MetricVec] = {}
        self._lock = threading.Lock()

    def register(self, collector: _MetricVec) -> None:
        with self._lock:
            if collector.identity in self._collectors:
                raise ValueError(
                    f"duplicate metrics collector registration attempted: {collector.name}"
                )
            self._collectors[collector.identity] = collector

    def unregister(self, collector: _MetricVec) -> bool:
        """Remove ``collector``; return whether it was registered."""
        with self._lock:
            if self._collectors.get(collector.identity) is not collector:
                return False
            del self._collectors[collector.identity]
            return True

    def collectors(self) -> list[_MetricVec]:
        with self._lock:
            return list(self._collectors.values())


class MetricsController:
    """Creates label-less metrics under one subsystem; the same name yields the same metric."""

    def __init__(self, subsystem: str, registry: Registry | None = None) -> None:
        self.subsystem = subsystem
        self.registry = registry
        self._metrics: dict[str, _MetricVec] = {}
        self._lock = threading.Lock()

    def _register(self, kind: type[_MetricVec], name: str, help_text: str) -> _MetricVec:
        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if not isinstance(existing, kind):
                    raise ValueError(f"metric {name!r} is already registered as another kind")
                return existing
            metric = kind(name, help_text, namespace=PROM_NAMESPACE, subsystem=self.subsystem)
            if self.registry is not None:
                self.registry.register(metric)
            self._metrics[name] = metric
            return metric

    def register_counter(self, name: str, help_text: str) -> CounterVec:
        return self._register(CounterVec, name, help_text)  # type: ignore[return-value]

    def register_gauge(self, name: str, help_text: str) -> GaugeVec:
        return self._register(GaugeVec, name, help_text)  # type: ignore[return-value]


@dataclass(eq=False)
class _LabelNode:
    value: str = ""
    children: dict[str, _LabelNode] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def child(self, value: str) -> _LabelNode:
        with self.lock:
            node = self.children.get(value)
            if node is None:
                node = _LabelNode(value)
                self.children[value] = node
            return node


@dataclass
class GenerationCounters:
    """Counters of one metric generation of an action."""

    count: CounterVec | None = None
    size: CounterVec | None = None
    # status to running total, served by the action info endpoint
    total: dict[str, AtomicInt] = field(default_factory=dict)

    def register(self, registry: Registry | None) -> None:
        if registry is not None:
            registry.register(self.count)
            registry.register(self.size)

    def unregister(self, registry: Registry | None) -> None:
        if registry is not None:
            registry.unregister(self.count)
            registry.unregister(self.size)


@dataclass
class ActionMetrics:
    name: str
    labels: list[str]
    root: _LabelNode = field(default_factory=_LabelNode)
    current: GenerationCounters = field(default_factory=GenerationCounters)
    previous: GenerationCounters = field(default_factory=GenerationCounters)


class MetricsHolder:
    """Per-action event counters, rotated into new generations so stale label sets expire."""

    def __init__(
        self,
        pipeline_name: str,
        registry: Registry | None = None,
        metrics_gen_interval: float = METRICS_GEN_INTERVAL,
        version: str = BUILD_VERSION,
    ) -> None:
        self.pipeline_name = pipeline_name
        self.registry = registry
        self.metrics_gen_interval = metrics_gen_interval
        self.version = version
        self.metrics: list[ActionMetrics] = []
        self.generation = 0
        self.generation_time = 0.0

    def add_action(self, metric_name: str, metric_labels: Iterable[str]) -> None:
        self.metrics.append(ActionMetrics(metric_name, list(metric_labels)))

    def start(self) -> None:
        self.next_metrics_gen()

    def _make_counter(self, suffix: str, help_text: str, labels: list[str], gen: str) -> CounterVec:
        return CounterVec(
            f"{suffix}",
            help_text,
            ["status", *labels],
            const_labels={"gen": gen, "version": self.version},
            namespace=PROM_NAMESPACE,
            subsystem="pipeline_" + self.pipeline_name,
        )

    def next_metrics_gen(self) -> None:
        """Start a new generation of counters and drop the one before the previous."""
        # two generations alive at once plus the one being registered
        gen = str(self.generation % 3)
        quoted = json.dumps(self.pipeline_name)
        for index, metrics in enumerate(self.metrics):
            if not metrics.name:
                continue
            counters = GenerationCounters(
                total={status.value: AtomicInt() for status in all_event_statuses()}
            )
            counters.count = self._make_counter(
                metrics.name + "_events_count_total",
                f"how many events processed by pipeline {quoted} and #{index} action",
                metrics.labels,
                gen,
            )
            counters.size = self._make_counter(
                metrics.name + "_events_size_total",
                f"total size of events processed by pipeline {quoted} and #{index} action",
                metrics.labels,
                gen,
            )
            obsolete = metrics.previous
            metrics.previous = metrics.current
            metrics.current = counters
            counters.register(self.registry)
            if obsolete.count is not None:
                obsolete.unregister(self.registry)

        self.generation += 1
        self.generation_time = time.monotonic()

    def count(self, event: Event, action_index: int, status: EventStatus | str) -> list[str]:
        """Count ``event`` for an action and return the label values used."""
        if not self.metrics:
            return []
        metrics = self.metrics[action_index]
        if not metrics.name:
            return []
        counters = metrics.current
        if counters.count is None or counters.size is None:
            raise RuntimeError("metrics generation has not been started")

        status_value = EventStatus(status).value
        values = [status_value]
        node = metrics.root
        for label in metrics.labels:
            found = event.dig(label)
            value = DEFAULT_FIELD_VALUE if found is MISSING else node_as_string(found)
            node = node.child(value)
            values.append(node.value)

        counters.total[status_value].inc()
        counters.count.inc(*values)
        counters.size.add(float(event.size), *values)
        return values

    def maintenance(self) -> None:
        """Rotate the generation once the interval has passed."""
        if time.monotonic() - self.generation_time < self.metrics_gen_interval:
            return
        self.next_metrics_gen()