import pytest

from logpipe.event import Event, EventStatus
from logpipe.metrics import (
    PROM_NAMESPACE,
    CounterVec,
    GaugeVec,
    MetricsController,
    MetricsHolder,
    Registry,
)
from logpipe.plugin import DEFAULT_FIELD_VALUE


def test_counter_inc_and_add():
    counter = CounterVec("c", "help", ["status"])
    counter.inc("ok")
    counter.add(2.5, "ok")
    counter.inc("bad")
    assert counter.value("ok") == 3.5
    assert counter.value("bad") == 1.0
    assert counter.value("never") == 0.0


def test_counter_rejects_negative():
    counter = CounterVec("c", "help")
    with pytest.raises(ValueError):
        counter.add(-1)


def test_counter_label_count_mismatch():
    counter = CounterVec("c", "help", ["a", "b"])
    with pytest.raises(ValueError):
        counter.inc("only_one")


def test_gauge_set_inc_dec():
    gauge = GaugeVec("g", "help")
    gauge.set(10)
    gauge.inc()
    gauge.dec()
    gauge.dec()
    assert gauge.value() == 9.0


def test_registry_duplicates_and_unregister():
    registry = Registry()
    first = CounterVec("same", "help", const_labels={"gen": "0"})
    twin = CounterVec("same", "help", const_labels={"gen": "0"})
    other_gen = CounterVec("same", "help", const_labels={"gen": "1"})
    registry.register(first)
    registry.register(other_gen)
    with pytest.raises(ValueError):
        registry.register(twin)
    assert registry.unregister(twin) is False
    assert registry.unregister(first) is True
    assert registry.collectors() == [other_gen]


def test_controller_reuses_metric_by_name():
    registry = Registry()
    ctl = MetricsController("pipeline_test", registry)
    counter = ctl.register_counter("input_events_count", "Count of events on pipeline input")
    again = ctl.register_counter("input_events_count", "Count of events on pipeline input")
    assert counter is again
    assert counter.name == "file_d_pipeline_test_input_events_count"
    assert registry.collectors() == [counter]
    with pytest.raises(ValueError):
        ctl.register_gauge("input_events_count", "clash")


def test_controller_gauge():
    ctl = MetricsController("pipeline_x")
    gauge = ctl.register_gauge("event_pool_capacity", "Pool capacity value")
    gauge.set(5)
    assert gauge.value() == 5.0
    assert gauge.name.startswith(PROM_NAMESPACE + "_pipeline_x_")


def _holder(registry=None):
    holder = MetricsHolder("p", registry)
    holder.add_action("discard", ["service"])
    holder.start()
    return holder


def test_count_uses_label_values():
    holder = _holder(Registry())
    event = Event(root={"service": "api"}, size=10)
    values = holder.count(event, 0, EventStatus.PASSED)
    assert values == ["passed", "api"]
    current = holder.metrics[0].current
    assert current.count.value("passed", "api") == 1.0
    assert current.size.value("passed", "api") == 10.0
    assert current.total["passed"].load() == 1
    assert current.total["received"].load() == 0


def test_count_missing_label_uses_default():
    holder = _holder()
    values = holder.count(Event(root={}), 0, "received")
    assert values == ["received", DEFAULT_FIELD_VALUE]


def test_count_without_named_metrics():
    holder = MetricsHolder("p")
    assert holder.count(Event(), 0, EventStatus.PASSED) == []
    holder.add_action("", [])
    holder.start()
    assert holder.count(Event(), 0, EventStatus.PASSED) == []


def test_count_before_start_fails():
    holder = MetricsHolder("p")
    holder.add_action("m", [])
    with pytest.raises(RuntimeError):
        holder.count(Event(), 0, EventStatus.PASSED)


def test_generations_keep_two_alive():
    registry = Registry()
    holder = _holder(registry)
    assert len(registry.collectors()) == 2
    for _ in range(7):
        holder.next_metrics_gen()
        assert len(registry.collectors()) == 4
    gens = {c.const_labels["gen"] for c in registry.collectors()}
    assert len(gens) == 2
    assert holder.metrics[0].current.count.const_labels["gen"] in gens
    assert holder.generation == 8


def test_new_generation_starts_from_zero():
    holder = _holder()
    event = Event(root={"service": "api"})
    holder.count(event, 0, EventStatus.DISCARDED)
    old = holder.metrics[0].current
    holder.next_metrics_gen()
    assert holder.metrics[0].previous is old
    assert holder.metrics[0].current.total["discarded"].load() == 0


def test_maintenance_respects_interval():
    holder = _holder()
    holder.maintenance()
    assert holder.generation == 1
    holder.metrics_gen_interval = 0
    holder.maintenance()
    assert holder.generation == 2