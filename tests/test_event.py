import threading
import time
from types import SimpleNamespace

import pytest

from logpipe.event import (
    MISSING,
    Event,
    EventKind,
    EventPool,
    EventStage,
    EventStatus,
    all_event_statuses,
    new_timeout_event,
    new_unlock_event,
    node_as_string,
)
from logpipe.plugin import DEFAULT_AVG_INPUT_EVENT_SIZE
from logpipe.util import AtomicInt, header


def _fake_stream():
    return SimpleNamespace(commit_seq=AtomicInt(42), stream_id=7, name="stdout")


def test_event_pool_dump():
    pool = EventPool(2, DEFAULT_AVG_INPUT_EVENT_SIZE)
    event = pool.get()
    try:
        dump = pool.dump()
    finally:
        pool.back(event)
    lines = dump.splitlines()
    assert dump.startswith(header("events"))
    assert lines[1] == "nil"
    assert lines[2].startswith("kind=REGULAR")


def test_get_and_back_update_slots():
    pool = EventPool(3, DEFAULT_AVG_INPUT_EVENT_SIZE)
    event = pool.get()
    assert not pool.is_free(0)
    assert pool.is_free(1)
    assert pool.in_use_events.load() == 1
    pool.back(event)
    assert all(pool.is_free(i) for i in range(3))
    assert pool.in_use_events.load() == 0
    assert event.stage == EventStage.POOL


def test_get_resets_event():
    pool = EventPool(1, DEFAULT_AVG_INPUT_EVENT_SIZE)
    event = pool.get()
    event.set_timeout_kind()
    event.action.store(5)
    event.buf.extend(b"abc")
    pool.back(event)
    again = pool.get()
    assert again is event
    assert again.is_regular_kind()
    assert again.action.load() == 0
    assert again.stage == EventStage.INPUT
    assert len(again.buf) == 0


def test_get_blocks_until_back():
    pool = EventPool(1, DEFAULT_AVG_INPUT_EVENT_SIZE)
    first = pool.get()
    got = []
    thread = threading.Thread(target=lambda: got.append(pool.get()))
    thread.start()
    time.sleep(0.05)
    assert thread.is_alive()
    pool.back(first)
    thread.join(timeout=2)
    assert not thread.is_alive()
    assert got == [first]


def test_pool_many_threads():
    pool = EventPool(32, DEFAULT_AVG_INPUT_EVENT_SIZE)

    def work():
        for _ in range(300):
            pool.back(pool.get())

    threads = [threading.Thread(target=work) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    assert not any(thread.is_alive() for thread in threads)
    assert pool.in_use_events.load() == 0
    assert all(pool.is_free(i) for i in range(32))


def test_pool_rejects_zero_capacity():
    with pytest.raises(ValueError):
        EventPool(0, DEFAULT_AVG_INPUT_EVENT_SIZE)


def test_parse_json_and_encode():
    event = Event()
    event.parse_json(b'{"a": 1, "b": "x"}')
    assert event.encode() == b'{"a":1,"b":"x"}'
    assert event.size == len(b'{"a":1,"b":"x"}')
    assert event.encode_to_string() == '{"a":1,"b":"x"}'


def test_parse_json_invalid():
    event = Event()
    with pytest.raises(ValueError):
        event.parse_json(b"{wHo Is Json: YoU MeAn SoN oF JoHn???")


def test_subparse_json_does_not_touch_root():
    event = Event(root={"k": "v"})
    node = event.subparse_json('{"x": [1, 2]}')
    assert node == {"x": [1, 2]}
    assert event.root == {"k": "v"}


def test_dig():
    event = Event(root={"a": {"b": [10, {"c": "deep"}]}, "n": None})
    assert event.dig("a", "b", "1", "c") == "deep"
    assert event.dig("a", "missing") is MISSING
    assert event.dig("a", "b", "9") is MISSING
    assert event.dig("n") is None
    assert event.dig() == event.root


def test_node_as_string():
    assert node_as_string("text") == "text"
    assert node_as_string(True) == "true"
    assert node_as_string(None) == "null"
    assert node_as_string(12) == "12"


def test_kinds():
    event = Event()
    assert event.is_regular_kind()
    assert event.kind_str() == "REGULAR"
    event.set_ignore_kind()
    assert event.kind_str() == "DEPRECATED"
    event.set_timeout_kind()
    assert event.is_timeout_kind()
    assert event.kind_str() == "TIMEOUT"
    event.set_unlock_kind()
    assert event.is_unlock_kind()
    assert event.kind_str() == "UNKNOWN"


@pytest.mark.parametrize(
    "stage, name",
    [
        (EventStage.POOL, "POOL"),
        (EventStage.INPUT, "INPUT"),
        (EventStage.STREAM, "STREAM"),
        (EventStage.PROCESSOR, "PROCESSOR"),
        (EventStage.OUTPUT, "OUTPUT"),
    ],
)
def test_stage_str(stage, name):
    assert Event(stage=stage).stage_str() == name


def test_str_format():
    event = Event(root={"a": 1}, source_id=3, source_name="kafka", stream_name="s")
    assert str(event) == (
        'kind=REGULAR, action=0, source=3/kafka, stream=s, stage=POOL, json={"a":1}'
    )


def test_stream_name_bytes():
    assert Event(stream_name="stderr").stream_name_bytes() == b"stderr"


def test_timeout_and_unlock_events():
    stream = _fake_stream()
    timeout = new_timeout_event(stream)
    assert timeout.is_timeout_kind()
    assert timeout.source_name == "timeout"
    assert timeout.seq_id == 42
    assert timeout.source_id == 7
    assert timeout.stream_name == "stdout"
    assert timeout.stream is stream

    unlock = new_unlock_event(stream)
    assert unlock.kind == EventKind.UNLOCK
    assert unlock.source_name == "unlock"
    assert unlock.root is None


def test_all_event_statuses_order():
    assert [s.value for s in all_event_statuses()] == [
        "received",
        "not_matched",
        "passed",
        "discarded",
        "collapsed",
        "held",
    ]
    assert EventStatus("held") is EventStatus.HELD