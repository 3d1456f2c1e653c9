"""Events flowing through the pipeline and the fixed-size pool they come from."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from .util import AtomicInt, header


class EventKind(IntEnum):
    REGULAR = 0
    IGNORE = 1
    TIMEOUT = 2
    UNLOCK = 3


class EventStage(IntEnum):
    POOL = 0
    INPUT = 1
    STREAM = 2
    PROCESSOR = 3
    OUTPUT = 4


class EventStatus(str, Enum):
    """What happened to an event in an action; used as a metric label."""

    RECEIVED = "received"
    NOT_MATCHED = "not_matched"
    PASSED = "passed"
    DISCARDED = "discarded"
    COLLAPSED = "collapsed"
    HELD = "held"


def all_event_statuses() -> list[EventStatus]:
    """Return every event status in its fixed order."""
    return list(EventStatus)


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()
"""Returned by :meth:`Event.dig` when the path does not exist."""


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def node_as_string(node: Any) -> str:
    """Render a JSON value the way it is compared and labelled: strings as is, others as JSON."""
    if isinstance(node, str):
        return node
    return _encode(node)


_STAGE_NAMES = {
    EventStage.POOL: "POOL",
    EventStage.INPUT: "INPUT",
    EventStage.STREAM: "STREAM",
    EventStage.PROCESSOR: "PROCESSOR",
    EventStage.OUTPUT: "OUTPUT",
}

_KIND_NAMES = {
    EventKind.REGULAR: "REGULAR",
    EventKind.IGNORE: "DEPRECATED",
    EventKind.TIMEOUT: "TIMEOUT",
}


@dataclass(eq=False)
class Event:
    """One log record together with its routing and bookkeeping data."""

    root: Any = field(default_factory=dict)
    buf: bytearray = field(default_factory=bytearray)
    seq_id: int = 0
    offset: int = 0
    source_id: int = 0
    source_name: str = ""
    stream_name: str = ""
    # last known encoded size; may be stale
    size: int = 0
    kind: EventKind = EventKind.REGULAR
    action: AtomicInt = field(default_factory=AtomicInt)
    next: Event | None = None
    stream: Any = None
    stage: EventStage = EventStage.POOL

    def reset(self, avg_event_size: int) -> None:
        """Prepare the event for reuse after it was taken from the pool."""
        if self.size > avg_event_size or len(self.buf) > 4096:
            self.buf = bytearray()
        else:
            self.buf.clear()
        self.stage = EventStage.INPUT
        self.next = None
        self.action = AtomicInt()
        self.stream = None
        self.kind = EventKind.REGULAR

    def stream_name_bytes(self) -> bytes:
        return self.stream_name.encode()

    def is_regular_kind(self) -> bool:
        return self.kind == EventKind.REGULAR

    def set_ignore_kind(self) -> None:
        self.kind = EventKind.IGNORE

    def is_ignore_kind(self) -> bool:
        return self.kind == EventKind.UNLOCK

    def is_unlock_kind(self) -> bool:
        return self.kind == EventKind.UNLOCK

    def set_unlock_kind(self) -> None:
        self.kind = EventKind.UNLOCK

    def is_timeout_kind(self) -> bool:
        return self.kind == EventKind.TIMEOUT

    def set_timeout_kind(self) -> None:
        self.kind = EventKind.TIMEOUT

    def parse_json(self, data: bytes | str) -> None:
        """Replace the event body with parsed JSON; raises ValueError on bad input."""
        self.root = json.loads(data)

    def subparse_json(self, data: bytes | str) -> Any:
        """Parse extra JSON that the caller may attach to the event body."""
        return json.loads(data)

    def dig(self, *path: str) -> Any:
        """Return the value at ``path`` or :data:`MISSING` if there is none."""
        node = self.root
        for key in path:
            if isinstance(node, dict):
                if key not in node:
                    return MISSING
                node = node[key]
            elif isinstance(node, list) and key.isdigit() and int(key) < len(node):
                node = node[int(key)]
            else:
                return MISSING
        return node

    def encode(self) -> bytes:
        """Serialise the body as compact JSON and remember its size."""
        data = self.encode_to_string().encode()
        self.size = len(data)
        return data

    def encode_to_string(self) -> str:
        return _encode(self.root)

    def stage_str(self) -> str:
        return _STAGE_NAMES.get(self.stage, "UNKNOWN")

    def kind_str(self) -> str:
        return _KIND_NAMES.get(self.kind, "UNKNOWN")

    def __str__(self) -> str:
        return (
            f"kind={self.kind_str()}, action={self.action.load()}, "
            f"source={self.source_id}/{self.source_name}, stream={self.stream_name}, "
            f"stage={self.stage_str()}, json={self.encode_to_string()}"
        )


def _service_event(stream: Any, source_name: str, kind: EventKind) -> Event:
    return Event(
        root=None,
        stream=stream,
        seq_id=stream.commit_seq.load(),
        source_id=stream.stream_id,
        source_name=source_name,
        stream_name=stream.name,
        kind=kind,
    )


def new_timeout_event(stream: Any) -> Event:
    """Create the event that tells a waiting action its stream timed out."""
    return _service_event(stream, "timeout", EventKind.TIMEOUT)


def new_unlock_event(stream: Any) -> Event:
    """Create the event that releases a processor blocked on a stream."""
    return _service_event(stream, "unlock", EventKind.UNLOCK)


class EventPool:
    """A fixed set of reusable events handed out in round-robin slot order."""

    def __init__(self, capacity: int, avg_event_size: int) -> None:
        if capacity < 1:
            raise ValueError("event pool capacity must be positive")
        self.capacity = capacity
        self.avg_event_size = avg_event_size
        self.in_use_events = AtomicInt()
        self._get_counter = AtomicInt()
        self._back_counter = AtomicInt(capacity)
        self._events: list[Event | None] = [Event() for _ in range(capacity)]
        self._free1 = [True] * capacity
        self._free2 = [True] * capacity
        self._cond = threading.Condition()

    def get(self) -> Event:
        """Take an event, waiting until its slot is filled again if necessary."""
        index = (self._get_counter.inc() - 1) % self.capacity
        with self._cond:
            while not self._free1[index]:
                self._cond.wait()
            self._free1[index] = False
            event = self._events[index]
            self._events[index] = None
            self._free2[index] = False
        assert event is not None
        self.in_use_events.inc()
        event.reset(self.avg_event_size)
        return event

    def back(self, event: Event) -> None:
        """Return an event to the pool."""
        event.stage = EventStage.POOL
        index = (self._back_counter.inc() - 1) % self.capacity
        with self._cond:
            while self._free2[index]:
                self._cond.wait()
            self._free2[index] = True
            self._events[index] = event
            self._free1[index] = True
            self.in_use_events.dec()
            self._cond.notify_all()

    def is_free(self, index: int) -> bool:
        """Tell whether slot ``index`` currently holds an event."""
        with self._cond:
            return self._free1[index] and self._free2[index]

    def dump(self) -> str:
        """Describe every slot of the pool, one line each."""
        with self._cond:
            events = list(self._events)
        if not events:
            return header("no events")
        lines = [str(event) if event is not None else "nil" for event in events]
        return header("events") + "".join(line + "\n" for line in lines)