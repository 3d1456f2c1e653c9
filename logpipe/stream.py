"""Ordered event queues and the streamer that hands them to processors."""

from __future__ import annotations

import threading
import time

from .event import Event, EventStage, new_timeout_event, new_unlock_event
from .util import AtomicInt, header

_HEARTBEAT_INTERVAL = 0.2


class Stream:
    """A queue of events that must be processed in order.

    Which events share a stream is decided by the input plugin, e.g. lines of the
    same file. A stream is attached to at most one processor at a time.
    """

    def __init__(self, name: str, stream_id: int, streamer: Streamer) -> None:
        self.name = name
        self.stream_id = stream_id
        self.streamer = streamer
        self.block_index = -1
        self.length = 0
        self.current_seq = 0
        self.commit_seq = AtomicInt()
        self.away_seq = 0
        self.block_time = 0.0
        self.is_detaching = False
        self.is_attached = False
        self.first: Event | None = None
        self.last: Event | None = None
        self._cond = threading.Condition(threading.RLock())

    def leave(self) -> None:
        """Start detaching from the processor; completes once all taken events are committed."""
        with self._cond:
            if self.is_detaching:
                raise RuntimeError("why detach? stream is already detaching")
            if not self.is_attached:
                raise RuntimeError("why detach? stream isn't attached")
            self.is_detaching = True
            self._try_detach()

    def commit(self, event: Event) -> None:
        """Record that ``event`` is done; older sequence ids than the last commit are ignored."""
        with self._cond:
            # discarded events may be committed before earlier events still in the output
            if event.seq_id < self.commit_seq.load():
                return
            self.commit_seq.store(event.seq_id)
            if self.is_detaching:
                self._try_detach()

    def _try_detach(self) -> None:
        if self.away_seq != self.commit_seq.load():
            return
        self.is_attached = False
        self.is_detaching = False
        if self.first is not None:
            self.streamer.make_charged(self)

    def attach(self) -> None:
        """Bind the stream to a processor."""
        with self._cond:
            if self.is_attached:
                raise RuntimeError("why attach? processor is already attached")
            if self.is_detaching:
                raise RuntimeError("why attach? processor is detaching")
            if self.first is None:
                raise RuntimeError("why attach? stream is empty")
            self.is_attached = True

    def put(self, event: Event) -> int:
        """Append ``event`` and return the sequence id given to it."""
        with self._cond:
            self.length += 1
            self.current_seq += 1
            seq_id = self.current_seq
            event.stream = self
            event.stage = EventStage.STREAM
            event.seq_id = seq_id
            if self.first is None:
                self.first = self.last = event
                if not self.is_attached:
                    self.streamer.make_charged(self)
                self._cond.notify()
            else:
                assert self.last is not None
                self.last.next = event
                self.last = event
            return seq_id

    def block_get(self) -> Event:
        """Take the next event, waiting for one to arrive."""
        with self._cond:
            if not self.is_attached:
                raise RuntimeError("why wait get? stream isn't attached")
            while self.first is None:
                self.block_time = time.monotonic()
                self.streamer.make_blocked(self)
                self._cond.wait()
                self.streamer.reset_blocked(self)
            event = self._get()
            assert event is not None
            return event

    def instant_get(self) -> Event | None:
        """Take the next event, or start leaving and return None if the stream is empty."""
        with self._cond:
            if not self.is_attached:
                raise RuntimeError("why instant get? stream isn't attached")
            if self.first is None:
                self.leave()
                return None
            return self._get()

    def try_unblock(self) -> bool:
        """Wake a waiting processor with a timeout event if it has waited too long."""
        with self._cond:
            if time.monotonic() - self.block_time < self.streamer.event_timeout:
                return False
            # an event arrived after the wait began
            if self.first is not None:
                return False
            if self.away_seq != self.commit_seq.load():
                raise RuntimeError(
                    f"why events are different? away event id={self.away_seq}, "
                    f"commit event id={self.commit_seq.load()}"
                )
            timeout_event = new_timeout_event(self)
            self.first = self.last = timeout_event
            self._cond.notify()
            return True

    def _get(self) -> Event | None:
        if self.is_detaching:
            raise RuntimeError("why get while detaching?")
        event = self.first
        if self.first is self.last:
            self.first = self.last = None
        else:
            assert self.first is not None
            self.first = self.first.next
        if event is not None:
            self.away_seq = event.seq_id
            event.stage = EventStage.PROCESSOR
            self.length -= 1
        return event

    def __repr__(self) -> str:
        return f"Stream({self.stream_id}, {self.name!r})"


class Streamer:
    """Owns all streams and queues those that have events waiting for a processor."""

    def __init__(self, event_timeout: float) -> None:
        self.event_timeout = event_timeout
        self._streams: dict[int, dict[str, Stream]] = {}
        self._lock = threading.RLock()
        self._should_stop = threading.Event()
        self._charged: list[Stream] = []
        self._charged_cond = threading.Condition()
        self._blocked: list[Stream] = []
        self._blocked_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def charged(self) -> list[Stream]:
        """Streams with events that no processor has taken yet."""
        with self._charged_cond:
            return list(self._charged)

    @property
    def blocked(self) -> list[Stream]:
        """Streams whose processor is waiting for the next event."""
        with self._blocked_lock:
            return list(self._blocked)

    def start(self) -> None:
        """Start the heartbeat that times out waiting processors."""
        self._thread = threading.Thread(
            target=self._heartbeat, name="streamer-heartbeat", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the heartbeat and put an unlock event into every stream."""
        self._should_stop.set()
        with self._lock:
            for streams in self._streams.values():
                for stream in streams.values():
                    stream.put(new_unlock_event(stream))

    def put_event(self, stream_id: int, stream_name: str, event: Event) -> int:
        return self.get_stream(stream_id, stream_name).put(event)

    def get_stream(self, stream_id: int, stream_name: str) -> Stream:
        """Return the stream for the id and name, creating it on first use."""
        with self._lock:
            streams = self._streams.setdefault(stream_id, {})
            stream = streams.get(stream_name)
            if stream is None:
                stream = Stream(stream_name, stream_id, self)
                streams[stream_name] = stream
            return stream

    def make_charged(self, stream: Stream) -> None:
        with self._charged_cond:
            self._charged.append(stream)
            self._charged_cond.notify()

    def join_stream(self) -> Stream | None:
        """Wait for a charged stream and attach to it; None means the streamer is stopping."""
        with self._charged_cond:
            while not self._charged:
                self._charged_cond.wait()
                if self._should_stop.is_set():
                    return None
            stream = self._charged.pop()
        stream.attach()
        return stream

    def make_blocked(self, stream: Stream) -> None:
        with self._blocked_lock:
            stream.block_index = len(self._blocked)
            self._blocked.append(stream)

    def reset_blocked(self, stream: Stream) -> None:
        with self._blocked_lock:
            if stream.block_index == -1:
                raise RuntimeError("why remove? stream isn't blocked")
            if not self._blocked:
                raise RuntimeError("why remove? stream isn't in block list")
            index = stream.block_index
            last = self._blocked.pop()
            if last is not stream:
                self._blocked[index] = last
                last.block_index = index
            stream.block_index = -1

    def _heartbeat(self) -> None:
        while not self._should_stop.wait(_HEARTBEAT_INTERVAL):
            for stream in self.blocked:
                stream.try_unblock()

    def dump(self) -> str:
        """Describe all streams, the charged ones and the blocked ones."""
        with self._lock:
            streams = [s for group in self._streams.values() for s in group.values()]
            if not streams:
                out = header("no streams")
            else:
                out = header("streams")
                for stream in streams:
                    state = "| UNATTACHED |"
                    if stream.is_attached:
                        state = "|  ATTACHED  |"
                    if stream.is_detaching:
                        state = "| DETACHING  |"
                    out += (
                        f"{stream.stream_id}({stream.name}) state={state}, "
                        f"away event id={stream.away_seq}, "
                        f"commit event id={stream.commit_seq.load()}, len={stream.length}\n"
                    )

            charged = self.charged
            if not charged:
                out += header("charged streams empty")
            else:
                out += header("charged streams")
                out += "".join(f"{s.stream_id}({s.name})\n" for s in charged)

            blocked = self.blocked
            if not blocked:
                out += header("blocked streams empty")
            else:
                out += header("blocked streams")
                out += "".join(f"{s.stream_id}({s.name})\n" for s in blocked)
            return out

    def unblock_processor(self) -> None:
        """Wake one processor waiting for a stream."""
        with self._charged_cond:
            self._charged_cond.notify()