"""Capturing an event before and after one action, for the sample endpoint."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import Any

from .event import Event, EventStatus
from .util import AtomicInt


class WatchTimeout(TimeoutError):
    """No sample was taken before the timeout expired."""

    def __init__(self) -> None:
        super().__init__("timeout while wait an action sample")


@dataclass(eq=False)
class Sample:
    """An event as it was before an action and what it became after."""

    proc_id: int
    event_before: bytes = b""
    event_after: bytes = b""
    event_status: EventStatus | str = ""
    ready: threading.Event = field(default_factory=threading.Event)

    def marshal(self) -> bytes:
        """Serialise the sample to JSON."""

        def as_object(data: bytes) -> dict:
            try:
                parsed = json.loads(data)
            except ValueError:
                return {}
            return parsed if isinstance(parsed, dict) else {}

        status = self.event_status
        result = {
            "processor_id": self.proc_id,
            "event_before": as_object(self.event_before),
            "event_after": as_object(self.event_after),
            "event_status": status.value if isinstance(status, EventStatus) else str(status),
        }
        return json.dumps(result, ensure_ascii=False, separators=(",", ":")).encode()


class ActionWatcher:
    """Collects samples of the actions of one processor on request."""

    def __init__(self, proc_id: int) -> None:
        self.proc_id = proc_id
        self._samples: dict[int, list[Sample]] = {}
        # lets the processor skip locking while nobody waits for samples
        self._samples_len = AtomicInt()
        self._lock = threading.Lock()

    def watch(self, action_index: int, timeout: float) -> Sample:
        """Wait for the processor to fill a sample of the action; raise WatchTimeout."""
        sample = self._add_sample(action_index)
        try:
            if not sample.ready.wait(timeout):
                raise WatchTimeout()
            return sample
        finally:
            self._delete_sample(action_index, sample)

    def _add_sample(self, action_index: int) -> Sample:
        sample = Sample(self.proc_id)
        with self._lock:
            self._samples.setdefault(action_index, []).append(sample)
            self._samples_len.inc()
        return sample

    def _delete_sample(self, action_index: int, sample: Sample) -> None:
        with self._lock:
            samples = self._samples.get(action_index, [])
            if sample in samples:
                samples.remove(sample)
                self._samples_len.dec()

    def set_event_before(self, index: int, event: Event) -> None:
        """Record the event for every waiting sample of the action that has none yet."""
        if self._samples_len.load() <= 0:
            return
        with self._lock:
            for sample in self._samples.get(index, []):
                if sample.event_before:
                    continue
                sample.event_before = event.encode_to_string().encode()

    def set_event_after(self, index: int, event: Event, status: EventStatus | str) -> None:
        """Complete the waiting samples of the action and wake their watchers."""
        if self._samples_len.load() <= 0:
            return
        with self._lock:
            for sample in self._samples.get(index, []):
                if sample.event_after or not sample.event_before:
                    return
                sample.event_after = event.encode_to_string().encode()
                sample.event_status = status
                sample.ready.set()

    def _root(self) -> Any:  # pragma: no cover - kept for debugging
        return {k: len(v) for k, v in self._samples.items()}