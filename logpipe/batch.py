"""Grouping events into batches and handing them to output workers in order."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from .event import Event

_HEARTBEAT_INTERVAL = 0.1


class Batch:
    """A group of events limited by count, total size and age."""

    def __init__(self, max_size_count: int, max_size_bytes: int, timeout: float) -> None:
        if max_size_count < 0:
            raise ValueError("batch max count is less than 0")
        if max_size_bytes < 0:
            raise ValueError("batch max size is less than 0")
        if max_size_count == 0 and max_size_bytes == 0:
            raise ValueError("batch limits are not set")
        self.max_size_count = max_size_count
        self.max_size_bytes = max_size_bytes
        self.timeout = timeout
        self.events: list[Event] = []
        self.events_size = 0
        self.seq = 0
        self.start_time = time.monotonic()

    def reset(self) -> None:
        self.events = []
        self.events_size = 0
        self.start_time = time.monotonic()

    def append(self, event: Event) -> None:
        self.events.append(event)
        self.events_size += event.size

    def is_ready(self) -> bool:
        """Tell whether the batch is full or its non-empty contents are too old."""
        count = len(self.events)
        is_full = (self.max_size_count != 0 and count == self.max_size_count) or (
            self.max_size_bytes != 0 and self.max_size_bytes <= self.events_size
        )
        is_timeout = count > 0 and time.monotonic() - self.start_time > self.timeout
        return is_full or is_timeout


@dataclass
class BatcherOptions:
    """How a Batcher groups events and what it does with the batches.

    ``out_fn(worker_data, batch)`` and ``maintenance_fn(worker_data)`` receive the
    worker's private data (None at first) and return its new value.
    """

    pipeline_name: str
    output_type: str
    out_fn: Callable[[Any, Batch], Any]
    controller: Any
    workers: int
    batch_size_count: int = 0
    batch_size_bytes: int = 0
    flush_timeout: float = 1.0
    maintenance_fn: Callable[[Any], Any] | None = None
    maintenance_interval: float = 0.0


class Batcher:
    """Fills batches from added events and commits them in the order they were sent."""

    def __init__(self, opts: BatcherOptions) -> None:
        self.opts = opts
        self._lock = threading.Lock()
        self._seq_cond = threading.Condition()
        self._should_stop = threading.Event()
        self._batch: Batch | None = None
        self._free: queue.Queue[Batch] = queue.Queue()
        self._full: queue.Queue[Batch | None] = queue.Queue()
        self._out_seq = 0
        self._commit_seq = 0
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Create the batches and start the workers and the flush heartbeat."""
        for number in range(self.opts.workers):
            self._free.put(
                Batch(
                    self.opts.batch_size_count,
                    self.opts.batch_size_bytes,
                    self.opts.flush_timeout,
                )
            )
            self._spawn(self._work, f"batcher-worker-{number}")
        self._spawn(self._heartbeat, "batcher-heartbeat")

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _work(self) -> None:
        last_maintenance = time.monotonic()
        data: Any = None
        while True:
            batch = self._full.get()
            if batch is None:
                return
            data = self.opts.out_fn(data, batch)
            self._commit_batch(batch)

            if (
                self.opts.maintenance_fn is not None
                and self.opts.maintenance_interval != 0
                and time.monotonic() - last_maintenance > self.opts.maintenance_interval
            ):
                last_maintenance = time.monotonic()
                data = self.opts.maintenance_fn(data)

    def _commit_batch(self, batch: Batch) -> None:
        # release the batch before committing its events
        events, batch.events = batch.events, []
        # commit batches in send order so inputs save offsets incrementally
        with self._seq_cond:
            self._seq_cond.wait_for(lambda: self._commit_seq == batch.seq)
            self._commit_seq += 1
            for event in events:
                self.opts.controller.commit(event)
            self._seq_cond.notify_all()
        self._free.put(batch)

    def _heartbeat(self) -> None:
        while not self._should_stop.is_set():
            with self._lock:
                batch = self._get_batch(block=False)
                ready = self._take_if_ready(batch) if batch is not None else None
            if ready is not None:
                self._full.put(ready)
            self._should_stop.wait(_HEARTBEAT_INTERVAL)

    def add(self, event: Event) -> None:
        """Put an event into the current batch, sending the batch on once it is ready."""
        with self._lock:
            batch = self._get_batch(block=True)
            assert batch is not None
            batch.append(event)
            ready = self._take_if_ready(batch)
        if ready is not None:
            self._full.put(ready)

    def _take_if_ready(self, batch: Batch) -> Batch | None:
        if not batch.is_ready():
            return None
        batch.seq = self._out_seq
        self._out_seq += 1
        self._batch = None
        return batch

    def _get_batch(self, block: bool) -> Batch | None:
        if self._batch is None:
            try:
                batch = self._free.get(block=block)
            except queue.Empty:
                return None
            batch.reset()
            self._batch = batch
        return self._batch

    def stop(self) -> None:
        """Stop the heartbeat and let the workers finish the batches already sent."""
        self._should_stop.set()
        workers = [t for t in self._threads if t.name.startswith("batcher-worker")]
        for _ in workers:
            self._full.put(None)
        for thread in self._threads:
            thread.join()
        self._threads = []