"""Per-source rate limiting that bans sources which flood the pipeline."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .metrics import MetricsController
from .util import AtomicInt, header

_log = logging.getLogger(__name__)


@dataclass(eq=False)
class _Source:
    name: str
    counter: AtomicInt = field(default_factory=AtomicInt)


class Antispamer:
    """Counts events per source and bans a source once it passes the threshold.

    A banned source stays banned for ``unban_iterations`` maintenance rounds.
    A threshold of zero turns the antispam off.
    """

    def __init__(
        self,
        threshold: int,
        unban_iterations: int,
        maintenance_interval: float,
        metrics_controller: MetricsController,
    ) -> None:
        if threshold != 0:
            _log.info(
                "antispam enabled, threshold=%d/%d sec", threshold, int(maintenance_interval)
            )
        self.threshold = threshold
        self.unban_iterations = unban_iterations
        self._sources: dict[int, _Source] = {}
        self._lock = threading.RLock()

        self.active_metric = metrics_controller.register_gauge(
            "antispam_active", "Gauge indicates whether the antispam is enabled"
        )
        # not enabled by default
        self.active_metric.set(0)
        self.ban_metric = metrics_controller.register_gauge(
            "antispam_banned", "How many times a source was banned"
        )

    def _source(self, source_id: int, name: str) -> _Source:
        with self._lock:
            src = self._sources.get(source_id)
            if src is None:
                src = _Source(name)
                self._sources[source_id] = src
            return src

    def is_spam(self, source_id: int, name: str, is_new_source: bool) -> bool:
        """Count one event of the source and tell whether it must be dropped."""
        if self.threshold == 0:
            return False

        src = self._source(source_id, name)
        if is_new_source:
            src.counter.swap(0)
            return False

        count = src.counter.inc()
        if count == self.threshold:
            src.counter.swap(self.unban_iterations * self.threshold)
            self.active_metric.set(1)
            self.ban_metric.inc()
            _log.warning("antispam: source has been banned id=%d, name=%s", source_id, name)

        return count >= self.threshold

    def maintenance(self) -> None:
        """Age the counters: forget idle sources and move banned ones towards unban."""
        with self._lock:
            all_unbanned = True
            for source_id, src in list(self._sources.items()):
                count = src.counter.load()
                if count == 0:
                    del self._sources[source_id]
                    continue

                was_banned = count >= self.threshold
                count = max(count - self.threshold, 0)

                if was_banned and count < self.threshold:
                    self.ban_metric.dec()
                    _log.info("antispam: source has been unbanned id=%d", source_id)

                if count >= self.threshold:
                    all_unbanned = False

                count = min(count, self.unban_iterations * self.threshold)
                src.counter.swap(count)

            if all_unbanned:
                self.active_metric.set(0)
            else:
                _log.info("antispam: there are banned sources")

    def dump(self) -> str:
        """Describe the banned sources as text."""
        with self._lock:
            if not self._sources:
                return header("no banned")
            out = header("banned sources")
            for source_id, src in self._sources.items():
                value = src.counter.load()
                if value >= self.threshold:
                    out += (
                        f"source_id: {source_id}, source_name: {src.name}, "
                        f"events_counter: {value}\n"
                    )
            return out