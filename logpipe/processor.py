"""Workers that take events from streams and run them through the actions."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Callable

from .action_watcher import ActionWatcher
from .event import MISSING, Event, EventStage, EventStatus, node_as_string
from .metrics import MetricsHolder
from .plugin import (
    ActionPlugin,
    ActionPluginInfo,
    ActionPluginStaticInfo,
    ActionResult,
    MatchCondition,
    MatchMode,
    OutputPlugin,
    PluginDefaultParams,
    PluginParams,
)
from .stream import Stream, Streamer
from .util import AtomicInt

_log = logging.getLogger(__name__)

_ids = itertools.count()

FinalizeFn = Callable[[Event, bool, bool], None]


class Processor:
    """Runs events of attached streams through the action chain and into the output."""

    def __init__(
        self,
        metrics_holder: MetricsHolder,
        active_counter: AtomicInt,
        output: OutputPlugin | None,
        streamer: Streamer,
        finalize: FinalizeFn,
    ) -> None:
        self.id = next(_ids)
        self.metrics_holder = metrics_holder
        self.active_counter = active_counter
        self.output = output
        self.streamer = streamer
        self.finalize = finalize
        self.actions: list[ActionPlugin] = []
        self.action_infos: list[ActionPluginStaticInfo] = []
        self.busy_actions: list[bool] = []
        self.busy_actions_total = 0
        self.action_watcher = ActionWatcher(self.id)
        self.metrics_values: list[str] = []
        self._thread: Any = None

    def start(self, params: PluginDefaultParams, logger: logging.Logger | None = None) -> None:
        """Start the actions and the processing thread."""
        import threading

        base = (logger or _log).getChild("action")
        for action, info in zip(self.actions, self.action_infos):
            action.start(
                info.config,
                PluginParams(
                    defaults=params,
                    controller=self,
                    logger=base.getChild(info.type) if info.type else base,
                ),
            )
        self._thread = threading.Thread(
            target=self._process, name=f"processor-{self.id}", daemon=True
        )
        self._thread.start()

    def register_metrics(self, ctl: Any) -> None:
        for action in self.actions:
            action.register_metrics(ctl)

    def _process(self) -> None:
        while True:
            stream = self.streamer.join_stream()
            if stream is None:
                return
            self.active_counter.inc()
            try:
                self._discharge_stream(stream)
            finally:
                self.active_counter.dec()

    def _discharge_stream(self, stream: Stream) -> None:
        while True:
            event = stream.instant_get()
            # an empty stream is left; attach to another one
            if event is None:
                return
            if not self._process_sequence(event):
                return

    def _process_sequence(self, event: Event) -> bool:
        is_success, is_passed, event = self._process_event(event)
        if is_passed:
            if event.is_unlock_kind():
                return False
            event.stage = EventStage.OUTPUT
            if self.output is not None:
                self.output.out(event)
        return is_success

    def _process_event(self, event: Event) -> tuple[bool, bool, Event]:
        while True:
            if event.is_unlock_kind():
                return True, True, event
            stream = event.stream

            if self._do_actions(event):
                return True, True, event

            if self.busy_actions_total == 0:
                return True, False, event

            # a busy action waits for the next event of the same stream
            held_action = event.action.load()
            event = stream.block_get()
            if event.is_timeout_kind():
                # hand the timeout to the action that asked for the next event
                event.action = AtomicInt(held_action)

    def _do_actions(self, event: Event) -> bool:
        start = event.action.load()
        pairs = itertools.islice(enumerate(zip(self.actions, self.action_infos)), start, None)
        for index, (action, info) in pairs:
            event.action.store(index)
            self._count_event(event, index, EventStatus.RECEIVED)

            matched = self.is_match(index, event)
            if info.match_invert:
                matched = not matched
            if not matched:
                self._count_event(event, index, EventStatus.NOT_MATCHED)
                continue

            self.action_watcher.set_event_before(index, event)

            result = action.do(event)
            if result == ActionResult.PASS:
                self._count_event(event, index, EventStatus.PASSED)
                self._try_reset_busy(index)
                self.action_watcher.set_event_after(index, event, EventStatus.PASSED)
            elif result == ActionResult.DISCARD:
                self._count_event(event, index, EventStatus.DISCARDED)
                self._try_reset_busy(index)
                # the input is not notified: earlier events may still be in flight
                self.finalize(event, False, True)
                self.action_watcher.set_event_after(index, event, EventStatus.DISCARDED)
                return False
            elif result == ActionResult.COLLAPSE:
                self._count_event(event, index, EventStatus.COLLAPSED)
                self._try_mark_busy(index)
                self.finalize(event, False, True)
                self.action_watcher.set_event_after(index, event, EventStatus.COLLAPSED)
                return False
            elif result == ActionResult.HOLD:
                self._count_event(event, index, EventStatus.HELD)
                self._try_mark_busy(index)
                self.finalize(event, False, False)
                self.action_watcher.set_event_after(index, event, EventStatus.HELD)
                return False
        return True

    def _try_mark_busy(self, index: int) -> None:
        if self.busy_actions[index]:
            return
        self.busy_actions[index] = True
        self.busy_actions_total += 1
        if self.busy_actions_total > len(self.actions):
            raise RuntimeError("blocked actions too big")

    def _try_reset_busy(self, index: int) -> None:
        if not self.busy_actions[index]:
            return
        self.busy_actions[index] = False
        self.busy_actions_total -= 1
        if self.busy_actions_total < 0:
            raise RuntimeError("blocked action count less than zero")

    def _count_event(self, event: Event, action_index: int, status: EventStatus) -> None:
        if self.metrics_holder is not None:
            self.metrics_values = self.metrics_holder.count(event, action_index, status)

    def is_match(self, index: int, event: Event) -> bool:
        """Tell whether the action at ``index`` applies to ``event``."""
        if event.is_timeout_kind():
            return True
        if self.busy_actions[index]:
            return True

        info = self.action_infos[index]
        mode = info.match_mode
        if mode in (MatchMode.OR, MatchMode.OR_PREFIX):
            return _match_or(info.match_conditions, event, mode == MatchMode.OR_PREFIX)
        return _match_and(info.match_conditions, event, mode == MatchMode.AND_PREFIX)

    def stop(self) -> None:
        self.streamer.unblock_processor()
        for action in self.actions:
            action.stop()

    def add_action_plugin(self, info: ActionPluginInfo) -> None:
        self.actions.append(info.plugin)
        self.action_infos.append(info.action_info)
        self.busy_actions.append(False)

    def commit(self, event: Event) -> None:
        """Commit a held event and skip its further processing."""
        self.finalize(event, False, True)

    def propagate(self, event: Event) -> None:
        """Send a held event on to the actions after the one holding it."""
        event.action.inc()
        self._process_sequence(event)


def _match_or(conds: list[MatchCondition], event: Event, by_prefix: bool) -> bool:
    for cond in conds:
        node = event.dig(*cond.field)
        if node is MISSING:
            continue
        value = node_as_string(node)
        if cond.regexp is not None and cond.regexp.search(value):
            return True
        if cond.value_exists(value, by_prefix):
            return True
    return False


def _match_and(conds: list[MatchCondition], event: Event, by_prefix: bool) -> bool:
    for cond in conds:
        node = event.dig(*cond.field)
        if node is MISSING:
            return False
        value = node_as_string(node)
        if cond.regexp is not None and not cond.regexp.search(value):
            return False
        if not cond.value_exists(value, by_prefix):
            return False
    return True