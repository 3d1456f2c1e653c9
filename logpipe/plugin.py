"""Plugin interfaces, plugin descriptions, match rules and pipeline settings."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Mapping

DEFAULT_STREAM_FIELD = "stream"
DEFAULT_CAPACITY = 1024
DEFAULT_AVG_INPUT_EVENT_SIZE = 4 * 1024
DEFAULT_MAX_INPUT_EVENT_SIZE = 0
DEFAULT_JSON_NODE_POOL_SIZE = 1024
DEFAULT_MAINTENANCE_INTERVAL = 5.0
DEFAULT_EVENT_TIMEOUT = 30.0
DEFAULT_FIELD_VALUE = "not_set"
DEFAULT_STREAM_NAME = "not_set"

EVENT_SEQ_ID_ERROR = 0

ANTISPAM_UNBAN_ITERATIONS = 4
METRICS_GEN_INTERVAL = 3600.0


class PluginKind(str, Enum):
    INPUT = "input"
    ACTION = "action"
    OUTPUT = "output"


class MatchMode(IntEnum):
    AND = 0
    OR = 1
    AND_PREFIX = 2
    OR_PREFIX = 3
    UNKNOWN = 4


MATCH_MODES: Mapping[str, MatchMode] = {
    "": MatchMode.AND,
    "and": MatchMode.AND,
    "or": MatchMode.OR,
    "and_prefix": MatchMode.AND_PREFIX,
    "or_prefix": MatchMode.OR_PREFIX,
}


def match_mode_from_string(mode: str) -> MatchMode:
    """Parse a match mode name; unknown names give ``MatchMode.UNKNOWN``."""
    return MATCH_MODES.get(mode.strip().lower(), MatchMode.UNKNOWN)


class ConditionType(IntEnum):
    UNKNOWN_SELECTOR = 0
    BY_NAME_SELECTOR = 1


class ActionResult(IntEnum):
    """What an action asks the processor to do with an event."""

    # pass the event to the next action
    PASS = 0
    # stop processing; take the next event from any stream
    DISCARD = 1
    # stop processing; take the next event from the same stream
    COLLAPSE = 2
    # like COLLAPSE, but the held event is committed or propagated by the plugin later
    HOLD = 3


@dataclass
class Settings:
    """Pipeline settings; durations are in seconds."""

    decoder: str = "json"
    capacity: int = DEFAULT_CAPACITY
    maintenance_interval: float = DEFAULT_MAINTENANCE_INTERVAL
    event_timeout: float = DEFAULT_EVENT_TIMEOUT
    antispam_threshold: int = 0
    avg_event_size: int = DEFAULT_AVG_INPUT_EVENT_SIZE
    max_event_size: int = DEFAULT_MAX_INPUT_EVENT_SIZE
    stream_field: str = DEFAULT_STREAM_FIELD
    is_strict: bool = False


@dataclass
class MatchCondition:
    """A rule on one (possibly nested) field of an event."""

    field: list[str]
    values: list[str] = field(default_factory=list)
    regexp: re.Pattern | None = None

    def value_exists(self, value: str, by_prefix: bool) -> bool:
        """Tell whether ``value`` equals (or starts with) one of the condition's values."""
        if by_prefix:
            return any(value.startswith(candidate) for candidate in self.values)
        return value in self.values


@dataclass
class PluginSelector:
    cond_type: ConditionType = ConditionType.UNKNOWN_SELECTOR
    cond_value: str = ""


@dataclass
class PluginDefaultParams:
    pipeline_name: str
    pipeline_settings: Settings


@dataclass
class PluginParams:
    """What a plugin receives when it starts."""

    defaults: PluginDefaultParams
    controller: Any = None
    logger: logging.Logger | None = None

    @property
    def pipeline_name(self) -> str:
        return self.defaults.pipeline_name

    @property
    def pipeline_settings(self) -> Settings:
        return self.defaults.pipeline_settings


@dataclass
class PluginStaticInfo:
    type: str = ""
    factory: Callable[[], tuple[Any, Any]] | None = None
    config: Any = None
    # endpoint name to handler; every plugin may expose its own API
    endpoints: dict[str, Callable[..., Any]] = field(default_factory=dict)
    # input plugins only: actions to run right after the input
    additional_actions: list[str] = field(default_factory=list)


@dataclass
class PluginRuntimeInfo:
    plugin: Any = None
    id: str = ""


class _StaticInfoView:
    """Shared accessors for descriptions that carry a PluginStaticInfo."""

    static_info: PluginStaticInfo

    @property
    def type(self) -> str:
        return self.static_info.type

    @property
    def factory(self) -> Callable[[], tuple[Any, Any]] | None:
        return self.static_info.factory

    @property
    def config(self) -> Any:
        return self.static_info.config

    @property
    def endpoints(self) -> dict[str, Callable[..., Any]]:
        return self.static_info.endpoints


class _RuntimeInfoView:
    runtime_info: PluginRuntimeInfo

    @property
    def plugin(self) -> Any:
        return self.runtime_info.plugin

    @property
    def id(self) -> str:
        return self.runtime_info.id


@dataclass
class InputPluginInfo(_StaticInfoView, _RuntimeInfoView):
    static_info: PluginStaticInfo
    runtime_info: PluginRuntimeInfo


@dataclass
class OutputPluginInfo(_StaticInfoView, _RuntimeInfoView):
    static_info: PluginStaticInfo
    runtime_info: PluginRuntimeInfo


@dataclass
class ActionPluginStaticInfo(_StaticInfoView):
    static_info: PluginStaticInfo
    metric_name: str = ""
    metric_labels: list[str] = field(default_factory=list)
    match_conditions: list[MatchCondition] = field(default_factory=list)
    match_mode: MatchMode = MatchMode.AND
    match_invert: bool = False


@dataclass
class ActionPluginInfo(_RuntimeInfoView):
    action_info: ActionPluginStaticInfo
    runtime_info: PluginRuntimeInfo

    @property
    def static_info(self) -> PluginStaticInfo:
        return self.action_info.static_info

    @property
    def type(self) -> str:
        return self.action_info.type

    @property
    def config(self) -> Any:
        return self.action_info.config

    @property
    def match_mode(self) -> MatchMode:
        return self.action_info.match_mode

    @property
    def match_conditions(self) -> list[MatchCondition]:
        return self.action_info.match_conditions

    @property
    def match_invert(self) -> bool:
        return self.action_info.match_invert


class InputPlugin(ABC):
    """A source of events."""

    @abstractmethod
    def start(self, config: Any, params: PluginParams) -> None:
        """Begin reading and feeding events to the controller in ``params``."""

    @abstractmethod
    def stop(self) -> None:
        """Stop reading."""

    @abstractmethod
    def commit(self, event: Any) -> None:
        """Record that ``event`` went all the way through the pipeline."""

    @abstractmethod
    def register_metrics(self, ctl: Any) -> None:
        """Register the plugin's metrics with ``ctl``."""

    @abstractmethod
    def pass_event(self, event: Any) -> bool:
        """Tell whether ``event`` should enter the pipeline."""


class ActionPlugin(ABC):
    """A step that inspects or changes events."""

    @abstractmethod
    def start(self, config: Any, params: PluginParams) -> None:
        """Prepare the action."""

    @abstractmethod
    def stop(self) -> None:
        """Release the action's resources."""

    @abstractmethod
    def do(self, event: Any) -> ActionResult:
        """Process ``event`` and say what should happen to it next."""

    @abstractmethod
    def register_metrics(self, ctl: Any) -> None:
        """Register the plugin's metrics with ``ctl``."""


class OutputPlugin(ABC):
    """A destination for processed events."""

    @abstractmethod
    def start(self, config: Any, params: PluginParams) -> None:
        """Prepare the output."""

    @abstractmethod
    def stop(self) -> None:
        """Flush and close the output."""

    @abstractmethod
    def out(self, event: Any) -> None:
        """Accept a processed event."""

    @abstractmethod
    def register_metrics(self, ctl: Any) -> None:
        """Register the plugin's metrics with ``ctl``."""