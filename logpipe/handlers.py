"""HTTP-style views of a pipeline: status pages, action statistics and action samples."""

from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Iterable

from .event import EventStatus
from .util import header

DEFAULT_SAMPLE_TIMEOUT = 5.0

HTML_OPEN = "<html><body><pre><p>"
HTML_CLOSE = "</p></pre></body></html>"
JSON_CONTENT_TYPE = "application/json"
HTML_CONTENT_TYPE = "text/html; charset=utf-8"

NO_METRIC_NAME_MESSAGE = (
    "If you want to see a statistic about events, "
    "consider adding `metric_name` to the action's configuration."
)
NO_ACTIVE_PROCESSORS_MESSAGE = "There are no active processors"
SAMPLE_TIMEOUT_MESSAGE = (
    "Timeout while try to display an event before and after the action processing."
)

_INFO_STATUSES = (EventStatus.RECEIVED, EventStatus.DISCARDED, EventStatus.PASSED)

Handler = Callable[[], Any]


@dataclass(frozen=True)
class Response:
    """What a handler answers: a status code, a body and its content type."""

    status: int
    body: bytes
    content_type: str = HTML_CONTENT_TYPE


def _dumps(value: Any) -> bytes:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode()


def error_body(message: str) -> bytes:
    """Return the JSON body used to report an error."""
    return _dumps({"error": message})


def _html_page(title: str, parts: Iterable[str]) -> Response:
    body = HTML_OPEN + header(title) + "".join(parts) + HTML_CLOSE
    return Response(200, body.encode())


def pipeline_page(pipeline: Any) -> Response:
    """Describe the streams and the event pool of the pipeline."""
    return _html_page(
        "pipeline " + pipeline.name,
        (pipeline.streamer.dump(), pipeline.event_pool.dump()),
    )


def ban_list_page(pipeline: Any) -> Response:
    """Describe the sources banned by the antispam."""
    return _html_page("pipeline " + pipeline.name, (pipeline.antispamer.dump(),))


def _find_action_metrics(pipeline: Any, metric_name: str) -> Any:
    for metrics in getattr(pipeline.metrics_holder, "metrics", ()):
        if getattr(metrics, "name", None) == metric_name:
            return metrics
    return None


def _total_count(metrics: Any, status: EventStatus) -> int:
    if metrics is None:
        return 0
    current = getattr(metrics, "current", None)
    totals = getattr(current, "total_counter", None)
    if totals is None and isinstance(current, dict):
        totals = current
    if not totals:
        return 0
    counter = totals.get(status.value, totals.get(status))
    if counter is None:
        return 0
    if hasattr(counter, "load"):
        return int(counter.load())
    return int(counter)


def action_info(pipeline: Any, info: Any) -> Response:
    """Return how many events the action received, discarded and passed."""
    metric_name = getattr(info, "metric_name", "")
    if not metric_name:
        return Response(400, error_body(NO_METRIC_NAME_MESSAGE), JSON_CONTENT_TYPE)

    metrics = _find_action_metrics(pipeline, metric_name)
    events = [
        {"status": status.value, "count": _total_count(metrics, status)}
        for status in _INFO_STATUSES
    ]
    return Response(200, _dumps(events), JSON_CONTENT_TYPE)


def action_sample(
    pipeline: Any, action_index: int, timeout: float = DEFAULT_SAMPLE_TIMEOUT
) -> Response:
    """Watch every processor and return the first event sample taken around the action."""
    if pipeline.active_procs.load() <= 0 or pipeline.proc_count.load() <= 0:
        return Response(400, error_body(NO_ACTIVE_PROCESSORS_MESSAGE), JSON_CONTENT_TYPE)

    samples: queue.Queue = queue.Queue()

    def watch(proc: Any) -> None:
        try:
            samples.put(proc.action_watcher.watch(action_index, timeout))
        except TimeoutError:
            pass

    for proc in list(pipeline.procs):
        threading.Thread(target=watch, args=(proc,), daemon=True).start()

    try:
        first = samples.get(timeout=timeout)
    except queue.Empty:
        return Response(500, error_body(SAMPLE_TIMEOUT_MESSAGE), JSON_CONTENT_TYPE)
    return Response(200, first.marshal(), JSON_CONTENT_TYPE)


def _endpoints(info: Any) -> dict[str, Handler]:
    return dict(getattr(info, "endpoints", None) or {})


def build_routes(pipeline: Any) -> dict[str, Handler]:
    """Map URL paths to handlers for the pipeline and its plugins.

    Plugin endpoints live under ``/pipelines/<name>/<index>/<endpoint>``: the input
    has index 0, actions follow in order and the output has the last index.
    """
    if pipeline.input is None:
        raise RuntimeError(f"input isn't set for pipeline {pipeline.name!r}")
    if pipeline.output is None:
        raise RuntimeError(f"output isn't set for pipeline {pipeline.name!r}")

    prefix = "/pipelines/" + pipeline.name
    routes: dict[str, Handler] = {
        prefix: partial(pipeline_page, pipeline),
        prefix + "/ban_list": partial(ban_list_page, pipeline),
    }

    for name, handler in _endpoints(pipeline.input_info).items():
        routes[f"{prefix}/0/{name}"] = handler

    for index, info in enumerate(pipeline.action_infos):
        number = index + 1
        routes[f"{prefix}/{number}/info"] = partial(action_info, pipeline, info)
        routes[f"{prefix}/{number}/sample"] = partial(action_sample, pipeline, index)
        for name, handler in _endpoints(info).items():
            routes[f"{prefix}/{number}/{name}"] = handler

    output_number = len(pipeline.action_infos) + 1
    for name, handler in _endpoints(pipeline.output_info).items():
        routes[f"{prefix}/{output_number}/{name}"] = handler

    return routes