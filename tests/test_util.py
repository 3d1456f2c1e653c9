import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from logpipe.util import (
    AtomicInt,
    LogLevel,
    create_nested_field,
    header,
    parse_format_name,
    parse_level_as_number,
    parse_level_as_string,
)


@pytest.mark.parametrize(
    "root, path, want",
    [
        ("{}", ["a", "b", "c"], '{"a":{"b":{"c":{}}}}'),
        ("{}", ["path.to", "my", "file.d"], '{"path.to":{"my":{"file.d":{}}}}'),
        ('{"a": {"b":{}}}', ["a", "b", "c"], '{"a":{"b":{"c":{}}}}'),
        ('{"a": {"b":[]}}', ["a", "b", "c"], '{"a":{"b":{"c":{}}}}'),
        ('{"a": {"b":1}}', ["a", "b", "c"], '{"a":{"b":{"c":{}}}}'),
        ('{"a": {"b":null}}', ["a", "b", "c"], '{"a":{"b":{"c":{}}}}'),
        ('{"a": {"b":"text"}}', ["a", "b", "c"], '{"a":{"b":{"c":{}}}}'),
        ('{"a": {"b":{}}}', ["a", "b", "c"], '{"a":{"b":{"c":{}}}}'),
    ],
    ids=[
        "it works",
        "it works with dots",
        "it works with existing objects",
        "override array",
        "override number",
        "override null",
        "override string",
        "override object",
    ],
)
def test_create_nested_field_positive(root, path, want):
    doc = json.loads(root)
    create_nested_field(doc, path)
    assert json.dumps(doc, separators=(",", ":")) == want


def test_create_nested_field_returns_innermost():
    doc = {}
    node = create_nested_field(doc, ["a", "b"])
    node["x"] = 1
    assert doc == {"a": {"b": {"x": 1}}}


def test_create_nested_field_keeps_existing_object_content():
    doc = {"a": {"keep": True}}
    create_nested_field(doc, ["a", "b"])
    assert doc == {"a": {"keep": True, "b": {}}}


@pytest.mark.parametrize("level", ["0", "1", "2", "3", "4", "5", "6", "7"])
def test_level_parsing(level):
    expected = parse_level_as_number(level)
    got = parse_level_as_number(parse_level_as_string(level))
    assert expected >= 0
    assert got == expected


@pytest.mark.parametrize(
    "alias, level",
    [
        ("crit", LogLevel.CRITICAL),
        ("err", LogLevel.ERROR),
        (" WARN ", LogLevel.WARNING),
        ("info", LogLevel.INFORMATIONAL),
        ("debug", LogLevel.DEBUG),
    ],
)
def test_level_aliases(alias, level):
    assert parse_level_as_number(alias) is level


def test_level_as_string_canonical():
    assert parse_level_as_string("crit") == "critical"
    assert parse_level_as_string("6") == "informational"


def test_unknown_level():
    assert parse_level_as_number("loud") is LogLevel.UNKNOWN
    assert parse_level_as_string("loud") == ""


def test_parse_format_name_case_and_space_insensitive():
    assert parse_format_name("  RFC3339 ") == parse_format_name("rfc3339")


def test_parse_format_name_rfc3339_round_trip():
    fmt = parse_format_name("rfc3339")
    moment = datetime(2022, 3, 4, 5, 6, 7, tzinfo=timezone(timedelta(hours=3)))
    assert datetime.strptime(moment.strftime(fmt), fmt) == moment


def test_parse_format_name_nano_round_trip():
    fmt = parse_format_name("rfc3339nano")
    moment = datetime(2022, 3, 4, 5, 6, 7, 123456, tzinfo=timezone.utc)
    assert datetime.strptime(moment.strftime(fmt), fmt) == moment


def test_parse_format_name_unknown():
    with pytest.raises(ValueError, match="unknown format name"):
        parse_format_name("iso-ish")


def test_header_contains_title():
    text = header("streams")
    assert "streams" in text
    assert text.endswith("\n")


def test_atomic_int_concurrent_increments():
    counter = AtomicInt()

    def work():
        for _ in range(1000):
            counter.inc()

    threads = [threading.Thread(target=work) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert counter.load() == 8000


def test_atomic_int_swap_and_dec():
    counter = AtomicInt(5)
    assert counter.swap(10) == 5
    assert counter.dec() == 9
    counter.store(3)
    assert counter.inc(2) == 5