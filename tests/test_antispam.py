from logpipe.antispam import Antispamer
from logpipe.metrics import MetricsController
from logpipe.util import header

THRESHOLD = 3
UNBAN = 4


def make(threshold=THRESHOLD):
    return Antispamer(threshold, UNBAN, 5.0, MetricsController("pipeline_test"))


def test_disabled_never_spam():
    a = make(0)
    assert not any(a.is_spam(1, "src", False) for _ in range(100))
    assert a.dump() == header("no banned")


def test_ban_at_threshold():
    a = make()
    results = [a.is_spam(1, "src", False) for _ in range(THRESHOLD + 2)]
    assert results == [False] * (THRESHOLD - 1) + [True] * 3
    assert a.active_metric.value() == 1
    assert a.ban_metric.value() == 1


def test_new_source_resets_counter():
    a = make()
    for _ in range(THRESHOLD - 1):
        a.is_spam(1, "src", False)
    assert a.is_spam(1, "src", True) is False
    assert a.is_spam(1, "src", False) is False


def test_sources_are_counted_separately():
    a = make()
    for _ in range(THRESHOLD):
        a.is_spam(1, "first", False)
    assert a.is_spam(2, "second", False) is False
    assert a.is_spam(1, "first", False) is True


def test_maintenance_unbans_after_iterations():
    a = make()
    for _ in range(THRESHOLD):
        a.is_spam(1, "src", False)
    rounds = 0
    while a.ban_metric.value() > 0:
        a.maintenance()
        rounds += 1
        assert rounds <= UNBAN
    assert rounds == UNBAN
    assert a.active_metric.value() == 0
    assert a.is_spam(1, "src", False) is False


def test_maintenance_forgets_idle_sources():
    a = make()
    a.is_spam(7, "idle", True)
    assert "source_id" not in a.dump()
    a.maintenance()
    assert a.dump() == header("no banned")


def test_dump_lists_banned_only():
    a = make()
    for _ in range(THRESHOLD):
        a.is_spam(10, "loud", False)
    a.is_spam(11, "quiet", False)
    out = a.dump()
    assert out.startswith(header("banned sources"))
    assert "source_id: 10, source_name: loud" in out
    assert "quiet" not in out