import threading

import pytest

from bookfetch.workflows.route_health import RouteHealthTracker
from bookfetch.workflows.web_fetch import make_route


def test_average_latency_counts_successes_only():
    tracker = RouteHealthTracker(8.0)
    tracker.record_attempt("r1", True, 100)
    tracker.record_attempt("r1", False, 9000)
    stat = tracker.record_attempt("r1", True, 300)
    assert stat.success_count == 2
    assert stat.failure_count == 1
    assert stat.average_latency_ms == pytest.approx(200.0)
    assert stat.consecutive_failures == 0


def test_consecutive_failures_reset_on_success():
    tracker = RouteHealthTracker(8.0)
    tracker.record_attempt("r1", False, 10)
    assert tracker.record_attempt("r1", False, 10).consecutive_failures == 2
    assert tracker.record_attempt("r1", True, 10).consecutive_failures == 0


def test_recommended_timeout_is_adaptive_and_capped():
    tracker = RouteHealthTracker(8.0)
    assert tracker.recommended_timeout("fresh") == 8.0
    tracker.record_attempt("fast", True, 500)
    assert tracker.recommended_timeout("fast") == pytest.approx(1.0)
    tracker.record_attempt("slow", True, 6000)
    assert tracker.recommended_timeout("slow") == 8.0
    tracker.record_attempt("failing", False, 100)
    assert tracker.recommended_timeout("failing") == 8.0


def test_min_timeout_floor():
    tracker = RouteHealthTracker(8.0, min_timeout=2.0)
    tracker.record_attempt("fast", True, 100)
    assert tracker.recommended_timeout("fast") == 2.0


def test_ordered_routes_by_reliability_then_latency_then_position():
    a, b, c, d = (make_route(f"https://{name}.test/?") for name in "abcd")
    tracker = RouteHealthTracker(8.0)
    tracker.record_attempt(a, False, 50)
    tracker.record_attempt(b, True, 400)
    tracker.record_attempt(c, True, 100)
    ordered = tracker.ordered_routes([a, b, c, d])
    # b and c are fully reliable (c faster); d is untested (0.5); a is 0.0.
    assert ordered == [c, b, d, a]


def test_untested_routes_keep_their_configured_order():
    routes = [make_route(f"https://{name}.test/?") for name in "xyz"]
    assert RouteHealthTracker(8.0).ordered_routes(routes) == routes


def test_snapshot_returns_copies():
    tracker = RouteHealthTracker(8.0)
    tracker.record_attempt("r1", True, 100)
    snapshot = tracker.snapshot()
    snapshot[0].success_count = 99
    assert tracker.get("r1").success_count == 1
    assert snapshot[0].to_dict()["route_id"] == "r1"


def test_reset_is_the_only_way_to_clear_history():
    tracker = RouteHealthTracker(8.0)
    tracker.record_attempt("r1", True, 100)
    tracker.record_attempt("r2", False, 100)
    tracker.reset(["r1"])
    assert tracker.get("r1") is None
    assert tracker.get("r2") is not None
    tracker.reset()
    assert tracker.snapshot() == []


def test_concurrent_records_are_not_lost():
    tracker = RouteHealthTracker(8.0)

    def worker():
        for _ in range(200):
            tracker.record_attempt("shared", True, 10)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert tracker.get("shared").success_count == 800


def test_base_timeout_must_be_positive():
    with pytest.raises(ValueError):
        RouteHealthTracker(0)
