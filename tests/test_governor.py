"""
Tests for the request governor: dedup, rate limiting, priority, retries,
timeouts and queue clearing.

These run the real drain thread against a fake transport.
"""
import time
from concurrent.futures import Future

import pytest

from breakmybubble.errors import FatalAPIError, QueueClearedError, RequestTimeoutError, TransientAPIError
from breakmybubble.governor import (
    HttpResponse,
    InFlightRegistry,
    Priority,
    RateLimitConfig,
    RequestGovernor,
    RequestSpec,
    RetryPolicy,
)

GENEROUS_LIMITS = RateLimitConfig(
    requests_per_second=100,
    requests_per_minute=1000,
    requests_per_hour=10000,
    requests_per_day=10000,
)
FAST_RETRY = RetryPolicy(max_retries=2, base_delay=0.01, max_delay=0.05, jitter=0)


@pytest.fixture
def make_governor():
    created = []

    def factory(transport, **kwargs):
        kwargs.setdefault("rate_limits", GENEROUS_LIMITS)
        kwargs.setdefault("retry_policy", FAST_RETRY)
        kwargs.setdefault("tick_interval", 0.01)
        governor = RequestGovernor(transport=transport, **kwargs)
        created.append((governor, transport))
        return governor

    yield factory

    for governor, transport in created:
        transport.release.set()
        governor.destroy()


class TestDeduplication:

    def test_concurrent_identical_calls_share_one_execution(self, make_governor, make_transport):
        transport = make_transport(block=True, body='{"articles": []}')
        governor = make_governor(transport)
        spec = RequestSpec(target="https://newsapi.org/v2/everything?sources=bbc-news")

        futures = [governor.submit(spec) for _ in range(3)]
        assert futures[0] is futures[1] is futures[2]

        transport.release.set()
        results = [f.result(timeout=5) for f in futures]

        assert transport.call_count == 1
        assert all(r is results[0] for r in results)
        analytics = governor.get_analytics()
        assert analytics.total_requests == 3
        assert analytics.duplicates_blocked == 2

    def test_settled_key_executes_again(self, make_governor, transport):
        governor = make_governor(transport)
        spec = RequestSpec(target="https://newsapi.org/v2/sources")

        governor.request(spec, timeout=5)
        governor.request(spec, timeout=5)

        assert transport.call_count == 2

    def test_explicit_dedup_key_overrides_target(self, make_governor, make_transport):
        transport = make_transport(block=True)
        governor = make_governor(transport)

        first = governor.submit(RequestSpec(target="https://a.example/x", dedup_key="shared"))
        second = governor.submit(RequestSpec(target="https://a.example/y", dedup_key="shared"))

        assert first is second
        transport.release.set()
        first.result(timeout=5)

    def test_in_flight_entry_older_than_30s_is_not_joined(self, make_governor, make_transport, clock):
        transport = make_transport(block=True, body='{"articles": []}')
        governor = make_governor(transport, clock=clock)
        spec = RequestSpec(target="https://newsapi.org/v2/everything?q=k1")

        first = governor.submit(spec)
        assert transport.entered.wait(timeout=5)
        clock.advance(31)
        second = governor.submit(spec)

        assert second is not first
        transport.release.set()
        first.result(timeout=5)
        second.result(timeout=5)

        assert transport.call_count == 2
        assert governor.get_analytics().duplicates_blocked == 0

    def test_settling_old_call_keeps_newer_entry(self, clock):
        registry = InFlightRegistry(clock=clock)
        old, new = Future(), Future()
        registry.register("k1", old)
        clock.advance(31)

        assert registry.lookup("k1") is None
        registry.register("k1", new)

        assert registry.release("k1", old) is False
        assert registry.lookup("k1").future is new
        assert registry.release("k1", new) is True
        assert registry.active_requests == 0

    def test_entry_younger_than_30s_is_joined(self, clock):
        registry = InFlightRegistry(clock=clock)
        future = Future()
        registry.register("k1", future)
        clock.advance(29)

        entry = registry.lookup("k1")
        assert entry.future is future
        assert entry.waiter_count == 1


class TestRateLimiting:

    def test_dispatches_are_spaced_by_second_window(self, make_governor, transport):
        governor = make_governor(
            transport,
            rate_limits=RateLimitConfig(requests_per_second=1),
        )
        futures = [
            governor.submit(RequestSpec(target=f"https://newsapi.org/v2/everything?page={i}"))
            for i in range(3)
        ]
        for future in futures:
            future.result(timeout=10)

        times = transport.call_times
        assert len(times) == 3
        assert times[1] - times[0] >= 0.95
        assert times[2] - times[1] >= 0.95
        assert governor.get_analytics().rate_limit_hits >= 1

    def test_rate_limit_hit_counted_once_per_blocked_call(self, make_governor, transport):
        governor = make_governor(
            transport,
            rate_limits=RateLimitConfig(requests_per_second=1),
        )
        governor.request(RequestSpec(target="https://newsapi.org/v2/everything?page=1"), timeout=5)

        blocked = governor.submit(RequestSpec(target="https://newsapi.org/v2/everything?page=2"))
        for _ in range(5):
            # Each update wakes the drain loop while the window is still full
            governor.update_rate_limits(requests_per_second=1)
            time.sleep(0.05)
        blocked.result(timeout=5)

        assert governor.get_analytics().rate_limit_hits == 1

    def test_update_rate_limits(self, make_governor, transport):
        governor = make_governor(transport)
        config = governor.update_rate_limits(requests_per_day=5000)

        assert config.requests_per_day == 5000
        assert governor.rate_limits.requests_per_second == GENEROUS_LIMITS.requests_per_second


class TestPriority:

    def test_high_priority_runs_before_earlier_low(self, make_governor, transport):
        governor = make_governor(transport, autostart=False)
        low = governor.submit(RequestSpec(target="https://a.example/low", priority=Priority.LOW))
        medium = governor.submit(RequestSpec(target="https://a.example/medium", priority="medium"))
        high = governor.submit(RequestSpec(target="https://a.example/high", priority=Priority.HIGH))

        assert governor.get_queue_status()["queue_length"] == 3
        governor.start()
        for future in (low, medium, high):
            future.result(timeout=5)

        order = [request.url.rsplit("/", 1)[1] for request in transport.requests]
        assert order == ["high", "medium", "low"]

    def test_fifo_within_a_tier(self, make_governor, transport):
        governor = make_governor(transport, autostart=False)
        futures = [
            governor.submit(RequestSpec(target=f"https://a.example/{i}", priority=Priority.MEDIUM))
            for i in range(4)
        ]
        governor.start()
        for future in futures:
            future.result(timeout=5)

        order = [request.url.rsplit("/", 1)[1] for request in transport.requests]
        assert order == ["0", "1", "2", "3"]

    def test_requests_by_priority_counts(self, make_governor, transport):
        governor = make_governor(transport)
        governor.request(RequestSpec(target="https://a.example/1", priority=Priority.HIGH), timeout=5)
        governor.request(RequestSpec(target="https://a.example/2", priority=Priority.LOW), timeout=5)

        counts = governor.get_analytics().requests_by_priority
        assert counts == {"high": 1, "medium": 0, "low": 1}


class TestRetries:

    def test_retryable_status_is_retried_up_to_bound(self, make_governor, make_transport):
        transport = make_transport(status=503)
        governor = make_governor(transport)

        future = governor.submit(RequestSpec(target="https://newsapi.org/v2/everything"))
        error = future.exception(timeout=5)

        assert isinstance(error, TransientAPIError)
        assert error.status_code == 503
        assert transport.call_count == 3

        analytics = governor.get_analytics()
        assert analytics.retry_attempts == 2
        assert analytics.failed_requests == 1
        assert analytics.errors_by_status == {503: 1}

    def test_recovers_after_transient_failures(self, make_governor, make_transport):
        transport = make_transport(responses=[
            HttpResponse(status=502),
            TransientAPIError("connection reset", kind="network_error"),
            HttpResponse(status=200, body="ok"),
        ])
        governor = make_governor(transport)

        response = governor.request(RequestSpec(target="https://newsapi.org/v2/sources"), timeout=5)

        assert response.body == "ok"
        assert transport.call_count == 3
        assert governor.get_analytics().successful_requests == 1

    def test_non_retryable_status_resolves_without_retry(self, make_governor, make_transport):
        transport = make_transport(status=401)
        governor = make_governor(transport)

        response = governor.request(RequestSpec(target="https://newsapi.org/v2/sources"), timeout=5)

        assert response.status == 401
        assert transport.call_count == 1
        assert governor.get_analytics().errors_by_status == {401: 1}

    def test_fatal_transport_error_is_not_retried(self, make_governor, make_transport):
        transport = make_transport(responses=[FatalAPIError("bad url", kind="bad_request")])
        governor = make_governor(transport)

        future = governor.submit(RequestSpec(target="not a url"))

        assert isinstance(future.exception(timeout=5), FatalAPIError)
        assert transport.call_count == 1

    def test_per_call_policy_overrides_default(self, make_governor, make_transport):
        transport = make_transport(status=500)
        governor = make_governor(transport)
        policy = RetryPolicy(max_retries=1, base_delay=0.01, jitter=0, retryable_statuses=frozenset({500}))

        future = governor.submit(RequestSpec(target="https://a.example", retry_policy=policy))

        assert future.exception(timeout=5).status_code == 500
        assert transport.call_count == 2


class TestTimeouts:

    def test_slow_call_times_out(self, make_governor, make_transport):
        transport = make_transport(block=True)
        governor = make_governor(transport, retry_policy=RetryPolicy(max_retries=0))

        future = governor.submit(RequestSpec(target="https://a.example/slow", timeout=0.05))
        error = future.exception(timeout=5)

        assert isinstance(error, RequestTimeoutError)
        assert error.kind == "timeout"


class TestQueueControl:

    def test_clear_queue_rejects_pending_calls_only(self, make_governor, make_transport):
        transport = make_transport(block=True)
        governor = make_governor(transport)

        running = governor.submit(RequestSpec(target="https://a.example/running"))
        assert transport.entered.wait(timeout=5)
        pending = [
            governor.submit(RequestSpec(target=f"https://a.example/pending/{i}"))
            for i in range(2)
        ]

        assert governor.clear_queue() == 2
        for future in pending:
            assert isinstance(future.exception(timeout=5), QueueClearedError)

        transport.release.set()
        assert running.result(timeout=5).status == 200
        assert transport.call_count == 1

    def test_queue_status(self, make_governor, make_transport):
        transport = make_transport(block=True)
        governor = make_governor(transport)

        governor.submit(RequestSpec(target="https://a.example/1"))
        assert transport.entered.wait(timeout=5)
        governor.submit(RequestSpec(target="https://a.example/2"))

        status = governor.get_queue_status()
        assert status["queue_length"] == 1
        assert status["in_flight_count"] == 2
        assert status["active_executions"] == 1
        assert status["is_processing"] is True

    def test_destroy_rejects_pending(self, make_governor, make_transport):
        transport = make_transport(block=True)
        governor = make_governor(transport, autostart=False)
        future = governor.submit(RequestSpec(target="https://a.example"))

        governor.destroy()

        assert isinstance(future.exception(timeout=5), QueueClearedError)
        assert governor.get_queue_status()["in_flight_count"] == 0

    def test_reset_analytics(self, make_governor, transport):
        governor = make_governor(transport)
        governor.request(RequestSpec(target="https://a.example"), timeout=5)

        governor.reset_analytics()
        snapshot = governor.get_analytics()
        assert snapshot.total_requests == 0
        assert snapshot.to_dict()["requestsByPriority"] == {"high": 0, "medium": 0, "low": 0}
