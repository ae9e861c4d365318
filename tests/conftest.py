"""
Shared fixtures: a controllable clock and a scripted HTTP transport.
"""
import threading
import time

import pytest

from breakmybubble.governor import HttpResponse


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """
    Records every request and replays scripted responses.

    Scripted items may be HttpResponse objects or exceptions to raise. When
    the script runs out the default response is returned. With block=True
    every send waits for release to be set.
    """

    def __init__(self, responses=None, status=200, body="", headers=None, block=False):
        self.requests = []
        self.call_times = []
        self.entered = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()
        self._responses = list(responses or [])
        self._default = HttpResponse(status=status, headers=headers or {}, body=body)
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.requests)

    def send(self, request, timeout=None):
        with self._lock:
            self.requests.append(request)
            self.call_times.append(time.monotonic())
        self.entered.set()
        self.release.wait(timeout=5)

        with self._lock:
            item = self._responses.pop(0) if self._responses else self._default
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_transport():
    return FakeTransport
