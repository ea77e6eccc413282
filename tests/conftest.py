"""Pytest configuration and shared fixtures."""

import os
import tempfile

# Keep test runs from writing apex.log into the source tree.
os.environ.setdefault("APEX_LOG_FILE", os.path.join(tempfile.gettempdir(), "apex-courier-tests.log"))

import threading
import time
from collections import deque
from functools import reduce
from typing import Callable, List, Optional, Sequence

import pytest

from APEX.apex_courier import Courier
from APEX.apex_packet import ApexCodec
from APEX.apex_port import PortTimeoutError

IDLE_STATE = 0x01
CASSETTE_PRESENT = 0x10


def frame(msg_type: int, data: Sequence[int]) -> bytes:
    """Build a well-formed Apex frame around arbitrary data bytes."""
    body = bytes([len(data) + 5, msg_type]) + bytes(data)
    chk = reduce(lambda a, b: a ^ b, body, 0)
    return bytes([0x02]) + body + bytes([0x03, chk])


def slave_frame(state: int = IDLE_STATE, status: int = CASSETTE_PRESENT, condition: int = 0x00,
                model: int = 0x0D, firmware: int = 0x21, d5: int = 0x00) -> bytes:
    return frame(0x20, (state, status, condition, model, firmware, d5))


def serial_frame(sn: Sequence[int]) -> bytes:
    return frame(0x60, tuple(sn) + (0x00,))


class FakePort:
    """
    Scripted stand-in for ApexPort.

    Replies are served in order; an Exception instance in the script is raised
    instead. Once the script runs dry every read returns `default`.
    Every call is recorded as (name, payload, monotonic time).
    """

    def __init__(self, replies=(), default=None):
        self.port = "fake://apex"
        self.replies = deque(replies)
        self.default = slave_frame() if default is None else default
        self.calls: List[tuple] = []
        self.write_error: Optional[Exception] = None
        self.open_error: Optional[Exception] = None
        self._open = False
        self._lock = threading.Lock()

    def _record(self, name, payload=None):
        with self._lock:
            self.calls.append((name, payload, time.monotonic()))

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self):
        self._record("open")
        if self.open_error is not None:
            raise self.open_error
        self._open = True
        return self

    def close(self):
        self._record("close")
        self._open = False

    def flush(self):
        self._record("flush")

    def write(self, data: bytes):
        self._record("write", bytes(data))
        if self.write_error is not None:
            raise self.write_error

    def read_exact_or_timeout(self, max_length: int, timeout=None) -> bytes:
        self._record("read", max_length)
        reply = self.replies.popleft() if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply

    # --- helpers for assertions ---
    def names(self) -> List[str]:
        with self._lock:
            return [c[0] for c in self.calls]

    def writes(self) -> List[bytes]:
        with self._lock:
            return [c[1] for c in self.calls if c[0] == "write"]


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def fake_port():
    return FakePort()


@pytest.fixture
def make_courier():
    """Factory: courier wired to a FakePort with an event recorder subscribed."""
    created: List[Courier] = []

    def _make(replies=(), default=None, **kwargs):
        port = FakePort(replies, default)
        kwargs.setdefault("poll_interval_ms", 10)
        kwargs.setdefault("retry_limit", 3)
        courier = Courier(port, ApexCodec(), **kwargs)
        events: List[object] = []
        courier.subscribe(events.append)
        created.append(courier)
        return courier, port, events

    yield _make

    for courier in created:
        courier.request_stop(timeout=5)


@pytest.fixture
def timeout_error():
    return PortTimeoutError("no reply")
