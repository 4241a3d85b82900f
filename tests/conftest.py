"""Pytest configuration and shared fixtures."""

import asyncio

import pytest

from termgate.keys import Key
from termgate.protocols import Connection


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from termgate.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


class MockChannel:
    """In-memory Channel for session and relay tests.

    Records every write; set closed to make writes fail with
    ChannelClosedError, or stall to make them wait past the timeout.
    """

    def __init__(self, connection: Connection | None = None):
        self.connection = connection or Connection("alice", "10.0.0.5", 50022)
        self.writes: list[bytes] = []
        self.closed = False
        self.stall = False
        self.close_calls = 0
        self.exit_statuses: list[int] = []

    def connection_info(self) -> Connection:
        return self.connection

    async def write(self, data: bytes, timeout: float) -> None:
        from termgate.errors import ChannelClosedError, SendTimeoutError

        if self.closed:
            raise ChannelClosedError("closed")
        if self.stall:
            await asyncio.sleep(timeout)
            raise SendTimeoutError("stalled")
        self.writes.append(data)

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def exit(self, status: int) -> None:
        self.exit_statuses.append(status)
        self.closed = True


class RecordingHandle:
    """AppHandle that records events and can be made to finish."""

    def __init__(self):
        self.events: list = []
        self.stopped = False
        self._done: asyncio.Future = asyncio.get_running_loop().create_future()

    def send(self, event) -> None:
        self.events.append(event)

    async def wait(self) -> None:
        await self._done

    async def stop(self) -> None:
        self.stopped = True
        if not self._done.done():
            self._done.cancel()

    def finish(self) -> None:
        self._done.set_result(None)

    def crash(self, exc: Exception) -> None:
        self._done.set_exception(exc)


class RecordingApplication:
    """Application that hands out RecordingHandles, or fails to start."""

    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.handles: list[RecordingHandle] = []
        self.sinks: list = []

    async def start(self, spec, sink):
        if self.fail is not None:
            raise self.fail
        handle = RecordingHandle()
        self.handles.append(handle)
        self.sinks.append(sink)
        return handle


@pytest.fixture
def channel():
    return MockChannel()


@pytest.fixture
def application():
    return RecordingApplication()


def char(c: str, modifiers: int = 0) -> Key:
    from termgate.keys import KeyType

    return Key(KeyType.CHAR, c, modifiers)
