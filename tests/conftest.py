import asyncio
import sys

import pytest


@pytest.fixture
def loop_factory():
    """Provide event loops for aiohttp pytest integration."""
    loops: list[asyncio.AbstractEventLoop] = []

    def factory() -> asyncio.AbstractEventLoop:
        if sys.platform.startswith("win"):
            loop = asyncio.SelectorEventLoop()
        else:
            loop = asyncio.new_event_loop()

        asyncio.set_event_loop(loop)
        loops.append(loop)
        return loop

    yield factory

    for loop in loops:
        loop.close()

    asyncio.set_event_loop(None)


class FakeSerialStream:
    """In-memory stand-in for the device stream.

    Must be created inside a running event loop. Lines fed with
    :meth:`feed_line` come back from :meth:`readline`; writes are recorded.
    """

    def __init__(self) -> None:
        self.reader = asyncio.StreamReader()
        self.writes: list[bytes] = []
        self.closed = False
        self.failing_writes = 0

    async def readline(self) -> bytes:
        return await self.reader.readline()

    def write(self, data: bytes) -> None:
        if self.failing_writes > 0:
            self.failing_writes -= 1
            raise OSError("write failed")
        self.writes.append(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True
        if not self.reader.at_eof():
            self.reader.feed_eof()

    async def wait_closed(self) -> None:
        return None

    def feed_line(self, line: str) -> None:
        self.reader.feed_data((line + "\n").encode("utf-8"))

    def feed_eof(self) -> None:
        self.reader.feed_eof()

    @property
    def commands(self) -> list[str]:
        return [data.decode("ascii").rstrip("\n") for data in self.writes]


async def wait_until(predicate, *, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds or ``timeout`` elapses."""

    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def make_stream():
    return FakeSerialStream


@pytest.fixture
def until():
    return wait_until
