"""Pytest configuration and fixtures for the pod gateway tests."""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from config import Settings
from event_log import ErrorLog
from history import HistoryManager
from parser import MessageParser
from pod_gateway import PodGateway
from transport import LineTransport


class FakeClock:
    """Manually advanced clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTransport(LineTransport):
    """Scripted link: tests push chunks, the real read/dispatch loops run."""

    name = "fake"

    def __init__(self, error_log: ErrorLog, open_error: Optional[Exception] = None, **kwargs):
        super().__init__(error_log, **kwargs)
        self.open_error = open_error
        self.open_delay = 0.0
        self.write_error: Optional[Exception] = None
        self.write_delay = 0.0
        self.written: list[str] = []
        self.opened = 0
        self.closed = 0
        self._chunks: Optional[asyncio.Queue] = None

    async def _open(self, baud_rate: int):
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1
        self._chunks = asyncio.Queue()

    async def _read_chunk(self):
        item = await self._chunks.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def _write(self, data: bytes):
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data.decode("utf-8").rstrip("\n"))

    async def _close(self):
        self.closed += 1

    # ---- Test controls ----

    def push(self, chunk):
        self._chunks.put_nowait(chunk)

    def push_lines(self, *lines: str):
        for line in lines:
            self.push((line + "\n").encode("utf-8"))

    def end_stream(self):
        self.push(b"")

    def break_stream(self, exc: Exception):
        self.push(exc)


async def settle(rounds: int = 20):
    """Let the read and dispatch tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def error_log(clock) -> ErrorLog:
    return ErrorLog(clock=clock)


@pytest.fixture
def history(clock) -> HistoryManager:
    return HistoryManager(clock=clock)


@pytest.fixture
def message_parser(error_log) -> MessageParser:
    return MessageParser(error_log)


@pytest.fixture
def fake_transport(error_log) -> FakeTransport:
    return FakeTransport(error_log)


@pytest.fixture
def settings() -> Settings:
    return Settings(transport="serial", serial_port="/dev/null", connect_timeout=1.0)


@pytest.fixture
def gateway(settings, fake_transport, error_log, clock) -> PodGateway:
    return PodGateway(settings, transport=fake_transport, error_log=error_log, clock=clock)


@pytest.fixture
def settle_loop():
    """Coroutine function that yields to the loop until pending lines are handled."""
    return settle
