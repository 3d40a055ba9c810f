"""Pytest configuration and shared fixtures."""

import asyncio
import uuid
from typing import List, Optional, Sequence

import pytest
import pytest_asyncio

from aprs_firehose.config.settings import (
    AprsIsConfig,
    DedupConfig,
    FirehoseSettings,
    PipelineConfig,
    ReconnectConfig,
    StorageConfig,
)
from aprs_firehose.exceptions import StorageError
from aprs_firehose.models import Frame, PayloadKind, RawLine


VALID1 = "N0CALL>APRS,TCPIP*,qAC,T2TEST:>Test status one"
VALID2 = "N0CALL-9>APRS,TCPIP*,qAC,T2TEST:!4903.50N/07201.75W-Test position"
GARBAGE = "this is not an aprs packet"


def make_line(text: str, received_at: float = 1000.0) -> RawLine:
    """RawLine for a text line, tagged as a comment when it starts with '#'."""
    return RawLine(data=text.encode("utf-8"), received_at=received_at, is_comment=text.startswith("#"))


def make_frame(source: str = "N0CALL", payload: str = ">status", received_at: float = 1000.0) -> Frame:
    return Frame(
        frame_id=str(uuid.uuid4()),
        source=source,
        destination="APRS",
        path=("TCPIP*",),
        payload_kind=PayloadKind.STATUS,
        aprs_format="status",
        payload=payload,
        raw=f"{source}>APRS,TCPIP*:{payload}",
        received_at=received_at,
    )


async def wait_for_condition(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakeFrameStore:
    """In-memory FrameStore that can fail a given number of writes."""

    def __init__(self, fail_times: int = 0, hang: bool = False):
        self.fail_times = fail_times
        self.hang = hang
        self.frames: List[Frame] = []
        self.write_calls = 0
        self.initialized = False
        self.closed = False

    async def initialize(self):
        self.initialized = True

    async def close(self):
        self.closed = True

    async def write_batch(self, frames: Sequence[Frame]) -> int:
        self.write_calls += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.fail_times > 0:
            self.fail_times -= 1
            raise StorageError("simulated storage failure")

        # Same effect as ON CONFLICT (id) DO NOTHING.
        known = {frame.frame_id for frame in self.frames}
        self.frames.extend(frame for frame in frames if frame.frame_id not in known)
        return len(frames)

    async def health_check(self):
        return {"status": "healthy"}


class FakeAprsIsServer:
    """Minimal APRS-IS server on a local port."""

    def __init__(
        self,
        lines: Sequence[str] = (),
        logresp: Optional[str] = "# logresp N0CALL unverified, server T2TEST",
        close_after_lines: bool = False,
        banner: str = "# aprsc 2.1.14-g5e22b37"
    ):
        self.lines = list(lines)
        self.logresp = logresp
        self.close_after_lines = close_after_lines
        self.banner = banner

        self.logins: List[str] = []
        self.connections = 0
        self.port = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        for writer in self._writers:
            writer.close()
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.append(writer)
        try:
            writer.write(f"{self.banner}\r\n".encode())
            await writer.drain()

            login = await reader.readline()
            self.logins.append(login.decode())

            if self.logresp:
                writer.write(f"{self.logresp}\r\n".encode())
            for line in self.lines:
                writer.write(f"{line}\r\n".encode())
            await writer.drain()

            if not self.close_after_lines:
                # Hold the session open until the client goes away.
                await reader.read()
        except ConnectionError:
            pass
        finally:
            writer.close()


@pytest.fixture
def test_settings() -> FirehoseSettings:
    """Settings with short timeouts for tests."""
    return FirehoseSettings(
        service_name="test-firehose",
        aprs_is=AprsIsConfig(
            host="127.0.0.1",
            port=14580,
            callsign="N0CALL",
            passcode=-1,
            connect_timeout_seconds=1.0,
            login_timeout_seconds=1.0,
            liveness_timeout_seconds=2.0,
            max_startup_attempts=3
        ),
        reconnect=ReconnectConfig(
            initial_backoff_seconds=0.01,
            max_backoff_seconds=0.05,
            jitter_ratio=0.0,
            stable_seconds=60.0
        ),
        dedup=DedupConfig(horizon_seconds=30.0, time_bucket_seconds=0),
        storage=StorageConfig(
            batch_size=10,
            max_latency_seconds=0.05,
            queue_size=100,
            retry_attempts=3,
            retry_initial_backoff_seconds=0.01,
            retry_max_backoff_seconds=0.02
        ),
        pipeline=PipelineConfig(
            line_queue_size=100,
            shutdown_grace_seconds=2.0,
            stats_interval_seconds=60.0
        )
    )


@pytest.fixture
def fake_store() -> FakeFrameStore:
    return FakeFrameStore()


@pytest_asyncio.fixture
async def aprs_server():
    """Factory for started FakeAprsIsServer instances, stopped on teardown."""
    servers = []

    async def _start(**kwargs) -> FakeAprsIsServer:
        server = FakeAprsIsServer(**kwargs)
        await server.start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        await server.stop()
