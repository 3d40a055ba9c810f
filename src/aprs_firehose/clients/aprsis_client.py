"""
APRS-IS Connection Manager
==========================

Owns the TCP session to an APRS-IS server: connect, login, framing,
liveness supervision and reconnection with exponential backoff.

Complete lines are handed to the pipeline through a bounded queue. Server
comments (``#`` lines) count as liveness evidence but are never forwarded.
"""

import asyncio
import logging
import socket
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from ..config.settings import AprsIsConfig, ReconnectConfig
from ..exceptions import ProtocolTimeoutError, TransportError
from ..framing import LineFramer
from ..models import ConnectionState, RawLine, transition
from ..shutdown import ShutdownCoordinator, ShutdownRequested
from ..utils.retry import BackoffPolicy, proportional_jitter

logger = logging.getLogger(__name__)

OpenConnection = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class ConnectionManager:
    """
    Maintains one APRS-IS session at a time and reconnects forever.

    Features:
    - Explicit state machine (Disconnected/Connecting/Authenticating/Streaming/Closing)
    - Login and liveness timeouts
    - Backoff that resets after a stable streaming period
    - Fatal give-up only before the first successful session
    """

    def __init__(
        self,
        config: AprsIsConfig,
        reconnect: ReconnectConfig,
        shutdown: ShutdownCoordinator,
        open_connection: Optional[OpenConnection] = None,
        clock: Callable[[], float] = time.monotonic,
        backoff: Optional[BackoffPolicy] = None,
        metrics=None
    ):
        self.config = config
        self.reconnect = reconnect
        self.shutdown = shutdown
        self.metrics = metrics

        self._open_connection = open_connection or asyncio.open_connection
        self._clock = clock
        self.backoff = backoff or BackoffPolicy(
            initial_delay=reconnect.initial_backoff_seconds,
            max_delay=reconnect.max_backoff_seconds,
            multiplier=reconnect.backoff_multiplier,
            jitter=proportional_jitter(reconnect.jitter_ratio),
        )

        self.framer = LineFramer(max_line_length=config.max_line_length)
        self.state = ConnectionState.DISCONNECTED

        self._writer: Optional[asyncio.StreamWriter] = None
        self._has_streamed = False
        self._startup_failures = 0
        self._auth_started_at = 0.0
        self._streaming_since: Optional[float] = None
        self._last_activity = 0.0

        self.stats = {
            'connection_attempts': 0,
            'sessions': 0,
            'disconnects': 0,
            'timeouts': 0,
            'lines_received': 0,
            'comments_received': 0,
            'last_line_at': None,
            'last_error': None,
            'server': None
        }

        logger.info(f"ConnectionManager initialized for {config.host}:{config.port} as {config.callsign}")

    @property
    def address(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    def login_line(self) -> str:
        """Build the login command sent right after connecting."""
        passcode = self.config.passcode if self.config.passcode is not None else -1
        line = (
            f"user {self.config.callsign} pass {passcode} "
            f"vers {self.config.software_name} {self.config.software_version}"
        )
        if self.config.filter:
            line += f" filter {self.config.filter}"
        return line + "\r\n"

    async def run(self, line_queue: "asyncio.Queue[RawLine]") -> None:
        """
        Stream lines into ``line_queue`` until shutdown.

        Raises:
            TransportError: with ``fatal`` set when startup attempts are
                exhausted or the host cannot be resolved before any session
        """
        try:
            while True:
                try:
                    await self._run_session(line_queue)
                except TransportError as e:
                    await self._handle_session_end(e)
                    delay = self.backoff.next_delay()
                    logger.info(f"Reconnecting to {self.address} in {delay:.1f}s")
                    await self.shutdown.sleep(delay)
        except ShutdownRequested:
            logger.info("Connection manager stopping")
        finally:
            await self._close_writer()
            self._set_state(ConnectionState.CLOSING)

    async def _run_session(self, line_queue: "asyncio.Queue[RawLine]") -> None:
        self._set_state(ConnectionState.CONNECTING)
        self.stats['connection_attempts'] += 1
        if self.metrics:
            self.metrics.connection_attempts.inc()
        self.framer.reset()
        self._streaming_since = None

        logger.info(f"Connecting to APRS-IS {self.address}")
        try:
            reader, writer = await self.shutdown.guard(
                lambda: asyncio.wait_for(
                    self._open_connection(self.config.host, self.config.port),
                    timeout=self.config.connect_timeout_seconds
                )
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connect to {self.address} timed out") from e
        except socket.gaierror as e:
            raise TransportError(
                f"Cannot resolve {self.config.host}: {e}",
                fatal=not self._has_streamed
            ) from e
        except OSError as e:
            raise TransportError(f"Connect to {self.address} failed: {e}") from e

        self._writer = writer
        self._set_state(ConnectionState.AUTHENTICATING)
        self._auth_started_at = self._clock()
        self._last_activity = self._auth_started_at

        try:
            writer.write(self.login_line().encode("ascii"))
            await self.shutdown.guard(writer.drain)
        except OSError as e:
            raise TransportError(f"Login write failed: {e}") from e

        logger.debug(f"Login sent for {self.config.callsign}")
        await self._read_loop(reader, line_queue)

    async def _read_loop(self, reader: asyncio.StreamReader, line_queue: "asyncio.Queue[RawLine]") -> None:
        async with aclosing(self.framer.iter_lines(self._read_chunks(reader))) as lines:
            async for line in lines:
                await self._handle_line(line, line_queue)
                # Measured after the hand-off so time blocked on a full queue
                # does not count against the connection.
                self._last_activity = self._clock()

    async def _read_chunks(self, reader: asyncio.StreamReader) -> AsyncIterator[bytes]:
        # Lazy: the next read, and its timeout, only starts once every line
        # from the previous chunk has been handed off.
        while True:
            try:
                chunk = await self.shutdown.guard(
                    lambda: asyncio.wait_for(reader.read(self.config.read_chunk_size), timeout=self._read_timeout())
                )
            except asyncio.TimeoutError as e:
                self.stats['timeouts'] += 1
                if self.state == ConnectionState.AUTHENTICATING:
                    raise ProtocolTimeoutError(
                        f"No login response within {self.config.login_timeout_seconds}s"
                    ) from e
                raise ProtocolTimeoutError(
                    f"No data for {self.config.liveness_timeout_seconds}s"
                ) from e
            except OSError as e:
                raise TransportError(f"Read failed: {e}") from e

            if not chunk:
                raise TransportError("Connection closed by server")
            yield chunk

    def _read_timeout(self) -> float:
        now = self._clock()
        if self.state == ConnectionState.AUTHENTICATING:
            remaining = self.config.login_timeout_seconds - (now - self._auth_started_at)
        else:
            remaining = self.config.liveness_timeout_seconds - (now - self._last_activity)
        return max(remaining, 0.0)

    async def _handle_line(self, line: RawLine, line_queue: "asyncio.Queue[RawLine]") -> None:
        self.stats['last_line_at'] = line.received_at

        if line.is_comment:
            self.stats['comments_received'] += 1
            if self.state == ConnectionState.AUTHENTICATING and line.data.startswith(b"# logresp"):
                self._on_logresp(line.text)
            else:
                logger.debug(f"Server: {line.text}")
            return

        if self.state == ConnectionState.AUTHENTICATING:
            # Some servers start streaming without a logresp.
            self._enter_streaming()

        self.stats['lines_received'] += 1
        await self.shutdown.guard(lambda: line_queue.put(line))

    def _on_logresp(self, text: str) -> None:
        # "# logresp N0CALL unverified, server T2TEST"
        if " unverified" in text:
            logger.warning(f"Login not verified, feed is receive-only: {text}")
        else:
            logger.info(f"Login accepted: {text}")

        if ", server " in text:
            self.stats['server'] = text.rsplit(", server ", 1)[1].strip()

        self._enter_streaming()

    def _enter_streaming(self) -> None:
        self._set_state(ConnectionState.STREAMING)
        self._has_streamed = True
        self._startup_failures = 0
        self._streaming_since = self._clock()
        self._last_activity = self._streaming_since
        self.stats['sessions'] += 1
        logger.info(f"Streaming from {self.address}")

    async def _handle_session_end(self, error: TransportError) -> None:
        self.stats['last_error'] = str(error)
        if self.state == ConnectionState.STREAMING:
            self.stats['disconnects'] += 1
        if self.state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
        await self._close_writer()

        if error.fatal:
            logger.error(f"Fatal transport error: {error}")
            raise error

        if (
            self._streaming_since is not None
            and self._clock() - self._streaming_since >= self.reconnect.stable_seconds
        ):
            self.backoff.reset()

        if not self._has_streamed:
            self._startup_failures += 1
            limit = self.config.max_startup_attempts
            if limit and self._startup_failures >= limit:
                logger.error(f"Giving up after {self._startup_failures} failed connection attempts")
                raise TransportError(
                    f"Could not establish a session with {self.address} after "
                    f"{self._startup_failures} attempts: {error}",
                    fatal=True
                ) from error

        logger.warning(f"APRS-IS session ended: {error}")

    async def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=2.0)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Error while closing connection: {e}")

    def _set_state(self, target: ConnectionState) -> None:
        previous = self.state
        self.state = transition(previous, target)
        if self.metrics:
            self.metrics.set_connection_state(self.state)
        if previous != target:
            logger.debug(f"Connection state {previous.value} -> {target.value}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'state': self.state.value,
            'backoff_attempts': self.backoff.attempts,
            'framer': dict(self.framer.stats)
        }

    def health_check(self) -> Dict[str, Any]:
        issues = []

        if self.state != ConnectionState.STREAMING:
            issues.append(f"Not streaming (state: {self.state.value})")

        if self.state == ConnectionState.CLOSING:
            status = 'unhealthy'
        elif issues:
            status = 'degraded'
        else:
            status = 'healthy'

        return {
            'status': status,
            'issues': issues,
            'stats': self.get_stats()
        }
