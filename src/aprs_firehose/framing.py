"""Line framing over the raw APRS-IS byte stream."""

import logging
import time
from typing import AsyncIterable, AsyncIterator, Callable, List

from .models import RawLine

logger = logging.getLogger(__name__)

# APRS-IS lines are far shorter; anything longer is treated as a lost delimiter.
DEFAULT_MAX_LINE_LENGTH = 2048


class LineFramer:
    """
    Splits arbitrarily chunked bytes into RawLine values.

    Lines are terminated by ``\\n`` with an optional preceding ``\\r``, so a
    ``\\r\\n`` split across two chunks is handled naturally. The in-progress
    buffer is capped at ``max_line_length``; an overlong line is discarded
    and framing resumes after the next terminator.
    """

    def __init__(
        self,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
        clock: Callable[[], float] = time.time,
    ):
        if max_line_length <= 0:
            raise ValueError("max_line_length must be positive")

        self.max_line_length = max_line_length
        self._clock = clock
        self._buffer = bytearray()
        self._discarding = False

        self.stats = {
            'lines': 0,
            'comments': 0,
            'discarded': 0,
        }

    def feed(self, chunk: bytes) -> List[RawLine]:
        """Consume one chunk and return every line it completes, in order."""
        lines: List[RawLine] = []
        self._buffer.extend(chunk)
        received_at = self._clock()

        while True:
            end = self._buffer.find(b"\n")
            if end < 0:
                break

            data = bytes(self._buffer[:end])
            del self._buffer[:end + 1]

            if self._discarding:
                # Tail of a line that already blew the limit.
                self._discarding = False
                continue

            if data.endswith(b"\r"):
                data = data[:-1]
            if not data:
                continue
            if len(data) > self.max_line_length:
                self._discard(len(data))
                continue

            lines.append(self._make_line(data, received_at))

        # One extra byte leaves room for a '\r' still waiting for its '\n'.
        if len(self._buffer) > self.max_line_length + 1:
            self._discard(len(self._buffer))
            self._buffer.clear()
            self._discarding = True

        return lines

    def reset(self) -> None:
        """Drop any partial line; used when a new session starts."""
        self._buffer.clear()
        self._discarding = False

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    async def iter_lines(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[RawLine]:
        """Lazily frame an async stream of chunks until it ends."""
        async for chunk in chunks:
            for line in self.feed(chunk):
                yield line

    def _make_line(self, data: bytes, received_at: float) -> RawLine:
        is_comment = data.startswith(b"#")
        self.stats['lines'] += 1
        if is_comment:
            self.stats['comments'] += 1
        return RawLine(data=data, received_at=received_at, is_comment=is_comment)

    def _discard(self, length: int) -> None:
        self.stats['discarded'] += 1
        logger.warning(
            f"Discarding line of {length}+ bytes exceeding limit of {self.max_line_length}"
        )
