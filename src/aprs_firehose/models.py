"""Data model: raw lines, decoded frames and the connection state machine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .exceptions import InvalidStateTransition


@dataclass(frozen=True)
class RawLine:
    """One unparsed protocol line, terminator stripped."""
    data: bytes
    received_at: float
    is_comment: bool = False

    @property
    def text(self) -> str:
        """Lossy text rendering for logging. The decoder works on ``data``."""
        return self.data.decode("utf-8", errors="replace")


class PayloadKind(str, Enum):
    """Coarse classification of a frame's information field."""
    POSITION = "position"
    STATUS = "status"
    MESSAGE = "message"
    OTHER = "other"

    @classmethod
    def from_format(cls, aprs_format: Optional[str]) -> "PayloadKind":
        """Map a decoder format name (e.g. ``mic-e``) onto a payload kind."""
        if aprs_format in _POSITION_FORMATS:
            return cls.POSITION
        if aprs_format == "status":
            return cls.STATUS
        if aprs_format in _MESSAGE_FORMATS:
            return cls.MESSAGE
        return cls.OTHER


_POSITION_FORMATS = frozenset({"uncompressed", "compressed", "mic-e", "object", "item"})
_MESSAGE_FORMATS = frozenset({"message", "bulletin", "telemetry-message"})


@dataclass(frozen=True)
class Frame:
    """A decoded APRS packet, immutable once constructed."""
    frame_id: str
    source: str
    destination: str
    path: Tuple[str, ...]
    payload_kind: PayloadKind
    aprs_format: str
    payload: str
    raw: str
    received_at: float
    decoded: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)
    fingerprint: Optional[str] = None

    @property
    def path_string(self) -> str:
        return ",".join(self.path)

    @property
    def received_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.received_at, tz=timezone.utc)


class ConnectionState(str, Enum):
    """Lifecycle of the APRS-IS session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    STREAMING = "streaming"
    CLOSING = "closing"


# Closing is reachable from every state and is terminal.
ALLOWED_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING, ConnectionState.CLOSING}),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.AUTHENTICATING,
        ConnectionState.DISCONNECTED,
        ConnectionState.CLOSING,
    }),
    ConnectionState.AUTHENTICATING: frozenset({
        ConnectionState.STREAMING,
        ConnectionState.DISCONNECTED,
        ConnectionState.CLOSING,
    }),
    ConnectionState.STREAMING: frozenset({ConnectionState.DISCONNECTED, ConnectionState.CLOSING}),
    ConnectionState.CLOSING: frozenset({ConnectionState.CLOSING}),
}


def transition(current: ConnectionState, target: ConnectionState) -> ConnectionState:
    """
    Validate a state change and return the new state.

    Raises:
        InvalidStateTransition: if ``target`` is not reachable from ``current``
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(
            f"Invalid connection state transition: {current.value} -> {target.value}"
        )
    return target
