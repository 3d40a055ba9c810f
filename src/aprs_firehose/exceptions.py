"""Error taxonomy for the firehose service."""

from enum import Enum


class FirehoseError(Exception):
    """Base class for all firehose errors."""


class ConfigError(FirehoseError):
    """Invalid startup configuration. Fatal: the process exits before connecting."""


class TransportError(FirehoseError):
    """
    Connect, read or write failure on the APRS-IS socket.

    Recovered by reconnecting with backoff unless ``fatal`` is set, which
    happens only when startup connection attempts are exhausted or the
    server name cannot be resolved before the first successful session.
    """

    def __init__(self, message: str, fatal: bool = False):
        super().__init__(message)
        self.fatal = fatal


class ProtocolTimeoutError(TransportError):
    """No line (comments included) arrived within the liveness or login window."""


class DecodeFailureReason(str, Enum):
    """Reason codes attached to a DecodeError."""
    MALFORMED_HEADER = "MalformedHeader"
    UNSUPPORTED_PAYLOAD = "UnsupportedPayload"
    ENCODING_ERROR = "EncodingError"


class DecodeError(FirehoseError):
    """A line could not be decoded into a frame. The line is counted and dropped."""

    def __init__(self, reason: DecodeFailureReason, text: str, detail: str = ""):
        message = f"{reason.value}: {detail}" if detail else reason.value
        super().__init__(message)
        self.reason = reason
        self.text = text
        self.detail = detail


class StorageError(FirehoseError):
    """A batch write to the frame store failed."""


class InvalidStateTransition(FirehoseError):
    """A connection state change that is not an edge of the state machine."""
