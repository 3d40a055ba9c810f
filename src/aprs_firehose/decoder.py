"""
Frame Decoder
=============

Boundary between the ingestion core and the APRS packet grammar.

Decoding is delegated to ``aprslib``; this module only maps its output onto
a ``Frame`` and its failures onto the three decode reason codes. Bodies of a
type aprslib does not recognise still become frames, with format ``unknown``.
It keeps no state, so one decoder can be shared by any number of callers.

Example:
    from aprs_firehose.decoder import decode_frame

    frame = decode_frame(raw_line)
    print(frame.source, frame.payload_kind)
"""

import uuid
from typing import Any, Dict

import aprslib
from aprslib.exceptions import ParseError, UnknownFormat
from aprslib.parsing import parse_header

from .exceptions import DecodeError, DecodeFailureReason
from .models import Frame, PayloadKind, RawLine


# aprslib raises ParseError for both header and body problems; these
# fragments identify the header ones.
_HEADER_ERROR_MARKERS = ("header", "callsign", "no body", "body is empty")

UNKNOWN_FORMAT = "unknown"


def decode_frame(line: RawLine) -> Frame:
    """
    Decode one data line into a Frame.

    Args:
        line: A non-comment RawLine

    Returns:
        The decoded Frame (without fingerprint)

    Raises:
        DecodeError: with reason EncodingError, MalformedHeader or
            UnsupportedPayload
    """
    try:
        text = line.data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(
            DecodeFailureReason.ENCODING_ERROR,
            line.text,
            f"invalid UTF-8 at byte {e.start}",
        ) from e

    head, sep, body = text.partition(":")
    if not sep or ">" not in head or not head.split(">", 1)[0]:
        raise DecodeError(DecodeFailureReason.MALFORMED_HEADER, text, "missing source or separator")
    if not body:
        raise DecodeError(DecodeFailureReason.MALFORMED_HEADER, text, "empty body")

    try:
        parsed = aprslib.parse(text)
    except UnknownFormat:
        # Valid packet with a body type aprslib has no parser for.
        parsed = _parse_header_only(text, head)
    except ParseError as e:
        detail = str(e)
        if any(marker in detail for marker in _HEADER_ERROR_MARKERS):
            reason = DecodeFailureReason.MALFORMED_HEADER
        else:
            reason = DecodeFailureReason.UNSUPPORTED_PAYLOAD
        raise DecodeError(reason, text, detail) from e
    except (ValueError, IndexError, KeyError, TypeError) as e:
        # aprslib occasionally lets a raw error escape on odd bodies.
        raise DecodeError(DecodeFailureReason.UNSUPPORTED_PAYLOAD, text, repr(e)) from e

    aprs_format = parsed.get("format", UNKNOWN_FORMAT)

    return Frame(
        frame_id=str(uuid.uuid4()),
        source=parsed["from"],
        destination=parsed["to"],
        path=tuple(parsed.get("path", ())),
        payload_kind=PayloadKind.from_format(aprs_format),
        aprs_format=aprs_format,
        payload=body,
        raw=text,
        received_at=line.received_at,
        decoded=_decoded_fields(parsed),
    )


def _parse_header_only(text: str, head: str) -> Dict[str, Any]:
    try:
        parsed = parse_header(head)
    except ParseError as e:
        raise DecodeError(DecodeFailureReason.MALFORMED_HEADER, text, str(e)) from e
    parsed["format"] = UNKNOWN_FORMAT
    return parsed


def _decoded_fields(parsed: Dict[str, Any]) -> Dict[str, Any]:
    """Keep the decoder's fields except the ones already stored as columns."""
    return {
        key: value
        for key, value in parsed.items()
        if key not in ("raw", "from", "to", "path")
    }


class FrameDecoder:
    """Callable wrapper so a different decoder can be injected into the pipeline."""

    def __call__(self, line: RawLine) -> Frame:
        return decode_frame(line)
