"""APRS-IS passcode generation."""


def generate_passcode(callsign: str) -> int:
    """
    Compute the published APRS-IS passcode for a callsign.

    The SSID and case are ignored, so ``n0call-9`` and ``N0CALL`` share a
    passcode. The result is in the range 0..32767.
    """
    base = callsign.split('-', 1)[0].upper()

    code = 0x73e2
    for i, char in enumerate(base):
        if i % 2 == 0:
            code ^= ord(char) << 8
        else:
            code ^= ord(char)

    return code & 0x7fff
