"""
Hex Packet Codec
Turns a line of hex text into a datagram, and a datagram back into hex text
for display
"""

import logging
from typing import Callable, Iterator, Optional, TextIO, Tuple

logger = logging.getLogger(__name__)

HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
WHITESPACE = frozenset(" \t\n\r\f\v")
COMMENT = "#"

# Largest payload a UDP/IP datagram can carry
MAX_DATAGRAM = 65535


class HexParseError(ValueError):
    """A line of hex input could not be decoded"""

    def __init__(self, lineno: int, reason: str, char: str = "", position: int = -1):
        self.lineno = lineno
        self.reason = reason
        self.char = char
        self.position = position
        super().__init__(f"line {lineno}: {reason}")


def decode(text: str, pos: int = 0) -> Tuple[bytes, int]:
    """
    Decode hex octets from text[pos:]

    Whitespace between octets is skipped and a '#' ends the scan (the rest
    of the text is a comment). Each octet is two adjacent hex digits.

    Returns the decoded bytes and the index of the first character not
    consumed; that is len(text) when the whole text was valid.
    """
    out = bytearray()
    end = len(text)

    while pos < end:
        ch = text[pos]
        if ch in WHITESPACE:
            pos += 1
            continue
        if ch == COMMENT:
            pos = end
            break
        if ch in HEX_DIGITS and pos + 1 < end and text[pos + 1] in HEX_DIGITS:
            out.append(int(text[pos:pos + 2], 16))
            pos += 2
            continue
        break

    return bytes(out), pos


def decode_line(text: str, lineno: int) -> bytes:
    """Decode a whole line, raising HexParseError unless all of it is valid"""
    data, pos = decode(text)

    if pos != len(text):
        ch = text[pos]
        if ch in HEX_DIGITS:
            raise HexParseError(lineno, "odd number of hex digits", ch, pos)
        raise HexParseError(lineno, f"unexpected character '{ch}'", ch, pos)

    if len(data) > MAX_DATAGRAM:
        raise HexParseError(lineno, f"datagram too long ({len(data)} octets)")

    return data


def read_datagrams(stream: TextIO,
                   on_error: Optional[Callable[[HexParseError], None]] = None
                   ) -> Iterator[Tuple[int, bytes]]:
    """Yield (lineno, payload) for every decodable line; bad lines are logged and skipped"""
    for lineno, line in enumerate(stream, start=1):
        try:
            payload = decode_line(line, lineno)
        except HexParseError as e:
            logger.warning(f"skipped {e}")
            if on_error is not None:
                on_error(e)
            continue
        yield lineno, payload


def _octet(value: int) -> str:
    return f"{value:02x}"


def encode(data: bytes, width: int, start: int = 0) -> Tuple[str, int]:
    """
    Format data[start:] as space-separated hex octets, as much as fits in
    'width' characters

    Returns the text and the index of the first octet not formatted, so a
    long buffer can be paged through: a width of 3*8-1 gives 8 octets per
    call.
    """
    end = len(data)
    pos = start
    parts = []
    used = 0

    if width >= 2 and pos < end:
        parts.append(_octet(data[pos]))
        used = 2
        pos += 1
    while used + 3 <= width and pos < end:
        parts.append(_octet(data[pos]))
        used += 3
        pos += 1

    return " ".join(parts), pos


def hexdump(data: bytes, per_line: int = 16) -> Iterator[str]:
    """Yield data as hexdump lines of 'per_line' octets"""
    if per_line < 1:
        raise ValueError(f"per_line must be positive, got {per_line}")
    width = 3 * per_line - 1
    pos = 0
    while pos < len(data):
        line, pos = encode(data, width, pos)
        yield line
