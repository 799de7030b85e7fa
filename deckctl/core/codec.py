"""Frame encoding and decoding for the deck command protocol.

Wire layout, both directions::

    [0xAD][0xDC][cmd:1][len:1][body:len][checksum:1]

Reply bodies carry the error code in their first byte. The checksum is the
XOR of every byte from the first magic byte through the last body byte.
"""

from __future__ import annotations

from functools import reduce

from deckctl.core.errors import BadMagic, ChecksumMismatch, TooShort, TruncatedBody
from deckctl.core.model import Frame

MAGIC = b"\xad\xdc"
HEADER_LEN = 4
MIN_FRAME_LEN = HEADER_LEN + 1
MAX_BODY_LEN = 0xFF


def checksum(data: bytes) -> int:
    return reduce(lambda acc, byte: acc ^ byte, data, 0)


def encode(command: int, payload: bytes = b"") -> bytes:
    if len(payload) > MAX_BODY_LEN:
        raise ValueError(f"payload of {len(payload)} bytes exceeds {MAX_BODY_LEN}")
    head = MAGIC + bytes([command & 0xFF, len(payload)]) + bytes(payload)
    return head + bytes([checksum(head)])


def _split(data: bytes) -> tuple[int, bytes]:
    start = data.find(MAGIC)
    if start < 0:
        raise BadMagic(f"no frame marker in {len(data)} byte buffer")

    frame = data[start:]
    if len(frame) < MIN_FRAME_LEN:
        raise TooShort(f"{len(frame)} bytes after marker, need at least {MIN_FRAME_LEN}")

    length = frame[3]
    end = HEADER_LEN + length
    if len(frame) < end + 1:
        raise TruncatedBody(f"declared body of {length} bytes, only {len(frame) - MIN_FRAME_LEN} available")

    expected = checksum(frame[:end])
    if frame[end] != expected:
        raise ChecksumMismatch(f"checksum 0x{frame[end]:02X} != computed 0x{expected:02X}")

    return frame[2], frame[HEADER_LEN:end]


def decode(data: bytes) -> Frame:
    """Decode a reply frame, tolerating junk before the marker."""
    command, body = _split(bytes(data))
    if not body:
        return Frame(command=command, error=0)
    return Frame(command=command, error=body[0], payload=body[1:])


def decode_request(data: bytes) -> Frame:
    """Decode an outbound frame whose body is the raw payload."""
    command, body = _split(bytes(data))
    return Frame(command=command, error=0, payload=body)
