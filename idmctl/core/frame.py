"""Command frame encoding for the reader's bulk pipe.

Every exchange is a 10-byte header followed by the command payload::

    [0]     0x6B frame marker
    [1..4]  payload length, uint32 little-endian
    [5]     slot number (always 0)
    [6]     sequence number
    [7..9]  reserved, zero

Replies are fixed-shape for the commands we send, so only encoding lives here.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable

FRAME_MARKER = 0x6B
SLOT_NUMBER = 0x00
HEADER_LENGTH = 10

_HEADER = struct.Struct("<BIBB3x")


def encode_frame(payload: bytes, sequence: int) -> bytes:
    if not 0 <= sequence <= 0xFF:
        raise ValueError(f"sequence must fit in one byte, got {sequence}")
    header = _HEADER.pack(FRAME_MARKER, len(payload), SLOT_NUMBER, sequence)
    return header + bytes(payload)


def hex_byte(value: int) -> str:
    return f"{value:02X}"


def hex_string(data: Iterable[int]) -> str:
    return " ".join(hex_byte(b) for b in data)
