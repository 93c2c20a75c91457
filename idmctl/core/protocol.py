"""RC-S300 command sequencing: per-read handshake, card polling and IDm extraction."""

from __future__ import annotations

import logging
import re

from idmctl.core.errors import InvalidResponseError, NFCError, UnknownNFCError
from idmctl.core.frame import hex_string
from idmctl.core.session import TransportSession

LOGGER = logging.getLogger(__name__)

RESPONSE_LENGTH = 50

HANDSHAKE_COMMANDS: tuple[tuple[str, bytes], ...] = (
    ("reset", bytes.fromhex("FF 56 00 00")),
    ("param 82", bytes.fromhex("FF 50 00 00 02 82 00 00")),
    ("param 81", bytes.fromhex("FF 50 00 00 02 81 00 00")),
    ("param 83", bytes.fromhex("FF 50 00 00 02 83 00 00")),
    ("param 84", bytes.fromhex("FF 50 00 00 02 84 00 00")),
    ("param 8F", bytes.fromhex("FF 50 00 02 04 8F 02 03 00 00")),
)

POLLING_COMMAND = bytes.fromhex(
    "FF 50 00 01 00 00 11 5F 46 04 A0 86 01 00 95 82 00 06 06 00 FF FF 01 00 00 00 00"
)

POLLING_RESPONSE_LENGTH = 46
IDM_OFFSET = 26
IDM_LENGTH = 8

IDM_PATTERN = re.compile(r"^[0-9A-F]{2}( [0-9A-F]{2}){7}$")


def is_valid_idm(idm: str) -> bool:
    return IDM_PATTERN.fullmatch(idm) is not None


def extract_idm(response: bytes) -> str:
    if len(response) != POLLING_RESPONSE_LENGTH:
        raise InvalidResponseError(
            f"Unexpected polling response length {len(response)} "
            f"(expected {POLLING_RESPONSE_LENGTH})"
        )
    idm = hex_string(response[IDM_OFFSET:IDM_OFFSET + IDM_LENGTH])
    if not is_valid_idm(idm):
        raise InvalidResponseError(f"Malformed IDm '{idm}' in polling response")
    return idm


class ProtocolEngine:
    def __init__(self, session: TransportSession, *, response_length: int = RESPONSE_LENGTH) -> None:
        self.session = session
        self.response_length = response_length

    async def read_idm(self) -> str:
        """Run the handshake and one card scan, returning the IDm.

        The handshake is repeated on every read; the reader keeps no state
        between scans.
        """
        async with self.session.exclusive():
            try:
                await self.handshake()
                response = await self.poll_card()
            except NFCError:
                raise
            except Exception as exc:
                raise UnknownNFCError("RC-S300 communication error", cause=exc) from exc
        return extract_idm(response)

    async def handshake(self) -> None:
        for name, command in HANDSHAKE_COMMANDS:
            LOGGER.debug("Handshake step: %s", name)
            await self.session.send_raw(command)
            await self.session.receive_raw(self.response_length)

    async def poll_card(self) -> bytes:
        await self.session.send_raw(POLLING_COMMAND)
        return await self.session.receive_raw(self.response_length)
