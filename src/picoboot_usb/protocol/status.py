"""Device status codes and parsers for status/info replies."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum

from ..errors import ProtocolError

COMMAND_STATUS_SIZE = 16


class StatusCode(IntEnum):
    """Status codes reported by the boot ROM.

    Codes above 10 exist only on RP2350. Any value outside this table is
    still surfaced verbatim.
    """

    OK = 0
    UNKNOWN_CMD = 1
    INVALID_CMD_LENGTH = 2
    INVALID_TRANSFER_LENGTH = 3
    INVALID_ADDRESS = 4
    BAD_ALIGNMENT = 5
    INTERLEAVED_WRITE = 6
    REBOOTING = 7
    UNKNOWN_ERROR = 8
    INVALID_STATE = 9
    NOT_PERMITTED = 10
    INVALID_ARG = 11
    BUFFER_TOO_SMALL = 12
    PRECONDITION_NOT_MET = 13
    MODIFIED_DATA = 14
    INVALID_DATA = 15
    NOT_FOUND = 16
    UNSUPPORTED_MODIFICATION = 17

    def __str__(self) -> str:
        return self.name


def status_name(code: int) -> str:
    """Readable name for a status code, or ``UNKNOWN(n)``."""
    try:
        return StatusCode(code).name
    except ValueError:
        return f"UNKNOWN({code})"


@dataclass
class CommandStatus:
    """Reply to the GET_COMMAND_STATUS control request."""

    token: int
    status: int
    command: int
    in_progress: bool

    @property
    def status_name(self) -> str:
        return status_name(self.status)

    def __repr__(self) -> str:
        return (
            f"CommandStatus(token={self.token}, status={self.status_name}, "
            f"command=0x{self.command:02X}, in_progress={self.in_progress})"
        )


def parse_command_status(data: bytes) -> CommandStatus:
    """Parse the 16-byte GET_COMMAND_STATUS payload.

    Layout: token (u32), status (u32), cmd id (u8), in progress (u8),
    6 reserved bytes.
    """
    if len(data) < COMMAND_STATUS_SIZE:
        raise ProtocolError(
            f"Command status must be {COMMAND_STATUS_SIZE} bytes, got {len(data)}"
        )
    token, status, cmd_id, in_progress = struct.unpack_from("<IIBB", data)
    return CommandStatus(
        token=token,
        status=status,
        command=cmd_id,
        in_progress=bool(in_progress),
    )


@dataclass
class InfoResponse:
    """Parsed GET_INFO reply: a word count followed by that many words."""

    words: list[int] = field(default_factory=list)
    raw: bytes = b""

    def __repr__(self) -> str:
        return f"InfoResponse(words=[{', '.join(f'0x{w:08X}' for w in self.words)}])"


def parse_info(data: bytes) -> InfoResponse:
    """Parse a GET_INFO data phase.

    The first little-endian word holds the number of words that follow.
    Bytes past the declared count are padding.
    """
    if len(data) < 4:
        raise ProtocolError(f"GET_INFO reply too short: {len(data)} bytes")
    (count,) = struct.unpack_from("<I", data)
    if 4 + count * 4 > len(data):
        raise ProtocolError(
            f"GET_INFO reply declares {count} words but holds {(len(data) - 4) // 4}"
        )
    words = list(struct.unpack_from(f"<{count}I", data, 4))
    return InfoResponse(words=words, raw=bytes(data))
