"""Command frame and status reply builder/parser.

Command frame layout (32 bytes, little-endian)::

    +---------+---------+--------+----------+----------+--------------+----------+
    |  Magic  |  Token  | Cmd ID | Arg size | Reserved | Transfer len |   Args   |
    | 4 bytes | 4 bytes | 1 byte |  1 byte  | 2 bytes  |   4 bytes    | 16 bytes |
    +---------+---------+--------+----------+----------+--------------+----------+

Status reply layout (16 bytes, little-endian)::

    +---------+---------+---------+--------+-------------+----------+
    |  Magic  |  Token  | Status  | Cmd ID | In progress | Reserved |
    | 4 bytes | 4 bytes | 4 bytes | 1 byte |   1 byte    | 2 bytes  |
    +---------+---------+---------+--------+-------------+----------+

- Magic: ``0x431FD10B``
- Token: per-command correlation id, echoed by the status reply
- Args: command-specific, ``arg_size`` meaningful bytes then zeros
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from ..errors import DesyncError, FramingError
from .commands import ARG_SIZES, ARGS_FIELD_SIZE, DATA_COMMANDS, CommandId

PICOBOOT_MAGIC = 0x431FD10B
COMMAND_SIZE = 32
STATUS_SIZE = 16
TOKEN_MAX = 0xFFFFFFFF

_COMMAND_STRUCT = struct.Struct("<IIBBHI16s")
_STATUS_STRUCT = struct.Struct("<IIIBB2s")


class TokenCounter:
    """Monotonic token source owned by one session.

    Tokens start at 1 and wrap from ``0xFFFFFFFF`` back to 1. Zero is
    reserved for "no reply expected yet" and is never issued.
    """

    def __init__(self, start: int = 1) -> None:
        if not 1 <= start <= TOKEN_MAX:
            raise ValueError(f"Token start must be 1..{TOKEN_MAX:#x}, got {start}")
        self._next = start

    @property
    def peek(self) -> int:
        return self._next

    def next(self) -> int:
        token = self._next
        self._next = 1 if token == TOKEN_MAX else token + 1
        return token


@dataclass(frozen=True)
class CommandFrame:
    """A PICOBOOT command frame."""

    command: CommandId
    token: int
    args: bytes = b""
    transfer_length: int = 0

    def __repr__(self) -> str:
        return (
            f"CommandFrame(command={self.command.name}, token={self.token}, "
            f"args={self.args.hex(' ') if self.args else '(empty)'}, "
            f"transfer_length={self.transfer_length})"
        )

    def to_bytes(self) -> bytes:
        """Serialize to the 32-byte wire format."""
        return _COMMAND_STRUCT.pack(
            PICOBOOT_MAGIC,
            self.token,
            self.command.value,
            len(self.args),
            0,
            self.transfer_length,
            self.args.ljust(ARGS_FIELD_SIZE, b"\x00"),
        )


@dataclass(frozen=True)
class StatusReply:
    """Status acknowledgement closing a command exchange."""

    token: int
    status: int
    command: int = 0
    in_progress: bool = False

    @property
    def is_ok(self) -> bool:
        return self.status == 0

    def to_bytes(self) -> bytes:
        return _STATUS_STRUCT.pack(
            PICOBOOT_MAGIC,
            self.token,
            self.status,
            self.command,
            1 if self.in_progress else 0,
            b"\x00\x00",
        )


def build_frame(
    command: CommandId,
    token: int,
    args: bytes = b"",
    transfer_length: int = 0,
) -> CommandFrame:
    """Build a validated command frame.

    Args:
        command: Command identifier.
        token: Correlation token (nonzero).
        args: Argument block; its size must match the command exactly.
        transfer_length: Bytes in the following data phase, 0 if none.

    Raises:
        FramingError: On a wrong-sized argument block, a zero token, or a
            data phase on a command that has none.
    """
    try:
        command = CommandId(command)
    except ValueError:
        raise FramingError(f"Unknown command id {command!r}") from None

    expected = ARG_SIZES[command]
    if len(args) != expected:
        raise FramingError(
            f"{command.name} takes a {expected}-byte argument block, "
            f"got {len(args)}",
            command=command.value,
        )
    if not 1 <= token <= TOKEN_MAX:
        raise FramingError(f"Token must be 1..{TOKEN_MAX:#x}, got {token}",
                           command=command.value)
    if not 0 <= transfer_length <= TOKEN_MAX:
        raise FramingError(f"Transfer length out of range: {transfer_length}",
                           command=command.value)
    if transfer_length and command not in DATA_COMMANDS:
        raise FramingError(
            f"{command.name} has no data phase but transfer_length="
            f"{transfer_length}",
            command=command.value,
        )
    return CommandFrame(
        command=command,
        token=token,
        args=bytes(args),
        transfer_length=transfer_length,
    )


def parse_frame(data: bytes) -> CommandFrame:
    """Parse a 32-byte command frame.

    Raises:
        DesyncError: If the length or magic is wrong.
        FramingError: If the command id or argument size is invalid.
    """
    if len(data) != COMMAND_SIZE:
        raise DesyncError(f"Command frame must be {COMMAND_SIZE} bytes, got {len(data)}")
    magic, token, cmd_id, arg_size, _, transfer_length, args = _COMMAND_STRUCT.unpack(data)
    if magic != PICOBOOT_MAGIC:
        raise DesyncError(f"Bad command magic 0x{magic:08X}", token=token)
    if arg_size > ARGS_FIELD_SIZE:
        raise FramingError(f"Argument size {arg_size} exceeds {ARGS_FIELD_SIZE}",
                           command=cmd_id, token=token)
    return build_frame(cmd_id, token, args[:arg_size], transfer_length)


def parse_status(data: bytes) -> StatusReply:
    """Parse a 16-byte status reply.

    Raises:
        DesyncError: If the length or magic is wrong.
    """
    if len(data) != STATUS_SIZE:
        raise DesyncError(f"Status reply must be {STATUS_SIZE} bytes, got {len(data)}")
    magic, token, status, cmd_id, in_progress, _ = _STATUS_STRUCT.unpack(data)
    if magic != PICOBOOT_MAGIC:
        raise DesyncError(f"Bad status magic 0x{magic:08X}", token=token)
    return StatusReply(
        token=token,
        status=status,
        command=cmd_id,
        in_progress=bool(in_progress),
    )
