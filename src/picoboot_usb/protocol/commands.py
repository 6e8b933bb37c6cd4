"""Command identifiers, argument layouts, and argument-block builders.

Bit 7 of a command id marks a device-to-host data phase; the low seven
bits are the command number. Every command has a fixed argument size
that the device checks against ``arg_size`` in the frame.
"""

from __future__ import annotations

import struct
from enum import IntEnum, IntFlag

ARGS_FIELD_SIZE = 16
DIRECTION_IN = 0x80


class CommandId(IntEnum):
    """PICOBOOT command identifiers as sent on the wire."""

    EXCLUSIVE_ACCESS = 0x01
    REBOOT = 0x02
    FLASH_ERASE = 0x03
    READ = 0x84
    WRITE = 0x05
    EXIT_XIP = 0x06
    ENTER_CMD_XIP = 0x07
    EXEC = 0x08
    VECTORIZE_FLASH = 0x09
    REBOOT2 = 0x0A
    GET_INFO = 0x8B

    @property
    def number(self) -> int:
        """Command number without the direction bit."""
        return self.value & 0x7F

    @property
    def is_device_to_host(self) -> bool:
        return bool(self.value & DIRECTION_IN)

    def __str__(self) -> str:
        return self.name


# Exact argument block size per command
ARG_SIZES: dict[CommandId, int] = {
    CommandId.EXCLUSIVE_ACCESS: 1,
    CommandId.REBOOT: 12,
    CommandId.FLASH_ERASE: 8,
    CommandId.READ: 8,
    CommandId.WRITE: 8,
    CommandId.EXIT_XIP: 0,
    CommandId.ENTER_CMD_XIP: 0,
    CommandId.EXEC: 4,
    CommandId.VECTORIZE_FLASH: 4,
    CommandId.REBOOT2: 16,
    CommandId.GET_INFO: 16,
}

# Commands whose frame may carry a nonzero transfer_len
DATA_COMMANDS = frozenset({CommandId.READ, CommandId.WRITE, CommandId.GET_INFO})

# Safe to resend after an interface reset
IDEMPOTENT_COMMANDS = frozenset({CommandId.READ, CommandId.GET_INFO})

# Commands that change device state and need exclusive access
MUTATING_COMMANDS = frozenset({
    CommandId.FLASH_ERASE,
    CommandId.WRITE,
    CommandId.EXEC,
    CommandId.EXIT_XIP,
    CommandId.ENTER_CMD_XIP,
    CommandId.VECTORIZE_FLASH,
})


class ExclusiveLevel(IntEnum):
    """Argument to EXCLUSIVE_ACCESS."""

    NOT_EXCLUSIVE = 0
    EXCLUSIVE = 1
    EXCLUSIVE_AND_EJECT = 2


class RebootType(IntEnum):
    """Reboot types for REBOOT2 (low nibble of the flags word)."""

    NORMAL = 0x0
    BOOTSEL = 0x2
    RAM_IMAGE = 0x3
    FLASH_UPDATE = 0x4
    PC_SP = 0xD


class Reboot2Flags(IntFlag):
    """Modifier bits OR-ed with :class:`RebootType` in the REBOOT2 flags."""

    NONE = 0
    TO_ARM = 0x10
    TO_RISCV = 0x20
    NO_RETURN_ON_SUCCESS = 0x100


class InfoType(IntEnum):
    """GET_INFO request types."""

    SYS = 0x1
    PARTITION_TABLE = 0x2
    UF2_TARGET_PARTITION = 0x3
    UF2_STATUS = 0x4


def _check_u32(name: str, value: int) -> None:
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"{name} must fit in 32 bits, got {value:#x}")


def build_exclusive_args(level: ExclusiveLevel) -> bytes:
    """Build the 1-byte EXCLUSIVE_ACCESS argument."""
    return bytes([ExclusiveLevel(level)])


def build_range_args(address: int, length: int) -> bytes:
    """Build the 8-byte address/size argument used by erase, read and write."""
    _check_u32("address", address)
    _check_u32("length", length)
    return struct.pack("<II", address, length)


def build_address_args(address: int) -> bytes:
    """Build the 4-byte argument for EXEC and VECTORIZE_FLASH."""
    _check_u32("address", address)
    return struct.pack("<I", address)


def build_reboot_args(pc: int, sp: int, delay_ms: int) -> bytes:
    """Build the 12-byte REBOOT argument.

    Args:
        pc: Entry point, or 0 for a normal flash boot.
        sp: Initial stack pointer (ignored when ``pc`` is 0).
        delay_ms: Delay before the reboot takes effect.
    """
    for name, value in (("pc", pc), ("sp", sp), ("delay_ms", delay_ms)):
        _check_u32(name, value)
    return struct.pack("<III", pc, sp, delay_ms)


def build_reboot2_args(
    flags: int, delay_ms: int, param0: int = 0, param1: int = 0
) -> bytes:
    """Build the 16-byte REBOOT2 argument."""
    for name, value in (
        ("flags", flags), ("delay_ms", delay_ms),
        ("param0", param0), ("param1", param1),
    ):
        _check_u32(name, value)
    return struct.pack("<IIII", flags, delay_ms, param0, param1)


def build_get_info_args(
    info_type: InfoType,
    param: int = 0,
    wparam: int = 0,
    dparams: tuple[int, int, int] = (0, 0, 0),
) -> bytes:
    """Build the 16-byte GET_INFO argument.

    Layout: type (u8), param (u8), wparam (u16), three u32 parameters.
    """
    if not 0 <= param <= 0xFF:
        raise ValueError(f"param must fit in 8 bits, got {param}")
    if not 0 <= wparam <= 0xFFFF:
        raise ValueError(f"wparam must fit in 16 bits, got {wparam}")
    if len(dparams) != 3:
        raise ValueError(f"dparams must have 3 entries, got {len(dparams)}")
    for value in dparams:
        _check_u32("dparam", value)
    return struct.pack("<BBHIII", InfoType(info_type), param, wparam, *dparams)
