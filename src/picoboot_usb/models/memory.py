"""Target memory maps and address range validation.

RP2040 / RP2350 address space as seen by PICOBOOT::

    0x00000000  boot ROM        (read-only, never written or erased)
    0x10000000  flash (XIP)     page 256 B for writes, sector 4 KiB for erase
    0x20000000  SRAM            word granularity
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..errors import InvalidRangeError

FLASH_START = 0x10000000
FLASH_END = 0x11000000
FLASH_PAGE_SIZE = 0x100
FLASH_SECTOR_SIZE = 0x1000
SRAM_START = 0x20000000
SRAM_WORD = 4

PICOBOOT_VID = 0x2E8A
PICOBOOT_PID_RP2040 = 0x0003
PICOBOOT_PID_RP2350 = 0x000F


class RegionKind(Enum):
    ROM = "rom"
    FLASH = "flash"
    SRAM = "sram"


@dataclass(frozen=True)
class MemoryRegion:
    """A contiguous mapped region."""

    kind: RegionKind
    start: int
    end: int
    granularity: int
    erase_granularity: int = 0
    protected: bool = False

    def contains(self, address: int, length: int) -> bool:
        return self.start <= address and address + length <= self.end


@dataclass(frozen=True)
class MemoryRange:
    """An ``(address, length)`` span."""

    address: int
    length: int

    @property
    def end(self) -> int:
        return self.address + self.length

    def __repr__(self) -> str:
        return f"MemoryRange(0x{self.address:08X}, 0x{self.length:X})"

    def split(self, chunk: int) -> list[MemoryRange]:
        """Split into pieces of at most ``chunk`` bytes.

        Piece boundaries fall on multiples of ``chunk``, so an unaligned
        start yields a shorter first piece.
        """
        if chunk <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk}")
        pieces = []
        addr = self.address
        while addr < self.end:
            stop = min(self.end, (addr // chunk + 1) * chunk)
            pieces.append(MemoryRange(addr, stop - addr))
            addr = stop
        return pieces


class Target(Enum):
    """Supported chips and their memory maps."""

    RP2040 = "rp2040"
    RP2350 = "rp2350"

    @classmethod
    def from_product_id(cls, product_id: int) -> Target:
        if product_id == PICOBOOT_PID_RP2040:
            return cls.RP2040
        if product_id == PICOBOOT_PID_RP2350:
            return cls.RP2350
        raise ValueError(f"Unknown PICOBOOT product id 0x{product_id:04X}")

    @property
    def regions(self) -> tuple[MemoryRegion, ...]:
        return _MEMORY_MAPS[self]

    @property
    def stack_pointer(self) -> int:
        """Top of SRAM, used as the initial SP for REBOOT into RAM code."""
        return self.region(RegionKind.SRAM).end

    def region(self, kind: RegionKind) -> MemoryRegion:
        for region in self.regions:
            if region.kind is kind:
                return region
        raise KeyError(kind)

    def find_region(self, address: int, length: int) -> MemoryRegion:
        """Return the single region holding the whole range.

        Raises:
            InvalidRangeError: If the range is empty or not inside one region.
        """
        if length <= 0:
            raise InvalidRangeError(
                f"Length must be positive, got {length}",
                address=address, length=length,
            )
        for region in self.regions:
            if region.contains(address, length):
                return region
        raise InvalidRangeError(
            f"Range is not inside a single {self.value} memory region",
            address=address, length=length,
        )


_MEMORY_MAPS: dict[Target, tuple[MemoryRegion, ...]] = {
    Target.RP2040: (
        MemoryRegion(RegionKind.ROM, 0x00000000, 0x00004000, 1, protected=True),
        MemoryRegion(RegionKind.FLASH, FLASH_START, FLASH_END,
                     FLASH_PAGE_SIZE, FLASH_SECTOR_SIZE),
        MemoryRegion(RegionKind.SRAM, SRAM_START, 0x20042000, SRAM_WORD),
    ),
    Target.RP2350: (
        MemoryRegion(RegionKind.ROM, 0x00000000, 0x00008000, 1, protected=True),
        MemoryRegion(RegionKind.FLASH, FLASH_START, FLASH_END,
                     FLASH_PAGE_SIZE, FLASH_SECTOR_SIZE),
        MemoryRegion(RegionKind.SRAM, SRAM_START, 0x20082000, SRAM_WORD),
    ),
}


def _check_aligned(address: int, length: int, granularity: int, what: str) -> None:
    if address % granularity or length % granularity:
        raise InvalidRangeError(
            f"{what} must be aligned to {granularity} bytes",
            address=address, length=length,
        )


def validate_read(target: Target, address: int, length: int) -> MemoryRange:
    """Validate a READ range. The boot ROM is readable."""
    region = target.find_region(address, length)
    if region.kind is not RegionKind.ROM:
        _check_aligned(address, length, region.granularity, "Read")
    return MemoryRange(address, length)


def validate_write(target: Target, address: int, length: int) -> MemoryRange:
    """Validate a WRITE range: flash pages or SRAM words, never ROM."""
    region = target.find_region(address, length)
    if region.protected:
        raise InvalidRangeError(
            "Write touches protected boot ROM", address=address, length=length
        )
    _check_aligned(address, length, region.granularity, "Write")
    return MemoryRange(address, length)


def validate_erase(target: Target, address: int, length: int) -> MemoryRange:
    """Validate a FLASH_ERASE range: whole flash sectors only."""
    region = target.find_region(address, length)
    if region.kind is not RegionKind.FLASH:
        raise InvalidRangeError(
            "Erase is only valid for flash", address=address, length=length
        )
    _check_aligned(address, length, region.erase_granularity, "Erase")
    return MemoryRange(address, length)


def validate_exec(target: Target, address: int) -> int:
    """Validate an EXEC entry point: inside SRAM or flash, not ROM."""
    # Thumb bit may be set on the entry address
    region = target.find_region(address & ~1, 2)
    if region.protected:
        raise InvalidRangeError("Cannot execute inside boot ROM", address=address)
    return address
