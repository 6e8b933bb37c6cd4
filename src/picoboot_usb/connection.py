"""User-facing PICOBOOT operations.

:class:`PicobootConnection` composes the session state machine, the
command framer, the transfer engine and the recovery handler around one
Transport Port.

Usage::

    conn = PicobootConnection(UsbTransportPort(device), Target.RP2040)
    conn.claim(ExclusiveLevel.EXCLUSIVE_AND_EJECT)
    conn.exit_xip()
    conn.erase(0x10000000, 0x1000)
    conn.write(0x10000000, image)
    assert conn.read(0x10000000, len(image)) == image
    conn.release()
    conn.reboot(delay_ms=500)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .config import PicobootConfig
from .engine import ExchangeResult, TransferEngine
from .errors import (
    DeviceError,
    DeviceGoneError,
    InvalidRangeError,
    InvalidStateError,
    PicobootError,
    VerifyError,
    WriteError,
)
from .models.memory import (
    FLASH_PAGE_SIZE,
    FLASH_SECTOR_SIZE,
    MemoryRange,
    Target,
    validate_erase,
    validate_exec,
    validate_read,
    validate_write,
)
from .protocol.commands import (
    CommandId,
    ExclusiveLevel,
    InfoType,
    Reboot2Flags,
    RebootType,
    build_address_args,
    build_exclusive_args,
    build_get_info_args,
    build_range_args,
    build_reboot2_args,
    build_reboot_args,
)
from .protocol.framing import build_frame
from .protocol.status import CommandStatus, InfoResponse, parse_command_status, parse_info
from .recovery import RecoveryHandler
from .session import Session, SessionState
from .transport.port import TransportPort, command_status_request

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class RebootResult:
    """Outcome of a reboot request.

    ``acknowledged`` is False when the device dropped off the bus before
    sending its status reply. Both outcomes end the session.
    """

    command: CommandId
    delay_ms: int
    acknowledged: bool


class PicobootConnection:
    """Operations on one device in BOOTSEL mode.

    The connection owns ``port`` for its lifetime. It is not thread-safe;
    callers sharing it across threads must serialize access.

    Args:
        port: An opened Transport Port for the PICOBOOT interface.
        target: Chip family, which decides the memory map and reboot form.
        config: Timeouts, write chunk size and retry policy.
        token_start: First token to issue.
    """

    def __init__(
        self,
        port: TransportPort,
        target: Target = Target.RP2040,
        config: Optional[PicobootConfig] = None,
        token_start: int = 1,
    ) -> None:
        self._port = port
        self._target = target
        self._config = config or PicobootConfig()
        self._session = Session(token_start)
        self._engine = TransferEngine(port, self._config.timeout_ms)
        self._recovery = RecoveryHandler(
            port,
            self._session,
            self._config.control_timeout_ms,
            self._config.retry_idempotent,
        )
        self._session.bind()
        logger.info("PICOBOOT session opened (%s)", target.value)

    def __enter__(self) -> PicobootConnection:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def target(self) -> Target:
        return self._target

    @property
    def config(self) -> PicobootConfig:
        return self._config

    def close(self) -> None:
        """Give up exclusive access if held, then end the session."""
        if not self._session.is_connected:
            return
        try:
            if self._session.is_exclusive:
                self.release()
        except PicobootError as e:
            logger.warning("Error releasing exclusive access: %s", e)
        finally:
            self._session.mark_disconnected("closed by host")

    # ─── core exchange ───────────────────────────────────────────────

    def _command(
        self,
        command: CommandId,
        args: bytes = b"",
        *,
        transfer_length: int = 0,
        payload: bytes = b"",
        address: int | None = None,
        length: int | None = None,
        allow_disconnect: bool = False,
    ) -> ExchangeResult:
        self._session.check_permitted(command)

        def attempt() -> ExchangeResult:
            frame = build_frame(command, self._session.begin(), args, transfer_length)
            return self._engine.exchange(
                frame, payload, allow_disconnect=allow_disconnect
            )

        return self._recovery.run(command, attempt, address=address, length=length)

    # ─── exclusivity ─────────────────────────────────────────────────

    def claim(self, level: ExclusiveLevel = ExclusiveLevel.EXCLUSIVE) -> None:
        """Request exclusive access.

        ``EXCLUSIVE_AND_EJECT`` also ejects the mass-storage drive.
        """
        level = ExclusiveLevel(level)
        self._command(CommandId.EXCLUSIVE_ACCESS, build_exclusive_args(level))
        self._session.apply_exclusive(level)
        logger.info("Exclusive access set to %s", level.name)

    def release(self) -> None:
        """Drop exclusive access."""
        self.claim(ExclusiveLevel.NOT_EXCLUSIVE)

    # ─── memory ──────────────────────────────────────────────────────

    def erase(self, address: int, length: int) -> None:
        """Erase whole flash sectors.

        Raises:
            NotPermittedError: Without exclusive access.
            InvalidRangeError: If the range is not sector aligned flash.
        """
        self._session.check_permitted(CommandId.FLASH_ERASE)
        validate_erase(self._target, address, length)
        logger.debug("Erasing 0x%08X +0x%X", address, length)
        self._command(
            CommandId.FLASH_ERASE,
            build_range_args(address, length),
            address=address,
            length=length,
        )

    def write(
        self,
        address: int,
        data: bytes,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        """Write ``data`` with one WRITE per aligned chunk.

        Flash must already be erased; WRITE does not erase.

        Args:
            address: Start address (page aligned for flash).
            data: Bytes to write; a multiple of the region granularity.
            progress_callback: Optional callback(bytes_written, total_bytes).

        Raises:
            NotPermittedError: Without exclusive access.
            InvalidRangeError: If the range is unaligned or protected.
            WriteError: A chunk failed; remaining chunks were not sent.
        """
        self._session.check_permitted(CommandId.WRITE)
        data = bytes(data)
        validate_write(self._target, address, len(data))

        region = self._target.find_region(address, len(data))
        chunk_size = self._config.max_write_chunk - (
            self._config.max_write_chunk % region.granularity
        )
        if chunk_size <= 0:
            raise InvalidRangeError(
                f"max_write_chunk {self._config.max_write_chunk} is smaller "
                f"than the {region.granularity}-byte write granularity",
                address=address, length=len(data),
            )

        done = 0
        for piece in MemoryRange(address, len(data)).split(chunk_size):
            offset = piece.address - address
            try:
                self._command(
                    CommandId.WRITE,
                    build_range_args(piece.address, piece.length),
                    transfer_length=piece.length,
                    payload=data[offset : offset + piece.length],
                    address=piece.address,
                    length=piece.length,
                )
            except PicobootError as e:
                raise WriteError(
                    f"Write aborted after {done} of {len(data)} bytes: {e}",
                    status=e.status if isinstance(e, DeviceError) else None,
                    command=CommandId.WRITE.value,
                    address=piece.address,
                    length=piece.length,
                ) from e
            done += piece.length
            if progress_callback:
                progress_callback(done, len(data))

    def read(self, address: int, length: int) -> bytes:
        """Read exactly ``length`` bytes starting at ``address``."""
        self._session.ensure_connected(CommandId.READ)
        validate_read(self._target, address, length)
        result = self._command(
            CommandId.READ,
            build_range_args(address, length),
            transfer_length=length,
            address=address,
            length=length,
        )
        return result.data

    # ─── execution ───────────────────────────────────────────────────

    def exit_xip(self) -> None:
        """Leave XIP mode so flash can be erased and written."""
        self._command(CommandId.EXIT_XIP)
        self._session.apply_xip(CommandId.EXIT_XIP)

    def enter_xip(self) -> None:
        """Enter command XIP mode (flash mapped for reading/execution)."""
        self._command(CommandId.ENTER_CMD_XIP)
        self._session.apply_xip(CommandId.ENTER_CMD_XIP)

    def exec(self, address: int) -> None:
        """Call the function at ``address`` on the device.

        Raises:
            NotPermittedError: Without exclusive access.
            InvalidStateError: While in command XIP entered by this session.
        """
        self._session.check_permitted(CommandId.EXEC)
        if self._session.in_cmd_xip:
            raise InvalidStateError(
                "EXEC while in command XIP mode; call exit_xip() first",
                command=CommandId.EXEC.value, address=address,
            )
        validate_exec(self._target, address)
        self._command(CommandId.EXEC, build_address_args(address), address=address)

    def vectorize_flash(self, address: int) -> None:
        """Point the flash boot vector at ``address`` (RP2040 only)."""
        self._session.check_permitted(CommandId.VECTORIZE_FLASH)
        if self._target is not Target.RP2040:
            raise InvalidStateError(
                f"VECTORIZE_FLASH is not supported on {self._target.value}",
                command=CommandId.VECTORIZE_FLASH.value,
            )
        validate_write(self._target, address, 4)
        self._command(
            CommandId.VECTORIZE_FLASH, build_address_args(address), address=address
        )

    # ─── reboot / info ───────────────────────────────────────────────

    def reboot(
        self,
        delay_ms: int = 500,
        target: RebootType = RebootType.NORMAL,
        *,
        pc: int = 0,
        sp: int | None = None,
        flags: Reboot2Flags = Reboot2Flags.NONE,
    ) -> RebootResult:
        """Reboot the device and end the session.

        RP2040 uses REBOOT: ``NORMAL`` boots from flash, ``PC_SP`` starts
        RAM code at ``pc`` with stack ``sp``. RP2350 uses REBOOT2 with the
        reboot type in the flags word.

        The device may reset before its status reply arrives. That is the
        one case where a missing reply counts as success: the session is
        DISCONNECTED either way, and ``acknowledged`` tells them apart.

        Raises:
            DeviceError: The device refused the reboot; the session lives on.
        """
        self._session.ensure_connected(CommandId.REBOOT)
        target = RebootType(target)
        if sp is None:
            sp = self._target.stack_pointer

        if self._target is Target.RP2040:
            if target is RebootType.NORMAL:
                command, args = CommandId.REBOOT, build_reboot_args(0, sp, delay_ms)
            elif target is RebootType.PC_SP:
                command, args = CommandId.REBOOT, build_reboot_args(pc, sp, delay_ms)
            else:
                raise ValueError(f"RP2040 cannot reboot into {target.name}")
        else:
            params = (pc, sp) if target is RebootType.PC_SP else (0, 0)
            command = CommandId.REBOOT2
            args = build_reboot2_args(int(target) | int(flags), delay_ms, *params)

        logger.info("Rebooting (%s, %s, delay %d ms)", command.name, target.name, delay_ms)
        result = self._command(command, args, allow_disconnect=True)
        acknowledged = result.status is not None
        self._session.mark_disconnected(f"{command.name} accepted")
        return RebootResult(command=command, delay_ms=delay_ms, acknowledged=acknowledged)

    def get_info(
        self,
        info_type: InfoType = InfoType.SYS,
        param: int = 0,
        wparam: int = 0,
        dparams: tuple[int, int, int] = (0, 0, 0),
        max_words: int = 64,
    ) -> InfoResponse:
        """Query device information (RP2350 only)."""
        self._session.ensure_connected(CommandId.GET_INFO)
        if self._target is not Target.RP2350:
            raise InvalidStateError(
                f"GET_INFO is not supported on {self._target.value}",
                command=CommandId.GET_INFO.value,
            )
        if max_words <= 0:
            raise ValueError(f"max_words must be positive, got {max_words}")
        result = self._command(
            CommandId.GET_INFO,
            build_get_info_args(info_type, param, wparam, dparams),
            transfer_length=max_words * 4,
        )
        return parse_info(result.data)

    def command_status(self) -> CommandStatus:
        """Fetch the status of the last command over the control pipe."""
        self._session.ensure_connected()
        try:
            raw = self._port.control(
                command_status_request(self._port.interface),
                self._config.control_timeout_ms,
            )
        except DeviceGoneError:
            self._session.mark_disconnected("device left the bus")
            raise
        return parse_command_status(raw)

    def reset_interface(self) -> None:
        """Reset the PICOBOOT interface now."""
        self._session.ensure_connected()
        self._recovery.reset()

    # ─── high level ──────────────────────────────────────────────────

    def program_flash(
        self,
        address: int,
        data: bytes,
        *,
        verify: bool = True,
        fill: int = 0xFF,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> int:
        """Erase, write and optionally verify a flash image.

        The image is padded with ``fill`` to a whole page, and every sector
        it touches is erased first, including the unused tail of the last
        sector.

        Args:
            address: Sector-aligned flash address.
            data: Image bytes.
            verify: Read back and compare after writing.
            fill: Padding byte (0xFF matches erased flash).
            progress_callback: Optional callback(bytes_written, total_bytes).

        Returns:
            Number of bytes written, including padding.

        Raises:
            VerifyError: If read-back differs from the image.
        """
        self._session.check_permitted(CommandId.WRITE)
        if not data:
            raise InvalidRangeError("Nothing to program", address=address, length=0)
        if address % FLASH_SECTOR_SIZE:
            raise InvalidRangeError(
                f"Flash image must start on a {FLASH_SECTOR_SIZE}-byte sector",
                address=address, length=len(data),
            )
        padding = -len(data) % FLASH_PAGE_SIZE
        image = bytes(data) + bytes([fill]) * padding
        erase_length = len(image) + (-len(image) % FLASH_SECTOR_SIZE)

        self.erase(address, erase_length)
        self.write(address, image, progress_callback)

        if verify:
            for piece in MemoryRange(address, len(image)).split(FLASH_SECTOR_SIZE):
                offset = piece.address - address
                expected = image[offset : offset + piece.length]
                if self.read(piece.address, piece.length) != expected:
                    raise VerifyError(
                        "Flash contents differ from image",
                        command=CommandId.READ.value,
                        address=piece.address,
                        length=piece.length,
                    )
        logger.info("Programmed %d bytes at 0x%08X", len(image), address)
        return len(image)
