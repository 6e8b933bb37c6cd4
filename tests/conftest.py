"""Shared fixtures: a simulated PICOBOOT device behind the Transport Port API."""

from __future__ import annotations

import struct
from collections import deque

import pytest

from picoboot_usb.connection import PicobootConnection
from picoboot_usb.errors import DeviceGoneError, TransportError
from picoboot_usb.models.memory import Target
from picoboot_usb.transport.port import (
    REQUEST_GET_COMMAND_STATUS,
    REQUEST_INTERFACE_RESET,
    ControlRequest,
    Endpoints,
)

MAGIC = 0x431FD10B
FLASH_BASE = 0x10000000
FLASH_BYTES = 0x40000
SRAM_BASE = 0x20000000
SRAM_BYTES = 0x42000


def status_bytes(token: int, status: int = 0, cmd_id: int = 0, magic: int = MAGIC) -> bytes:
    """Encode a 16-byte status reply."""
    return struct.pack("<IIIBB2s", magic, token, status, cmd_id, 0, b"\x00\x00")


class SimulatedDevice:
    """Transport Port that answers like a PICOBOOT boot ROM.

    Every port call is appended to ``calls`` as ``(op, endpoint_or_request, data)``.
    Faults are injected with :meth:`fail_next`; they fire on the next call of
    the named op and are consumed.
    """

    def __init__(self, max_packet_size: int = 64, drop_on_reboot: bool = True) -> None:
        self.endpoints = Endpoints(out=0x03, in_=0x84)
        self.interface = 1
        self.max_packet_size = max_packet_size
        self.drop_on_reboot = drop_on_reboot

        self.flash = bytearray(b"\xff" * FLASH_BYTES)
        self.sram = bytearray(SRAM_BYTES)
        self.exclusive = 0
        self.xip = True
        self.executed: list[int] = []
        self.reboots: list[tuple[int, bytes]] = []
        self.gone = False

        self.calls: list[tuple] = []
        self.commands: list[tuple[int, int]] = []  # (cmd_id, token)
        self.resets = 0
        self.status_override: dict[int, int] = {}
        self.truncate_reads = 0
        self.desync_next = False
        self.info_words = [0x00000001, 0x00000002, 0x00000003]

        self._faults: dict[str, deque] = {"send": deque(), "recv": deque(), "control": deque()}
        self._in_queue: deque[bytes] = deque()
        self._write_target: tuple[int, int, int] | None = None  # (addr, size, token)
        self._write_buf = bytearray()
        self._await_zlp = False
        self._last_status = (0, 0, 0)

    # ─── fault injection ─────────────────────────────────────────────

    def fail_next(self, op: str, error: Exception) -> None:
        self._faults[op].append(error)

    def _maybe_fail(self, op: str) -> None:
        if self.gone:
            raise DeviceGoneError("device gone")
        if self._faults[op]:
            raise self._faults[op].popleft()

    # ─── port API ────────────────────────────────────────────────────

    def send(self, endpoint: int, data: bytes, timeout_ms: int | None = None) -> None:
        self.calls.append(("send", endpoint, bytes(data)))
        self._maybe_fail("send")
        if endpoint != self.endpoints.out:
            raise TransportError(f"bad OUT endpoint 0x{endpoint:02X}")

        if self._await_zlp:
            assert data == b"", "expected zero-length packet"
            self._await_zlp = False
            self._finish_write()
            return
        if self._write_target is not None:
            self._write_buf += data
            addr, size, _ = self._write_target
            if len(self._write_buf) >= size:
                if size % self.max_packet_size == 0:
                    self._await_zlp = True
                else:
                    self._finish_write()
            return
        self._handle_command(bytes(data))

    def recv(self, endpoint: int, max_len: int, timeout_ms: int | None = None) -> bytes:
        self.calls.append(("recv", endpoint, max_len))
        self._maybe_fail("recv")
        if not self._in_queue:
            raise TransportError("nothing to read")
        head = self._in_queue.popleft()
        if len(head) > max_len:
            self._in_queue.appendleft(head[max_len:])
            head = head[:max_len]
        return head

    def control(self, request: ControlRequest, timeout_ms: int | None = None) -> bytes:
        self.calls.append(("control", request, b""))
        self._maybe_fail("control")
        if request.request == REQUEST_INTERFACE_RESET:
            self.resets += 1
            self._in_queue.clear()
            self._write_target = None
            self._write_buf = bytearray()
            self._await_zlp = False
            return b""
        if request.request == REQUEST_GET_COMMAND_STATUS:
            token, status, cmd_id = self._last_status
            return struct.pack("<IIBB6s", token, status, cmd_id, 0, b"\x00" * 6)
        raise TransportError(f"unknown control request {request.request:#x}")

    # ─── helpers for tests ───────────────────────────────────────────

    def op_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def queue_in(self, data: bytes) -> None:
        """Put raw bytes on the IN pipe (e.g. a forged status reply)."""
        self._in_queue.append(data)

    # ─── device behavior ─────────────────────────────────────────────

    def _mem(self, addr: int, size: int) -> tuple[bytearray, int, bool]:
        if FLASH_BASE <= addr and addr + size <= FLASH_BASE + FLASH_BYTES:
            return self.flash, addr - FLASH_BASE, True
        if SRAM_BASE <= addr and addr + size <= SRAM_BASE + SRAM_BYTES:
            return self.sram, addr - SRAM_BASE, False
        raise AssertionError(f"unmapped access 0x{addr:08X}+{size}")

    def _reply(self, token: int, cmd_id: int) -> None:
        status = self.status_override.pop(cmd_id, 0)
        if self.desync_next:
            self.desync_next = False
            token += 1
        self._last_status = (token, status, cmd_id)
        self._in_queue.append(status_bytes(token, status, cmd_id))

    def _finish_write(self) -> None:
        addr, size, token = self._write_target
        buf, off, is_flash = self._mem(addr, size)
        data = self._write_buf[:size]
        if is_flash:
            for i, b in enumerate(data):
                buf[off + i] &= b
        else:
            buf[off : off + size] = data
        self._write_target = None
        self._write_buf = bytearray()
        self._reply(token, 0x05)

    def _handle_command(self, data: bytes) -> None:
        assert len(data) == 32, f"command frame must be 32 bytes, got {len(data)}"
        magic, token, cmd_id, arg_size, _, transfer_len, args = struct.unpack(
            "<IIBBHI16s", data
        )
        assert magic == MAGIC
        self.commands.append((cmd_id, token))

        if cmd_id == 0x01:
            self.exclusive = args[0]
            self._reply(token, cmd_id)
        elif cmd_id == 0x03:
            addr, size = struct.unpack_from("<II", args)
            buf, off, _ = self._mem(addr, size)
            buf[off : off + size] = b"\xff" * size
            self._reply(token, cmd_id)
        elif cmd_id == 0x84:
            addr, size = struct.unpack_from("<II", args)
            buf, off, _ = self._mem(addr, size)
            payload = bytes(buf[off : off + size])
            if self.truncate_reads:
                payload = payload[: size - self.truncate_reads]
            if payload:
                self._in_queue.append(payload)
            self._reply(token, cmd_id)
        elif cmd_id == 0x05:
            addr, size = struct.unpack_from("<II", args)
            assert size == transfer_len
            self._write_target = (addr, size, token)
        elif cmd_id == 0x06:
            self.xip = False
            self._reply(token, cmd_id)
        elif cmd_id == 0x07:
            self.xip = True
            self._reply(token, cmd_id)
        elif cmd_id in (0x08, 0x09):
            (addr,) = struct.unpack_from("<I", args)
            self.executed.append(addr)
            self._reply(token, cmd_id)
        elif cmd_id in (0x02, 0x0A):
            self.reboots.append((cmd_id, args[:arg_size]))
            if self.drop_on_reboot:
                self.gone = True
            else:
                self._reply(token, cmd_id)
        elif cmd_id == 0x8B:
            words = [len(self.info_words)] + self.info_words
            payload = struct.pack(f"<{len(words)}I", *words)
            self._in_queue.append(payload.ljust(transfer_len, b"\x00"))
            self._reply(token, cmd_id)
        else:
            self._last_status = (token, 1, cmd_id)
            self._in_queue.append(status_bytes(token, 1, cmd_id))


class ScriptedPort:
    """Port that records sends and replays a fixed list of IN transfers."""

    def __init__(self, replies: list, max_packet_size: int = 64) -> None:
        self.endpoints = Endpoints(out=0x03, in_=0x84)
        self.interface = 0
        self.max_packet_size = max_packet_size
        self.replies = deque(replies)
        self.sent: list[bytes] = []
        self.controls: list[ControlRequest] = []

    def send(self, endpoint: int, data: bytes, timeout_ms: int | None = None) -> None:
        self.sent.append(bytes(data))

    def recv(self, endpoint: int, max_len: int, timeout_ms: int | None = None) -> bytes:
        reply = self.replies.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply

    def control(self, request: ControlRequest, timeout_ms: int | None = None) -> bytes:
        self.controls.append(request)
        return b""


@pytest.fixture
def device():
    return SimulatedDevice()


@pytest.fixture
def conn(device):
    return PicobootConnection(device, Target.RP2040)


@pytest.fixture
def exclusive_conn(conn):
    conn.claim()
    return conn
