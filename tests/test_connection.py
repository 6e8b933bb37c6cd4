"""Tests for the user-facing operations against a simulated device."""

import struct

import pytest

from conftest import SimulatedDevice
from picoboot_usb.config import PicobootConfig
from picoboot_usb.connection import PicobootConnection
from picoboot_usb.errors import (
    DeviceError,
    InvalidRangeError,
    InvalidStateError,
    NotPermittedError,
    SessionDisconnectedError,
    ShortReadError,
    StallError,
    VerifyError,
    WriteError,
)
from picoboot_usb.models.memory import Target
from picoboot_usb.protocol.commands import CommandId, ExclusiveLevel, RebootType
from picoboot_usb.session import SessionState

FLASH = 0x10000000


def test_full_programming_scenario(device, conn):
    """Claim, erase, write, read back, release, reboot."""
    image = bytes((i * 7) & 0xFF for i in range(4096))

    conn.claim(ExclusiveLevel.EXCLUSIVE_AND_EJECT)
    assert conn.state is SessionState.EXCLUSIVE_EJECT
    assert device.exclusive == 2

    conn.erase(FLASH, 0x1000)
    conn.write(FLASH, image)
    assert conn.read(FLASH, 4096) == image

    conn.release()
    assert conn.state is SessionState.IDLE

    result = conn.reboot(0, RebootType.NORMAL)
    assert conn.state is SessionState.DISCONNECTED
    assert result.command is CommandId.REBOOT
    assert device.reboots[0][0] == CommandId.REBOOT


def test_tokens_increase_across_commands(device, exclusive_conn):
    exclusive_conn.exit_xip()
    exclusive_conn.read(FLASH, 256)
    tokens = [token for _, token in device.commands]
    assert tokens == sorted(tokens)
    assert len(set(tokens)) == len(tokens)


@pytest.mark.parametrize(
    "operation",
    [
        lambda c: c.erase(FLASH, 0x1000),
        lambda c: c.write(FLASH, b"\x00" * 256),
        lambda c: c.exec(0x20000001),
        lambda c: c.program_flash(FLASH, b"\x00" * 16),
    ],
)
def test_mutation_while_idle_makes_no_port_calls(device, conn, operation):
    with pytest.raises(PermissionError):
        operation(conn)
    assert device.calls == []


def test_write_read_sram(device, exclusive_conn):
    data = bytes(range(256)) * 3
    exclusive_conn.write(0x20001000, data)
    assert exclusive_conn.read(0x20001000, len(data)) == data
    assert device.sram[0x1000 : 0x1000 + len(data)] == data


def test_write_without_erase_only_clears_bits(device, exclusive_conn):
    """WRITE does not erase; flash ANDs the new data in."""
    exclusive_conn.erase(FLASH, 0x1000)
    exclusive_conn.write(FLASH, b"\x0F" * 256)
    exclusive_conn.write(FLASH, b"\xF1" * 256)
    assert exclusive_conn.read(FLASH, 256) == b"\x01" * 256


def test_write_is_chunked(device):
    conn = PicobootConnection(device, Target.RP2040, PicobootConfig(max_write_chunk=0x400))
    conn.claim()
    conn.write(FLASH, b"\x00" * 0x1000)
    writes = [c for c, _ in device.commands if c == CommandId.WRITE]
    assert len(writes) == 4


def test_write_reports_first_failing_chunk(device):
    conn = PicobootConnection(device, Target.RP2040, PicobootConfig(max_write_chunk=0x100))
    conn.claim()

    original = device._finish_write
    calls = {"n": 0}

    def fail_second():
        calls["n"] += 1
        if calls["n"] == 2:
            device.status_override[0x05] = 4
        original()

    device._finish_write = fail_second
    with pytest.raises(WriteError) as excinfo:
        conn.write(FLASH, b"\x00" * 0x400)
    assert excinfo.value.address == FLASH + 0x100
    assert excinfo.value.length == 0x100
    assert isinstance(excinfo.value.__cause__, DeviceError)
    assert excinfo.value.status == 4
    writes = [c for c, _ in device.commands if c == CommandId.WRITE]
    assert len(writes) == 2


def test_write_progress_callback(exclusive_conn):
    seen = []
    exclusive_conn.write(FLASH, b"\x00" * 0x2000, lambda done, total: seen.append((done, total)))
    assert seen == [(0x1000, 0x2000), (0x2000, 0x2000)]


def test_erase_alignment_checked_before_traffic(device, exclusive_conn):
    before = len(device.calls)
    with pytest.raises(InvalidRangeError):
        exclusive_conn.erase(FLASH + 0x100, 0x1000)
    assert len(device.calls) == before


def test_read_allowed_when_idle(device, conn):
    device.flash[:4] = b"\x01\x02\x03\x04"
    assert conn.read(FLASH, 256)[:4] == b"\x01\x02\x03\x04"


def test_short_read_fails_without_partial_data(device, conn):
    device.truncate_reads = 10
    with pytest.raises(ShortReadError):
        conn.read(FLASH, 256)


def test_device_error_surfaces_raw_status(device, exclusive_conn):
    device.status_override[0x03] = 5
    with pytest.raises(DeviceError) as excinfo:
        exclusive_conn.erase(FLASH, 0x1000)
    assert excinfo.value.status == 5
    assert excinfo.value.command == CommandId.FLASH_ERASE


def test_exec_rejected_after_enter_xip(device, exclusive_conn):
    exclusive_conn.enter_xip()
    with pytest.raises(InvalidStateError):
        exclusive_conn.exec(0x20000001)
    exclusive_conn.exit_xip()
    exclusive_conn.exec(0x20000001)
    assert device.executed == [0x20000001]


def test_vectorize_flash_rp2040_only(device):
    conn = PicobootConnection(device, Target.RP2350)
    conn.claim()
    with pytest.raises(InvalidStateError):
        conn.vectorize_flash(0x20000000)


def test_vectorize_flash(device, exclusive_conn):
    exclusive_conn.vectorize_flash(0x20000100)
    assert device.executed == [0x20000100]


def test_reboot_disconnects_even_without_status(device, conn):
    result = conn.reboot(100)
    assert result.acknowledged is False
    assert conn.state is SessionState.DISCONNECTED


def test_reboot_with_status_is_acknowledged():
    device = SimulatedDevice(drop_on_reboot=False)
    conn = PicobootConnection(device, Target.RP2040)
    result = conn.reboot(100)
    assert result.acknowledged is True
    assert conn.state is SessionState.DISCONNECTED


def test_operations_after_reboot_make_no_port_calls(device, conn):
    conn.reboot(0)
    before = len(device.calls)
    with pytest.raises(SessionDisconnectedError):
        conn.read(FLASH, 256)
    with pytest.raises(SessionDisconnectedError):
        conn.claim()
    with pytest.raises(SessionDisconnectedError):
        conn.erase(FLASH, 0x1000)
    with pytest.raises(SessionDisconnectedError):
        conn.reboot(0)
    with pytest.raises(SessionDisconnectedError):
        conn.command_status()
    assert len(device.calls) == before


def test_rejected_reboot_keeps_session():
    device = SimulatedDevice(drop_on_reboot=False)
    device.status_override[0x02] = 10
    conn = PicobootConnection(device, Target.RP2040)
    with pytest.raises(DeviceError):
        conn.reboot(0)
    assert conn.state is SessionState.IDLE


def test_rp2040_reboot_args(device, conn):
    conn.reboot(250, RebootType.PC_SP, pc=0x20000001, sp=0x20040000)
    cmd_id, args = device.reboots[0]
    assert cmd_id == CommandId.REBOOT
    assert struct.unpack("<III", args) == (0x20000001, 0x20040000, 250)


def test_rp2040_rejects_rp2350_reboot_types(device, conn):
    with pytest.raises(ValueError):
        conn.reboot(0, RebootType.BOOTSEL)
    assert device.calls == []


def test_rp2350_uses_reboot2(device):
    conn = PicobootConnection(device, Target.RP2350)
    conn.reboot(10, RebootType.BOOTSEL)
    cmd_id, args = device.reboots[0]
    assert cmd_id == CommandId.REBOOT2
    assert struct.unpack("<IIII", args) == (0x2, 10, 0, 0)


def test_get_info(device):
    conn = PicobootConnection(device, Target.RP2350)
    info = conn.get_info(max_words=8)
    assert info.words == [1, 2, 3]


def test_get_info_rp2350_only(conn):
    with pytest.raises(InvalidStateError):
        conn.get_info()


def test_command_status(device, exclusive_conn):
    status = exclusive_conn.command_status()
    assert status.command == CommandId.EXCLUSIVE_ACCESS
    assert status.status == 0


def test_program_flash_pads_and_verifies(device, exclusive_conn):
    image = b"\x12\x34" * 150
    written = exclusive_conn.program_flash(FLASH, image)
    assert written == 512
    assert bytes(device.flash[:300]) == image
    assert bytes(device.flash[300:512]) == b"\xff" * 212


def test_program_flash_verify_mismatch(device, exclusive_conn):
    original = device._finish_write

    def corrupt():
        original()
        device.flash[0] = 0x00

    device._finish_write = corrupt
    with pytest.raises(VerifyError):
        exclusive_conn.program_flash(FLASH, b"\xAA" * 256)


def test_program_flash_needs_sector_start(exclusive_conn):
    with pytest.raises(InvalidRangeError):
        exclusive_conn.program_flash(FLASH + 0x100, b"\x00" * 256)


def test_context_manager_releases(device):
    with PicobootConnection(device, Target.RP2040) as conn:
        conn.claim()
    assert device.exclusive == 0
    assert conn.state is SessionState.DISCONNECTED


def test_claim_not_exclusive_is_release(device, exclusive_conn):
    exclusive_conn.claim(ExclusiveLevel.NOT_EXCLUSIVE)
    assert exclusive_conn.state is SessionState.IDLE
    with pytest.raises(NotPermittedError):
        exclusive_conn.exec(0x20000001)


def test_write_error_without_device_status(device, exclusive_conn):
    """Transport failures leave WriteError.status unset."""
    device.fail_next("send", StallError("stall"))
    with pytest.raises(WriteError) as excinfo:
        exclusive_conn.write(FLASH, b"\x00" * 256)
    assert excinfo.value.status is None
