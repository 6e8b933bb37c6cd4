"""Transport Port interface consumed by the protocol engine.

A port wraps one opened, claimed USB interface: a bulk OUT pipe, a bulk IN
pipe and the default control pipe. Ports raise the transport errors from
:mod:`picoboot_usb.errors`; the engine never touches device handles.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

# bmRequestType: vendor, interface recipient
REQUEST_TYPE_OUT = 0x41
REQUEST_TYPE_IN = 0xC1

REQUEST_INTERFACE_RESET = 0x41
REQUEST_GET_COMMAND_STATUS = 0x42

DEFAULT_MAX_PACKET_SIZE = 64


@dataclass(frozen=True)
class Endpoints:
    """Bulk endpoint addresses of the PICOBOOT interface."""

    out: int = 0x03
    in_: int = 0x84


@dataclass(frozen=True)
class ControlRequest:
    """A control transfer on the default pipe.

    For IN requests ``length`` is the number of bytes to read; OUT requests
    carry ``data`` (usually empty).
    """

    request_type: int
    request: int
    value: int = 0
    index: int = 0
    length: int = 0
    data: bytes = b""

    @property
    def is_in(self) -> bool:
        return bool(self.request_type & 0x80)


def interface_reset_request(interface: int) -> ControlRequest:
    """Vendor request that resynchronizes the PICOBOOT command state."""
    return ControlRequest(REQUEST_TYPE_OUT, REQUEST_INTERFACE_RESET, 0, interface)


def command_status_request(interface: int) -> ControlRequest:
    """Vendor request returning the 16-byte status of the last command."""
    return ControlRequest(
        REQUEST_TYPE_IN, REQUEST_GET_COMMAND_STATUS, 0, interface, length=16
    )


@runtime_checkable
class TransportPort(Protocol):
    """What the protocol engine needs from a USB connection."""

    endpoints: Endpoints
    interface: int
    max_packet_size: int

    def send(self, endpoint: int, data: bytes, timeout_ms: int | None = None) -> None:
        """Write ``data`` to a bulk OUT endpoint (empty data sends a ZLP)."""
        ...

    def recv(self, endpoint: int, max_len: int, timeout_ms: int | None = None) -> bytes:
        """Read up to ``max_len`` bytes from a bulk IN endpoint."""
        ...

    def control(self, request: ControlRequest, timeout_ms: int | None = None) -> bytes:
        """Run a control transfer; returns IN data or ``b""``."""
        ...
