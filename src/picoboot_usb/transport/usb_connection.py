"""pyusb Transport Port for the PICOBOOT interface.

The caller selects the ``usb.core.Device`` (by bus/address, VID/PID, or any
other means); this module only opens the vendor-class interface on it.
PICOBOOT is the interface with class 0xFF, subclass 0, protocol 0 and one
bulk IN plus one bulk OUT endpoint.
"""

from __future__ import annotations

import errno
import logging
from dataclasses import dataclass

import usb.core
import usb.util

from ..config import DEFAULT_CONTROL_TIMEOUT_MS, DEFAULT_TIMEOUT_MS
from ..errors import DeviceGoneError, StallError, TransferTimeoutError, TransportError
from ..models.memory import Target
from .port import ControlRequest, Endpoints

logger = logging.getLogger(__name__)

PICOBOOT_INTERFACE_CLASS = 0xFF
PICOBOOT_INTERFACE_SUBCLASS = 0x00
PICOBOOT_INTERFACE_PROTOCOL = 0x00

# libusb error codes surfaced by pyusb as backend_error_code
LIBUSB_ERROR_NO_DEVICE = -4
LIBUSB_ERROR_TIMEOUT = -7
LIBUSB_ERROR_PIPE = -9


@dataclass
class DeviceInfo:
    """Basic device identification from USB descriptors."""

    vendor_id: int = 0
    product_id: int = 0
    bus: int | None = None
    address: int | None = None
    interface: int = 0
    max_packet_size: int = 0


class UsbTransportPort:
    """Transport Port over one claimed PICOBOOT interface.

    Usage::

        dev = usb.core.find(bus=1, address=12)
        port = UsbTransportPort(dev)
        port.open()
        ...
        port.close()
    """

    def __init__(
        self,
        device: usb.core.Device,
        interface: int | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        control_timeout_ms: int = DEFAULT_CONTROL_TIMEOUT_MS,
    ) -> None:
        if device is None:
            raise TransportError("No USB device given")
        self._device = device
        self._requested_interface = interface
        self._timeout_ms = timeout_ms
        self._control_timeout_ms = control_timeout_ms
        self._opened = False
        self._detached_kernel_driver = False
        self._gone = False
        self.interface = 0
        self.endpoints = Endpoints()
        self.max_packet_size = 0

    def __enter__(self) -> UsbTransportPort:
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    @property
    def opened(self) -> bool:
        return self._opened

    @property
    def device_info(self) -> DeviceInfo:
        return DeviceInfo(
            vendor_id=self._device.idVendor,
            product_id=self._device.idProduct,
            bus=getattr(self._device, "bus", None),
            address=getattr(self._device, "address", None),
            interface=self.interface,
            max_packet_size=self.max_packet_size,
        )

    @property
    def target(self) -> Target:
        """Chip family implied by the device's product id."""
        return Target.from_product_id(self._device.idProduct)

    def open(self) -> DeviceInfo:
        """Claim the PICOBOOT interface and locate its bulk endpoints.

        Raises:
            TransportError: If the interface or endpoints are missing, or
                the interface cannot be claimed.
        """
        if self._opened:
            return self.device_info

        try:
            try:
                cfg = self._device.get_active_configuration()
            except usb.core.USBError:
                self._device.set_configuration()
                cfg = self._device.get_active_configuration()

            intf = self._find_interface(cfg)
            ep_out, ep_in = self._find_endpoints(intf)
            number = intf.bInterfaceNumber

            if self._device.is_kernel_driver_active(number):
                self._device.detach_kernel_driver(number)
                self._detached_kernel_driver = True

            usb.util.claim_interface(self._device, number)
            if intf.bAlternateSetting:
                self._device.set_interface_altsetting(number, intf.bAlternateSetting)
        except usb.core.USBError as e:
            if self._detached_kernel_driver:
                self._reattach_kernel_driver(number)
            raise self._translate(e, "open") from e

        self.interface = number
        self.endpoints = Endpoints(out=ep_out.bEndpointAddress, in_=ep_in.bEndpointAddress)
        self.max_packet_size = min(ep_out.wMaxPacketSize, ep_in.wMaxPacketSize)
        self._opened = True

        logger.info(
            "Opened PICOBOOT interface %d on %04x:%04x (OUT 0x%02X, IN 0x%02X, %d-byte packets)",
            self.interface,
            self._device.idVendor,
            self._device.idProduct,
            self.endpoints.out,
            self.endpoints.in_,
            self.max_packet_size,
        )
        return self.device_info

    def _find_interface(self, cfg):
        if self._requested_interface is not None:
            intf = usb.util.find_descriptor(cfg, bInterfaceNumber=self._requested_interface)
        else:
            intf = usb.util.find_descriptor(
                cfg,
                bInterfaceClass=PICOBOOT_INTERFACE_CLASS,
                bInterfaceSubClass=PICOBOOT_INTERFACE_SUBCLASS,
                bInterfaceProtocol=PICOBOOT_INTERFACE_PROTOCOL,
            )
        if intf is None:
            raise TransportError("PICOBOOT interface not found on device")
        return intf

    @staticmethod
    def _find_endpoints(intf):
        def bulk(direction):
            return lambda ep: (
                usb.util.endpoint_direction(ep.bEndpointAddress) == direction
                and usb.util.endpoint_type(ep.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
            )

        ep_out = usb.util.find_descriptor(intf, custom_match=bulk(usb.util.ENDPOINT_OUT))
        ep_in = usb.util.find_descriptor(intf, custom_match=bulk(usb.util.ENDPOINT_IN))
        if ep_out is None or ep_in is None:
            raise TransportError("PICOBOOT interface lacks bulk IN/OUT endpoints")
        return ep_out, ep_in

    def close(self) -> None:
        """Release the interface and reattach any detached kernel driver."""
        if not self._opened and not self._gone:
            return

        try:
            if self._opened:
                usb.util.release_interface(self._device, self.interface)
                if self._detached_kernel_driver:
                    self._device.attach_kernel_driver(self.interface)
        except usb.core.USBError as e:
            logger.warning("Error closing device: %s", e)
        finally:
            usb.util.dispose_resources(self._device)
            self._opened = False
            self._gone = False
            self._detached_kernel_driver = False
            logger.info("Closed PICOBOOT interface")

    def _reattach_kernel_driver(self, number: int) -> None:
        try:
            self._device.attach_kernel_driver(number)
        except usb.core.USBError as e:
            logger.warning("Could not reattach kernel driver to interface %d: %s", number, e)
        self._detached_kernel_driver = False

    def _require_open(self) -> None:
        if not self._opened:
            raise TransportError("PICOBOOT interface is not open")

    def send(self, endpoint: int, data: bytes, timeout_ms: int | None = None) -> None:
        """Bulk OUT transfer; empty ``data`` sends a zero-length packet."""
        self._require_open()
        try:
            written = self._device.write(endpoint, data, timeout=timeout_ms or self._timeout_ms)
        except usb.core.USBError as e:
            raise self._translate(e, "write", endpoint) from e
        if written != len(data):
            raise TransportError(f"Short write on 0x{endpoint:02X}: {written} of {len(data)} bytes")

    def recv(self, endpoint: int, max_len: int, timeout_ms: int | None = None) -> bytes:
        """Bulk IN transfer of up to ``max_len`` bytes."""
        self._require_open()
        try:
            data = self._device.read(endpoint, max_len, timeout=timeout_ms or self._timeout_ms)
        except usb.core.USBError as e:
            raise self._translate(e, "read", endpoint) from e
        return bytes(data)

    def control(self, request: ControlRequest, timeout_ms: int | None = None) -> bytes:
        """Control transfer on the default pipe."""
        self._require_open()
        data_or_length = request.length if request.is_in else request.data
        try:
            result = self._device.ctrl_transfer(
                request.request_type,
                request.request,
                request.value,
                request.index,
                data_or_length,
                timeout=timeout_ms or self._control_timeout_ms,
            )
        except usb.core.USBError as e:
            raise self._translate(e, "control") from e
        return bytes(result) if request.is_in else b""

    def _translate(
        self, error: usb.core.USBError, action: str, endpoint: int | None = None
    ) -> TransportError:
        """Map a pyusb error onto the transport error taxonomy.

        A stalled bulk endpoint has its halt cleared before the error is
        returned, so the next transfer on it is not rejected outright.
        """
        code = getattr(error, "backend_error_code", None)
        where = f"{action} on 0x{endpoint:02X}" if endpoint is not None else action

        if isinstance(error, usb.core.USBTimeoutError) or code == LIBUSB_ERROR_TIMEOUT:
            return TransferTimeoutError(f"USB {where} timed out")
        if error.errno == errno.ENODEV or code == LIBUSB_ERROR_NO_DEVICE:
            self._opened = False
            self._gone = True
            return DeviceGoneError(f"USB device disconnected during {where}")
        if error.errno == errno.EPIPE or code == LIBUSB_ERROR_PIPE:
            if endpoint is not None:
                try:
                    self._device.clear_halt(endpoint)
                except usb.core.USBError as clear_error:
                    logger.debug("clear_halt(0x%02X) failed: %s", endpoint, clear_error)
            return StallError(f"USB {where} stalled")
        return TransportError(f"USB {where} failed: {error}")
