"""Transport layer: the Transport Port interface and its pyusb implementation."""

from .port import ControlRequest, Endpoints, TransportPort
