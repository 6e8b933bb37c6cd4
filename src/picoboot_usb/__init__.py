"""Host-side client for the PICOBOOT USB interface of RP2040/RP2350 BOOTSEL mode."""

from .config import PicobootConfig
from .connection import PicobootConnection, RebootResult
from .errors import (
    DesyncError,
    DeviceError,
    DeviceGoneError,
    FramingError,
    InvalidRangeError,
    InvalidStateError,
    NotPermittedError,
    PicobootError,
    ProtocolError,
    RecoverableProtocolError,
    SessionDisconnectedError,
    ShortReadError,
    StallError,
    TransferTimeoutError,
    TransportError,
    VerifyError,
    WriteError,
)
from .models.memory import MemoryRange, Target
from .protocol.commands import CommandId, ExclusiveLevel, InfoType, Reboot2Flags, RebootType
from .session import SessionState
from .transport.port import ControlRequest, Endpoints, TransportPort

__version__ = "0.1.0"
