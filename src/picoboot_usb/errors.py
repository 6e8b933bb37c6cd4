"""Exception hierarchy for PICOBOOT communication.

Every error raised by this package derives from :class:`PicobootError`.
Errors raised while a command is in flight carry the command id, the token
and, for memory operations, the address range involved.
"""

from __future__ import annotations


class PicobootError(Exception):
    """Base class for all PICOBOOT errors."""

    def __init__(
        self,
        message: str = "",
        *,
        command: int | None = None,
        token: int | None = None,
        address: int | None = None,
        length: int | None = None,
    ) -> None:
        super().__init__(message)
        self.command = command
        self.token = token
        self.address = address
        self.length = length

    def __str__(self) -> str:
        text = super().__str__()
        context = []
        if self.command is not None:
            context.append(f"cmd=0x{self.command:02X}")
        if self.token is not None:
            context.append(f"token={self.token}")
        if self.address is not None:
            context.append(f"addr=0x{self.address:08X}")
        if self.length is not None:
            context.append(f"len={self.length}")
        if context:
            return f"{text} ({', '.join(context)})"
        return text


class FramingError(PicobootError, ValueError):
    """A command frame could not be built: bad argument block or field."""


class InvalidRangeError(PicobootError, ValueError):
    """An address range is unaligned, unmapped or protected."""


class ProtocolError(PicobootError):
    """The device replied with something the protocol does not allow."""


class DesyncError(ProtocolError):
    """Reply magic or token does not match the command in flight."""


class ShortReadError(ProtocolError):
    """The data phase ended before ``transfer_len`` bytes arrived."""


class RecoverableProtocolError(ProtocolError):
    """A protocol fault aborted the command.

    The command was not retried. An interface reset runs before the next
    command, after which the session is usable again, but whether the
    aborted command took effect on the device is unknown.
    """


class TransportError(PicobootError):
    """Underlying USB I/O failure."""


class StallError(TransportError):
    """An endpoint stalled."""


class TransferTimeoutError(TransportError, TimeoutError):
    """No data within the configured transfer timeout."""


class DeviceGoneError(TransportError):
    """The device is no longer on the bus."""


class DeviceError(PicobootError):
    """The device rejected a command with a nonzero status code."""

    def __init__(self, status: int, message: str = "", **context) -> None:
        self.status = status
        if not message:
            message = f"Device reported status {status}"
        super().__init__(message, **context)


class NotPermittedError(PicobootError, PermissionError):
    """The operation needs exclusive access the session does not hold."""


class SessionDisconnectedError(PicobootError):
    """The session has ended (reboot or transport loss)."""


class InvalidStateError(PicobootError):
    """The operation is not valid in the session's current mode."""


class WriteError(PicobootError):
    """A chunked write failed; ``address``/``length`` name the failed chunk.

    ``status`` holds the device status code when the device rejected the
    chunk, else ``None``.
    """

    def __init__(self, message: str = "", *, status: int | None = None, **context) -> None:
        self.status = status
        super().__init__(message, **context)


class VerifyError(PicobootError):
    """Read-back after programming differs from the written data."""
