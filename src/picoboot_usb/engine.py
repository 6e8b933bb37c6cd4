"""Transfer engine: runs one command exchange over a Transport Port.

An exchange is::

    COMMAND  -> 32-byte frame on bulk OUT
    DATA_OUT -> payload in max-packet chunks (+ ZLP on exact multiples)
    DATA_IN  -> bulk IN reads until transfer_length bytes are gathered
    STATUS   -> 16-byte status reply on bulk IN, token echoed
    DONE

The phase lives only inside :meth:`TransferEngine.exchange`. Either the
whole exchange completes or an error propagates and any partial read data
is dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .errors import DesyncError, DeviceError, ProtocolError, ShortReadError, TransportError
from .protocol.framing import STATUS_SIZE, CommandFrame, StatusReply, parse_status
from .protocol.status import status_name
from .transport.port import TransportPort

logger = logging.getLogger(__name__)


class Phase(Enum):
    COMMAND = "command"
    DATA_OUT = "data-out"
    DATA_IN = "data-in"
    STATUS = "status"
    DONE = "done"


@dataclass
class ExchangeResult:
    """Outcome of a completed exchange.

    ``status`` is ``None`` only when the caller allowed the device to drop
    off the bus instead of sending a status reply.
    """

    frame: CommandFrame
    status: StatusReply | None
    data: bytes = b""


class TransferEngine:
    """Drives command exchanges on one port.

    Args:
        port: The bound Transport Port.
        timeout_ms: Timeout for each bulk transfer.
    """

    def __init__(self, port: TransportPort, timeout_ms: int) -> None:
        self._port = port
        self._timeout_ms = timeout_ms

    @property
    def port(self) -> TransportPort:
        return self._port

    @property
    def packet_size(self) -> int:
        size = self._port.max_packet_size
        if size <= 0:
            raise TransportError(f"Invalid max packet size {size}")
        return size

    def exchange(
        self,
        frame: CommandFrame,
        payload: bytes = b"",
        *,
        allow_disconnect: bool = False,
    ) -> ExchangeResult:
        """Run one command exchange.

        Args:
            frame: The command frame to send.
            payload: Host-to-device data; its length must equal
                ``frame.transfer_length`` for outgoing commands.
            allow_disconnect: Treat a transport failure while waiting for
                the status reply as completion (used for reboot only).

        Returns:
            The status reply and any device-to-host data.

        Raises:
            ShortReadError: Fewer bytes than ``transfer_length`` arrived.
            DesyncError: The status reply has the wrong magic or token.
            DeviceError: The status reply carries a nonzero code.
            TransportError: The port failed (stall, timeout, gone).
        """
        outgoing = frame.transfer_length and not frame.command.is_device_to_host
        if outgoing and len(payload) != frame.transfer_length:
            raise ProtocolError(
                f"Payload is {len(payload)} bytes but frame declares "
                f"{frame.transfer_length}",
                command=frame.command.value, token=frame.token,
            )
        if not outgoing and payload:
            raise ProtocolError(
                f"{frame.command.name} does not send a data payload",
                command=frame.command.value, token=frame.token,
            )

        endpoints = self._port.endpoints
        data = b""
        status: StatusReply | None = None
        phase = Phase.COMMAND
        while phase is not Phase.DONE:
            if phase is Phase.COMMAND:
                logger.debug("OUT cmd: %r", frame)
                self._port.send(endpoints.out, frame.to_bytes(), self._timeout_ms)
                if not frame.transfer_length:
                    phase = Phase.STATUS
                elif frame.command.is_device_to_host:
                    phase = Phase.DATA_IN
                else:
                    phase = Phase.DATA_OUT

            elif phase is Phase.DATA_OUT:
                self._send_data(endpoints.out, payload)
                phase = Phase.STATUS

            elif phase is Phase.DATA_IN:
                data = self._recv_data(endpoints.in_, frame)
                phase = Phase.STATUS

            elif phase is Phase.STATUS:
                try:
                    raw = self._port.recv(endpoints.in_, STATUS_SIZE, self._timeout_ms)
                except TransportError as e:
                    if not allow_disconnect:
                        raise
                    logger.debug(
                        "No status for %s token=%d, device left the bus: %s",
                        frame.command.name, frame.token, e,
                    )
                    return ExchangeResult(frame=frame, status=None, data=data)
                status = self._check_status(frame, raw)
                phase = Phase.DONE

        return ExchangeResult(frame=frame, status=status, data=data)

    def _send_data(self, endpoint: int, payload: bytes) -> None:
        size = self.packet_size
        for offset in range(0, len(payload), size):
            self._port.send(endpoint, payload[offset : offset + size], self._timeout_ms)
        if len(payload) % size == 0:
            self._port.send(endpoint, b"", self._timeout_ms)
        logger.debug("OUT data: %d bytes", len(payload))

    def _recv_data(self, endpoint: int, frame: CommandFrame) -> bytes:
        size = self.packet_size
        expected = frame.transfer_length
        buf = bytearray()
        while len(buf) < expected:
            wanted = expected - len(buf)
            chunk = self._port.recv(endpoint, wanted, self._timeout_ms)
            if len(chunk) > wanted:
                raise ProtocolError(
                    f"Device sent {len(chunk)} bytes, only {wanted} expected",
                    command=frame.command.value, token=frame.token,
                )
            buf += chunk
            # A short packet ends the data phase
            if len(buf) < expected and (not chunk or len(chunk) % size):
                raise ShortReadError(
                    f"Data phase ended after {len(buf)} of {expected} bytes",
                    command=frame.command.value, token=frame.token,
                )
        logger.debug("IN data: %d bytes", len(buf))
        return bytes(buf)

    @staticmethod
    def _check_status(frame: CommandFrame, raw: bytes) -> StatusReply:
        reply = parse_status(raw)
        if reply.token != frame.token:
            raise DesyncError(
                f"Status token {reply.token} does not match",
                command=frame.command.value, token=frame.token,
            )
        if not reply.is_ok:
            raise DeviceError(
                reply.status,
                f"{frame.command.name} failed: {status_name(reply.status)}",
                command=frame.command.value, token=frame.token,
            )
        logger.debug("IN status: token=%d ok", reply.token)
        return reply
