"""Recovery after protocol desynchronization.

A stalled endpoint, a bad status reply or a timeout leaves the device at an
unknown point in its command/data/status sequence. The fix is the vendor
interface-reset control request, which bypasses the bulk pipes. After a
fault the session is flagged and the reset runs before the next command
touches the bulk endpoints. READ and GET_INFO are reset and retried once
on the spot; every other command is reported to the caller, since resending
a non-idempotent command (EXEC, WRITE) could apply it twice.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from .errors import (
    DesyncError,
    DeviceGoneError,
    RecoverableProtocolError,
    ShortReadError,
    StallError,
    TransferTimeoutError,
)
from .protocol.commands import IDEMPOTENT_COMMANDS, CommandId
from .session import Session
from .transport.port import TransportPort, interface_reset_request

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Faults after which the device's phase position is unknown
DESYNC_FAULTS = (StallError, TransferTimeoutError, DesyncError)


class RecoveryHandler:
    """Wraps exchanges with reset-and-report handling for one session."""

    def __init__(
        self,
        port: TransportPort,
        session: Session,
        control_timeout_ms: int,
        retry_idempotent: bool = True,
    ) -> None:
        self._port = port
        self._session = session
        self._control_timeout_ms = control_timeout_ms
        self._retry_idempotent = retry_idempotent
        self.reset_count = 0

    def reset(self) -> None:
        """Issue the interface reset and clear in-flight expectations.

        Raises:
            TransportError: If the control request fails; the session stays
                flagged so the next command tries again.
            DeviceGoneError: The device left the bus; the session is
                DISCONNECTED.
        """
        self._session.needs_reset = True
        self._session.pending_token = None
        logger.warning("Resetting PICOBOOT interface %d", self._port.interface)
        try:
            self._port.control(
                interface_reset_request(self._port.interface), self._control_timeout_ms
            )
        except DeviceGoneError:
            self._session.mark_disconnected("device left the bus")
            raise
        self._session.needs_reset = False
        self.reset_count += 1

    def ensure_synced(self) -> None:
        """Run a pending reset before any new traffic."""
        if self._session.needs_reset:
            self.reset()

    def run(
        self,
        command: CommandId,
        attempt: Callable[[], T],
        *,
        address: int | None = None,
        length: int | None = None,
    ) -> T:
        """Run ``attempt`` with recovery.

        Args:
            command: The command being exchanged (decides retry policy).
            attempt: Performs one full exchange; called at most twice.
            address: Memory address for error context.
            length: Memory length for error context.
        """
        retries = 1 if self._retry_idempotent and command in IDEMPOTENT_COMMANDS else 0
        while True:
            self.ensure_synced()
            token = self._session.tokens.peek
            try:
                result = attempt()
            except DeviceGoneError:
                self._session.mark_disconnected("device left the bus")
                raise
            except ShortReadError:
                self._flag_fault()
                raise
            except DESYNC_FAULTS as e:
                self._flag_fault()
                if retries:
                    retries -= 1
                    logger.warning("%s failed (%s); resetting and retrying", command.name, e)
                    continue
                raise RecoverableProtocolError(
                    f"{command.name} aborted by {type(e).__name__}: {e}; "
                    "interface reset pending",
                    command=command.value,
                    token=getattr(e, "token", None) or token,
                    address=address,
                    length=length,
                ) from e
            finally:
                self._session.finish()
            return result

    def _flag_fault(self) -> None:
        self._session.needs_reset = True
        self._session.pending_token = None
