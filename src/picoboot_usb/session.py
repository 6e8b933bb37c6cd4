"""Session state machine for one PICOBOOT connection.

States::

    CONNECTED --bind--> IDLE <--release/claim--> EXCLUSIVE_KEEP_MEDIA
                                                 EXCLUSIVE_EJECT
    any --reboot acknowledged / transport lost--> DISCONNECTED (terminal)

The session owns the token counter and the per-connection error flags; it
never talks to the device itself.
"""

from __future__ import annotations

import logging
from enum import Enum

from .errors import NotPermittedError, SessionDisconnectedError
from .protocol.commands import MUTATING_COMMANDS, CommandId, ExclusiveLevel
from .protocol.framing import TokenCounter

logger = logging.getLogger(__name__)


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    IDLE = "idle"
    EXCLUSIVE_KEEP_MEDIA = "exclusive"
    EXCLUSIVE_EJECT = "exclusive-eject"


_LEVEL_STATES = {
    ExclusiveLevel.NOT_EXCLUSIVE: SessionState.IDLE,
    ExclusiveLevel.EXCLUSIVE: SessionState.EXCLUSIVE_KEEP_MEDIA,
    ExclusiveLevel.EXCLUSIVE_AND_EJECT: SessionState.EXCLUSIVE_EJECT,
}


class Session:
    """Per-connection protocol state.

    Attributes:
        tokens: Token source for outgoing frames.
        pending_token: Token of the command in flight, if any.
        needs_reset: An interface reset must run before the next command.
        in_cmd_xip: This session entered command XIP mode and has not left.
    """

    def __init__(self, token_start: int = 1) -> None:
        self._state = SessionState.CONNECTED
        self.tokens = TokenCounter(token_start)
        self.pending_token: int | None = None
        self.needs_reset = False
        self.in_cmd_xip = False
        self.disconnect_reason = ""

    def __repr__(self) -> str:
        return (
            f"Session(state={self._state.name}, next_token={self.tokens.peek}, "
            f"needs_reset={self.needs_reset})"
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is not SessionState.DISCONNECTED

    @property
    def is_exclusive(self) -> bool:
        return self._state in (
            SessionState.EXCLUSIVE_KEEP_MEDIA,
            SessionState.EXCLUSIVE_EJECT,
        )

    @property
    def exclusive_level(self) -> ExclusiveLevel:
        for level, state in _LEVEL_STATES.items():
            if state is self._state:
                return level
        return ExclusiveLevel.NOT_EXCLUSIVE

    def bind(self) -> None:
        """Enter IDLE once a port is bound."""
        if self._state is not SessionState.CONNECTED:
            raise SessionDisconnectedError(f"Cannot bind a session in state {self._state.name}")
        self._state = SessionState.IDLE

    def ensure_connected(self, command: CommandId | None = None) -> None:
        if not self.is_connected:
            raise SessionDisconnectedError(
                f"Session is disconnected ({self.disconnect_reason or 'closed'}); "
                "reopen the device",
                command=None if command is None else command.value,
            )

    def check_permitted(self, command: CommandId) -> None:
        """Fail fast if ``command`` is not allowed in the current state.

        Raises:
            SessionDisconnectedError: The session has ended.
            NotPermittedError: A mutating command without exclusive access.
        """
        self.ensure_connected(command)
        if command in MUTATING_COMMANDS and not self.is_exclusive:
            raise NotPermittedError(
                f"{command.name} requires exclusive access; call claim() first",
                command=command.value,
            )

    def begin(self) -> int:
        """Issue the token for a new command."""
        token = self.tokens.next()
        self.pending_token = token
        return token

    def finish(self) -> None:
        self.pending_token = None

    def apply_exclusive(self, level: ExclusiveLevel) -> None:
        """Record an acknowledged EXCLUSIVE_ACCESS."""
        self.ensure_connected(CommandId.EXCLUSIVE_ACCESS)
        new_state = _LEVEL_STATES[ExclusiveLevel(level)]
        logger.debug("Session %s -> %s", self._state.name, new_state.name)
        self._state = new_state

    def apply_xip(self, command: CommandId) -> None:
        """Track command-XIP entry/exit done through this session."""
        if command is CommandId.ENTER_CMD_XIP:
            self.in_cmd_xip = True
        elif command is CommandId.EXIT_XIP:
            self.in_cmd_xip = False

    def mark_disconnected(self, reason: str) -> None:
        """Move to the terminal DISCONNECTED state."""
        if self._state is SessionState.DISCONNECTED:
            return
        logger.info("Session disconnected: %s", reason)
        self._state = SessionState.DISCONNECTED
        self.disconnect_reason = reason
        self.pending_token = None
        self.needs_reset = False
        self.in_cmd_xip = False
