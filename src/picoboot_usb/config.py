"""Runtime settings for a PICOBOOT connection."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_TIMEOUT_MS = 3000
DEFAULT_CONTROL_TIMEOUT_MS = 1000
DEFAULT_MAX_WRITE_CHUNK = 0x1000


@dataclass(frozen=True)
class PicobootConfig:
    """Per-connection settings.

    Attributes:
        timeout_ms: Timeout for each bulk transfer.
        control_timeout_ms: Timeout for control requests (reset, status).
        max_write_chunk: Upper bound on bytes per WRITE command.
        retry_idempotent: Retry READ/GET_INFO once after an interface reset.
    """

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    control_timeout_ms: int = DEFAULT_CONTROL_TIMEOUT_MS
    max_write_chunk: int = DEFAULT_MAX_WRITE_CHUNK
    retry_idempotent: bool = True

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.control_timeout_ms <= 0:
            raise ValueError(
                f"control_timeout_ms must be positive, got {self.control_timeout_ms}"
            )
        if self.max_write_chunk <= 0:
            raise ValueError(
                f"max_write_chunk must be positive, got {self.max_write_chunk}"
            )
