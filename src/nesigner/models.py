"""Models for nesigner sessions and operation results."""

from dataclasses import dataclass
from typing import Optional

from .types import (
    MAX_PAYLOAD_SIZE,
    DEFAULT_READ_CHUNK_SIZE,
    MsgResult,
)


@dataclass
class NesignerConfig:
    """Configuration for a device session."""

    max_payload_size: int = MAX_PAYLOAD_SIZE
    """Largest payload length accepted from the device before the stream is abandoned."""

    read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE
    """Bytes requested per read by StreamTransport.open_connection."""

    request_timeout: Optional[float] = None
    """Seconds to wait for a response (None waits indefinitely)."""

    fail_pending_on_close: bool = True
    """Fail in-flight requests with TransportClosedError when the session ends.

    When False, requests still waiting at shutdown are never resolved.
    """


@dataclass
class DeviceResult:
    """Outcome of a device operation.

    Non-OK result codes are normal outcomes, not exceptions. ``value`` is only
    set when the device answered OK.
    """
    code: int
    value: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == MsgResult.OK

    @property
    def result(self) -> Optional[MsgResult]:
        """The code as a MsgResult, or None for codes this client does not know."""
        try:
            return MsgResult(self.code)
        except ValueError:
            return None
