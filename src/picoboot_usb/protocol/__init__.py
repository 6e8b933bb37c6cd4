"""Protocol layer: command ids, frame building/parsing, and status codes."""

from .commands import CommandId, ExclusiveLevel, InfoType, RebootType
from .framing import CommandFrame, StatusReply, TokenCounter, build_frame, parse_frame, parse_status
from .status import StatusCode, status_name
