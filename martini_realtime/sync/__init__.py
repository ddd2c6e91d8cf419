"""
Real-time sync module.

Decodes the project's Server-Sent Events stream and reconciles the local
frame list through the data source's fetch operations.
"""

from .decoder import EventRecord, FrameDecoder, extract, parse_record
from .router import (
    EVENT_DISPATCH_TABLE,
    HANDSHAKE_EVENT,
    AspectRatioPatch,
    EventRouter,
    FramePatch,
    ReconciliationAction,
    RoutePlan,
    actions_for,
)
from .session import SessionState, StreamSession
from .transport import AiohttpEventStreamTransport, EventStreamTransport

__all__ = [
    "EventRecord",
    "FrameDecoder",
    "extract",
    "parse_record",
    "EVENT_DISPATCH_TABLE",
    "HANDSHAKE_EVENT",
    "AspectRatioPatch",
    "EventRouter",
    "FramePatch",
    "ReconciliationAction",
    "RoutePlan",
    "actions_for",
    "SessionState",
    "StreamSession",
    "AiohttpEventStreamTransport",
    "EventStreamTransport",
]
