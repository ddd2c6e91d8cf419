"""
Martini Realtime

Real-time synchronization core for Martini projects.

Provides:
- Incremental Server-Sent Events decoding across arbitrary chunk boundaries
- Event routing to frame/creative/schedule refetches, with in-place patches
  where the payload allows
- A self-healing stream session keyed by project and credential
- A connection health monitor (online / unstable / offline / back online)

Usage:

    >>> from martini_realtime import RealtimeService, RealtimeConfig
    >>> async with RealtimeService(data_source, RealtimeConfig.from_env()) as realtime:
    ...     realtime.update_connection(project_id="p-1", is_authenticated=True)
    ...     realtime.monitor.on_status_change = render_banner

``data_source`` is any object implementing :class:`ProjectDataSource`.
"""

from .config import RealtimeConfig
from .exceptions import (
    ConfigurationError,
    InvalidTargetError,
    RealtimeError,
    RecordDecodeError,
    StreamConnectionError,
)
from .health import ConnectionHealthMonitor, ConnectionStatus, is_connectivity_error
from .logging_utils import configure_structured_logging
from .models import Frame, FrameStatus, ProjectDataSource
from .service import RealtimeService
from .sync import (
    EVENT_DISPATCH_TABLE,
    EventRecord,
    EventRouter,
    FrameDecoder,
    ReconciliationAction,
    SessionState,
    StreamSession,
)

__all__ = [
    # Service
    "RealtimeService",
    "RealtimeConfig",
    # Sync
    "EventRecord",
    "FrameDecoder",
    "EventRouter",
    "EVENT_DISPATCH_TABLE",
    "ReconciliationAction",
    "StreamSession",
    "SessionState",
    # Health
    "ConnectionHealthMonitor",
    "ConnectionStatus",
    "is_connectivity_error",
    # Models
    "Frame",
    "FrameStatus",
    "ProjectDataSource",
    # Logging
    "configure_structured_logging",
    # Exceptions
    "RealtimeError",
    "InvalidTargetError",
    "StreamConnectionError",
    "RecordDecodeError",
    "ConfigurationError",
]

__version__ = "0.1.0"
