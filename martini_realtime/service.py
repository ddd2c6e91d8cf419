"""
Realtime service: the stream session and health monitor behind one switch.

The application calls :meth:`RealtimeService.update_connection` whenever the
signed-in state or the selected project changes; the service decides whether
the stream and the probes should run.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from .config import RealtimeConfig
from .health.monitor import ConnectionHealthMonitor, ConnectionStatus
from .models import ProjectDataSource
from .sync.router import EventRouter
from .sync.session import StreamSession
from .sync.transport import EventStreamTransport

logger = logging.getLogger(__name__)


class RealtimeService:
    """Owns one stream session and one connection health monitor.

    Example:
        >>> async with RealtimeService(data_source) as realtime:
        ...     realtime.update_connection(project_id="p-1", is_authenticated=True)
        ...     ...
    """

    def __init__(
        self,
        data_source: ProjectDataSource,
        config: RealtimeConfig | None = None,
        transport: EventStreamTransport | None = None,
        probe: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.data_source = data_source
        self.config = config or RealtimeConfig()

        self.router = EventRouter(data_source)
        self.session = StreamSession(
            self.router,
            config=self.config,
            transport=transport,
            credential_provider=data_source.current_credential,
        )
        self.monitor = ConnectionHealthMonitor(config=self.config, probe=probe)

        # Stream failures caused by the network count as hard failures
        self.session.on_error = self.monitor.report_failure

    @property
    def is_connected(self) -> bool:
        return self.session.is_connected

    @property
    def status(self) -> ConnectionStatus:
        return self.monitor.status

    def update_connection(self, project_id: str | None, is_authenticated: bool) -> None:
        """Sync the stream and probes with the sign-in state and selected project."""
        credential = self.data_source.current_credential() if is_authenticated else None
        active = is_authenticated and bool(project_id)
        self.session.update_target(project_id, credential, active)
        self.monitor.update_connection(is_authenticated)

    async def close(self) -> None:
        await self.session.close()
        await self.monitor.close()
        logger.info("Realtime service stopped")

    async def __aenter__(self) -> RealtimeService:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()
