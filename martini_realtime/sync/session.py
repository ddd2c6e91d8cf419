"""
Stream session: one live subscription to a project's event stream.

The session owns the byte buffer, the in-flight connection task and the
reconnect timer. All of them are touched only from the event loop that
called :meth:`StreamSession.update_target`, so observers reading
``is_connected``, ``last_event_name`` or ``last_error`` always see a whole
value.

Every connection attempt gets a generation number. Teardown bumps the
generation before anything else, and bytes tagged with an older generation
are dropped, so nothing from a torn-down stream reaches the router.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..config import RealtimeConfig
from ..exceptions import InvalidTargetError
from ..logging_utils import RealtimeLoggerAdapter
from .decoder import EventRecord, FrameDecoder
from .router import HANDSHAKE_EVENT, EventRouter
from .transport import AiohttpEventStreamTransport, EventStreamTransport

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle of a stream session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DISCONNECTING = "disconnecting"
    FAULTED = "faulted"


class StreamSession:
    """Keeps one event-stream subscription alive and routes its records.

    The subscription is keyed by ``(resource_id, credential)``. Changing the
    resource tears the old stream down; changing only the credential reuses
    it and the new value is sent on the next attempt.

    Example:
        >>> session = StreamSession(EventRouter(data_source))
        >>> session.update_target("project-1", token, active=True)
        >>> ...
        >>> session.update_target("project-1", token, active=False)
        >>> await session.close()
    """

    def __init__(
        self,
        router: EventRouter,
        config: RealtimeConfig | None = None,
        transport: EventStreamTransport | None = None,
        credential_provider: Callable[[], str | None] | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            router: Router receiving decoded records
            config: Endpoints and reconnect delay
            transport: Stream transport (aiohttp by default)
            credential_provider: Re-read on every connection attempt when given
        """
        self.router = router
        self.config = config or RealtimeConfig()
        self.transport = transport or AiohttpEventStreamTransport()
        self.credential_provider = credential_provider

        # Subscription
        self._resource_id: str | None = None
        self._credential: str | None = None
        self._active = False

        # Connection
        self._decoder = FrameDecoder()
        self._task: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._generation = 0
        self._state = SessionState.IDLE

        # Observable state
        self._is_connected = False
        self.last_event_name: str | None = None
        self.last_error: str | None = None
        self.connection_attempts = 0

        # Callbacks
        self.on_connected: Callable[[], None] | None = None
        self.on_disconnected: Callable[[], None] | None = None
        self.on_error: Callable[[Exception], None] | None = None

        self._log = RealtimeLoggerAdapter(logger, self._log_context)

    @property
    def is_connected(self) -> bool:
        """True once the server's handshake event has been received."""
        return self._is_connected

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def resource_id(self) -> str | None:
        return self._resource_id

    @property
    def generation(self) -> int:
        """Identifier of the current connection attempt."""
        return self._generation

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    # -------------------------------------------------------------------------
    # Public control
    # -------------------------------------------------------------------------

    def update_target(self, resource_id: str | None, credential: str | None, active: bool) -> None:
        """Point the session at a resource, or deactivate it.

        Must be called from the event loop. Teardown is synchronous: once
        this returns, no record from a previous stream will be routed.
        """
        self._credential = credential

        if not active or not resource_id:
            if self._active or self._task is not None or self._reconnect_handle is not None:
                self._log.info("Deactivating event stream")
            self._active = False
            self._teardown()
            self.router.discard_pending()
            return

        self._active = True

        if resource_id != self._resource_id:
            self._teardown()
            self._resource_id = resource_id
            self._log.info(f"Switching event stream to project {resource_id}")
            self.router.discard_pending()
            self.connect_if_needed()
        else:
            self.connect_if_needed()

    def connect_if_needed(self) -> bool:
        """Start a connection attempt unless one is already in flight.

        Returns:
            True if a new attempt was started
        """
        if not self._active or self._task is not None or not self._resource_id:
            return False

        try:
            url = self.config.realtime_url(self._resource_id)
        except InvalidTargetError as e:
            self.last_error = e.message
            self._log.error(f"{e.message}; retrying in {self.config.reconnect_delay}s")
            self._notify_error(e)
            self._schedule_reconnect()
            return False

        self._generation += 1
        self._set_state(SessionState.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(
            self._run_connection(url, self._generation)
        )
        return True

    def feed(self, chunk: bytes, generation: int) -> int:
        """Append bytes from connection ``generation`` and route completed records.

        Bytes from a superseded generation are dropped.

        Returns:
            Number of records routed
        """
        if generation != self._generation:
            self._log.debug(f"Dropping {len(chunk)} bytes from stale stream #{generation}")
            return 0

        routed = 0
        for record in self._decoder.feed(chunk):
            if generation != self._generation:
                break
            self._dispatch(record)
            routed += 1
        return routed

    async def close(self) -> None:
        """Deactivate and release the transport and router worker."""
        self._active = False
        self._teardown()
        await self.transport.close()
        await self.router.close()

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        credential = self.credential_provider() if self.credential_provider else self._credential
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    async def _run_connection(self, url: str, generation: int) -> None:
        self.connection_attempts += 1
        self._log.info(f"Connecting to event stream (attempt {self.connection_attempts})")

        error: Exception | None = None
        try:
            async with self.transport.open(url, self._headers()) as chunks:
                if generation == self._generation:
                    self._set_state(SessionState.STREAMING)
                async for chunk in chunks:
                    self.feed(chunk, generation)
            self._log.info("Event stream closed by server")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            self._log.warning(f"Event stream failed: {e}")

        self._connection_lost(generation, error)

    def _connection_lost(self, generation: int, error: Exception | None) -> None:
        if generation != self._generation:
            return

        self._task = None
        self._decoder.reset()
        was_connected = self._is_connected
        self._is_connected = False

        if error is not None:
            self.last_error = str(error)
            self._set_state(SessionState.FAULTED)
            self._notify_error(error)
        self._set_state(SessionState.IDLE)

        if was_connected:
            self._call_observer(self.on_disconnected)

        if self._active:
            self._schedule_reconnect()

    def _teardown(self) -> None:
        self._cancel_reconnect()
        self._generation += 1

        if self._task is not None:
            self._set_state(SessionState.DISCONNECTING)
            self._task.cancel()
            self._task = None

        self._decoder.reset()
        was_connected = self._is_connected
        self._is_connected = False
        self._set_state(SessionState.IDLE)

        if was_connected:
            self._call_observer(self.on_disconnected)

    def _schedule_reconnect(self) -> bool:
        """Arm the reconnect timer; a no-op while one is pending."""
        if self._reconnect_handle is not None:
            return False

        self._log.info(f"Reconnecting in {self.config.reconnect_delay}s")
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            self.config.reconnect_delay, self._on_reconnect_timer
        )
        return True

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        self.connect_if_needed()

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def _dispatch(self, record: EventRecord) -> None:
        self.last_event_name = record.name

        if record.name == HANDSHAKE_EVENT:
            if not self._is_connected:
                self._is_connected = True
                self._set_state(SessionState.STREAMING)
                self._log.info("Event stream live")
                self._call_observer(self.on_connected)
            return

        self._log.debug(f"Event received: {record.data}", extra={"event_name": record.name})
        self.router.route(record)

    def _log_context(self) -> dict[str, Any]:
        return {"project_id": self._resource_id, "generation": self._generation}

    def _set_state(self, state: SessionState) -> None:
        if state != self._state:
            self._log.debug(f"Session state {self._state.value} -> {state.value}")
            self._state = state

    def _notify_error(self, error: Exception) -> None:
        self._call_observer(self.on_error, error)

    def _call_observer(self, callback: Callable[..., None] | None, *args: Any) -> None:
        # Observer failures must not stop the reconnect cycle
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            self._log.exception(f"Session observer {callback!r} failed")
