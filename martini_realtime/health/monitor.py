"""
Connection health monitor.

Periodically probes a cheap endpoint and classifies the network for the UI:

- ONLINE: probes succeed
- UNSTABLE: the last probe failed
- OFFLINE: two or more consecutive failures, or a caller saw a hard
  connectivity error
- BACK_ONLINE: a probe succeeded after UNSTABLE/OFFLINE; reverts to ONLINE
  after a grace window unless another failure arrives first

The monitor runs independently of the stream session: a live stream and a
failing probe (or the reverse) are both possible.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Awaitable, Callable
from enum import Enum

import aiohttp

from ..config import RealtimeConfig
from ..exceptions import StreamConnectionError

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Network quality as shown to the user."""

    ONLINE = "online"
    UNSTABLE = "unstable"
    OFFLINE = "offline"
    BACK_ONLINE = "back_online"


_CONNECTIVITY_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectorError,
    aiohttp.ServerTimeoutError,
    aiohttp.ServerDisconnectedError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    socket.gaierror,
)


def is_connectivity_error(exc: BaseException) -> bool:
    """True for errors that mean "no network" rather than "bad request".

    No route to host, DNS failure, refused or dropped connections and
    timeouts qualify; HTTP status errors do not.
    """
    if isinstance(exc, StreamConnectionError):
        return exc.cause is not None and is_connectivity_error(exc.cause)
    return isinstance(exc, _CONNECTIVITY_ERRORS)


class ConnectionHealthMonitor:
    """Probe loop plus the ONLINE/UNSTABLE/OFFLINE/BACK_ONLINE state machine.

    Example:
        >>> monitor = ConnectionHealthMonitor(config=RealtimeConfig())
        >>> monitor.on_status_change = lambda status: print(status.value)
        >>> monitor.start()
        >>> ...
        >>> monitor.stop()  # back to ONLINE
    """

    def __init__(
        self,
        ping_url: str | None = None,
        config: RealtimeConfig | None = None,
        probe: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            ping_url: Endpoint to probe (defaults to ``config.ping_url``)
            config: Interval, timeout and grace window
            probe: Coroutine function replacing the HTTP probe; it should
                raise on failure
        """
        self.config = config or RealtimeConfig()
        self.ping_url = ping_url or self.config.ping_url
        self._probe = probe or self._http_probe

        self._status = ConnectionStatus.ONLINE
        self._consecutive_failures = 0
        self._ping_task: asyncio.Task[None] | None = None
        self._revert_handle: asyncio.TimerHandle | None = None
        self._http: aiohttp.ClientSession | None = None

        self.on_status_change: Callable[[ConnectionStatus], None] | None = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_offline(self) -> bool:
        return self._status == ConnectionStatus.OFFLINE

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def is_running(self) -> bool:
        return self._ping_task is not None

    @property
    def revert_pending(self) -> bool:
        return self._revert_handle is not None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def update_connection(self, is_authenticated: bool) -> None:
        """Probe only while a user is signed in."""
        if is_authenticated:
            self.start()
        else:
            self.stop()

    def start(self) -> None:
        """Start the probe loop; a no-op if it is already running."""
        if self._ping_task is not None:
            return
        logger.info(f"Starting connection probes against {self.ping_url}")
        self._ping_task = asyncio.get_running_loop().create_task(self._ping_loop())

    def stop(self) -> None:
        """Stop probing, cancel the revert timer and reset to ONLINE."""
        if self._ping_task is not None:
            self._ping_task.cancel()
            self._ping_task = None
            logger.info("Stopped connection probes")
        self._cancel_revert()
        self._consecutive_failures = 0
        self._set_status(ConnectionStatus.ONLINE)

    async def close(self) -> None:
        """Stop and release the HTTP session."""
        self.stop()
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def _ping_loop(self) -> None:
        while True:
            await self.probe_once()
            await asyncio.sleep(self.config.ping_interval)

    async def probe_once(self) -> bool:
        """Run a single probe and record its outcome.

        Returns:
            True if the probe succeeded
        """
        try:
            await asyncio.wait_for(self._probe(), timeout=self.config.ping_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Probe failed: {e!r}")
            self.record_failure()
            return False

        self.record_success()
        return True

    async def _http_probe(self) -> None:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.ping_timeout)
            )
        async with self._http.get(self.ping_url) as response:
            await response.read()

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def record_success(self) -> None:
        """Register a successful probe or any other successful request."""
        self._consecutive_failures = 0
        if self._status in (ConnectionStatus.UNSTABLE, ConnectionStatus.OFFLINE):
            self._show_back_online()

    def record_failure(self) -> None:
        """Register a failed probe."""
        self._consecutive_failures += 1
        if self._consecutive_failures == 1:
            self._set_status(ConnectionStatus.UNSTABLE)
        else:
            self._set_status(ConnectionStatus.OFFLINE)

    def report_hard_failure(self) -> None:
        """Force OFFLINE after a caller observed a connectivity error."""
        self._consecutive_failures = 2
        self._set_status(ConnectionStatus.OFFLINE)

    def report_failure(self, error: BaseException) -> bool:
        """Forward ``error`` as a hard failure if it is connectivity-related.

        Returns:
            True if the error was treated as a hard failure
        """
        if not is_connectivity_error(error):
            return False
        self.report_hard_failure()
        return True

    def _show_back_online(self) -> None:
        self._set_status(ConnectionStatus.BACK_ONLINE)
        self._revert_handle = asyncio.get_running_loop().call_later(
            self.config.back_online_delay, self._revert_to_online
        )

    def _revert_to_online(self) -> None:
        self._revert_handle = None
        self._set_status(ConnectionStatus.ONLINE)

    def _cancel_revert(self) -> None:
        if self._revert_handle is not None:
            self._revert_handle.cancel()
            self._revert_handle = None

    def _set_status(self, status: ConnectionStatus) -> None:
        # Any transition invalidates a pending revert
        self._cancel_revert()
        if status == self._status:
            return

        previous = self._status
        self._status = status
        context = {"connection_status": status.value}
        if status in (ConnectionStatus.UNSTABLE, ConnectionStatus.OFFLINE):
            logger.warning(
                f"Connection {previous.value} -> {status.value} "
                f"({self._consecutive_failures} consecutive failures)",
                extra=context,
            )
        else:
            logger.info(f"Connection {previous.value} -> {status.value}", extra=context)

        if self.on_status_change is None:
            return
        try:
            self.on_status_change(status)
        except Exception:
            logger.exception(f"Status observer failed on {status.value}")
