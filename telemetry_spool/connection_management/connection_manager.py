"""Connection manager for network monitoring.

This module provides the reachability signal consumed by the upload
scheduler: a periodic probe of the intake host that emits events when the
connection state changes.
"""

import asyncio
import logging
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from telemetry_spool.event_emitter import Emitter, get_emitter

logger = logging.getLogger(__name__)


def probe_url_for(intake_url: str) -> str:
    """Return the root URL of the intake host."""
    parts = urlsplit(intake_url)
    return urlunsplit((parts.scheme, parts.netloc, "/", "", ""))


class ConnectionManager:
    """Manages network connectivity checks and emits connection state events.

    Runs a background task that periodically probes the intake host and emits
    IS_CONNECTED events when the connection state changes.
    """

    def __init__(
        self,
        client_session: aiohttp.ClientSession,
        url: str,
        timeout: float = 5.0,
        check_interval: float = 10.0,
    ) -> None:
        """Initialize the connection manager.

        Args:
            client_session: aiohttp ClientSession for making requests
            url: Intake URL whose host is probed
            timeout: Timeout in seconds for connectivity checks
            check_interval: Seconds between connectivity checks
        """
        self.client_session = client_session
        self._probe_url = probe_url_for(url)
        self._timeout = timeout
        self._check_interval = check_interval
        self._is_connected = False
        self._stopped = False
        self._connection_task: asyncio.Task | None = None

        self._emitter = get_emitter()

    async def start(self) -> None:
        """Probe once, then start the connectivity check loop."""
        self._stopped = False
        await self._update(await self._check_connectivity())
        self._connection_task = asyncio.create_task(self._check_loop())
        logger.info("ConnectionManager started (probing %s)", self._probe_url)

    async def stop(self) -> None:
        """Stop the connectivity check loop."""
        self._stopped = True
        if self._connection_task:
            self._connection_task.cancel()
            try:
                await self._connection_task
            except asyncio.CancelledError:
                pass
            self._connection_task = None
        logger.info("ConnectionManager stopped")

    async def _update(self, is_connected: bool) -> None:
        if is_connected != self._is_connected:
            self._is_connected = is_connected
            self._emitter.emit(Emitter.IS_CONNECTED, is_connected)
            logger.info("%s", "Connected" if is_connected else "Disconnected")

    async def _check_loop(self) -> None:
        """Periodically check connectivity and emit events on state change."""
        while not self._stopped:
            try:
                await asyncio.sleep(self._check_interval)
                await self._update(await self._check_connectivity())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in connectivity check loop: {e}", exc_info=True)

    async def _check_connectivity(self) -> bool:
        """Check if the intake host is reachable.

        Makes a HEAD request to the intake host. Any answer below 500 means
        the network path works.

        Returns:
            True if connected, False otherwise
        """
        try:
            async with self.client_session.head(
                self._probe_url,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                return response.status < 500

        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    def is_connected(self) -> bool:
        """Get current connection state.

        Returns:
            True if connected, False otherwise
        """
        return self._is_connected


class StaticConnection:
    """Reachability supplied by the host application instead of probed."""

    def __init__(self, connected: bool = True) -> None:
        """Initialise StaticConnection.

        Args:
            connected: Initial reachability.
        """
        self._is_connected = connected

    async def start(self) -> None:
        """Nothing to start."""

    async def stop(self) -> None:
        """Nothing to stop."""

    def set_connected(self, connected: bool) -> None:
        """Update reachability and notify listeners on change."""
        if connected == self._is_connected:
            return
        self._is_connected = connected
        get_emitter().emit(Emitter.IS_CONNECTED, connected)

    def is_connected(self) -> bool:
        """Get current connection state."""
        return self._is_connected
