"""Event loop manager for the spool's background loop.

The spool runs all of its disk and network I/O on one asyncio loop hosted in a
dedicated thread, so that instrumentation call sites in any thread never run
pipeline code themselves.
"""

import asyncio
import logging
import threading
from collections.abc import Coroutine
from concurrent.futures import Future
from typing import Any

from telemetry_spool.event_emitter import init_emitter, reset_emitter

logger = logging.getLogger(__name__)


class EventLoopManager:
    """Manages the spool event loop in a dedicated thread."""

    def __init__(self) -> None:
        """Initialize the event loop manager."""
        self.loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._shutdown: threading.Event = threading.Event()
        self._ready: threading.Event = threading.Event()
        self._started = False

    def start(self) -> None:
        """Start the event loop in its thread.

        Raises:
            RuntimeError: If already started or if the loop fails to start.
        """
        if self._started:
            raise RuntimeError("EventLoopManager already started")

        logger.info("Starting EventLoopManager...")

        self._shutdown.clear()
        self._ready.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="telemetry-spool-loop",
            daemon=True,
        )
        self._thread.start()

        if not self._ready.wait(timeout=5.0):
            raise RuntimeError("Spool event loop failed to start within timeout")

        if self.loop:
            init_emitter(loop=self.loop)

        self._started = True
        logger.info("EventLoopManager started successfully")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the event loop gracefully.

        Args:
            timeout: Maximum time to wait for the loop thread to stop.

        Raises:
            RuntimeError: If not started.
        """
        if not self._started:
            raise RuntimeError("EventLoopManager not started")

        logger.info("Stopping EventLoopManager...")
        self._shutdown.set()

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Spool loop thread did not stop within timeout")

        reset_emitter()
        self._started = False
        logger.info("EventLoopManager stopped")

    def schedule(self, coroutine: Coroutine[Any, Any, Any]) -> Future[Any]:
        """Schedule a coroutine to run on the spool loop from any thread.

        Args:
            coroutine: Coroutine to execute on the spool loop.

        Returns:
            Future that will be completed when the coroutine finishes.

        Raises:
            RuntimeError: If the loop is not running.
        """
        if not self.loop:
            coroutine.close()
            raise RuntimeError("Spool loop not running")

        return asyncio.run_coroutine_threadsafe(coroutine, self.loop)

    def in_loop_thread(self) -> bool:
        """Return True when called from the spool loop thread."""
        return self._thread is not None and threading.current_thread() is self._thread

    def _run_loop(self) -> None:
        """Run the spool event loop in its dedicated thread."""
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            self.loop = loop

            logger.info("Spool event loop started")
            self._ready.set()

            async def monitor_shutdown() -> None:
                while not self._shutdown.is_set():
                    await asyncio.sleep(0.1)
                loop.stop()

            loop.create_task(monitor_shutdown())

            loop.run_forever()

            logger.info("Spool event loop shutting down")

        except Exception as e:
            logger.error(f"Error in spool event loop: {e}", exc_info=True)
            raise

        finally:
            try:
                tasks = [task for task in asyncio.all_tasks(loop) if not task.done()]
                for task in tasks:
                    task.cancel()
                if tasks:
                    loop.run_until_complete(
                        asyncio.gather(*tasks, return_exceptions=True)
                    )
            except Exception as e:
                logger.warning(f"Error cancelling tasks: {e}")

            if not loop.is_closed():
                loop.close()
            self.loop = None
            logger.info("Spool event loop stopped")

    def is_running(self) -> bool:
        """Check if the event loop is running.

        Returns:
            True if the loop is running, False otherwise.
        """
        return self._started and self.loop is not None and self.loop.is_running()
