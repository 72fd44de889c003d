"""Pod I/O loop thread.

When the Textual console owns the main thread, the transport read loop, the
gateway commands and the optional web server share one asyncio loop running
here. The console hands coroutines over with submit()/submit_async().
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class IoThread:
    """Daemon thread hosting the gateway's event loop.

    Usable as a context manager::

        with IoThread() as io:
            io.submit(gateway.connect()).result()
    """

    def __init__(self, name: str = "pod-io"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "IoThread":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    def start(self):
        """Start the thread; returns once the loop accepts work."""
        if self._thread is not None:
            return
        loop = asyncio.new_event_loop()
        loop.set_exception_handler(self._on_loop_error)
        started = threading.Event()
        loop.call_soon(started.set)

        self._loop = loop
        self._thread = threading.Thread(
            target=self._serve, args=(loop,), daemon=True, name=self.name)
        self._thread.start()
        started.wait()
        logger.debug("%s loop running", self.name)

    def submit(self, coro) -> concurrent.futures.Future:
        if self._loop is None:
            raise RuntimeError(f"{self.name} is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    async def submit_async(self, coro, shield: bool = False):
        """Await ``coro`` on the I/O loop from another event loop.

        With ``shield=True`` cancelling the caller leaves the submitted
        coroutine running to completion on the I/O loop.
        """
        waiter = asyncio.wrap_future(self.submit(coro))
        if shield:
            return await asyncio.shield(waiter)
        return await waiter

    def stop(self, timeout: float = 5.0):
        """Cancel outstanding tasks, stop the loop and join the thread."""
        loop, thread = self._loop, self._thread
        self._loop = None
        self._thread = None
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("%s did not stop within %.1fs", self.name, timeout)

    def _serve(self, loop: asyncio.AbstractEventLoop):
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            loop.close()

    def _on_loop_error(self, loop, context):
        exc = context.get("exception")
        logger.error("%s: %s", self.name, context.get("message", "unhandled error"),
                     exc_info=exc)
