"""
Graceful Shutdown Handler

Turns SIGTERM/SIGINT into cancellation of the long-running discovery task
and runs cleanup handlers (closing the Redis pool) afterwards.
"""
import asyncio
import signal
from typing import Callable, List, Optional

from prometheus_sd.logging.logger import get_logger

logger = get_logger(__name__)


class GracefulShutdown:
    """Manages graceful shutdown of the discover subcommand"""

    def __init__(self):
        self.shutdown_handlers: List[Callable] = []
        self.is_shutting_down = False
        self._task: Optional[asyncio.Task] = None

    def register_handler(self, handler: Callable):
        """Register a cleanup handler, sync or async"""
        self.shutdown_handlers.append(handler)

    def request_shutdown(self, signame: str = "shutdown"):
        """Cancel the watched task once"""
        if self.is_shutting_down:
            return
        self.is_shutting_down = True
        logger.info("Initiating graceful shutdown", signal=signame)
        if self._task is not None:
            self._task.cancel()

    def setup_signal_handlers(self, task: asyncio.Task, loop=None):
        """Cancel `task` on SIGTERM or SIGINT"""
        self._task = task
        if loop is None:
            loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)

    async def shutdown(self):
        """Execute all cleanup handlers"""
        for handler in self.shutdown_handlers:
            try:
                logger.debug("Executing shutdown handler", handler=handler.__name__)
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                logger.error("Error in shutdown handler", handler=handler.__name__, error=str(e))

        logger.info("Graceful shutdown complete")
