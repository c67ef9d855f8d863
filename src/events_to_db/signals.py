"""Cross-platform signal handler setup for graceful shutdown."""

import asyncio
import logging
import signal

logger = logging.getLogger(__name__)


def setup_shutdown_signal_handlers(
    shutdown_event: asyncio.Event,
    loop: asyncio.AbstractEventLoop | None = None,
) -> None:
    """Register SIGTERM/SIGINT handlers for graceful shutdown.

    First signal: sets shutdown_event; the relay flushes the current batch
    and waits for outstanding writes.
    Second signal: cancels every task on the loop.

    On Unix, uses the event loop's add_signal_handler(). On Windows,
    falls back to signal.signal() since add_signal_handler() is not supported.
    """
    loop = loop or asyncio.get_event_loop()

    def handle_signal(sig_name: str) -> None:
        if shutdown_event.is_set():
            logger.warning(f"Received {sig_name} again, forcing immediate shutdown")
            for task in asyncio.all_tasks(loop):
                task.cancel()
            return

        logger.info(f"Received {sig_name}, initiating graceful shutdown")
        shutdown_event.set()

    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal, sig.name)
    except NotImplementedError:
        def _handler(signum, frame):
            loop.call_soon_threadsafe(handle_signal, signal.Signals(signum).name)

        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)
