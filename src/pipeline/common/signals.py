"""Signal handler setup for graceful worker shutdown."""

import asyncio
import logging
import signal
from collections.abc import Callable

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def setup_shutdown_signal_handlers(callback: Callable[[], None]) -> None:
    """Invoke ``callback`` once per SIGTERM/SIGINT.

    Uses the running loop's add_signal_handler() where available and falls
    back to signal.signal() on platforms without it (Windows).
    """
    loop = asyncio.get_event_loop()

    def _on_signal(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        callback()

    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, _on_signal, sig)
    except NotImplementedError:
        for sig in SHUTDOWN_SIGNALS:
            signal.signal(sig, lambda signum, frame: _on_signal(signal.Signals(signum)))
