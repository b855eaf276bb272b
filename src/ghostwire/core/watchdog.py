"""
Worker-side liveness watchdog.

If the controller stops talking to the worker for longer than the timeout,
the worker assumes it was orphaned and shuts itself down.
"""

import asyncio
from typing import Callable, Optional

# Seconds without contact before the worker gives up on its controller.
ALIVE_TIMEOUT = 2.0
# Longer grace period while both sides are still starting up.
ALIVE_TIMEOUT_INIT = 5.0

# Exit status used when the watchdog fires ("abandoned by controller").
EXIT_ABANDONED = 2


class LivenessWatchdog:
    """
    Resettable one-shot timer on the running event loop.

    start() arms it with the startup grace period, touch() re-arms it with the
    steady-state timeout, disable() cancels it for good.
    """

    def __init__(
        self,
        on_expire: Callable[[], None],
        timeout: float = ALIVE_TIMEOUT,
        initial_timeout: float = ALIVE_TIMEOUT_INIT,
    ):
        if timeout <= 0 or initial_timeout <= 0:
            raise ValueError("Watchdog timeouts must be positive")
        self.on_expire = on_expire
        self.timeout = timeout
        self.initial_timeout = initial_timeout
        self.disabled = False
        self.expired = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._expires_at: Optional[float] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def expires_at(self) -> Optional[float]:
        """Loop time at which the watchdog fires, None when not armed."""
        return self._expires_at

    @property
    def armed(self) -> bool:
        return self._handle is not None and not self._handle.cancelled()

    def start(self):
        """Arm with the startup grace period. Must run inside the event loop."""
        self._loop = asyncio.get_running_loop()
        self._arm(self.initial_timeout)

    def touch(self):
        """Record contact from the controller."""
        if self.disabled or self.expired or self._loop is None:
            return
        self._arm(self.timeout)

    def disable(self):
        """Cancel permanently; used by an orderly exit."""
        self.disabled = True
        self._cancel()

    def _arm(self, delay: float):
        self._cancel()
        self._expires_at = self._loop.time() + delay
        self._handle = self._loop.call_later(delay, self._expire)

    def _cancel(self):
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._expires_at = None

    def _expire(self):
        self._handle = None
        self._expires_at = None
        if self.disabled:
            return
        self.expired = True
        self.on_expire()
