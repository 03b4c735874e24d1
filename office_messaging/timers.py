"""Owned timers on the running asyncio loop.

A Timer wraps one background task that sleeps and then runs a callback,
once or repeatedly. Whoever creates a Timer owns it and must cancel it
before dropping or replacing the reference:

    self._heartbeat = Timer(30, self._send_ping, repeat=True)
    ...
    if self._heartbeat:
        self._heartbeat.cancel()
        self._heartbeat = None
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("office_messaging")


class Timer:
    """Run ``callback`` after ``delay`` seconds, or every ``delay`` seconds
    when ``repeat`` is set. The callback may be a plain function or a
    coroutine function. Must be created while an event loop is running."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Any],
        repeat: bool = False,
        name: Optional[str] = None,
    ):
        self.delay = max(0.0, float(delay))
        self.callback = callback
        self.repeat = repeat
        self.name = name or getattr(callback, "__name__", "timer")
        self._cancelled = False
        self._fired = 0
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"timer:{self.name}"
        )

    @property
    def active(self) -> bool:
        return not self._cancelled and not self._task.done()

    @property
    def fired(self) -> int:
        """How many times the callback has run."""
        return self._fired

    def cancel(self) -> None:
        """Stop the timer. Safe to call more than once, and from inside the
        callback itself (the running callback is allowed to finish)."""
        self._cancelled = True
        if self._task is asyncio.current_task():
            return
        if not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.delay)
            if self._cancelled:
                return
            self._fired += 1
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Timer {self.name} callback failed")
            if not self.repeat:
                return

    def __repr__(self) -> str:
        kind = "repeating" if self.repeat else "one-shot"
        state = "active" if self.active else "stopped"
        return f"<Timer {self.name} {kind} {self.delay}s {state}>"
