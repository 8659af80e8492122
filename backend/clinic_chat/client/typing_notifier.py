import asyncio
from typing import Awaitable, Callable, Optional


class TypingNotifier:
    """Client-side debounce for typing signals.

    The first keystroke sends ``True``; ``False`` is sent once no keystroke
    arrived for ``idle_seconds`` (or on ``stop``). Repeated keystrokes in
    between send nothing.
    """

    def __init__(self, send: Callable[[bool], Awaitable[None]], idle_seconds: float = 3.0) -> None:
        self._send = send
        self.idle_seconds = idle_seconds
        self.is_typing = False
        self._timer: Optional[asyncio.Task] = None

    async def keystroke(self) -> None:
        if not self.is_typing:
            self.is_typing = True
            await self._send(True)
        self._restart_timer()

    async def stop(self) -> None:
        self._cancel_timer()
        await self._set_idle()

    def _restart_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._expire())

    def _cancel_timer(self) -> None:
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None

    async def _expire(self) -> None:
        await asyncio.sleep(self.idle_seconds)
        self._timer = None
        await self._set_idle()

    async def _set_idle(self) -> None:
        if self.is_typing:
            self.is_typing = False
            await self._send(False)
