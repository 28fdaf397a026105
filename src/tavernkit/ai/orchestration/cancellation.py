"""Cooperative cancellation for generation runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

from ...errors import GenerationCancelledError

__all__ = ["CancellationToken"]

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """Flag checked by the pipeline at every awaited chunk and tool pass.

    Callbacks registered with :meth:`on_cancel` run once, synchronously, when
    :meth:`cancel` is first called; they are how the transport request gets
    aborted.
    """

    __slots__ = ("_event", "_reason", "_callbacks")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        LOGGER.debug("Cancellation requested%s", f": {reason}" if reason else "")
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancellation callback %r failed", callback)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelledError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()
