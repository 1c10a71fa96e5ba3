"""Async cancellation primitive shared by the executor, the runner and the CLI."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``.

    ``cancel`` may be called from a signal handler running on the loop thread.
    The first reason given is kept.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


__all__ = ["CancellationToken"]
