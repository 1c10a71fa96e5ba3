"""In-process event bus for pipeline lifecycle events, with replay."""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import deque
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass
from typing import Any, Final, cast

from stageflow.domain.events import EventType, JSONValue, PipelineEvent

Subscriber = Callable[[PipelineEvent], object]

_DEFAULT_ERROR_BUFFER: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting the publisher."""

    event_id: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: EventType | None
    callback: Subscriber


class EventBus:
    """Event bus with sync and async subscribers and bounded replay.

    Subscribers never affect the publisher: exceptions are recorded as
    :class:`DispatchError` and returned from ``publish``.
    """

    def __init__(self, *, buffer_size: int = 2048) -> None:
        if not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self._buffer = deque[PipelineEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._pending_async_tasks: set[asyncio.Task[None]] = set()
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Subscribe to one event type, or to all events when ``event_type`` is ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = None if event_type is None else _as_event_type(event_type)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(token, normalized, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def publish(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        """Publish from synchronous code; async subscribers are scheduled as tasks."""

        subscriptions = self._record(event)
        running_loop = _current_running_loop()
        errors: list[DispatchError] = []
        for subscription in subscriptions:
            if not _matches(subscription, event):
                continue
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    coroutine = _as_coroutine(result)
                    if running_loop is None:
                        asyncio.run(coroutine)
                    else:
                        self._schedule(running_loop, coroutine, subscription, event)
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(event, subscription.callback, exc))
        self._remember(errors)
        return tuple(errors)

    async def publish_async(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        """Publish from async code, awaiting async subscribers in order."""

        subscriptions = self._record(event)
        errors: list[DispatchError] = []
        for subscription in subscriptions:
            if not _matches(subscription, event):
                continue
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(event, subscription.callback, exc))
        self._remember(errors)
        return tuple(errors)

    async def emit_async(
        self,
        event_type: str | EventType,
        run_id: str,
        payload: Mapping[str, JSONValue] | None = None,
        *,
        stage_id: str | None = None,
    ) -> PipelineEvent:
        event = PipelineEvent(
            event_type=_as_event_type(event_type),
            run_id=run_id,
            payload=dict(payload or {}),
            stage_id=stage_id,
        )
        await self.publish_async(event)
        return event

    async def drain_async(self) -> None:
        """Await async subscriber tasks scheduled by synchronous ``publish``."""

        with self._lock:
            pending = tuple(self._pending_async_tasks)
            self._pending_async_tasks.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def replay(
        self,
        *,
        run_id: str | None = None,
        event_type: str | EventType | None = None,
        limit: int | None = None,
    ) -> tuple[PipelineEvent, ...]:
        """Buffered events in publish order, optionally filtered."""

        type_filter = None if event_type is None else _as_event_type(event_type)
        with self._lock:
            events = tuple(self._buffer)
        filtered = [
            event
            for event in events
            if (run_id is None or event.run_id == run_id)
            and (type_filter is None or event.event_type is type_filter)
        ]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._dispatch_errors)

    def _record(self, event: PipelineEvent) -> tuple[_Subscription, ...]:
        if not isinstance(event, PipelineEvent):
            raise ValueError(f"event must be PipelineEvent, got {type(event).__name__}")
        with self._lock:
            self._buffer.append(event)
            return tuple(self._subscriptions.values())

    def _remember(self, errors: list[DispatchError]) -> None:
        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)

    def _schedule(
        self,
        loop: asyncio.AbstractEventLoop,
        coroutine: Coroutine[Any, Any, None],
        subscription: _Subscription,
        event: PipelineEvent,
    ) -> None:
        task = loop.create_task(coroutine)
        with self._lock:
            self._pending_async_tasks.add(task)

        def _done(done: asyncio.Task[None]) -> None:
            with self._lock:
                self._pending_async_tasks.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if isinstance(exc, Exception):
                self._remember([_dispatch_error(event, subscription.callback, exc)])

        task.add_done_callback(_done)


def _as_event_type(value: str | EventType) -> EventType:
    if isinstance(value, EventType):
        return value
    try:
        return EventType(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in EventType)
        raise ValueError(f"invalid event_type {value!r}; allowed: {allowed}") from exc


def _matches(subscription: _Subscription, event: PipelineEvent) -> bool:
    return subscription.event_type is None or subscription.event_type is event.event_type


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


def _current_running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _as_coroutine(value: object) -> Coroutine[Any, Any, None]:
    if inspect.iscoroutine(value):
        return cast("Coroutine[Any, Any, None]", value)

    async def _await() -> None:
        await cast("Any", value)

    return _await()


def _dispatch_error(event: PipelineEvent, callback: object, exc: Exception) -> DispatchError:
    return DispatchError(
        event_id=event.event_id,
        target=_callback_name(callback),
        error_type=exc.__class__.__name__,
        message=str(exc),
    )


__all__ = ["DispatchError", "EventBus", "Subscriber"]
