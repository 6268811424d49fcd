"""In-process progress bus with replay, dispatch-error isolation and pollable channels."""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final, cast

from workflow_orchestrator.domain.events import ProgressEvent, ProgressEventType, redact_sensitive
from workflow_orchestrator.domain.models import JSONValue, to_json_value

Subscriber = Callable[[ProgressEvent], object]

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
    event_type: ProgressEventType | None
    callback: Subscriber


class ProgressChannel:
    """Bounded buffer of events for consumers that poll or iterate asynchronously.

    When full, the oldest event is discarded and counted in ``dropped``.
    """

    def __init__(
        self,
        *,
        event_type: ProgressEventType | None = None,
        maxsize: int = 1024,
        on_close: Callable[[ProgressChannel], None] | None = None,
    ) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._event_type = event_type
        self._items: deque[ProgressEvent] = deque(maxlen=maxsize)
        self._lock = threading.Lock()
        self._closed = False
        self._dropped = 0
        self._waiter: asyncio.Event | None = None
        self._waiter_loop: asyncio.AbstractEventLoop | None = None
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def accepts(self, event: ProgressEvent) -> bool:
        return self._event_type is None or event.event_type is self._event_type

    def push(self, event: ProgressEvent) -> None:
        with self._lock:
            if self._closed:
                return
            if self._items.maxlen is not None and len(self._items) == self._items.maxlen:
                self._dropped += 1
            self._items.append(event)
        self._wake()

    def poll(self) -> ProgressEvent | None:
        with self._lock:
            return self._items.popleft() if self._items else None

    def drain(self) -> tuple[ProgressEvent, ...]:
        with self._lock:
            drained = tuple(self._items)
            self._items.clear()
        return drained

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._wake()
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self) -> ProgressChannel:
        return self

    async def __anext__(self) -> ProgressEvent:
        while True:
            event = self.poll()
            if event is not None:
                return event
            if self._closed:
                raise StopAsyncIteration
            waiter = self._ensure_waiter()
            await waiter.wait()
            waiter.clear()

    def _ensure_waiter(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._waiter is None or self._waiter_loop is not loop:
                self._waiter = asyncio.Event()
                self._waiter_loop = loop
            waiter = self._waiter
            pending = bool(self._items) or self._closed
        if pending:
            waiter.set()
        return waiter

    def _wake(self) -> None:
        with self._lock:
            waiter = self._waiter
            loop = self._waiter_loop
        if waiter is None or loop is None or loop.is_closed():
            return
        if _current_running_loop() is loop:
            waiter.set()
        else:
            loop.call_soon_threadsafe(waiter.set)


class ProgressBus:
    """Observer hub for workflow progress with sync and async subscribers and replay."""

    def __init__(self, *, buffer_size: int = 512, redact: bool = True) -> None:
        if not isinstance(buffer_size, int) or isinstance(buffer_size, bool):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")

        self._buffer = deque[ProgressEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._channels: list[ProgressChannel] = []
        self._pending_async_tasks: set[asyncio.Task[None]] = set()
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()
        self._redact = redact

    def subscribe(self, event_type: str | ProgressEventType | None, callback: Subscriber) -> int:
        """Subscribe to one event type, or to every event when ``event_type`` is ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = _normalize_event_type_filter(event_type)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(
                token=token, event_type=normalized, callback=callback
            )
        return token

    def unsubscribe(self, token: int) -> bool:
        if not isinstance(token, int):
            raise ValueError(f"token must be an integer, got {type(token).__name__}")
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def open_channel(
        self,
        event_type: str | ProgressEventType | None = None,
        *,
        maxsize: int = 1024,
    ) -> ProgressChannel:
        """Open a channel that buffers matching events until the caller reads them."""

        channel = ProgressChannel(
            event_type=_normalize_event_type_filter(event_type),
            maxsize=maxsize,
            on_close=self._detach_channel,
        )
        with self._lock:
            self._channels.append(channel)
        return channel

    def close_channels(self) -> None:
        with self._lock:
            channels = tuple(self._channels)
        for channel in channels:
            channel.close()

    def publish(self, event: ProgressEvent) -> tuple[DispatchError, ...]:
        """Publish from synchronous code; async subscribers are scheduled on the running loop."""

        delivered = self._record(event)
        subscriptions, channels = self._targets(delivered)
        running_loop = _current_running_loop()

        errors: list[DispatchError] = []
        for channel in channels:
            channel.push(delivered)
        for subscription in subscriptions:
            error = self._invoke_callback(subscription.callback, delivered, running_loop)
            if error is not None:
                errors.append(error)
        self._keep_errors(errors)
        return tuple(errors)

    async def publish_async(self, event: ProgressEvent) -> tuple[DispatchError, ...]:
        """Publish from async code and await async subscribers in subscription order."""

        delivered = self._record(event)
        subscriptions, channels = self._targets(delivered)

        errors: list[DispatchError] = []
        for channel in channels:
            channel.push(delivered)
        for subscription in subscriptions:
            try:
                result = subscription.callback(delivered)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(delivered, subscription.callback, exc))
        self._keep_errors(errors)
        return tuple(errors)

    def emit(
        self,
        event_type: str | ProgressEventType,
        workflow_id: str,
        *,
        node_id: str | None = None,
        status: str | None = None,
        payload: Mapping[str, object] | None = None,
    ) -> ProgressEvent:
        event = _build_event(event_type, workflow_id, node_id, status, payload)
        self.publish(event)
        return event

    async def emit_async(
        self,
        event_type: str | ProgressEventType,
        workflow_id: str,
        *,
        node_id: str | None = None,
        status: str | None = None,
        payload: Mapping[str, object] | None = None,
    ) -> ProgressEvent:
        event = _build_event(event_type, workflow_id, node_id, status, payload)
        await self.publish_async(event)
        return event

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Await async subscriber tasks scheduled by synchronous ``publish``."""

        with self._lock:
            pending = tuple(self._pending_async_tasks)
            self._pending_async_tasks.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        with self._lock:
            return tuple(self._dispatch_errors)

    def replay(
        self,
        *,
        workflow_id: str | None = None,
        event_type: str | ProgressEventType | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> tuple[ProgressEvent, ...]:
        """Buffered events in publish order, optionally filtered."""

        type_filter = _normalize_event_type_filter(event_type)
        if since is not None and (since.tzinfo is None or since.utcoffset() is None):
            raise ValueError("since datetime must be timezone-aware")
        with self._lock:
            events = tuple(self._buffer)

        filtered = [
            event
            for event in events
            if (workflow_id is None or event.workflow_id == workflow_id)
            and (type_filter is None or event.event_type is type_filter)
            and (since is None or event.timestamp > since.astimezone(UTC))
        ]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        with self._lock:
            errors = tuple(self._dispatch_errors)
        if limit is None:
            return errors
        if limit <= 0:
            return ()
        return errors[-limit:]

    def _record(self, event: ProgressEvent) -> ProgressEvent:
        if not isinstance(event, ProgressEvent):
            raise ValueError(f"event must be ProgressEvent, got {type(event).__name__}")
        delivered = redact_sensitive(event) if self._redact else event
        with self._lock:
            self._buffer.append(delivered)
        return delivered

    def _targets(
        self, event: ProgressEvent
    ) -> tuple[tuple[_Subscription, ...], tuple[ProgressChannel, ...]]:
        with self._lock:
            subscriptions = tuple(
                item
                for item in self._subscriptions.values()
                if item.event_type is None or item.event_type is event.event_type
            )
            channels = tuple(channel for channel in self._channels if channel.accepts(event))
        return subscriptions, channels

    def _invoke_callback(
        self,
        callback: Subscriber,
        event: ProgressEvent,
        running_loop: asyncio.AbstractEventLoop | None,
    ) -> DispatchError | None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                coroutine = _as_coroutine(result)
                if running_loop is None:
                    asyncio.run(coroutine)
                    return None
                task = running_loop.create_task(coroutine)
                with self._lock:
                    self._pending_async_tasks.add(task)
                task.add_done_callback(
                    lambda done: self._on_async_callback_done(done, callback, event)
                )
            return None
        except Exception as exc:  # noqa: BLE001
            return _dispatch_error(event, callback, exc)

    def _on_async_callback_done(
        self,
        task: asyncio.Task[None],
        callback: Subscriber,
        event: ProgressEvent,
    ) -> None:
        with self._lock:
            self._pending_async_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, Exception):
            self._keep_errors([_dispatch_error(event, callback, exc)])

    def _keep_errors(self, errors: list[DispatchError]) -> None:
        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)

    def _detach_channel(self, channel: ProgressChannel) -> None:
        with self._lock:
            if channel in self._channels:
                self._channels.remove(channel)


def _build_event(
    event_type: str | ProgressEventType,
    workflow_id: str,
    node_id: str | None,
    status: str | None,
    payload: Mapping[str, object] | None,
) -> ProgressEvent:
    body: dict[str, JSONValue] = {}
    if payload is not None:
        body = {str(key): to_json_value(value) for key, value in payload.items()}
    return ProgressEvent(
        event_type=ProgressEventType(event_type),
        workflow_id=workflow_id,
        node_id=node_id,
        status=status,
        payload=body,
    )


def _normalize_event_type_filter(
    value: str | ProgressEventType | None,
) -> ProgressEventType | None:
    if value is None:
        return None
    if isinstance(value, ProgressEventType):
        return value
    if not isinstance(value, str):
        raise ValueError(f"event type must be string/ProgressEventType, got {type(value).__name__}")
    try:
        return ProgressEventType(value.strip())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ProgressEventType)
        raise ValueError(f"invalid event type {value!r}; allowed: {allowed}") from exc


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


def _dispatch_error(event: ProgressEvent, callback: object, exc: Exception) -> DispatchError:
    return DispatchError(
        event_id=event.event_id,
        target=_callback_name(callback),
        error_type=exc.__class__.__name__,
        message=str(exc),
    )


def _current_running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _as_coroutine(value: object) -> Coroutine[Any, Any, None]:
    if inspect.iscoroutine(value):
        return cast("Coroutine[Any, Any, None]", value)
    return _await_awaitable(cast("Awaitable[None]", value))


async def _await_awaitable(awaitable: Awaitable[None]) -> None:
    await awaitable


__all__ = [
    "DispatchError",
    "ProgressBus",
    "ProgressChannel",
    "Subscriber",
]
