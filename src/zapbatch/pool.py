"""
Relay connection pool speaking the NIP-01 wire protocol.

A subscription is opened against several relays at once. Events are delivered
once per subscription even when several relays send them, and end-of-stream is
signalled when every relay has either sent ``EOSE`` or failed.
"""

from __future__ import annotations

import asyncio
import json
import typing as t
import uuid
from dataclasses import dataclass
from urllib.parse import urlparse, urlunparse

import structlog
import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from zapbatch.models import Filter, NostrEvent

log = structlog.get_logger(__name__)

DEFAULT_GET_MAX_WAIT = 5.0


@dataclass
class SubscriptionHandlers:
    """
    Callbacks of a relay subscription.

    Parameters
    ----------
    on_event : typing.Callable[[NostrEvent], None]
        Called for every distinct event.
    on_eose : typing.Callable[[], None] | None
        Called once when no relay has more stored events to send.
    on_error : typing.Callable[[Exception], None] | None
        Called when a relay of the subscription fails.
    """

    on_event: t.Callable[[NostrEvent], None]
    on_eose: t.Callable[[], None] | None = None
    on_error: t.Callable[[Exception], None] | None = None


class SubscriptionHandle(t.Protocol):
    def close(self) -> None: ...


class TransportPool(t.Protocol):
    """
    Minimal relay pool capability consumed by the batch processors.
    """

    async def ensure_relay(self, url: str) -> t.Any: ...

    def subscribe_many(
        self,
        relay_urls: t.Sequence[str],
        filters: t.Sequence[Filter],
        handlers: SubscriptionHandlers,
    ) -> SubscriptionHandle: ...

    async def get(
        self,
        relay_urls: t.Sequence[str],
        filter: Filter,
        max_wait: float = ...,
    ) -> NostrEvent | None: ...

    async def close(self, relay_urls: t.Sequence[str] | None = None) -> None: ...


def normalize_relay_url(url: str) -> str:
    parsed = urlparse(url.strip())
    return urlunparse(
        parsed._replace(
            scheme=parsed.scheme.lower(),
            netloc=parsed.netloc.lower(),
            path=parsed.path.rstrip("/"),
        )
    )


class RelaySubscription:
    """
    One ``REQ`` fanned out to several relays.
    """

    def __init__(
        self,
        *,
        pool: RelayPool,
        relay_urls: list[str],
        filters: list[Filter],
        handlers: SubscriptionHandlers,
    ) -> None:
        self.id = uuid.uuid4().hex[:16]
        self.relay_urls = relay_urls
        self.filters = filters
        self._pool = pool
        self._handlers = handlers
        self._seen_ids: set[str] = set()
        self._pending_relays: set[str] = set(relay_urls)
        self._eose_fired = False
        self.closed = False

    def deliver(self, *, event: NostrEvent) -> None:
        if self.closed or event.id in self._seen_ids:
            return
        self._seen_ids.add(event.id)
        self._call_handler(name="on_event", handler=self._handlers.on_event, args=(event,))

    def mark_done(self, *, relay_url: str) -> None:
        """
        Record that a relay has no more stored events for this subscription.

        Parameters
        ----------
        relay_url : str
            Relay that sent ``EOSE``, ``CLOSED``, or disconnected.
        """
        self._pending_relays.discard(relay_url)
        if self._pending_relays or self._eose_fired or self.closed:
            return
        self._eose_fired = True
        if self._handlers.on_eose is not None:
            self._call_handler(name="on_eose", handler=self._handlers.on_eose, args=())

    def fail(self, *, relay_url: str, error: Exception) -> None:
        if not self.closed and self._handlers.on_error is not None:
            self._call_handler(name="on_error", handler=self._handlers.on_error, args=(error,))
        self.mark_done(relay_url=relay_url)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._pool._release(subscription=self)

    def _call_handler(
        self,
        *,
        name: str,
        handler: t.Callable[..., None],
        args: tuple[t.Any, ...],
    ) -> None:
        # Handlers run inside the shared reader task of the connection.
        try:
            handler(*args)
        except Exception as e:
            log.error(
                event="Subscription handler error",
                subscription_id=self.id,
                handler=name,
                error=str(object=e),
                error_type=type(e).__name__,
            )


class _RelayConnection:
    def __init__(self, *, url: str, pool: RelayPool) -> None:
        self.url = url
        self._pool = pool
        self._websocket: t.Any = None
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def is_open(self) -> bool:
        return self._websocket is not None

    async def connect(self, *, open_timeout: float) -> None:
        self._websocket = await websockets.connect(self.url, open_timeout=open_timeout)
        self._reader_task = asyncio.create_task(
            coro=self._read_loop(),
            name=f"relay_reader_{self.url}",
        )
        log.info(event="Relay connected", relay_url=self.url)

    async def send(self, *, message: list[t.Any]) -> None:
        if self._websocket is None:
            raise ConnectionError(f"Relay {self.url} is not connected")
        await self._websocket.send(json.dumps(message))

    async def _read_loop(self) -> None:
        websocket = self._websocket
        try:
            async for raw in websocket:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    log.debug(event="Ignoring malformed relay frame", relay_url=self.url)
                    continue
                if isinstance(frame, list) and frame:
                    self._pool._dispatch(relay_url=self.url, frame=frame)
        except ConnectionClosed as e:
            log.warning(
                event="Relay connection closed",
                relay_url=self.url,
                code=e.rcvd.code if e.rcvd else None,
            )
        finally:
            self._websocket = None
            try:
                if websocket is not None:
                    await websocket.close()
            finally:
                self._pool._on_disconnect(relay_url=self.url, connection=self)

    async def close(self) -> None:
        websocket = self._websocket
        self._websocket = None
        if websocket is not None:
            await websocket.close()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                log.debug(event="Relay reader stopped", relay_url=self.url)


class RelayPool:
    """
    Shared websocket connections to a set of relays.

    Parameters
    ----------
    open_timeout : float, optional
        Connection establishment deadline per relay.
    """

    def __init__(self, *, open_timeout: float = 5.0) -> None:
        self._open_timeout = open_timeout
        self._connections: dict[str, _RelayConnection] = {}
        self._connecting: dict[str, asyncio.Task[_RelayConnection]] = {}
        self._subscriptions: dict[str, RelaySubscription] = {}
        self._tasks: set[asyncio.Task[t.Any]] = set()

    async def ensure_relay(self, url: str) -> _RelayConnection:
        """
        Return an open connection to a relay, connecting on first use.

        Parameters
        ----------
        url : str
            Relay websocket URL.

        Returns
        -------
        _RelayConnection
            Open connection.
        """
        url = normalize_relay_url(url)
        connection = self._connections.get(url)
        if connection is not None and connection.is_open:
            return connection

        pending = self._connecting.get(url)
        if pending is None:
            pending = asyncio.create_task(coro=self._connect(url=url), name=f"relay_connect_{url}")
            self._connecting[url] = pending
        try:
            return await asyncio.shield(pending)
        finally:
            if pending.done():
                self._connecting.pop(url, None)

    async def _connect(self, *, url: str) -> _RelayConnection:
        connection = _RelayConnection(url=url, pool=self)
        await connection.connect(open_timeout=self._open_timeout)
        self._connections[url] = connection
        return connection

    def subscribe_many(
        self,
        relay_urls: t.Sequence[str],
        filters: t.Sequence[Filter],
        handlers: SubscriptionHandlers,
    ) -> RelaySubscription:
        """
        Open one subscription against every relay in ``relay_urls``.

        Parameters
        ----------
        relay_urls : typing.Sequence[str]
            Relays to query.
        filters : typing.Sequence[Filter]
            Filters sent in the ``REQ`` frame.
        handlers : SubscriptionHandlers
            Subscription callbacks.

        Returns
        -------
        RelaySubscription
            Handle whose ``close`` ends the subscription on every relay.
        """
        urls = list(dict.fromkeys(normalize_relay_url(url) for url in relay_urls))
        subscription = RelaySubscription(
            pool=self,
            relay_urls=urls,
            filters=list(filters),
            handlers=handlers,
        )
        self._subscriptions[subscription.id] = subscription
        log.debug(
            event="Opening subscription",
            subscription_id=subscription.id,
            relay_count=len(urls),
            filter_count=len(subscription.filters),
        )
        for url in urls:
            self._spawn(coro=self._open(subscription=subscription, relay_url=url))
        return subscription

    async def _open(self, *, subscription: RelaySubscription, relay_url: str) -> None:
        try:
            connection = await self.ensure_relay(relay_url)
            if subscription.closed:
                return
            await connection.send(message=["REQ", subscription.id, *subscription.filters])
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            log.warning(
                event="Relay subscription failed",
                relay_url=relay_url,
                subscription_id=subscription.id,
                error=str(object=e),
            )
            subscription.fail(relay_url=relay_url, error=e)

    async def get(
        self,
        relay_urls: t.Sequence[str],
        filter: Filter,
        max_wait: float = DEFAULT_GET_MAX_WAIT,
    ) -> NostrEvent | None:
        """
        Return the newest event matching ``filter`` among stored events.

        The query ends when every relay has finished, or after ``max_wait``
        seconds when some relay never sends ``EOSE``.

        Parameters
        ----------
        relay_urls : typing.Sequence[str]
            Relays to query.
        filter : Filter
            Single relay filter.
        max_wait : float, optional
            Deadline of the query in seconds.

        Returns
        -------
        NostrEvent | None
            Newest matching event received before the query ended, or ``None``
            when none was found.
        """
        if not relay_urls:
            return None
        loop = asyncio.get_running_loop()
        done: asyncio.Future[None] = loop.create_future()
        events: list[NostrEvent] = []

        def on_eose() -> None:
            if not done.done():
                done.set_result(None)

        subscription = self.subscribe_many(
            relay_urls,
            [filter],
            SubscriptionHandlers(on_event=events.append, on_eose=on_eose),
        )
        try:
            async with asyncio.timeout(max_wait):
                await done
        except TimeoutError:
            log.warning(
                event="Relay query timed out",
                subscription_id=subscription.id,
                max_wait=max_wait,
                event_count=len(events),
            )
        finally:
            subscription.close()
        if not events:
            return None
        return max(events, key=lambda event: event.created_at)

    async def close(self, relay_urls: t.Sequence[str] | None = None) -> None:
        """
        Close relay connections.

        Parameters
        ----------
        relay_urls : typing.Sequence[str] | None, optional
            Relays to disconnect. Every relay is disconnected when omitted.
        """
        if relay_urls is None:
            urls = list(self._connections)
        else:
            urls = [normalize_relay_url(url) for url in relay_urls]
        for url in urls:
            connection = self._connections.pop(url, None)
            if connection is not None:
                await connection.close()
                log.info(event="Relay disconnected", relay_url=url)

    def _dispatch(self, *, relay_url: str, frame: list[t.Any]) -> None:
        message_type = frame[0]
        if message_type == "NOTICE":
            log.info(event="Relay notice", relay_url=relay_url, notice=frame[1:])
            return
        if len(frame) < 2 or not isinstance(frame[1], str):
            return
        subscription = self._subscriptions.get(frame[1])
        if subscription is None:
            return

        if message_type == "EVENT" and len(frame) >= 3:
            try:
                event = NostrEvent.model_validate(frame[2])
            except ValidationError as e:
                log.debug(
                    event="Ignoring malformed event",
                    relay_url=relay_url,
                    subscription_id=subscription.id,
                    error=str(object=e),
                )
                return
            subscription.deliver(event=event)
        elif message_type == "EOSE":
            subscription.mark_done(relay_url=relay_url)
        elif message_type == "CLOSED":
            reason = frame[2] if len(frame) > 2 else ""
            subscription.fail(relay_url=relay_url, error=ConnectionError(f"CLOSED: {reason}"))

    def _on_disconnect(self, *, relay_url: str, connection: _RelayConnection | None = None) -> None:
        if connection is None or self._connections.get(relay_url) is connection:
            self._connections.pop(relay_url, None)
        for subscription in list(self._subscriptions.values()):
            if relay_url in subscription.relay_urls:
                subscription.mark_done(relay_url=relay_url)

    def _release(self, *, subscription: RelaySubscription) -> None:
        self._subscriptions.pop(subscription.id, None)
        for url in subscription.relay_urls:
            connection = self._connections.get(url)
            if connection is not None and connection.is_open:
                self._spawn(coro=self._send_close(connection=connection, subscription_id=subscription.id))

    async def _send_close(self, *, connection: _RelayConnection, subscription_id: str) -> None:
        try:
            await connection.send(message=["CLOSE", subscription_id])
        except (ConnectionError, WebSocketException) as e:
            log.debug(
                event="Failed to send CLOSE",
                relay_url=connection.url,
                subscription_id=subscription_id,
                error=str(object=e),
            )

    def _spawn(self, *, coro: t.Coroutine[t.Any, t.Any, t.Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
