"""
Fetch coordinator bridging live zap streams and batched reference lookups.
"""

from __future__ import annotations

import asyncio
import time
import typing as t
from dataclasses import dataclass

import structlog

from zapbatch.batching import (
    BatchProcessor,
    create_address_reference_processor,
    create_event_reference_processor,
)
from zapbatch.cache import CacheManager
from zapbatch.config import AppConfig, ViewerConfig
from zapbatch.exceptions import InvalidSubscriptionError
from zapbatch.logging import logging_context
from zapbatch.models import NostrEvent, SubscriptionSpec
from zapbatch.pool import RelayPool, SubscriptionHandle, SubscriptionHandlers, TransportPool

log = structlog.get_logger(__name__)

REFERENCE_TAG_TYPES = ("e", "a")


@dataclass
class _ViewSubscriptions:
    zap: SubscriptionHandle | None = None


@dataclass
class _ViewState:
    is_zap_closed: bool = False


class EventPool:
    """
    Own the relay pool, the reference processors and per-view live streams.

    Parameters
    ----------
    cache : CacheManager
        Cache receiving resolved references.
    config : AppConfig | None, optional
        Application settings.
    pool : TransportPool | None, optional
        Relay pool. A ``RelayPool`` is created when omitted.
    clock : typing.Callable[[], float], optional
        Time source used to tag events as live or backfill.
    """

    def __init__(
        self,
        *,
        cache: CacheManager,
        config: AppConfig | None = None,
        pool: TransportPool | None = None,
        clock: t.Callable[[], float] = time.time,
    ) -> None:
        self._config = config or AppConfig()
        self._cache = cache
        self._zap_pool: TransportPool = pool if pool is not None else RelayPool()
        self._clock = clock

        self._subscriptions: dict[str, _ViewSubscriptions] = {}
        self._state: dict[str, _ViewState] = {}
        self._reference_fetching: dict[str, asyncio.Task[NostrEvent | None]] = {}
        self._is_connected = False

        self._e_tag_processor = create_event_reference_processor(
            pool=self._zap_pool,
            reference_config=self._config.reference_processor,
            config=self._config.batch_processor,
        )
        self._a_tag_processor = create_address_reference_processor(
            pool=self._zap_pool,
            reference_config=self._config.reference_processor,
            config=self._config.batch_processor,
        )

    @property
    def zap_pool(self) -> TransportPool:
        return self._zap_pool

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def _processors(self) -> tuple[BatchProcessor, BatchProcessor]:
        return self._e_tag_processor, self._a_tag_processor

    async def connect_to_relays(self, zap_relay_urls: t.Sequence[str]) -> None:
        """
        Point the reference processors at the zap relays.

        Parameters
        ----------
        zap_relay_urls : typing.Sequence[str]
            Relays queried for referenced events.

        Notes
        -----
        Only the first call has an effect. Use ``set_relay_urls`` to change the
        relays afterwards.
        """
        if self._is_connected:
            log.debug(event="Already connected to relays, ignoring new relay list")
            return
        self.set_relay_urls(zap_relay_urls)
        self._is_connected = True
        log.info(event="Connected reference processors", relay_count=len(zap_relay_urls))

    def set_relay_urls(self, urls: t.Sequence[str]) -> None:
        for processor in self._processors():
            processor.set_relay_urls(list(urls))

    def subscribe_to_zaps(
        self,
        view_id: str,
        config: ViewerConfig,
        decoded: SubscriptionSpec,
        handlers: SubscriptionHandlers,
    ) -> SubscriptionHandle:
        """
        Open the live zap receipt stream of a view.

        Parameters
        ----------
        view_id : str
            View the stream belongs to. An existing stream of this view is
            closed first.
        config : ViewerConfig
            View settings providing the relays to subscribe to.
        decoded : SubscriptionSpec
            Subscription request.
        handlers : SubscriptionHandlers
            Caller callbacks. Events reach ``on_event`` with
            ``is_realtime_event`` set.

        Returns
        -------
        SubscriptionHandle
            Handle of the live subscription.

        Raises
        ------
        InvalidSubscriptionError
            If the request does not declare a ``kinds`` list.
        """
        with logging_context(view_id=view_id):
            try:
                self._validate_subscription(decoded=decoded)
            except InvalidSubscriptionError as e:
                log.error(event="Subscription error", error=str(object=e))
                raise

            self._initialize_subscription_state(view_id=view_id)
            self._state[view_id].is_zap_closed = False

            previous = self._subscriptions[view_id].zap
            if previous is not None:
                previous.close()

            handle = self._zap_pool.subscribe_many(
                list(config.relay_urls),
                [decoded.req],
                self._wrap_handlers(handlers=handlers),
            )
            self._subscriptions[view_id].zap = handle
            log.info(
                event="Subscribed to zaps",
                relay_count=len(config.relay_urls),
                kinds=decoded.req.get("kinds"),
            )
            return handle

    def unsubscribe(self, view_id: str) -> None:
        subscriptions = self._subscriptions.get(view_id)
        if subscriptions is not None and subscriptions.zap is not None:
            subscriptions.zap.close()
            subscriptions.zap = None
        state = self._state.get(view_id)
        if state is not None:
            state.is_zap_closed = True

    def is_zap_closed(self, view_id: str) -> bool:
        state = self._state.get(view_id)
        return state is None or state.is_zap_closed

    def _initialize_subscription_state(self, *, view_id: str) -> None:
        self._subscriptions.setdefault(view_id, _ViewSubscriptions())
        self._state.setdefault(view_id, _ViewState())

    @staticmethod
    def _validate_subscription(*, decoded: SubscriptionSpec | None) -> None:
        kinds = decoded.req.get("kinds") if decoded is not None else None
        if not isinstance(kinds, list) or not kinds:
            raise InvalidSubscriptionError("Invalid subscription settings")

    def _wrap_handlers(self, *, handlers: SubscriptionHandlers) -> SubscriptionHandlers:
        subscription_start_time = int(self._clock())

        def on_event(event: NostrEvent) -> None:
            event.is_realtime_event = event.created_at >= subscription_start_time
            handlers.on_event(event)

        return SubscriptionHandlers(
            on_event=on_event,
            on_eose=handlers.on_eose,
            on_error=handlers.on_error,
        )

    async def fetch_reference(self, event: NostrEvent | None, tag_type: str) -> NostrEvent | None:
        """
        Resolve the event referenced by the first ``tag_type`` tag of ``event``.

        Parameters
        ----------
        event : NostrEvent | None
            Event carrying the reference, typically a zap receipt.
        tag_type : str
            ``"e"`` for id references, ``"a"`` for address references.

        Returns
        -------
        NostrEvent | None
            Referenced event, or ``None`` when absent, unresolvable, or on
            any error.
        """
        reference_key: str | None = None
        try:
            if event is None or not event.id or tag_type not in REFERENCE_TAG_TYPES:
                return None

            reference_key = event.get_tag_value(tag_type)
            if not reference_key:
                return None

            cached = self._cache.get_reference(reference_key)
            if cached is not None:
                return cached

            pending = self._reference_fetching.get(reference_key)
            if pending is None:
                processor = self._e_tag_processor if tag_type == "e" else self._a_tag_processor
                future = processor.get_or_create_fetch_promise(reference_key)
                pending = asyncio.create_task(
                    coro=self._await_reference(key=reference_key, future=future),
                    name=f"reference_fetch_{reference_key}",
                )
                self._reference_fetching[reference_key] = pending
            return await asyncio.shield(pending)
        except Exception as e:
            log.error(
                event="Reference fetch error",
                event_id=getattr(event, "id", None),
                reference_key=reference_key,
                error=str(object=e),
            )
            return None

    async def _await_reference(
        self, *, key: str, future: asyncio.Future[t.Any]
    ) -> NostrEvent | None:
        try:
            reference = await future
            if reference is not None:
                self._cache.set_reference(key, reference)
            return reference
        finally:
            self._reference_fetching.pop(key, None)

    async def close(self) -> None:
        for view_id in list(self._subscriptions):
            self.unsubscribe(view_id)
        for processor in self._processors():
            await processor.close()
        log.debug(event="EventPool closed")
