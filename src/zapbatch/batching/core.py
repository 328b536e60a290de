"""
Core engine coalescing single-key lookups into relay subscriptions.

Keys requested within ``batch_delay`` of each other are grouped into batches of
at most ``batch_size`` keys. Each batch is resolved by a lookup strategy using a
single relay subscription. Concurrent requests for the same key share one
future, and every future is resolved, to ``None`` when nothing was found,
before its batch is cleaned up.
"""

from __future__ import annotations

import asyncio
import contextvars
import time
import typing as t
from dataclasses import dataclass, field

import structlog

from zapbatch.cache import TTLCache
from zapbatch.config import BatchProcessorConfig
from zapbatch.exceptions import ConfigurationError
from zapbatch.models import Filter, NostrEvent
from zapbatch.pool import SubscriptionHandlers, TransportPool

if t.TYPE_CHECKING:
    from zapbatch.batching.lookups.base import BaseLookup

log = structlog.get_logger(__name__)

EventHandler = t.Callable[[NostrEvent, set[str]], None]


@dataclass(eq=False)
class _Batch:
    """Futures claimed by one flushed batch, keyed by the requested key."""

    processor: BatchProcessor
    futures: dict[str, asyncio.Future[t.Any]] = field(default_factory=dict)


# Batch whose lookup is currently running. Lookups resolve keys through
# ``resolve_item``, which only touches the futures of this batch.
_current_batch: contextvars.ContextVar[_Batch | None] = contextvars.ContextVar(
    "zapbatch_current_batch", default=None
)


class BatchProcessor:
    """
    Manage the batch queue, the flush timer and per-key futures.

    Parameters
    ----------
    pool : TransportPool
        Relay pool used to open batch subscriptions.
    lookup : BaseLookup
        Strategy turning a batch of keys into a subscription and resolving
        each key from incoming events.
    config : BatchProcessorConfig | None, optional
        Defaults for every option not overridden below.
    batch_size : int | None, optional
        Maximum number of keys per batch.
    batch_delay : float | None, optional
        Coalescing window in seconds.
    relay_urls : typing.Sequence[str] | None, optional
        Relays queried by this processor.
    max_cache_age : float | None, optional
        Lifetime of cached results in seconds.
    timeout_duration : float | None, optional
        Deadline of a batch subscription in seconds.
    eose_grace_period : float | None, optional
        Wait after end-of-stream before completing a batch.
    clock : typing.Callable[[], float], optional
        Time source of the result cache.

    Raises
    ------
    ConfigurationError
        If ``pool`` does not expose ``ensure_relay``.
    """

    def __init__(
        self,
        *,
        pool: TransportPool,
        lookup: BaseLookup,
        config: BatchProcessorConfig | None = None,
        batch_size: int | None = None,
        batch_delay: float | None = None,
        relay_urls: t.Sequence[str] | None = None,
        max_cache_age: float | None = None,
        timeout_duration: float | None = None,
        eose_grace_period: float | None = None,
        clock: t.Callable[[], float] = time.time,
    ) -> None:
        if not callable(getattr(pool, "ensure_relay", None)):
            raise ConfigurationError("Invalid pool object: ensure_relay method is required")

        config = config or BatchProcessorConfig()
        self._pool = pool
        self._lookup = lookup
        self._batch_size = config.batch_size if batch_size is None else batch_size
        self._batch_delay = config.batch_delay if batch_delay is None else batch_delay
        self._relay_urls = list(relay_urls if relay_urls is not None else config.relay_urls)
        self._timeout_duration = (
            config.timeout_duration if timeout_duration is None else timeout_duration
        )
        self._eose_grace_period = (
            config.eose_grace_period if eose_grace_period is None else eose_grace_period
        )
        if self._batch_size < 1:
            raise ConfigurationError(f"batch_size must be at least 1, got {self._batch_size}")

        # Coalescing state. Mutated only between suspension points.
        self._batch_queue: dict[str, None] = {}
        self._pending_fetches: dict[str, asyncio.Future[t.Any]] = {}
        self._batch_timer: asyncio.TimerHandle | None = None
        self._batch_tasks: set[asyncio.Task[None]] = set()

        self._event_cache = TTLCache(
            max_age=config.max_cache_age if max_cache_age is None else max_cache_age,
            clock=clock,
        )

        log.debug(
            event="Initialized BatchProcessor",
            lookup=lookup.name,
            batch_size=self._batch_size,
            batch_delay=self._batch_delay,
            relay_count=len(self._relay_urls),
            timeout_duration=self._timeout_duration,
        )

    @property
    def name(self) -> str:
        return self._lookup.name

    @property
    def pool(self) -> TransportPool:
        return self._pool

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def relay_urls(self) -> list[str]:
        return list(self._relay_urls)

    def set_relay_urls(self, urls: t.Any) -> None:
        self._relay_urls = list(urls) if isinstance(urls, (list, tuple)) else []

    def get_or_create_fetch_promise(self, key: str) -> asyncio.Future[t.Any]:
        """
        Return the shared future resolving ``key``.

        Parameters
        ----------
        key : str
            Identifier of the object to resolve.

        Returns
        -------
        asyncio.Future[typing.Any]
            Future resolving to the matched object or ``None``. Every caller
            requesting ``key`` before its batch completes gets the same future.

        Raises
        ------
        ConfigurationError
            If the lookup strategy cannot run with the current configuration.
        """
        # No await between the lookup and the insert below.
        existing = self._pending_fetches.get(key)
        if existing is not None:
            return existing

        self._lookup.check_ready(processor=self)

        future: asyncio.Future[t.Any] = asyncio.get_running_loop().create_future()
        self._pending_fetches[key] = future
        self._batch_queue[key] = None
        log.debug(
            event="Queued key for batch",
            lookup=self.name,
            key=key,
            queue_size=len(self._batch_queue),
        )
        self._schedule_batch_process()
        return future

    def _schedule_batch_process(self) -> None:
        if self._batch_timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._batch_timer = loop.call_later(self._batch_delay, self._on_batch_timer)

    def _on_batch_timer(self) -> None:
        self._batch_timer = None
        task = asyncio.create_task(
            coro=self._process_batch_queue(),
            name=f"batch_flush_{self.name}",
        )
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)

    async def _process_batch_queue(self) -> None:
        if not self._batch_queue:
            return

        batch_items = self._get_batch_items()
        batch = _Batch(
            processor=self,
            futures={key: self._pending_fetches[key] for key in batch_items},
        )
        if self._batch_queue:
            self._schedule_batch_process()
        await self._process_batch(batch)

    def _get_batch_items(self) -> list[str]:
        batch_items = list(self._batch_queue)[: self._batch_size]
        for key in batch_items:
            del self._batch_queue[key]
        log.debug(
            event="Batch flushed",
            lookup=self.name,
            batch_size=len(batch_items),
            remaining=len(self._batch_queue),
        )
        return batch_items

    async def _process_batch(self, batch: _Batch) -> None:
        token = _current_batch.set(batch)
        try:
            await self._lookup.process_batch(keys=list(batch.futures), processor=self)
        except Exception as e:
            self._handle_batch_error(batch=batch, error=e)
        finally:
            self._cleanup_batch_items(batch=batch)
            _current_batch.reset(token)

    def _handle_batch_error(self, *, batch: _Batch, error: Exception) -> None:
        log.error(
            event="Batch processing error",
            lookup=self.name,
            item_count=len(batch.futures),
            error=str(object=error),
            error_type=type(error).__name__,
        )
        for future in batch.futures.values():
            if not future.done():
                future.set_result(None)

    def _cleanup_batch_items(self, *, batch: _Batch) -> None:
        for key, future in batch.futures.items():
            if not future.done():
                future.set_result(None)
            # The key may have been requested again after clear_pending_fetches.
            if self._pending_fetches.get(key) is future:
                del self._pending_fetches[key]

    def resolve_item(self, key: str, result: t.Any) -> None:
        """
        Resolve the future of ``key`` if it is still unresolved.

        Inside a batch, only the futures claimed by that batch are resolved.
        A request for the same key made after ``clear_pending_fetches`` belongs
        to a later batch and is left untouched.

        Parameters
        ----------
        key : str
            Requested key.
        result : typing.Any
            Matched object, or ``None``.
        """
        future = self._future_for(key)
        if future is not None and not future.done():
            future.set_result(result)

    def _future_for(self, key: str) -> asyncio.Future[t.Any] | None:
        batch = _current_batch.get()
        if batch is not None and batch.processor is self:
            return batch.futures.get(key)
        return self._pending_fetches.get(key)

    async def create_subscription_promise(
        self,
        keys: t.Sequence[str],
        relay_urls: t.Sequence[str],
        filters: list[Filter],
        event_handler: EventHandler,
    ) -> None:
        """
        Resolve a batch of keys with one relay subscription.

        Parameters
        ----------
        keys : typing.Sequence[str]
            Keys of the batch.
        relay_urls : typing.Sequence[str]
            Relays to subscribe to. Every key resolves to ``None`` without any
            network attempt when empty.
        filters : list[Filter]
            Filters of the subscription.
        event_handler : EventHandler
            Called with each event and the set of processed keys. It resolves
            the keys the event satisfies and adds them to that set.

        Notes
        -----
        The subscription completes on the first of: every key processed,
        end-of-stream followed by the grace period, or ``timeout_duration``.
        Completion closes the subscription and resolves remaining keys to
        ``None``.
        """
        if not relay_urls:
            for key in keys:
                self.resolve_item(key, None)
            return

        loop = asyncio.get_running_loop()
        # Relay callbacks run in the reader task; keep them bound to this batch.
        context = contextvars.copy_context()
        done: asyncio.Future[None] = loop.create_future()
        processed_items: set[str] = set()
        wanted = set(keys)
        is_completed = False
        subscription = None
        timers: list[asyncio.TimerHandle] = []

        def cleanup() -> None:
            nonlocal is_completed
            if is_completed:
                return
            is_completed = True

            for timer in timers:
                timer.cancel()
            if subscription is not None:
                subscription.close()

            for key in keys:
                if key not in processed_items:
                    self.resolve_item(key, None)
            if not done.done():
                done.set_result(None)

        def on_event(event: NostrEvent) -> None:
            context.run(handle_event, event)

        def handle_event(event: NostrEvent) -> None:
            if is_completed:
                return
            try:
                event_handler(event, processed_items)
            except Exception as e:
                log.error(
                    event="Event handler error",
                    lookup=self.name,
                    event_id=getattr(event, "id", None),
                    error=str(object=e),
                )
            if processed_items >= wanted:
                cleanup()

        def on_eose() -> None:
            timers.append(loop.call_later(self._eose_grace_period, cleanup, context=context))

        def on_error(error: Exception) -> None:
            log.error(event="Subscription error", lookup=self.name, error=str(object=error))

        def on_timeout() -> None:
            if not is_completed:
                log.warning(
                    event="Subscription timeout",
                    lookup=self.name,
                    key_count=len(keys),
                    processed_count=len(processed_items & wanted),
                )
                cleanup()

        subscription = self._pool.subscribe_many(
            list(relay_urls),
            filters,
            SubscriptionHandlers(on_event=on_event, on_eose=on_eose, on_error=on_error),
        )
        if is_completed:
            subscription.close()
            return
        timers.append(loop.call_later(self._timeout_duration, on_timeout, context=context))

        await done

    def get_cached_item(self, key: str) -> t.Any:
        return self._event_cache.get(namespace=self.name, key=key)

    def set_cached_item(self, key: str, value: t.Any) -> None:
        self._event_cache.set(namespace=self.name, key=key, value=value)

    def clear_cached_items(self) -> None:
        self._event_cache.clear(namespace=self.name)

    def clear_pending_fetches(self) -> None:
        """
        Resolve every outstanding future to ``None`` and forget queued keys.
        """
        if self._batch_timer is not None:
            self._batch_timer.cancel()
            self._batch_timer = None
        for future in self._pending_fetches.values():
            if not future.done():
                future.set_result(None)
        self._pending_fetches.clear()
        self._batch_queue.clear()

    async def close(self) -> None:
        self.clear_pending_fetches()
        for task in list(self._batch_tasks):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                log.debug(event="Batch task cancelled during close", lookup=self.name)
        log.debug(event="BatchProcessor closed", lookup=self.name)
