from __future__ import annotations

import typing as t

import structlog

from zapbatch.batching.lookups.base import BaseLookup, is_newer
from zapbatch.models import NostrEvent

if t.TYPE_CHECKING:
    from zapbatch.batching.core import BatchProcessor

log = structlog.get_logger(__name__)


class EventIdLookup(BaseLookup):
    """
    Resolve events referenced by id, as found in ``e`` tags.
    """

    name = "event_id"

    async def process_batch(self, *, keys: list[str], processor: BatchProcessor) -> None:
        if not keys:
            return

        requested = set(keys)
        found: set[str] = set()
        filters = [{"ids": keys[: processor.batch_size]}]

        def event_handler(event: NostrEvent, processed_items: set[str]) -> None:
            if event.id not in requested:
                return
            cached_event = processor.get_cached_item(event.id)
            if is_newer(candidate=event, current=cached_event):
                processor.set_cached_item(event.id, event)
                best = event
            else:
                best = cached_event
            processor.resolve_item(event.id, best)
            processed_items.add(event.id)
            found.add(event.id)

        await processor.create_subscription_promise(
            keys, processor.relay_urls, filters, event_handler
        )
        log.debug(
            event="Event id batch completed",
            requested=len(keys),
            found=len(found),
        )
