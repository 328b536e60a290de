from __future__ import annotations

import typing as t

import structlog

from zapbatch.batching.lookups.base import BaseLookup, is_newer
from zapbatch.config import PROFILE_METADATA_KIND
from zapbatch.exceptions import ConfigurationError
from zapbatch.models import NostrEvent

if t.TYPE_CHECKING:
    from zapbatch.batching.core import BatchProcessor

log = structlog.get_logger(__name__)


class ProfileLookup(BaseLookup):
    """
    Resolve the latest profile metadata event of each author.
    """

    name = "profile"

    def check_ready(self, *, processor: BatchProcessor) -> None:
        if not processor.relay_urls:
            raise ConfigurationError("No relays configured for profile fetch")

    async def process_batch(self, *, keys: list[str], processor: BatchProcessor) -> None:
        self.check_ready(processor=processor)

        uncached_pubkeys: list[str] = []
        for pubkey in keys:
            cached = processor.get_cached_item(pubkey)
            if cached is not None:
                processor.resolve_item(pubkey, cached)
            else:
                uncached_pubkeys.append(pubkey)

        if not uncached_pubkeys:
            return

        requested = set(uncached_pubkeys)
        filters = [{"kinds": [PROFILE_METADATA_KIND], "authors": uncached_pubkeys}]
        latest_events: dict[str, NostrEvent] = {}

        def event_handler(event: NostrEvent, processed_items: set[str]) -> None:
            if event.pubkey not in requested:
                return
            if is_newer(candidate=event, current=latest_events.get(event.pubkey)):
                latest_events[event.pubkey] = event
                processor.set_cached_item(event.pubkey, event)
            processed_items.add(event.pubkey)

        await processor.create_subscription_promise(
            uncached_pubkeys, processor.relay_urls, filters, event_handler
        )

        log.debug(
            event="Profile batch completed",
            requested=len(uncached_pubkeys),
            found=len(latest_events),
        )
        for pubkey in uncached_pubkeys:
            processor.resolve_item(pubkey, latest_events.get(pubkey))
