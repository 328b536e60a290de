from __future__ import annotations

import typing as t

import structlog

from zapbatch.batching.lookups.base import BaseLookup, is_newer
from zapbatch.models import AddressPointer, NostrEvent

if t.TYPE_CHECKING:
    from zapbatch.batching.core import BatchProcessor

log = structlog.get_logger(__name__)


def parse_address(key: str) -> AddressPointer | None:
    """
    Parse a ``kind:pubkey:identifier`` reference.

    Parameters
    ----------
    key : str
        Value of an ``a`` tag.

    Returns
    -------
    AddressPointer | None
        Parsed pointer, or ``None`` when the key does not have exactly three
        parts or its kind is not an integer.
    """
    parts = key.split(":")
    if len(parts) != 3:
        return None
    try:
        kind = int(parts[0])
    except ValueError:
        return None
    return AddressPointer(kind=kind, pubkey=parts[1], identifier=parts[2])


class AddressLookup(BaseLookup):
    """
    Resolve replaceable events referenced by address, as found in ``a`` tags.

    Notes
    -----
    The batch filter is the union of kinds, authors and ``d`` tags of the
    requested addresses, so relays may return events matching none of them.
    An event is attributed to the first requested address, in batch order,
    whose kind, author and ``d`` tag all match.
    """

    name = "address"

    async def process_batch(self, *, keys: list[str], processor: BatchProcessor) -> None:
        if not keys:
            return

        valid_items: list[tuple[str, AddressPointer]] = []
        kinds: list[int] = []
        authors: list[str] = []
        identifiers: list[str] = []
        for key in keys[: processor.batch_size]:
            pointer = parse_address(key)
            if pointer is None:
                log.debug(event="Invalid address reference", key=key)
                processor.resolve_item(key, None)
                continue
            valid_items.append((key, pointer))
            if pointer.kind not in kinds:
                kinds.append(pointer.kind)
            if pointer.pubkey not in authors:
                authors.append(pointer.pubkey)
            if pointer.identifier not in identifiers:
                identifiers.append(pointer.identifier)

        if not valid_items:
            return

        filters = [{"kinds": kinds, "authors": authors, "#d": identifiers}]

        def event_handler(event: NostrEvent, processed_items: set[str]) -> None:
            target_key = next(
                (
                    key
                    for key, pointer in valid_items
                    if event.kind == pointer.kind
                    and event.pubkey == pointer.pubkey
                    and event.has_tag("d", pointer.identifier)
                ),
                None,
            )
            if target_key is None:
                return
            cached_event = processor.get_cached_item(target_key)
            if is_newer(candidate=event, current=cached_event):
                processor.set_cached_item(target_key, event)
                best = event
            else:
                best = cached_event
            processor.resolve_item(target_key, best)
            processed_items.add(target_key)

        await processor.create_subscription_promise(
            [key for key, _ in valid_items], processor.relay_urls, filters, event_handler
        )
