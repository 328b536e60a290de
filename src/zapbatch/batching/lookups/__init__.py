from __future__ import annotations

import typing as t

from zapbatch.batching.core import BatchProcessor
from zapbatch.batching.lookups.address import AddressLookup, parse_address
from zapbatch.batching.lookups.base import BaseLookup
from zapbatch.batching.lookups.event_id import EventIdLookup
from zapbatch.batching.lookups.profile import ProfileLookup
from zapbatch.config import BatchProcessorConfig, ProfileConfig, ReferenceProcessorConfig
from zapbatch.pool import TransportPool

__all__ = [
    "AddressLookup",
    "BaseLookup",
    "EventIdLookup",
    "LOOKUPS",
    "ProfileLookup",
    "create_address_reference_processor",
    "create_event_reference_processor",
    "create_profile_processor",
    "parse_address",
]

LOOKUPS: dict[str, type[BaseLookup]] = {
    lookup_cls.name: lookup_cls for lookup_cls in (EventIdLookup, AddressLookup, ProfileLookup)
}


def create_event_reference_processor(
    *,
    pool: TransportPool,
    reference_config: ReferenceProcessorConfig | None = None,
    config: BatchProcessorConfig | None = None,
    **overrides: t.Any,
) -> BatchProcessor:
    """
    Build a processor resolving ``e`` tag references by event id.

    Parameters
    ----------
    pool : TransportPool
        Relay pool shared with the caller.
    reference_config : ReferenceProcessorConfig | None, optional
        Batch size and delay of reference lookups.
    config : BatchProcessorConfig | None, optional
        Shared processor defaults.
    **overrides : typing.Any
        Per-instance ``BatchProcessor`` options.

    Returns
    -------
    BatchProcessor
        Processor using ``EventIdLookup``.
    """
    reference_config = reference_config or ReferenceProcessorConfig()
    overrides.setdefault("batch_size", reference_config.batch_size)
    overrides.setdefault("batch_delay", reference_config.batch_delay)
    return BatchProcessor(pool=pool, lookup=EventIdLookup(), config=config, **overrides)


def create_address_reference_processor(
    *,
    pool: TransportPool,
    reference_config: ReferenceProcessorConfig | None = None,
    config: BatchProcessorConfig | None = None,
    **overrides: t.Any,
) -> BatchProcessor:
    reference_config = reference_config or ReferenceProcessorConfig()
    overrides.setdefault("batch_size", reference_config.batch_size)
    overrides.setdefault("batch_delay", reference_config.batch_delay)
    return BatchProcessor(pool=pool, lookup=AddressLookup(), config=config, **overrides)


def create_profile_processor(
    *,
    pool: TransportPool,
    profile_config: ProfileConfig | None = None,
    config: BatchProcessorConfig | None = None,
    **overrides: t.Any,
) -> BatchProcessor:
    """
    Build a processor resolving kind-0 profile events by author.

    Parameters
    ----------
    pool : TransportPool
        Relay pool shared with the caller.
    profile_config : ProfileConfig | None, optional
        Batch size, delay and relays of profile lookups. An empty relay list
        makes every request fail with ``ConfigurationError``.
    config : BatchProcessorConfig | None, optional
        Shared processor defaults.
    **overrides : typing.Any
        Per-instance ``BatchProcessor`` options.

    Returns
    -------
    BatchProcessor
        Processor using ``ProfileLookup``.
    """
    profile_config = profile_config or ProfileConfig()
    overrides.setdefault("batch_size", profile_config.batch_size)
    overrides.setdefault("batch_delay", profile_config.batch_delay)
    overrides.setdefault("relay_urls", profile_config.relays)
    return BatchProcessor(pool=pool, lookup=ProfileLookup(), config=config, **overrides)
