"""
Tests for the lookup strategies and processor factories.
"""

import asyncio

import pytest

from zapbatch.batching.lookups import (
    LOOKUPS,
    AddressLookup,
    EventIdLookup,
    ProfileLookup,
    create_address_reference_processor,
    create_event_reference_processor,
    create_profile_processor,
    parse_address,
)
from zapbatch.config import ProfileConfig, ReferenceProcessorConfig
from zapbatch.exceptions import ConfigurationError
from tests.mocks.relays import AUTHOR_A, AUTHOR_B, AUTHOR_C, FakePool, make_event

RELAYS = ["wss://relay.one"]
FAST = {"batch_delay": 0.01, "timeout_duration": 0.2, "eose_grace_period": 0.01}


def test_lookup_registry_contains_all_strategies():
    """Test that every lookup is registered under its name."""
    assert LOOKUPS == {
        "event_id": EventIdLookup,
        "address": AddressLookup,
        "profile": ProfileLookup,
    }


@pytest.mark.parametrize(
    "key, expected",
    [
        ("30023:" + AUTHOR_A + ":my-post", (30023, AUTHOR_A, "my-post")),
        ("1:pubkey:", (1, "pubkey", "")),
        ("bad", None),
        ("x:pubkey:slug", None),
        ("1:pubkey:slug:extra", None),
    ],
)
def test_parse_address(key, expected):
    """Test parsing of kind:pubkey:identifier references."""
    pointer = parse_address(key)
    if expected is None:
        assert pointer is None
    else:
        assert (pointer.kind, pointer.pubkey, pointer.identifier) == expected
        assert pointer.to_key() == key


def test_factories_apply_reference_and_profile_defaults():
    """Test that factories take batch settings from their config sections."""
    pool = FakePool()
    reference = create_event_reference_processor(
        pool=pool, reference_config=ReferenceProcessorConfig(batch_size=7, batch_delay=0.2)
    )
    address = create_address_reference_processor(pool=pool)
    profile = create_profile_processor(
        pool=pool, profile_config=ProfileConfig(relays=["wss://profiles.example"])
    )

    assert reference.name == "event_id"
    assert reference.batch_size == 7
    assert address.name == "address"
    assert profile.name == "profile"
    assert profile.relay_urls == ["wss://profiles.example"]


@pytest.mark.asyncio
async def test_event_id_refetch_returns_cached_event():
    """Test that a refetch of an already cached event resolves to the cached event."""
    event = make_event(id="abc", created_at=100)
    pool = FakePool(events=[event])
    processor = create_event_reference_processor(pool=pool, relay_urls=RELAYS, **FAST)

    first = await processor.get_or_create_fetch_promise("abc")
    second = await processor.get_or_create_fetch_promise("abc")

    assert first is event
    assert second is event
    assert len(pool.subscriptions) == 2


@pytest.mark.asyncio
async def test_invalid_address_resolves_none_and_is_excluded_from_filter():
    """Test that malformed address keys never reach the relay filter."""
    valid_key = f"30023:{AUTHOR_A}:post"
    event = make_event(id="addr", pubkey=AUTHOR_A, kind=30023, tags=[["d", "post"]])
    pool = FakePool(events=[event])
    processor = create_address_reference_processor(pool=pool, relay_urls=RELAYS, **FAST)

    invalid_result, valid_result = await asyncio.gather(
        processor.get_or_create_fetch_promise("bad"),
        processor.get_or_create_fetch_promise(valid_key),
    )

    assert invalid_result is None
    assert valid_result is event
    assert pool.subscriptions[0].filters == [
        {"kinds": [30023], "authors": [AUTHOR_A], "#d": ["post"]}
    ]


@pytest.mark.asyncio
async def test_batch_of_invalid_addresses_opens_no_subscription():
    """Test that a batch without any valid address skips the network."""
    pool = FakePool()
    processor = create_address_reference_processor(pool=pool, relay_urls=RELAYS, **FAST)

    assert await processor.get_or_create_fetch_promise("bad") is None
    assert pool.subscriptions == []


@pytest.mark.asyncio
async def test_address_match_requires_kind_author_and_d_tag():
    """Test that union filters do not cause cross-matches between addresses."""
    key_a = f"30023:{AUTHOR_A}:alpha"
    key_b = f"30023:{AUTHOR_B}:beta"
    # Matches the union filter (author A, d=beta) but neither requested address.
    crossed = make_event(id="crossed", pubkey=AUTHOR_A, kind=30023, tags=[["d", "beta"]])
    event_b = make_event(id="event-b", pubkey=AUTHOR_B, kind=30023, tags=[["d", "beta"]])
    pool = FakePool(events=[crossed, event_b])
    processor = create_address_reference_processor(pool=pool, relay_urls=RELAYS, **FAST)

    result_a, result_b = await asyncio.gather(
        processor.get_or_create_fetch_promise(key_a),
        processor.get_or_create_fetch_promise(key_b),
    )

    assert result_a is None
    assert result_b is event_b


@pytest.mark.asyncio
async def test_address_newer_event_replaces_cached_one():
    """Test that a newer replaceable event wins over the cached version."""
    key = f"30023:{AUTHOR_A}:post"
    old = make_event(id="old", pubkey=AUTHOR_A, kind=30023, created_at=100, tags=[["d", "post"]])
    new = make_event(id="new", pubkey=AUTHOR_A, kind=30023, created_at=200, tags=[["d", "post"]])
    pool = FakePool(events=[old])
    processor = create_address_reference_processor(pool=pool, relay_urls=RELAYS, **FAST)

    assert await processor.get_or_create_fetch_promise(key) is old
    pool.events = [new]
    assert await processor.get_or_create_fetch_promise(key) is new
    pool.events = [old]
    assert await processor.get_or_create_fetch_promise(key) is new


@pytest.mark.asyncio
async def test_profile_latest_event_wins_per_author():
    """Test that each author resolves to their newest kind-0 event."""
    a_new = make_event(id="a2", pubkey=AUTHOR_A, kind=0, created_at=200)
    a_old = make_event(id="a1", pubkey=AUTHOR_A, kind=0, created_at=100)
    b_only = make_event(id="b1", pubkey=AUTHOR_B, kind=0, created_at=150)
    pool = FakePool(events=[a_old, a_new, b_only])
    processor = create_profile_processor(pool=pool, relay_urls=RELAYS, **FAST)

    result_a, result_b, result_c = await asyncio.gather(
        processor.get_or_create_fetch_promise(AUTHOR_A),
        processor.get_or_create_fetch_promise(AUTHOR_B),
        processor.get_or_create_fetch_promise(AUTHOR_C),
    )

    assert result_a is a_new
    assert result_b is b_only
    assert result_c is None
    assert pool.subscriptions[0].filters == [
        {"kinds": [0], "authors": [AUTHOR_A, AUTHOR_B, AUTHOR_C]}
    ]


@pytest.mark.asyncio
async def test_profile_cached_authors_are_not_queried():
    """Test that cached authors resolve immediately and are left out of the filter."""
    cached = make_event(id="cached", pubkey=AUTHOR_A, kind=0, created_at=100)
    fresh = make_event(id="fresh", pubkey=AUTHOR_B, kind=0, created_at=100)
    pool = FakePool(events=[fresh])
    processor = create_profile_processor(pool=pool, relay_urls=RELAYS, **FAST)
    processor.set_cached_item(AUTHOR_A, cached)

    result_a, result_b = await asyncio.gather(
        processor.get_or_create_fetch_promise(AUTHOR_A),
        processor.get_or_create_fetch_promise(AUTHOR_B),
    )

    assert result_a is cached
    assert result_b is fresh
    assert pool.subscriptions[0].filters == [{"kinds": [0], "authors": [AUTHOR_B]}]


@pytest.mark.asyncio
async def test_profile_fully_cached_batch_opens_no_subscription():
    """Test that a batch of cached authors never touches the relays."""
    cached = make_event(id="cached", pubkey=AUTHOR_A, kind=0)
    pool = FakePool()
    processor = create_profile_processor(pool=pool, relay_urls=RELAYS, **FAST)
    processor.set_cached_item(AUTHOR_A, cached)

    assert await processor.get_or_create_fetch_promise(AUTHOR_A) is cached
    assert pool.subscriptions == []


@pytest.mark.asyncio
async def test_profile_without_relays_raises_synchronously():
    """Test that requesting a profile without relays raises ConfigurationError."""
    processor = create_profile_processor(pool=FakePool(), relay_urls=[], **FAST)

    with pytest.raises(ConfigurationError, match="No relays configured"):
        processor.get_or_create_fetch_promise(AUTHOR_A)

    assert processor._pending_fetches == {}
