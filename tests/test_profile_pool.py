"""
Tests for profile resolution and NIP-05 verification.
"""

import asyncio
import json

import httpx
import pytest
import respx

from zapbatch.cache import CacheManager
from zapbatch.config import AppConfig, BatchProcessorConfig, ProfileConfig
from zapbatch.models import ProfileResult
from zapbatch.profile_pool import ProfilePool, is_valid_pubkey
from tests.mocks.relays import AUTHOR_A, AUTHOR_B, FakePool, make_event

NOW = 1_700_000_000.0


def _profile_event(*, pubkey: str, content: dict | str, created_at: int = 100):
    body = content if isinstance(content, str) else json.dumps(content)
    return make_event(id=f"meta-{pubkey[:4]}-{created_at}", pubkey=pubkey, kind=0, created_at=created_at, content=body)


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        batch_processor=BatchProcessorConfig(timeout_duration=0.2, eose_grace_period=0.01),
        profile=ProfileConfig(batch_delay=0.01, relays=["wss://profiles.example"]),
    )


@pytest.fixture
def cache() -> CacheManager:
    return CacheManager()


def _make_pool(*, cache, config, events=None) -> tuple[ProfilePool, FakePool]:
    transport = FakePool(events=events)
    return ProfilePool(cache=cache, config=config, pool=transport, clock=lambda: NOW), transport


def test_is_valid_pubkey():
    assert is_valid_pubkey(AUTHOR_A)
    assert not is_valid_pubkey("abc")
    assert not is_valid_pubkey(None)


@pytest.mark.asyncio
async def test_fetch_profiles_keeps_input_order(cache, config):
    """Test that profiles come back in request order with defaults for unknown keys."""
    events = [
        _profile_event(pubkey=AUTHOR_A, content={"name": "alice", "display_name": "Alice"}),
        _profile_event(pubkey=AUTHOR_B, content={"name": "bob"}),
    ]
    profile_pool, transport = _make_pool(cache=cache, config=config, events=events)

    profiles = await profile_pool.fetch_profiles([AUTHOR_B, "not-a-key", AUTHOR_A])

    assert [profile.name for profile in profiles] == ["bob", "anonymous", "Alice"]
    assert profiles[0].last_updated == NOW
    assert len(transport.subscriptions) == 1


@pytest.mark.asyncio
async def test_fetched_profiles_are_cached(cache, config):
    events = [_profile_event(pubkey=AUTHOR_A, content={"name": "alice"})]
    profile_pool, transport = _make_pool(cache=cache, config=config, events=events)

    await profile_pool.fetch_profiles([AUTHOR_A])
    [profile] = await profile_pool.fetch_profiles([AUTHOR_A])

    assert profile.name == "alice"
    assert cache.get_profile(AUTHOR_A).name == "alice"
    assert len(transport.subscriptions) == 1


@pytest.mark.asyncio
async def test_unresolved_profiles_are_not_cached(cache, config):
    """Test that default profiles are returned but never cached."""
    profile_pool, transport = _make_pool(cache=cache, config=config)

    [first] = await profile_pool.fetch_profiles([AUTHOR_A])
    await profile_pool.fetch_profiles([AUTHOR_A])

    assert first == ProfileResult.default()
    assert cache.get_profile(AUTHOR_A) is None
    assert len(transport.subscriptions) == 2


@pytest.mark.asyncio
async def test_malformed_profile_content_yields_default(cache, config):
    events = [_profile_event(pubkey=AUTHOR_A, content="{not json")]
    profile_pool, _ = _make_pool(cache=cache, config=config, events=events)

    [profile] = await profile_pool.fetch_profiles([AUTHOR_A])

    assert profile.name == "anonymous"


@pytest.mark.asyncio
async def test_profiles_without_relays_yield_defaults(cache, config):
    """Test that a configuration error becomes a default profile per key."""
    config.profile.relays = []
    profile_pool, transport = _make_pool(cache=cache, config=config)

    profiles = await profile_pool.fetch_profiles([AUTHOR_A, AUTHOR_B])

    assert profiles == [ProfileResult.default(), ProfileResult.default()]
    assert transport.subscriptions == []


@pytest.mark.asyncio
async def test_verify_nip05_formats_and_caches(cache, config):
    """Test that a matching nostr.json verifies and is escaped for display."""
    events = [_profile_event(pubkey=AUTHOR_A, content={"name": "alice", "nip05": "_@example.com"})]
    profile_pool, _ = _make_pool(cache=cache, config=config, events=events)

    with respx.mock:
        route = respx.get("https://example.com/.well-known/nostr.json", params={"name": "_"}).mock(
            return_value=httpx.Response(200, json={"names": {"_": AUTHOR_A}})
        )

        results = await asyncio.gather(
            profile_pool.verify_nip05(AUTHOR_A),
            profile_pool.verify_nip05(AUTHOR_A),
        )

    assert results == ["@example.com", "@example.com"]
    assert route.call_count == 1
    assert profile_pool.get_nip05(AUTHOR_A) == "@example.com"
    assert cache.get_nip05_pending_fetch(AUTHOR_A) is None


@pytest.mark.asyncio
async def test_verify_nip05_mismatch_caches_none(cache, config):
    events = [_profile_event(pubkey=AUTHOR_A, content={"nip05": "alice@example.com"})]
    profile_pool, _ = _make_pool(cache=cache, config=config, events=events)

    with respx.mock:
        respx.get("https://example.com/.well-known/nostr.json").mock(
            return_value=httpx.Response(200, json={"names": {"alice": AUTHOR_B}})
        )
        assert await profile_pool.verify_nip05(AUTHOR_A) is None

    assert cache.has_nip05(AUTHOR_A) is True
    assert cache.get_nip05(AUTHOR_A) is None


@pytest.mark.asyncio
async def test_verify_nip05_http_error_caches_none(cache, config):
    events = [_profile_event(pubkey=AUTHOR_A, content={"nip05": "alice@example.com"})]
    profile_pool, _ = _make_pool(cache=cache, config=config, events=events)

    with respx.mock:
        respx.get("https://example.com/.well-known/nostr.json").mock(
            return_value=httpx.Response(500)
        )
        assert await profile_pool.verify_nip05(AUTHOR_A) is None

    assert cache.has_nip05(AUTHOR_A) is True


@pytest.mark.asyncio
async def test_verify_nip05_escapes_html(cache, config):
    nip05 = "<b>@example.com"
    events = [_profile_event(pubkey=AUTHOR_A, content={"nip05": nip05})]
    profile_pool, _ = _make_pool(cache=cache, config=config, events=events)

    with respx.mock:
        respx.get("https://example.com/.well-known/nostr.json").mock(
            return_value=httpx.Response(200, json={"names": {"<b>": AUTHOR_A}})
        )
        assert await profile_pool.verify_nip05(AUTHOR_A) == "&lt;b&gt;@example.com"


@pytest.mark.asyncio
async def test_process_batch_profiles_prefetches_authors(cache, config):
    """Test that authors of a page of receipts are resolved in one batch."""
    events = [
        _profile_event(pubkey=AUTHOR_A, content={"name": "alice"}),
        _profile_event(pubkey=AUTHOR_B, content={"name": "bob"}),
    ]
    profile_pool, transport = _make_pool(cache=cache, config=config, events=events)
    receipts = [
        make_event(id="z1", pubkey=AUTHOR_A, kind=9735),
        make_event(id="z2", pubkey=AUTHOR_B, kind=9735),
        make_event(id="z3", pubkey=AUTHOR_A, kind=9735),
    ]

    await profile_pool.process_batch_profiles(receipts)

    assert cache.get_profile(AUTHOR_A).name == "alice"
    assert cache.get_profile(AUTHOR_B).name == "bob"
    assert cache.get_nip05(AUTHOR_A) is None
    assert len(transport.subscriptions) == 1


@pytest.mark.asyncio
async def test_clear_cache_forgets_profiles(cache, config):
    events = [_profile_event(pubkey=AUTHOR_A, content={"name": "alice"})]
    profile_pool, transport = _make_pool(cache=cache, config=config, events=events)
    await profile_pool.fetch_profiles([AUTHOR_A])

    profile_pool.clear_cache()
    await profile_pool.fetch_profiles([AUTHOR_A])

    assert len(transport.subscriptions) == 2
