"""
Tests for zap amount parsing and the stats manager.
"""

import asyncio

import httpx
import pytest
import respx

from zapbatch.cache import CacheManager
from zapbatch.models import ZapStats
from zapbatch.stats import STATS_API_URL, StatsManager, extract_amount_from_bolt11, format_stats
from tests.mocks.relays import make_event

NPUB = "npub1zapped"
NOTE = "note1zapped"


@pytest.mark.parametrize(
    "bolt11, expected",
    [
        ("lnbc10u1pvjluezpp5qqqsyqcyq5", 1_000_000),
        ("lnbc2500n1pvjluezpp5qqqsyqcyq5", 250_000),
        ("lntb20m1pvjluezpp5qqqsyqcyq5", 2_000_000_000),
        ("lnbc21pvjluezpp5qqqsyqcyq5", 200_000_000_000),
        ("lnbc10p1pvjluezpp5qqqsyqcyq5", 1),
        ("lnbc15p1pvjluezpp5qqqsyqcyq5", 0),
        ("LNBC10U1PVJLUEZPP5QQQSYQCYQ5", 1_000_000),
        ("lnbc1pvjluezpp5qqqsyqcyq5", 0),
        ("not-an-invoice", 0),
        ("", 0),
        (None, 0),
    ],
)
def test_extract_amount_from_bolt11(bolt11, expected):
    assert extract_amount_from_bolt11(bolt11) == expected


def test_format_stats_reads_first_entry():
    payload = {"stats": {"abc": {"zaps_received": {"count": 3, "msats": 9000, "max_msats": 5000}}}}

    assert format_stats(payload) == ZapStats(count=3, msats=9000, max_msats=5000)
    assert format_stats({"stats": {}}) is None
    assert format_stats([]) is None


def _zap(*, amount: str, realtime: bool, id: str = "zap", tag_name: str = "bolt11"):
    event = make_event(id=id, kind=9735, tags=[[tag_name, amount]])
    event.is_realtime_event = realtime
    return event


@pytest.fixture
def manager() -> StatsManager:
    return StatsManager(cache=CacheManager())


@pytest.mark.asyncio
@respx.mock
async def test_profile_stats_use_profile_endpoint(manager):
    """Test that npub identifiers query the profile endpoint and are cached."""
    route = respx.get(f"{STATS_API_URL}/profile/{NPUB}").mock(
        return_value=httpx.Response(
            200,
            json={"stats": {"pk": {"zaps_received": {"count": 2, "msats": 3000, "max_msats": 2000}}}},
        )
    )

    stats = await manager.get_zap_stats(NPUB, "view", identifier_type="npub")
    again = await manager.get_zap_stats(NPUB, "view", identifier_type="npub")

    assert stats == ZapStats(count=2, msats=3000, max_msats=2000)
    assert again == stats
    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_stats_timeout_returns_timeout_error(manager):
    respx.get(f"{STATS_API_URL}/event/{NOTE}").mock(side_effect=httpx.ConnectTimeout("slow"))

    stats = await manager.get_zap_stats(NOTE, "view", identifier_type="note")

    assert stats.error is True
    assert stats.timeout is True


@pytest.mark.asyncio
@respx.mock
async def test_stats_http_error_is_not_cached(manager):
    """Test that failed requests are retried on the next call."""
    route = respx.get(f"{STATS_API_URL}/event/{NOTE}").mock(return_value=httpx.Response(502))

    first = await manager.get_zap_stats(NOTE, "view", identifier_type="note")
    await manager.get_zap_stats(NOTE, "view", identifier_type="note")

    assert first == ZapStats(error=True, timeout=False)
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_initialize_stats_shares_concurrent_calls(manager):
    route = respx.get(f"{STATS_API_URL}/event/{NOTE}").mock(
        return_value=httpx.Response(200, json={"stats": {"id": {"zaps": {"count": 1, "msats": 1000}}}})
    )

    results = await asyncio.gather(
        manager.initialize_stats(NOTE, "view", identifier_type="note"),
        manager.initialize_stats(NOTE, "view", identifier_type="note"),
    )

    assert results[0] == results[1] == ZapStats(count=1, msats=1000)
    assert route.call_count == 1
    assert manager.get_current_stats("view") == results[0]


@pytest.mark.asyncio
async def test_initialize_stats_for_address_skips_api(manager):
    """Test that naddr views get a timeout result without any request."""
    with respx.mock(assert_all_called=False) as mock:
        stats = await manager.initialize_stats("naddr1x", "view", identifier_type="naddr")

    assert stats == ZapStats.timeout_error()
    assert mock.calls.call_count == 0


def test_only_live_zaps_update_totals(manager):
    """Test that backfill receipts are ignored and live ones accumulate."""
    assert manager.handle_zap_event(_zap(amount="lnbc10u1pvjluez", realtime=False), "view", NPUB) is None

    manager.handle_zap_event(_zap(amount="lnbc10u1pvjluez", realtime=True, id="z1"), "view", NPUB)
    updated = manager.handle_zap_event(_zap(amount="lnbc2500n1pvjluez", realtime=True, id="z2"), "view", NPUB)

    assert updated == ZapStats(count=2, msats=1_250_000, max_msats=1_000_000)
    assert manager.get_current_stats("view") == updated


def test_zero_amount_zaps_are_ignored(manager):
    assert manager.handle_zap_event(_zap(amount="garbage", realtime=True), "view", NPUB) is None
    assert manager.get_current_stats("view") is None


def test_bolt11_tag_name_is_case_insensitive(manager):
    updated = manager.handle_zap_event(
        _zap(amount="lnbc10u1pvjluez", realtime=True, tag_name="BOLT11"), "view", NPUB
    )

    assert updated == ZapStats(count=1, msats=1_000_000, max_msats=1_000_000)
