"""
Zap statistics of a view: initial totals from the stats API, then live updates
from incoming zap receipts.
"""

from __future__ import annotations

import asyncio
import re
import typing as t

import httpx
import structlog

from zapbatch.cache import CacheManager
from zapbatch.config import AppConfig
from zapbatch.models import NostrEvent, ZapStats

log = structlog.get_logger(__name__)

STATS_API_URL = "https://api.nostr.band/v0/stats"
PROFILE_IDENTIFIER_TYPES = ("npub", "nprofile")

# Human-readable part of a BOLT11 invoice: ln + network + optional amount.
_BOLT11_HRP = re.compile(r"^ln(?:bcrt|bc|tbs|tb|sb)(?P<amount>\d+)?(?P<multiplier>[munp])?$")
_MSATS_PER_UNIT = {
    None: 100_000_000_000,
    "m": 100_000_000,
    "u": 100_000,
    "n": 100,
}


def extract_amount_from_bolt11(bolt11: str | None) -> int:
    """
    Return the amount of a BOLT11 invoice in millisatoshis.

    Parameters
    ----------
    bolt11 : str | None
        Encoded invoice.

    Returns
    -------
    int
        Amount in millisatoshis, ``0`` when the invoice is missing, malformed
        or has no amount.
    """
    if not bolt11:
        return 0
    invoice = bolt11.strip().lower()
    separator = invoice.rfind("1")
    if separator <= 0:
        return 0
    match = _BOLT11_HRP.match(invoice[:separator])
    if match is None or match.group("amount") is None:
        return 0

    amount = int(match.group("amount"))
    multiplier = match.group("multiplier")
    if multiplier == "p":
        # Pico-bitcoin amounts must land on whole millisatoshis.
        return amount // 10 if amount % 10 == 0 else 0
    return amount * _MSATS_PER_UNIT[multiplier]


def format_stats(payload: t.Any) -> ZapStats | None:
    """
    Extract zap totals from a stats API response.

    Parameters
    ----------
    payload : typing.Any
        Decoded JSON body.

    Returns
    -------
    ZapStats | None
        Totals, or ``None`` when the body holds no stats.
    """
    if not isinstance(payload, dict) or not payload.get("stats"):
        return None
    stats = next(iter(payload["stats"].values()), None)
    if not isinstance(stats, dict):
        return None

    zaps = stats.get("zaps_received") or stats.get("zaps") or {}
    return ZapStats(
        count=int(zaps.get("count") or 0),
        msats=int(zaps.get("msats") or 0),
        max_msats=int(zaps.get("max_msats") or 0),
    )


class StatsManager:
    """
    Track zap totals per view.

    Parameters
    ----------
    cache : CacheManager
        Cache holding per-view stats.
    config : AppConfig | None, optional
        Application settings.
    client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
        Factory of HTTP clients for the stats API.
    """

    def __init__(
        self,
        *,
        cache: CacheManager,
        config: AppConfig | None = None,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._cache = cache
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=self._config.request.request_timeout)
        )
        self._current_stats: dict[str, ZapStats] = {}
        self._initialization_status: dict[str, asyncio.Task[ZapStats | None]] = {}

    def get_current_stats(self, view_id: str) -> ZapStats | None:
        return self._current_stats.get(view_id)

    async def get_zap_stats(
        self, identifier: str, view_id: str, *, identifier_type: str
    ) -> ZapStats:
        cached = self._cache.get_cached_stats(view_id, identifier)
        if cached is not None:
            return cached

        stats = await self.fetch_stats(identifier, identifier_type=identifier_type)
        if not stats.error:
            self._cache.update_stats_cache(view_id, identifier, stats)
        return stats

    async def fetch_stats(self, identifier: str, *, identifier_type: str) -> ZapStats:
        """
        Query the stats API for an identifier.

        Parameters
        ----------
        identifier : str
            Encoded NIP-19 identifier.
        identifier_type : str
            Decoded type of ``identifier``; profiles and events use different
            endpoints.

        Returns
        -------
        ZapStats
            Totals, or an error result flagged ``timeout`` when the request
            timed out or returned no stats.
        """
        scope = "profile" if identifier_type in PROFILE_IDENTIFIER_TYPES else "event"
        try:
            async with self._client_factory() as client:
                response = await client.get(url=f"{STATS_API_URL}/{scope}/{identifier}")
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            log.warning(event="Stats request timed out", identifier=identifier, error=str(object=e))
            return ZapStats.timeout_error()
        except (httpx.HTTPError, ValueError) as e:
            log.error(event="Failed to fetch zap stats", identifier=identifier, error=str(object=e))
            return ZapStats(error=True, timeout=False)

        return format_stats(payload) or ZapStats.timeout_error()

    async def initialize_stats(
        self, identifier: str, view_id: str, *, identifier_type: str
    ) -> ZapStats | None:
        """
        Load the initial totals of a view once, sharing concurrent calls.

        Parameters
        ----------
        identifier : str
            Encoded NIP-19 identifier.
        view_id : str
            View the totals belong to.
        identifier_type : str
            Decoded type of ``identifier``. Addresses (``naddr``) are not
            supported by the stats API and yield a timeout result.

        Returns
        -------
        ZapStats | None
            Totals of the view.
        """
        pending = self._initialization_status.get(view_id)
        if pending is not None:
            return await asyncio.shield(pending)

        if identifier_type == "naddr":
            timeout_stats = ZapStats.timeout_error()
            self._current_stats[view_id] = timeout_stats
            return timeout_stats

        task = asyncio.create_task(
            coro=self._initialize(identifier=identifier, view_id=view_id, identifier_type=identifier_type),
            name=f"stats_init_{view_id}",
        )
        self._initialization_status[view_id] = task
        return await asyncio.shield(task)

    async def _initialize(
        self, *, identifier: str, view_id: str, identifier_type: str
    ) -> ZapStats | None:
        try:
            stats = await self.get_zap_stats(identifier, view_id, identifier_type=identifier_type)
            self._current_stats[view_id] = stats
            return stats
        finally:
            self._initialization_status.pop(view_id, None)

    def handle_zap_event(self, event: NostrEvent, view_id: str, identifier: str) -> ZapStats | None:
        """
        Add a live zap receipt to the totals of a view.

        Parameters
        ----------
        event : NostrEvent
            Zap receipt. Backfill events are ignored.
        view_id : str
            View the receipt was received for.
        identifier : str
            Identifier of the view.

        Returns
        -------
        ZapStats | None
            Updated totals, or ``None`` when the event was not counted.
        """
        if not event.is_realtime_event:
            return None

        amount_msats = extract_amount_from_bolt11(event.get_tag_value("bolt11", ignore_case=True))
        if amount_msats <= 0:
            return None

        current = self._cache.get_view_stats(view_id) or self._current_stats.get(view_id)
        base = current or ZapStats()
        updated = ZapStats(
            count=base.count + 1,
            msats=base.msats + amount_msats,
            max_msats=max(base.max_msats, amount_msats),
        )
        self._cache.update_stats_cache(view_id, identifier, updated)
        self._current_stats[view_id] = updated
        log.debug(
            event="Zap counted",
            view_id=view_id,
            event_id=event.id,
            amount_msats=amount_msats,
            count=updated.count,
        )
        return updated
