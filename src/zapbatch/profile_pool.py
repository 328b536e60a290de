"""
Sender profile resolution and NIP-05 verification.
"""

from __future__ import annotations

import asyncio
import html
import time
import typing as t

import httpx
import structlog

from zapbatch.batching import BatchProcessor, create_profile_processor
from zapbatch.cache import CacheManager
from zapbatch.config import AppConfig
from zapbatch.models import NostrEvent, ProfileResult
from zapbatch.pool import RelayPool, TransportPool

log = structlog.get_logger(__name__)

PUBKEY_LENGTH = 64


def is_valid_pubkey(pubkey: t.Any) -> bool:
    return isinstance(pubkey, str) and len(pubkey) == PUBKEY_LENGTH


class ProfilePool:
    """
    Resolve profiles through a batched profile processor and the shared cache.

    Parameters
    ----------
    cache : CacheManager
        Cache holding profiles and NIP-05 results.
    config : AppConfig | None, optional
        Application settings.
    pool : TransportPool | None, optional
        Relay pool. A ``RelayPool`` is created when omitted.
    client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
        Factory of HTTP clients used for NIP-05 lookups.
    """

    def __init__(
        self,
        *,
        cache: CacheManager,
        config: AppConfig | None = None,
        pool: TransportPool | None = None,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
        clock: t.Callable[[], float] = time.time,
    ) -> None:
        self._config = config or AppConfig()
        self._cache = cache
        self._pool: TransportPool = pool if pool is not None else RelayPool()
        self._clock = clock
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=self._config.request.nip05_timeout)
        )
        self._profile_processor: BatchProcessor = create_profile_processor(
            pool=self._pool,
            profile_config=self._config.profile,
            config=self._config.batch_processor,
            clock=clock,
        )

    @property
    def processor(self) -> BatchProcessor:
        return self._profile_processor

    async def fetch_profiles(self, pubkeys: t.Sequence[str]) -> list[ProfileResult]:
        """
        Resolve profiles, keeping the order of ``pubkeys``.

        Parameters
        ----------
        pubkeys : typing.Sequence[str]
            Hex public keys.

        Returns
        -------
        list[ProfileResult]
            One profile per input key. Invalid keys and unresolvable profiles
            yield the default anonymous profile.
        """
        if not pubkeys:
            return []

        results: list[ProfileResult | None] = [None] * len(pubkeys)
        fetch_queue: list[tuple[int, str]] = []
        for index, pubkey in enumerate(pubkeys):
            cached = self._cache.get_profile(pubkey) if isinstance(pubkey, str) else None
            if cached is not None:
                results[index] = cached
            else:
                fetch_queue.append((index, pubkey))

        if fetch_queue:
            fetched = await asyncio.gather(
                *(self._fetch_single_profile(pubkey=pubkey) for _, pubkey in fetch_queue)
            )
            for (index, pubkey), profile in zip(fetch_queue, fetched):
                results[index] = profile
                if is_valid_pubkey(pubkey) and profile.last_updated is not None:
                    self._cache.set_profile(pubkey, profile)

        return [profile or ProfileResult.default() for profile in results]

    async def _fetch_single_profile(self, *, pubkey: str) -> ProfileResult:
        if not is_valid_pubkey(pubkey):
            log.warning(event="Invalid pubkey", pubkey=pubkey)
            return ProfileResult.default()

        try:
            event: NostrEvent | None = await asyncio.shield(
                self._profile_processor.get_or_create_fetch_promise(pubkey)
            )
        except Exception as e:
            log.warning(event="Profile fetch failed", pubkey=pubkey, error=str(object=e))
            return ProfileResult.default()

        if event is None or not event.content:
            return ProfileResult.default()
        return ProfileResult.from_metadata_event(event=event, now=self._clock())

    async def process_batch_profiles(self, events: t.Sequence[NostrEvent]) -> None:
        """
        Prefetch profiles and NIP-05 results of the authors of ``events``.

        Parameters
        ----------
        events : typing.Sequence[NostrEvent]
            Events whose authors are resolved.
        """
        pubkeys = list(
            dict.fromkeys(
                event.pubkey for event in events if event is not None and is_valid_pubkey(event.pubkey)
            )
        )
        if not pubkeys:
            return

        results = await asyncio.gather(
            self.fetch_profiles(pubkeys),
            *(self.verify_nip05(pubkey) for pubkey in pubkeys),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                log.warning(event="Batch profile processing failed", error=str(object=result))

    async def verify_nip05(self, pubkey: str) -> str | None:
        """
        Return the verified NIP-05 address of ``pubkey``.

        Parameters
        ----------
        pubkey : str
            Hex public key.

        Returns
        -------
        str | None
            HTML-escaped address, with ``_@domain`` shown as ``@domain``, or
            ``None`` when the profile has no address or verification failed.
        """
        if self._cache.has_nip05(pubkey):
            return self._cache.get_nip05(pubkey)

        pending = self._cache.get_nip05_pending_fetch(pubkey)
        if pending is None:
            pending = asyncio.create_task(
                coro=self._process_nip05_verification(pubkey=pubkey),
                name=f"nip05_{pubkey[:8]}",
            )
            self._cache.set_nip05_pending_fetch(pubkey, pending)
        return await asyncio.shield(pending)

    def get_nip05(self, pubkey: str) -> str | None:
        return self._cache.get_nip05(pubkey)

    async def _process_nip05_verification(self, *, pubkey: str) -> str | None:
        try:
            [profile] = await self.fetch_profiles([pubkey])
            if not profile.nip05:
                self._cache.set_nip05(pubkey, None)
                return None

            nip05 = await asyncio.wait_for(
                self._query_nip05(nip05=profile.nip05, pubkey=pubkey),
                timeout=self._config.request.nip05_timeout,
            )
            if not nip05:
                self._cache.set_nip05(pubkey, None)
                return None

            formatted = nip05[1:] if nip05.startswith("_@") else nip05
            escaped = html.escape(formatted)
            self._cache.set_nip05(pubkey, escaped)
            return escaped
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
            log.debug(event="NIP-05 verification failed", pubkey=pubkey, error=str(object=e))
            self._cache.set_nip05(pubkey, None)
            return None
        finally:
            self._cache.delete_nip05_pending_fetch(pubkey)

    async def _query_nip05(self, *, nip05: str, pubkey: str) -> str | None:
        name, _, domain = nip05.strip().rpartition("@")
        if not domain:
            return None
        name = name or "_"
        async with self._client_factory() as client:
            response = await client.get(
                url=f"https://{domain}/.well-known/nostr.json",
                params={"name": name},
            )
            response.raise_for_status()
            payload = response.json()
        names = payload.get("names") if isinstance(payload, dict) else None
        if not isinstance(names, dict):
            return None
        return nip05 if names.get(name) == pubkey else None

    def clear_cache(self) -> None:
        self._cache.clear_all()
        self._profile_processor.clear_cached_items()
        self._profile_processor.clear_pending_fetches()

    async def close(self) -> None:
        await self._profile_processor.close()
