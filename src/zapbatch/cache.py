"""
In-memory, namespaced TTL cache used for profiles, references and stats.
"""

from __future__ import annotations

import asyncio
import time
import typing as t
from collections import defaultdict
from dataclasses import dataclass

import structlog

from zapbatch.models import NostrEvent, ProfileResult, ZapStats

log = structlog.get_logger(__name__)

PROFILE_NAMESPACE = "profile"
REFERENCE_NAMESPACE = "reference"
STATS_NAMESPACE = "stats"
DECODED_NAMESPACE = "decoded"
NIP05_NAMESPACE = "nip05"

CacheListener = t.Callable[[str, t.Any], None]


@dataclass
class CacheEntry:
    """
    Cached value with the time it was written.

    Parameters
    ----------
    value : typing.Any
        Cached value.
    timestamp : float
        Unix timestamp of the write.
    """

    value: t.Any
    timestamp: float


class TTLCache:
    """
    Namespaced key/value store with age-based expiry and write notifications.

    Entries are valid while ``now - timestamp <= max_age``. Expired entries are
    treated as absent and evicted on the next read.
    """

    def __init__(
        self,
        *,
        max_age: float,
        clock: t.Callable[[], float] = time.time,
    ) -> None:
        self._max_age = max_age
        self._clock = clock
        self._entries: dict[str, dict[str, CacheEntry]] = defaultdict(dict)
        self._listeners: dict[str, list[CacheListener]] = defaultdict(list)

    @property
    def max_age(self) -> float:
        return self._max_age

    def get_entry(
        self,
        *,
        namespace: str,
        key: str,
        max_age: float | None = None,
    ) -> CacheEntry | None:
        """
        Return a valid entry, evicting it when it has expired.

        Parameters
        ----------
        namespace : str
            Lookup kind the key belongs to.
        key : str
            Entry key.
        max_age : float | None, optional
            Expiry override for this read.

        Returns
        -------
        CacheEntry | None
            Entry when present and not expired.
        """
        entries = self._entries.get(namespace)
        if not entries:
            return None
        entry = entries.get(key)
        if entry is None:
            return None
        limit = self._max_age if max_age is None else max_age
        if self._clock() - entry.timestamp > limit:
            del entries[key]
            log.debug(event="Evicted expired cache entry", namespace=namespace, key=key)
            return None
        return entry

    def get(self, *, namespace: str, key: str, max_age: float | None = None) -> t.Any:
        entry = self.get_entry(namespace=namespace, key=key, max_age=max_age)
        return None if entry is None else entry.value

    def has(self, *, namespace: str, key: str) -> bool:
        return self.get_entry(namespace=namespace, key=key) is not None

    def set(self, *, namespace: str, key: str, value: t.Any) -> None:
        self._entries[namespace][key] = CacheEntry(value=value, timestamp=self._clock())
        self._notify(namespace=namespace, key=key, value=value)

    def delete(self, *, namespace: str, key: str) -> None:
        self._entries.get(namespace, {}).pop(key, None)

    def clear(self, *, namespace: str | None = None) -> None:
        if namespace is None:
            self._entries.clear()
        else:
            self._entries.pop(namespace, None)

    def subscribe(self, *, namespace: str, callback: CacheListener) -> t.Callable[[], None]:
        """
        Register a callback invoked with ``(key, value)`` on every write.

        Parameters
        ----------
        namespace : str
            Namespace to watch.
        callback : CacheListener
            Listener called synchronously after each write.

        Returns
        -------
        typing.Callable[[], None]
            Function removing the listener.
        """
        self._listeners[namespace].append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners[namespace]:
                self._listeners[namespace].remove(callback)

        return unsubscribe

    def _notify(self, *, namespace: str, key: str, value: t.Any) -> None:
        for callback in list(self._listeners.get(namespace, [])):
            try:
                callback(key, value)
            except Exception as e:
                log.warning(
                    event="Cache listener failed",
                    namespace=namespace,
                    key=key,
                    error=str(object=e),
                )


class CacheManager:
    """
    Application-level view over a ``TTLCache``.

    Parameters
    ----------
    cache : TTLCache | None, optional
        Underlying store. A 30 minute store is created when omitted.
    stats_duration : float, optional
        Expiry applied to zap stats, which go stale faster than profiles.
    """

    def __init__(self, *, cache: TTLCache | None = None, stats_duration: float = 300.0) -> None:
        self._cache = cache or TTLCache(max_age=1800.0)
        self._stats_duration = stats_duration
        self._nip05_pending: dict[str, asyncio.Task[str | None]] = {}

    @property
    def cache(self) -> TTLCache:
        return self._cache

    def get_profile(self, pubkey: str) -> ProfileResult | None:
        return self._cache.get(namespace=PROFILE_NAMESPACE, key=pubkey)

    def set_profile(self, pubkey: str, profile: ProfileResult) -> None:
        self._cache.set(namespace=PROFILE_NAMESPACE, key=pubkey, value=profile)

    def subscribe_profiles(
        self, callback: t.Callable[[str, ProfileResult], None]
    ) -> t.Callable[[], None]:
        return self._cache.subscribe(namespace=PROFILE_NAMESPACE, callback=callback)

    def get_reference(self, key: str) -> NostrEvent | None:
        return self._cache.get(namespace=REFERENCE_NAMESPACE, key=key)

    def set_reference(self, key: str, event: NostrEvent) -> None:
        self._cache.set(namespace=REFERENCE_NAMESPACE, key=key, value=event)

    def get_cached_stats(self, view_id: str, identifier: str) -> ZapStats | None:
        return self._cache.get(
            namespace=STATS_NAMESPACE,
            key=f"{view_id}:{identifier}",
            max_age=self._stats_duration,
        )

    def update_stats_cache(self, view_id: str, identifier: str, stats: ZapStats) -> None:
        self._cache.set(namespace=STATS_NAMESPACE, key=f"{view_id}:{identifier}", value=stats)
        self._cache.set(namespace=STATS_NAMESPACE, key=view_id, value=stats)

    def get_view_stats(self, view_id: str) -> ZapStats | None:
        return self._cache.get(
            namespace=STATS_NAMESPACE, key=view_id, max_age=self._stats_duration
        )

    def has_decoded(self, key: str) -> bool:
        return self._cache.has(namespace=DECODED_NAMESPACE, key=key)

    def get_decoded(self, key: str) -> t.Any:
        return self._cache.get(namespace=DECODED_NAMESPACE, key=key)

    def set_decoded(self, key: str, value: t.Any) -> None:
        self._cache.set(namespace=DECODED_NAMESPACE, key=key, value=value)

    def has_nip05(self, pubkey: str) -> bool:
        return self._cache.has(namespace=NIP05_NAMESPACE, key=pubkey)

    def get_nip05(self, pubkey: str) -> str | None:
        return self._cache.get(namespace=NIP05_NAMESPACE, key=pubkey)

    def set_nip05(self, pubkey: str, nip05: str | None) -> None:
        self._cache.set(namespace=NIP05_NAMESPACE, key=pubkey, value=nip05)

    def get_nip05_pending_fetch(self, pubkey: str) -> asyncio.Task[str | None] | None:
        return self._nip05_pending.get(pubkey)

    def set_nip05_pending_fetch(self, pubkey: str, task: asyncio.Task[str | None]) -> None:
        self._nip05_pending[pubkey] = task

    def delete_nip05_pending_fetch(self, pubkey: str) -> None:
        self._nip05_pending.pop(pubkey, None)

    def clear_all(self) -> None:
        self._cache.clear()
        self._nip05_pending.clear()
