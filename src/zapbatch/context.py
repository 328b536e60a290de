"""
Process-wide state owned by one explicit object.

``AppContext`` builds the shared cache and relay pool once and hands them to the
coordinator, the profile pool and the stats manager. Use it as an async context
manager to close subscriptions and relay connections on exit.
"""

from __future__ import annotations

import typing as t

import structlog

from zapbatch.cache import CacheManager, TTLCache
from zapbatch.config import AppConfig
from zapbatch.event_pool import EventPool
from zapbatch.pool import RelayPool, TransportPool
from zapbatch.profile_pool import ProfilePool
from zapbatch.stats import StatsManager

log = structlog.get_logger(__name__)


class AppContext:
    """
    Owner of the cache, the relay pools and the services built on them.

    Parameters
    ----------
    config : AppConfig | None, optional
        Application settings.
    zap_pool : TransportPool | None, optional
        Pool used for zap streams and references.
    profile_pool : TransportPool | None, optional
        Pool used for profile lookups. Profiles use their own relays, so a
        separate ``RelayPool`` is created when omitted.
    """

    def __init__(
        self,
        *,
        config: AppConfig | None = None,
        zap_pool: TransportPool | None = None,
        profile_pool: TransportPool | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.cache = CacheManager(
            cache=TTLCache(max_age=self.config.batch_processor.max_cache_age),
            stats_duration=self.config.request.cache_duration,
        )
        self._zap_transport = zap_pool if zap_pool is not None else RelayPool()
        self._profile_transport = profile_pool if profile_pool is not None else RelayPool()
        self.event_pool = EventPool(cache=self.cache, config=self.config, pool=self._zap_transport)
        self.profile_pool = ProfilePool(
            cache=self.cache, config=self.config, pool=self._profile_transport
        )
        self.stats = StatsManager(cache=self.cache, config=self.config)

    async def __aenter__(self) -> AppContext:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self.event_pool.close()
        await self.profile_pool.close()
        await self._zap_transport.close()
        if self._profile_transport is not self._zap_transport:
            await self._profile_transport.close()
        log.debug(event="AppContext closed")
