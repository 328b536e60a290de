from .batching.core import BatchProcessor as BatchProcessor
from .cache import CacheManager as CacheManager
from .cache import TTLCache as TTLCache
from .config import AppConfig as AppConfig
from .config import ViewerConfig as ViewerConfig
from .context import AppContext as AppContext
from .event_pool import EventPool as EventPool
from .pool import RelayPool as RelayPool
from .pool import SubscriptionHandlers as SubscriptionHandlers
from .profile_pool import ProfilePool as ProfilePool
from .stats import StatsManager as StatsManager

__all__ = [
    "AppConfig",
    "AppContext",
    "BatchProcessor",
    "CacheManager",
    "EventPool",
    "ProfilePool",
    "RelayPool",
    "StatsManager",
    "SubscriptionHandlers",
    "TTLCache",
    "ViewerConfig",
]
