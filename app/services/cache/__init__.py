from .broadcaster import CACHE_INVALIDATED_EVENT, CacheEventBroadcaster, Subscriber, format_sse
from .memory_cache import PUBLISHING_INVALIDATION_PATTERNS, MemoryCache, pattern_group_name

__all__ = [
    "CACHE_INVALIDATED_EVENT",
    "CacheEventBroadcaster",
    "MemoryCache",
    "PUBLISHING_INVALIDATION_PATTERNS",
    "Subscriber",
    "format_sse",
    "pattern_group_name",
]
