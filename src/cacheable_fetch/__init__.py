"""
Cacheable Fetch
HTTP requests served from a persistent, RFC 9111-aware response cache.
"""

from .fetch import CacheableFetcher, cacheable_fetch, close, get_fetcher
from .key_generator import CacheKeyGenerator, derive_cache_key
from .models import (
    BodyConsumedError,
    CacheableFetchError,
    CacheEntry,
    RequestDescriptor,
    ResponseBody,
    ResponseDescriptor,
)
from .policy import CachePolicy, PolicyError
from .storage import EntryStore, close_store, open_store
from .transport import RequestsTransport

__all__ = [
    'BodyConsumedError',
    'CacheEntry',
    'CacheKeyGenerator',
    'CachePolicy',
    'CacheableFetchError',
    'CacheableFetcher',
    'EntryStore',
    'PolicyError',
    'RequestDescriptor',
    'RequestsTransport',
    'ResponseBody',
    'ResponseDescriptor',
    'cacheable_fetch',
    'close',
    'close_store',
    'derive_cache_key',
    'get_fetcher',
    'open_store',
]
