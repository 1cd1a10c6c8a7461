#!/usr/bin/env python3
"""
Cacheable Fetch
HTTP request orchestration over a persistent response cache

Flow for every request:
  1. Derive the cache key, look the entry up
  2. Fresh entry           → serve from cache, no network
  3. Stale entry           → conditional request, then serve cached or new body
  4. No (usable) entry     → fetch, store if HTTP rules allow it

Transport failures propagate to the caller. Store failures never do:
caching is an optimization, not a correctness dependency.
"""

import logging
import threading
from typing import Any, Dict, Optional, Union

from .config import FetchConfig, load_config
from .key_generator import CacheKeyGenerator
from .models import (
    CacheEntry,
    HeadersInput,
    RequestDescriptor,
    ResponseBody,
    ResponseDescriptor,
    tee_body,
)
from .policy import CachePolicy, PolicyError
from .policy_adapter import to_headers, to_policy_request, to_policy_response
from .storage import EntryStore, close_store, open_store
from .transport import RequestsTransport, Transport

logger = logging.getLogger(__name__)

# Raised by the evaluator when stored policy metadata is malformed
UNUSABLE_ENTRY_ERRORS = (PolicyError, AttributeError, KeyError, TypeError, ValueError)


def _cached_body(entry: CacheEntry) -> Optional[ResponseBody]:
    return ResponseBody(entry.body) if entry.body is not None else None


class CacheableFetcher:
    """
    Serves requests from the entry store when HTTP caching rules allow it.

    The store and transport are injected so tests can substitute isolated
    instances; by default the process-wide store is used.
    """

    def __init__(
        self,
        store: EntryStore = None,
        transport: Transport = None,
        config: FetchConfig = None,
        key_generator: CacheKeyGenerator = None,
    ):
        self.config = config or load_config()
        self.store = store if store is not None else open_store(
            self.config.storage_path, compression=self.config.compression
        )
        self.transport = transport or RequestsTransport(timeout=self.config.timeout_sec)
        self.key_generator = key_generator or CacheKeyGenerator()

        self.stats = {
            "hits": 0,
            "misses": 0,
            "revalidated": 0,
            "updated": 0,
            "bypassed": 0,
            "writes": 0,
            "write_failures": 0,
            "deletes": 0,
        }

    def _policy_options(self) -> Dict[str, Any]:
        return {
            "shared": self.config.shared,
            "cache_heuristic": self.config.cache_heuristic,
            "immutable_min_ttl": self.config.immutable_min_ttl_sec,
        }

    def handle(self, request: RequestDescriptor) -> ResponseDescriptor:
        """Produce a response for ``request``, from cache or from the origin."""
        key = self.key_generator(request)
        entry = self.store.get(key)

        if entry is not None:
            policy_request = to_policy_request(request)
            try:
                cached_policy = CachePolicy.from_object(entry.policy)
                if cached_policy.satisfies_without_revalidation(policy_request):
                    return self._serve_hit(key, entry, cached_policy)
                conditional_headers = cached_policy.revalidation_headers(policy_request)
            except UNUSABLE_ENTRY_ERRORS as e:
                logger.warning(f"Unusable cache entry {key}: {e}")
            else:
                return self._revalidate(key, request, entry, cached_policy, conditional_headers)

        return self._fetch(key, request)

    def _serve_hit(self, key: str, entry: CacheEntry, policy: CachePolicy) -> ResponseDescriptor:
        self.stats["hits"] += 1
        logger.debug(f"Cache hit {key}")
        return ResponseDescriptor(
            status=entry.status,
            headers=to_headers(policy.response_headers()),
            body=_cached_body(entry),
            cache_status="hit",
        )

    def _revalidate(
        self,
        key: str,
        request: RequestDescriptor,
        entry: CacheEntry,
        cached_policy: CachePolicy,
        conditional_headers: Dict[str, Any],
    ) -> ResponseDescriptor:
        conditional_request = request.with_headers(to_headers(conditional_headers))
        logger.debug(f"Revalidating {key}")
        revalidation_response = self.transport.execute(conditional_request)

        try:
            result = cached_policy.revalidated_policy(
                to_policy_request(conditional_request),
                to_policy_response(revalidation_response),
            )
        except UNUSABLE_ENTRY_ERRORS as e:
            logger.warning(f"Unusable cache entry {key}: {e}")
            if revalidation_response.body is not None:
                revalidation_response.body.close()
            return self._fetch(key, request)
        policy = result.policy

        if not result.modified:
            if revalidation_response.body is not None:
                revalidation_response.body.close()
            self.stats["revalidated"] += 1
            self._persist(key, policy, entry.body)
            return ResponseDescriptor(
                status=policy.status,
                headers=to_headers(policy.response_headers()),
                body=_cached_body(entry),
                cache_status="revalidated",
            )

        if not policy.storable():
            # The origin no longer lets this response be stored.
            self.stats["bypassed"] += 1
            self._forget(key)
            return ResponseDescriptor(
                status=revalidation_response.status,
                headers=to_headers(policy.response_headers()),
                body=revalidation_response.body,
                cache_status="bypass",
            )

        self.stats["updated"] += 1
        stored_view, returned_view = tee_body(revalidation_response.body)
        self._persist(key, policy, stored_view.read() if stored_view else None)
        return ResponseDescriptor(
            status=revalidation_response.status,
            headers=to_headers(policy.response_headers()),
            body=returned_view,
            cache_status="updated",
        )

    def _fetch(self, key: str, request: RequestDescriptor) -> ResponseDescriptor:
        response = self.transport.execute(request)
        policy = CachePolicy(
            to_policy_request(request),
            to_policy_response(response),
            **self._policy_options(),
        )

        if not policy.storable():
            self.stats["bypassed"] += 1
            logger.debug(f"Not storable: {key} (status {response.status})")
            response.cache_status = "bypass"
            return response

        self.stats["misses"] += 1
        stored_view, returned_view = tee_body(response.body)
        self._persist(key, policy, stored_view.read() if stored_view else None)
        return ResponseDescriptor(
            status=response.status,
            headers=response.headers,
            body=returned_view,
            cache_status="miss",
        )

    def _persist(self, key: str, policy: CachePolicy, body: Optional[bytes]) -> None:
        if self.store.put(key, CacheEntry(policy=policy.to_object(), body=body)):
            self.stats["writes"] += 1
        else:
            self.stats["write_failures"] += 1

    def _forget(self, key: str) -> None:
        if self.store.delete(key):
            self.stats["deletes"] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestration statistics."""
        served = self.stats["hits"] + self.stats["revalidated"]
        total = served + self.stats["misses"] + self.stats["updated"] + self.stats["bypassed"]
        hit_rate = (served / total * 100) if total > 0 else 0
        return dict(self.stats, total_requests=total, hit_rate_percent=round(hit_rate, 1))


_default_fetcher: Optional[CacheableFetcher] = None
_default_lock = threading.Lock()


def get_fetcher() -> CacheableFetcher:
    """Get or create the fetcher bound to the process-wide store."""
    global _default_fetcher
    with _default_lock:
        if _default_fetcher is None:
            _default_fetcher = CacheableFetcher()
        return _default_fetcher


def cacheable_fetch(
    target: Union[str, RequestDescriptor],
    method: str = "GET",
    headers: HeadersInput = None,
    body=None,
) -> ResponseDescriptor:
    """
    Send an HTTP(S) request through the cache.

    Args:
        target: URL string, or a ready-made RequestDescriptor
        method: HTTP method (ignored when target is a descriptor)
        headers: request headers, dict or (name, value) pairs
        body: str, bytes or iterable of bytes for POST/PUT/PATCH

    Returns:
        ResponseDescriptor; its ``cache_status`` tells where it came from.
    """
    if isinstance(target, RequestDescriptor):
        request = target
    else:
        request = RequestDescriptor.build(target, method=method, headers=headers, body=body)
    return get_fetcher().handle(request)


def close() -> None:
    """Orderly shutdown: drop the default fetcher and close the shared store."""
    global _default_fetcher
    with _default_lock:
        if _default_fetcher is not None and isinstance(_default_fetcher.transport, RequestsTransport):
            _default_fetcher.transport.close()
        _default_fetcher = None
    close_store()


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.DEBUG)

    url = sys.argv[1] if len(sys.argv) > 1 else "https://example.com/"
    for attempt in (1, 2):
        response = cacheable_fetch(url)
        size = len(response.read())
        print(f"#{attempt}: {response.status} {response.cache_status} ({size} bytes)")

    print(get_fetcher().get_stats())
    close()
