#!/usr/bin/env python3
"""
Cache Key Generation

Implements:
- derive_cache_key(request) -> "METHOD:URL[:BODYHASH]"
- Same method + same exact URL string (+ same textual body) = same key
- URLs are never normalized: "https://h" and "https://h/" are different keys
"""

import hashlib
import logging

from .models import ENTITY_METHODS, RequestDescriptor

logger = logging.getLogger(__name__)


def body_digest(body: str) -> str:
    """Lowercase hex MD5 of a textual body."""
    return hashlib.md5(body.encode("utf-8")).hexdigest()


def derive_cache_key(request: RequestDescriptor) -> str:
    """
    Generate a deterministic cache key for a request.

    Design:
        key = METHOD:URL
        - POST/PUT/PATCH with a str body get ":" + md5(body) appended
        - bytes and streamed bodies are never hashed
        - headers never participate in the key
    """
    key = f"{request.method}:{request.url}"

    body = request.body
    if body and isinstance(body, str) and request.method in ENTITY_METHODS:
        key += f":{body_digest(body)}"

    return key


class CacheKeyGenerator:
    """Key generator with debug logging of every derived key."""

    def generate_cache_key(self, request: RequestDescriptor) -> str:
        key = derive_cache_key(request)
        logger.debug(f"Generated key: {key}")
        return key

    __call__ = generate_cache_key
