#!/usr/bin/env python3
"""
Unit tests for cache key derivation
"""

import hashlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from cacheable_fetch.key_generator import CacheKeyGenerator, derive_cache_key
from cacheable_fetch.models import RequestDescriptor


class TestDeriveCacheKey:
    """Test METHOD:URL[:BODYHASH] key format."""

    def test_get_key_is_method_and_url(self):
        request = RequestDescriptor.build("https://api.example.com/items?page=2")
        assert derive_cache_key(request) == "GET:https://api.example.com/items?page=2"

    def test_method_is_uppercased(self):
        request = RequestDescriptor.build("https://h/x", method="get")
        assert derive_cache_key(request) == "GET:https://h/x"

    def test_no_url_normalization(self):
        """Test: trailing slash matters."""
        bare = derive_cache_key(RequestDescriptor.build("https://h"))
        slashed = derive_cache_key(RequestDescriptor.build("https://h/"))
        assert bare != slashed

    def test_query_string_distinguishes_keys(self):
        foo = derive_cache_key(RequestDescriptor.build("https://h/cache?foo"))
        bar = derive_cache_key(RequestDescriptor.build("https://h/cache?bar"))
        assert foo != bar

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH"])
    def test_textual_body_is_hashed(self, method):
        request = RequestDescriptor.build("https://h/q", method=method, body='{"q": 1}')
        digest = hashlib.md5(b'{"q": 1}').hexdigest()
        assert derive_cache_key(request) == f"{method}:https://h/q:{digest}"

    def test_different_bodies_different_keys(self):
        a = RequestDescriptor.build("https://h/q", method="POST", body="a")
        b = RequestDescriptor.build("https://h/q", method="POST", body="b")
        assert derive_cache_key(a) != derive_cache_key(b)

    def test_binary_body_not_hashed(self):
        request = RequestDescriptor.build("https://h/q", method="POST", body=b"\x00\x01")
        assert derive_cache_key(request) == "POST:https://h/q"

    def test_empty_body_not_hashed(self):
        request = RequestDescriptor.build("https://h/q", method="POST", body="")
        assert derive_cache_key(request) == "POST:https://h/q"

    def test_get_body_dropped(self):
        request = RequestDescriptor.build("https://h/q", method="GET", body="ignored")
        assert request.body is None
        assert derive_cache_key(request) == "GET:https://h/q"

    def test_headers_do_not_participate(self):
        a = RequestDescriptor.build("https://h/", headers={"Accept": "a", "X-Id": "1"})
        b = RequestDescriptor.build("https://h/", headers=[("X-Id", "2"), ("Accept", "b")])
        assert derive_cache_key(a) == derive_cache_key(b)


class TestCacheKeyGenerator:
    """Test the callable wrapper."""

    def test_deterministic_keys(self):
        keygen = CacheKeyGenerator()
        request = RequestDescriptor.build("https://h/a", method="PUT", body="x")
        assert keygen(request) == keygen.generate_cache_key(request) == derive_cache_key(request)
