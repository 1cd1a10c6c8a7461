"""
End-to-end tests against a local origin server.

The origin mirrors common caching scenarios: no-store counters, max-age
counters, Last-Modified and ETag revalidation, validators that change,
responses that stop being storable, a first-call 502 and gzip bodies.
"""

import gzip
import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from cacheable_fetch.config import FetchConfig
from cacheable_fetch.fetch import CacheableFetcher
from cacheable_fetch.models import RequestDescriptor
from cacheable_fetch.storage import EntryStore
from cacheable_fetch.transport import RequestsTransport

LAST_MODIFIED = "Wed, 21 Oct 2015 07:28:00 GMT"
ETAG = '"33a64df551425fcc55e4d42a148795d9f25f89d4"'


class OriginHandler(BaseHTTPRequestHandler):

    def log_message(self, format, *args):
        pass

    def _send(self, status, body=b"", headers=None):
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        if status != 304:
            self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if status != 304:
            self.wfile.write(body)

    def _count(self, name):
        counters = self.server.counters
        counters[name] = counters.get(name, 0) + 1
        return counters[name]

    def do_GET(self):
        path = self.path.split("?", 1)[0]

        if path == "/":
            n = self._count("root")
            return self._send(200, f"Hello - {n}".encode(), {"Cache-Control": "public, max-age=60"})

        if path == "/no-store":
            n = self._count("no-store")
            return self._send(200, str(n).encode(), {"Cache-Control": "public, no-cache, no-store"})

        if path == "/cache":
            n = self._count("cache")
            return self._send(200, str(n).encode(), {"Cache-Control": "public, max-age=60"})

        if path == "/last-modified":
            headers = {"Cache-Control": "public, max-age=0", "Last-Modified": LAST_MODIFIED}
            if self.headers.get("If-Modified-Since") == LAST_MODIFIED:
                return self._send(304, headers=headers)
            return self._send(200, b"last modified", headers)

        if path == "/etag":
            headers = {"Cache-Control": "public, max-age=0", "ETag": ETAG}
            if self.headers.get("If-None-Match") == ETAG:
                return self._send(304, headers=headers)
            return self._send(200, b"etag", headers)

        if path == "/revalidate-modified":
            if self.headers.get("If-None-Match") == ETAG:
                return self._send(200, b"new-body", {"Cache-Control": "public, max-age=0",
                                                     "ETag": '"0000000000"'})
            return self._send(200, b"revalidate-modified", {"Cache-Control": "public, max-age=0",
                                                            "ETag": ETAG})

        if path == "/cache-then-no-store":
            if self._count("cache-then-no-store") == 1:
                return self._send(200, b"cache-then-no-store-on-revalidate",
                                  {"Cache-Control": "public, max-age=0"})
            return self._send(200, b"no-store", {"Cache-Control": "public, no-cache, no-store"})

        if path == "/first-error":
            if self._count("first-error") == 1:
                return self._send(502, b"received 502")
            return self._send(200, b"ok")

        if path == "/compress":
            headers = {"ETag": '"foobar"', "Cache-Control": "public, max-age=60",
                       "Content-Encoding": "gzip"}
            if self.headers.get("If-None-Match") == '"foobar"':
                return self._send(304, headers=headers)
            return self._send(200, gzip.compress(json.dumps({"foo": "bar"}).encode()), headers)

        self._send(404, b"not found")


@pytest.fixture
def origin():
    server = ThreadingHTTPServer(("127.0.0.1", 0), OriginHandler)
    server.counters = {}
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def store(tmp_path):
    store = EntryStore(str(tmp_path / "e2e.db"))
    yield store
    store.close()


@pytest.fixture
def fetcher(store, tmp_path):
    transport = RequestsTransport(timeout=5)
    config = FetchConfig.from_dict({"storage": {"path": str(tmp_path / "unused.db")}})
    yield CacheableFetcher(store=store, transport=transport, config=config)
    transport.close()


def fetch(fetcher, url):
    return fetcher.handle(RequestDescriptor.build(url))


def test_non_cacheable_responses_are_not_cached(origin, fetcher, store):
    first = fetch(fetcher, origin + "/no-store").text()
    second = fetch(fetcher, origin + "/no-store").text()

    assert store.count() == 0
    assert int(first) < int(second)


def test_cacheable_responses_are_cached(origin, fetcher, store):
    first = fetch(fetcher, origin + "/cache").text()
    second = fetch(fetcher, origin + "/cache")

    assert store.count() == 1
    assert second.cache_status == "hit"
    assert second.status == 200
    assert first == second.text()


def test_cacheable_responses_have_unique_cache_key(origin, fetcher, store):
    first = fetch(fetcher, origin + "/cache?foo").text()
    second = fetch(fetcher, origin + "/cache?bar").text()

    assert store.count() == 2
    assert first != second


def test_root_with_and_without_slash_are_distinct_keys(origin, fetcher, store):
    fetch(fetcher, origin).text()
    fetch(fetcher, origin + "/").text()

    assert store.get(f"GET:{origin}") is not None
    assert store.get(f"GET:{origin}/") is not None
    assert store.count() == 2


def test_stale_entries_with_last_modified_are_revalidated(origin, fetcher, store):
    url = origin + "/last-modified"
    first = fetch(fetcher, url)
    second = fetch(fetcher, url)

    entry = store.get("GET:" + url)
    assert entry is not None
    assert entry.policy["st"] == 200
    assert first.status == 200
    assert second.status == 200
    assert second.cache_status == "revalidated"
    first_text = first.text()
    assert first_text == "last modified"
    assert first_text == second.text()


def test_stale_entries_with_etag_are_revalidated(origin, fetcher, store):
    url = origin + "/etag"
    assert store.get("GET:" + url) is None
    first = fetch(fetcher, url)
    assert store.get("GET:" + url) is not None
    second = fetch(fetcher, url)

    assert first.status == 200
    assert second.status == 200
    assert first.text() == "etag"
    assert second.text() == "etag"


def test_stale_entries_that_stop_being_storable_are_deleted(origin, fetcher, store):
    url = origin + "/cache-then-no-store"
    first = fetch(fetcher, url)
    second = fetch(fetcher, url)

    assert first.status == 200
    assert second.status == 200
    assert first.headers.get("cache-control") == "public, max-age=0"
    assert second.headers.get("cache-control") == "public, no-cache, no-store"
    assert first.text() == "cache-then-no-store-on-revalidate"
    assert second.text() == "no-store"
    assert store.get("GET:" + url) is None


def test_revalidated_responses_that_are_modified_are_passed_through(origin, fetcher, store):
    url = origin + "/revalidate-modified"
    first = fetch(fetcher, url)
    second = fetch(fetcher, url)

    assert first.status == 200
    assert second.status == 200
    assert first.text() == "revalidate-modified"
    assert second.text() == "new-body"
    assert store.get("GET:" + url).body == b"new-body"


def test_checks_status_codes_when_comparing_cache_and_response(origin, fetcher, store):
    url = origin + "/first-error"
    first = fetch(fetcher, url)
    second = fetch(fetcher, url)

    assert first.status == 502
    assert first.text() == "received 502"
    assert second.status == 200
    assert second.text() == "ok"


def test_saves_compressed_response(origin, fetcher):
    url = origin + "/compress"
    first = fetch(fetcher, url)
    second = fetch(fetcher, url)

    assert first.headers.get("etag") == '"foobar"'
    assert second.headers.get("etag") == '"foobar"'
    assert first.headers.get("content-encoding") is None
    assert second.headers.get("content-encoding") is None
    assert first.json() == second.json() == {"foo": "bar"}


def test_unreachable_origin_raises(fetcher, store):
    with pytest.raises(requests.ConnectionError):
        fetch(fetcher, "http://127.0.0.1:9/unreachable")
    assert store.count() == 0
