"""
Request/response descriptors shared by the fetch layer.

A response body is a single-read stream: whoever needs to both hand a body to
the caller and persist it must buffer it first and take two views.
"""

import io
import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from urllib3 import HTTPHeaderDict

ENTITY_METHODS = ("POST", "PUT", "PATCH")

BodySource = Union[bytes, bytearray, Iterable[bytes], io.IOBase]
HeadersInput = Union[Mapping[str, Any], Iterable[tuple], HTTPHeaderDict, None]


class CacheableFetchError(Exception):
    """Base error for the fetch layer."""


class BodyConsumedError(CacheableFetchError):
    """Raised when a single-read body is read a second time."""


def make_headers(headers: HeadersInput = None) -> HTTPHeaderDict:
    """Build a case-insensitive, ordered multimap from dicts, pairs or another multimap."""
    result = HTTPHeaderDict()
    if headers is None:
        return result
    if isinstance(headers, HTTPHeaderDict):
        for key, value in headers.iteritems():
            result.add(key, value)
        return result
    pairs = headers.items() if isinstance(headers, Mapping) else headers
    for key, value in pairs:
        if isinstance(value, (list, tuple)):
            for item in value:
                result.add(key, str(item))
        else:
            result.add(key, str(value))
    return result


class ResponseBody:
    """
    A body that can be read at most once.

    Accepts bytes, an iterable of byte chunks, or a binary file-like object.
    """

    def __init__(self, source: BodySource):
        self._source = source
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def read(self) -> bytes:
        if self._consumed:
            raise BodyConsumedError("response body has already been read")
        self._consumed = True
        source, self._source = self._source, None

        if isinstance(source, (bytes, bytearray)):
            return bytes(source)
        if hasattr(source, "read"):
            try:
                return source.read()
            finally:
                close = getattr(source, "close", None)
                if close:
                    close()
        return b"".join(source)

    def close(self):
        """Discard an unread body, releasing the underlying stream."""
        if self._consumed:
            return
        self._consumed = True
        source, self._source = self._source, None
        close = getattr(source, "close", None)
        if close:
            close()

    def __iter__(self) -> Iterator[bytes]:
        yield self.read()


class BufferedBody:
    """Reads a body once and hands out independent readable views of it."""

    def __init__(self, body: Optional[ResponseBody]):
        self.data: Optional[bytes] = body.read() if body is not None else None

    def view(self) -> Optional[ResponseBody]:
        if self.data is None:
            return None
        return ResponseBody(self.data)

    def views(self, n: int) -> List[Optional[ResponseBody]]:
        return [self.view() for _ in range(n)]


def tee_body(body: Optional[ResponseBody], n: int = 2) -> List[Optional[ResponseBody]]:
    """Duplicate a single-read body into ``n`` independent views."""
    return BufferedBody(body).views(n)


@dataclass(frozen=True)
class RequestDescriptor:
    """Immutable view of an outgoing request."""
    method: str
    url: str
    headers: HTTPHeaderDict = field(default_factory=HTTPHeaderDict, compare=False)
    body: Optional[Union[str, bytes, Iterable[bytes]]] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", make_headers(self.headers))
        if self.method not in ENTITY_METHODS:
            object.__setattr__(self, "body", None)

    @classmethod
    def build(cls, url: str, method: str = "GET", headers: HeadersInput = None,
              body=None) -> "RequestDescriptor":
        return cls(method=method, url=str(url), headers=make_headers(headers), body=body)

    def with_headers(self, headers: HeadersInput) -> "RequestDescriptor":
        """Return a copy of this request with its headers replaced."""
        return replace(self, headers=make_headers(headers))


@dataclass
class ResponseDescriptor:
    """Status, headers and a single-read body."""
    status: int
    headers: HTTPHeaderDict = field(default_factory=HTTPHeaderDict)
    body: Optional[ResponseBody] = None
    cache_status: str = "miss"

    def __post_init__(self):
        self.headers = make_headers(self.headers)
        if isinstance(self.body, (bytes, bytearray)):
            self.body = ResponseBody(bytes(self.body))

    def read(self) -> bytes:
        if self.body is None:
            return b""
        return self.body.read()

    def text(self, encoding: str = "utf-8") -> str:
        return self.read().decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.read())


@dataclass
class CacheEntry:
    """Persisted pair of policy metadata and response body."""
    policy: Dict[str, Any]
    body: Optional[bytes] = None

    @property
    def status(self) -> int:
        return self.policy["st"]
