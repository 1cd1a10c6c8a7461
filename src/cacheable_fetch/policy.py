#!/usr/bin/env python3
"""
HTTP Cache Policy
RFC 9111 freshness and revalidation rules

Implements:
- CachePolicy(request, response).storable() -> bool
- satisfies_without_revalidation(request) -> bool
- revalidation_headers(request) -> conditional request headers
- revalidated_policy(request, response) -> RevalidationResult(policy, modified, matches)
- response_headers() -> headers to serve (hop-by-hop removed, age/date injected)
- to_object() / from_object() -> JSON-safe round trip for persistence

Requests and responses are plain dicts:
    {"method": "GET", "url": "...", "headers": {...}}
    {"status": 200, "headers": {...}}
with lowercased header names; values are str, or a list of str for set-cookie.
All times are seconds since the epoch.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Any, Dict, Optional, Union

from .models import CacheableFetchError

logger = logging.getLogger(__name__)

POLICY_VERSION = 1

# Status codes a cache understands well enough to store.
UNDERSTOOD_STATUSES = {
    200, 203, 204, 206, 300, 301, 302, 303, 307, 308, 404, 405, 410, 414, 501,
}

# Status codes that may be stored without explicit freshness information.
HEURISTICALLY_CACHEABLE_STATUSES = {
    200, 203, 204, 300, 301, 308, 404, 405, 410, 414, 501,
}

ERROR_STATUSES = {500, 502, 503, 504}

HOP_BY_HOP_HEADERS = {
    "date",  # re-generated on every response_headers() call
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

# Kept from the stored response when merging a 304.
EXCLUDED_FROM_REVALIDATION_UPDATE = {
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "content-range",
}

DEFAULT_CACHE_HEURISTIC = 0.1
DEFAULT_IMMUTABLE_MIN_TTL = 24 * 3600

_LEADING_INT = re.compile(r"\s*(-?\d+)")
_WEAK_PREFIX = re.compile(r"^\s*W/")

CacheControl = Dict[str, Union[str, bool]]
Message = Dict[str, Any]


class PolicyError(CacheableFetchError):
    """Raised for malformed policy input or stored policy objects."""


@dataclass
class RevalidationResult:
    """Outcome of merging a revalidation response into a stored policy."""
    policy: "CachePolicy"
    modified: bool
    matches: bool


def parse_cache_control(header: Optional[str]) -> CacheControl:
    """
    Parse a Cache-Control value into {directive: value | True}.

    Directive names are lowercased; quoted values are unquoted.
    """
    directives: CacheControl = {}
    if not header:
        return directives

    for part in header.split(","):
        name, sep, value = part.partition("=")
        name = name.strip().lower()
        if not name:
            continue
        directives[name] = value.strip().strip('"') if sep else True
    return directives


def to_int(value: Any) -> int:
    """Leading integer of a directive value, or 0."""
    if not isinstance(value, str):
        return 0
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else 0


def parse_http_date(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _strip_weak(etag: str) -> str:
    return _WEAK_PREFIX.sub("", etag)


def _assert_request_has_headers(request: Optional[Message]) -> None:
    if not request or request.get("headers") is None:
        raise PolicyError("Request headers missing")


class CachePolicy:
    """
    Cacheability and freshness of one stored response.

    Design:
    - Shared cache by default (private responses and authorized requests
      are not stored unless the origin allows it)
    - Freshness: s-maxage > max-age > Expires > Last-Modified heuristic
    - Revalidation via ETag (If-None-Match) or Last-Modified (If-Modified-Since)
    """

    def __init__(
        self,
        request: Optional[Message],
        response: Optional[Message],
        shared: bool = True,
        cache_heuristic: float = DEFAULT_CACHE_HEURISTIC,
        immutable_min_ttl: int = DEFAULT_IMMUTABLE_MIN_TTL,
        response_time: Optional[float] = None,
    ):
        # from_object() builds an empty instance and fills the fields itself
        if request is None and response is None:
            return

        if not response or response.get("headers") is None:
            raise PolicyError("Response headers missing")
        _assert_request_has_headers(request)

        self._response_time = self.now() if response_time is None else response_time
        self._is_shared = shared is not False
        self._cache_heuristic = cache_heuristic
        self._immutable_min_ttl = immutable_min_ttl

        self._status = response.get("status") or 200
        self._res_headers: Dict[str, Any] = dict(response["headers"])
        self._rescc = parse_cache_control(self._res_headers.get("cache-control"))
        self._method = request.get("method") or "GET"
        self._url = request.get("url")
        self._host = request["headers"].get("host")
        self._no_authorization = "authorization" not in request["headers"]
        self._req_headers = dict(request["headers"]) if self._res_headers.get("vary") else None
        self._reqcc = parse_cache_control(request["headers"].get("cache-control"))

        if ("cache-control" not in self._res_headers
                and "no-cache" in str(self._res_headers.get("pragma", ""))):
            self._rescc["no-cache"] = True

    def now(self) -> float:
        return time.time()

    # ── Storability ──────────────────────────────────────────────

    def storable(self) -> bool:
        """Whether HTTP rules allow this response to be stored at all."""
        return bool(
            not self._reqcc.get("no-store")
            and (
                self._method in ("GET", "HEAD")
                or (self._method == "POST" and self._has_explicit_expiration())
            )
            and self._status in UNDERSTOOD_STATUSES
            and not self._rescc.get("no-store")
            and (not self._is_shared or not self._rescc.get("private"))
            and (not self._is_shared or self._no_authorization
                 or self._allows_storing_authenticated())
            and (
                self._res_headers.get("expires")
                or "max-age" in self._rescc
                or (self._is_shared and "s-maxage" in self._rescc)
                or self._rescc.get("public")
                or self._status in HEURISTICALLY_CACHEABLE_STATUSES
            )
        )

    def _has_explicit_expiration(self) -> bool:
        return bool(
            (self._is_shared and "s-maxage" in self._rescc)
            or "max-age" in self._rescc
            or self._res_headers.get("expires")
        )

    def _allows_storing_authenticated(self) -> bool:
        return bool(
            self._rescc.get("must-revalidate")
            or self._rescc.get("public")
            or "s-maxage" in self._rescc
        )

    # ── Request matching ─────────────────────────────────────────

    def _request_matches(self, request: Message, allow_head_method: bool) -> bool:
        method = request.get("method")
        return (
            (not self._url or self._url == request.get("url"))
            and self._host == request["headers"].get("host")
            and (not method or self._method == method
                 or (allow_head_method and method == "HEAD"))
            and self._vary_matches(request)
        )

    def _vary_matches(self, request: Message) -> bool:
        vary = self._res_headers.get("vary")
        if not vary:
            return True
        if vary.strip() == "*":
            return False

        stored = self._req_headers or {}
        for name in re.split(r"\s*,\s*", vary.strip().lower()):
            if request["headers"].get(name) != stored.get(name):
                return False
        return True

    # ── Freshness ────────────────────────────────────────────────

    def satisfies_without_revalidation(self, request: Message) -> bool:
        """
        True when the stored response can be served for ``request`` as-is.

        Honors request no-cache, max-age, min-fresh and max-stale.
        """
        _assert_request_has_headers(request)
        request_cc = parse_cache_control(request["headers"].get("cache-control"))

        if request_cc.get("no-cache") or "no-cache" in str(request["headers"].get("pragma", "")):
            return False

        if "max-age" in request_cc and self.age() > to_int(request_cc["max-age"]):
            return False

        if "min-fresh" in request_cc and self.time_to_live() < to_int(request_cc["min-fresh"]):
            return False

        if self.stale():
            max_stale = request_cc.get("max-stale")
            allows_stale = bool(
                max_stale
                and not self._rescc.get("must-revalidate")
                and (max_stale is True or to_int(max_stale) > self.age() - self.max_age())
            )
            if not allows_stale:
                return False

        return self._request_matches(request, False)

    def date(self) -> float:
        server_date = parse_http_date(self._res_headers.get("date"))
        if server_date is not None:
            return server_date
        return self._response_time

    def age(self) -> float:
        """Current age: the origin's Age header plus time spent in this cache."""
        age_value = to_int(self._res_headers.get("age"))
        resident_time = self.now() - self._response_time
        return age_value + resident_time

    def max_age(self) -> float:
        """Freshness lifetime in seconds."""
        if not self.storable() or self._rescc.get("no-cache"):
            return 0

        if (self._is_shared and self._res_headers.get("set-cookie")
                and not self._rescc.get("public") and not self._rescc.get("immutable")):
            return 0

        if self._res_headers.get("vary") == "*":
            return 0

        if self._is_shared:
            if self._rescc.get("proxy-revalidate"):
                return 0
            if "s-maxage" in self._rescc:
                return to_int(self._rescc["s-maxage"])

        if "max-age" in self._rescc:
            return to_int(self._rescc["max-age"])

        default_min_ttl = self._immutable_min_ttl if self._rescc.get("immutable") else 0
        server_date = self.date()

        if self._res_headers.get("expires"):
            expires = parse_http_date(self._res_headers["expires"])
            if expires is None or expires < server_date:
                return 0
            return max(default_min_ttl, expires - server_date)

        last_modified = parse_http_date(self._res_headers.get("last-modified"))
        if last_modified is not None and server_date > last_modified:
            return max(default_min_ttl, (server_date - last_modified) * self._cache_heuristic)

        return default_min_ttl

    def time_to_live(self) -> float:
        return max(0, self.max_age() - self.age())

    def stale(self) -> bool:
        return self.max_age() <= self.age()

    def _use_stale_if_error(self) -> bool:
        return self.max_age() + to_int(self._rescc.get("stale-if-error")) > self.age()

    # ── Headers ──────────────────────────────────────────────────

    @staticmethod
    def _copy_without_hop_by_hop(headers: Dict[str, Any]) -> Dict[str, Any]:
        copied = {name: value for name, value in headers.items()
                  if name not in HOP_BY_HOP_HEADERS}

        connection = headers.get("connection")
        if connection:
            for name in re.split(r"\s*,\s*", connection.strip().lower()):
                copied.pop(name, None)

        warning = copied.get("warning")
        if warning:
            kept = [w for w in warning.split(",") if not re.match(r"^\s*1\d\d", w)]
            if kept:
                copied["warning"] = ",".join(kept).strip()
            else:
                del copied["warning"]

        return copied

    def response_headers(self) -> Dict[str, Any]:
        """Headers to serve with the stored body right now."""
        headers = self._copy_without_hop_by_hop(self._res_headers)
        age = self.age()

        if age > 24 * 3600 and not self._has_explicit_expiration() and self.max_age() > 24 * 3600:
            prefix = f"{headers['warning']}, " if headers.get("warning") else ""
            headers["warning"] = prefix + '113 - "rfc7234 5.5.4"'

        headers["age"] = str(int(round(age)))
        headers["date"] = formatdate(self.now(), usegmt=True)
        return headers

    def revalidation_headers(self, request: Message) -> Dict[str, Any]:
        """
        Request headers for a conditional request validating this response.

        Adds If-None-Match from the stored ETag, or If-Modified-Since from
        Last-Modified when weak validation is allowed.
        """
        _assert_request_has_headers(request)
        headers = self._copy_without_hop_by_hop(request["headers"])
        headers.pop("if-range", None)

        if not self._request_matches(request, True) or not self.storable():
            headers.pop("if-none-match", None)
            headers.pop("if-modified-since", None)
            return headers

        etag = self._res_headers.get("etag")
        if etag:
            existing = headers.get("if-none-match")
            headers["if-none-match"] = f"{existing}, {etag}" if existing else etag

        method = request.get("method")
        forbids_weak_validators = bool(
            headers.get("accept-ranges")
            or headers.get("if-match")
            or headers.get("if-unmodified-since")
            or (method and method != "GET")
        )

        if forbids_weak_validators:
            headers.pop("if-modified-since", None)
            if headers.get("if-none-match"):
                strong = [tag for tag in headers["if-none-match"].split(",")
                          if not _WEAK_PREFIX.match(tag)]
                if strong:
                    headers["if-none-match"] = ",".join(strong).strip()
                else:
                    del headers["if-none-match"]
        elif self._res_headers.get("last-modified") and not headers.get("if-modified-since"):
            headers["if-modified-since"] = self._res_headers["last-modified"]

        return headers

    def revalidated_policy(self, request: Message, response: Optional[Message]) -> RevalidationResult:
        """
        Merge the origin's answer to a conditional request into a new policy.

        ``modified`` is False when the stored body is still valid (a matching
        304, or a 5xx while stale-if-error allows serving the stored copy).
        """
        _assert_request_has_headers(request)

        if self._use_stale_if_error() and (not response or response.get("status") in ERROR_STATUSES):
            return RevalidationResult(policy=self, modified=False, matches=False)

        if not response or response.get("headers") is None:
            raise PolicyError("Response headers missing")

        new_headers = response["headers"]
        status = response.get("status")
        own_etag = self._res_headers.get("etag")
        new_etag = new_headers.get("etag")

        if status is not None and status != 304:
            matches = False
        elif new_etag and not _WEAK_PREFIX.match(new_etag):
            matches = bool(own_etag) and _strip_weak(own_etag) == new_etag
        elif own_etag and new_etag:
            matches = _strip_weak(own_etag) == _strip_weak(new_etag)
        elif self._res_headers.get("last-modified"):
            matches = self._res_headers["last-modified"] == new_headers.get("last-modified")
        else:
            matches = not (own_etag or self._res_headers.get("last-modified")
                           or new_etag or new_headers.get("last-modified"))

        options = {
            "shared": self._is_shared,
            "cache_heuristic": self._cache_heuristic,
            "immutable_min_ttl": self._immutable_min_ttl,
        }

        if not matches:
            return RevalidationResult(
                policy=type(self)(request, response, **options),
                modified=status != 304,
                matches=False,
            )

        merged = {
            name: (new_headers[name]
                   if name in new_headers and name not in EXCLUDED_FROM_REVALIDATION_UPDATE
                   else value)
            for name, value in self._res_headers.items()
        }
        updated_response = dict(response, status=self._status, headers=merged)

        return RevalidationResult(
            policy=type(self)(request, updated_response, **options),
            modified=False,
            matches=True,
        )

    # ── Persistence ──────────────────────────────────────────────

    def to_object(self) -> Dict[str, Any]:
        return {
            "v": POLICY_VERSION,
            "t": self._response_time,
            "sh": self._is_shared,
            "ch": self._cache_heuristic,
            "imm": self._immutable_min_ttl,
            "st": self._status,
            "resh": self._res_headers,
            "rescc": self._rescc,
            "m": self._method,
            "u": self._url,
            "h": self._host,
            "a": self._no_authorization,
            "reqh": self._req_headers,
            "reqcc": self._reqcc,
        }

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "CachePolicy":
        if not isinstance(obj, dict):
            raise PolicyError("Policy object must be a dict")
        if obj.get("v") != POLICY_VERSION:
            raise PolicyError(f"Policy version mismatch: {obj.get('v')!r}")

        policy = cls(None, None)
        try:
            policy._response_time = float(obj["t"])
            policy._is_shared = bool(obj["sh"])
            policy._cache_heuristic = float(obj["ch"])
            policy._immutable_min_ttl = obj.get("imm", DEFAULT_IMMUTABLE_MIN_TTL)
            policy._status = int(obj["st"])
            policy._res_headers = dict(obj["resh"])
            policy._rescc = dict(obj["rescc"])
            policy._method = obj["m"]
            policy._url = obj["u"]
            policy._host = obj["h"]
            policy._no_authorization = bool(obj["a"])
            policy._req_headers = obj["reqh"]
            policy._reqcc = dict(obj["reqcc"])
        except (KeyError, TypeError, ValueError) as e:
            raise PolicyError(f"Malformed policy object: {e}") from e
        return policy

    @property
    def status(self) -> int:
        return self._status
