#!/usr/bin/env python3
"""
HTTP Transport
Issues a RequestDescriptor against the origin

Implements:
- execute(request) -> ResponseDescriptor
- Repeated response headers (e.g. Set-Cookie) kept as separate occurrences
- Body exposed as a single-read stream; the connection is released once read

Failures (timeouts, connection errors, protocol errors) are logged and
re-raised unchanged. Retrying is the caller's business.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import requests
from urllib3.response import HTTPResponse

from .models import RequestDescriptor, ResponseBody, ResponseDescriptor, make_headers

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class Transport(Protocol):
    def execute(self, request: RequestDescriptor) -> ResponseDescriptor:
        ...


class _StreamedContent:
    """File-like view over a streamed requests.Response."""

    def __init__(self, response: requests.Response):
        self._response = response

    def read(self) -> bytes:
        return b"".join(self._response.iter_content(CHUNK_SIZE))

    def close(self):
        self._response.close()


def _decoded_by_requests(headers) -> bool:
    encodings = [token.strip().lower() for token in headers.get("content-encoding", "").split(",")]
    encodings = [token for token in encodings if token and token != "identity"]
    return bool(encodings) and all(token in HTTPResponse.CONTENT_DECODERS for token in encodings)


def _response_headers(response: requests.Response):
    raw_headers = getattr(response.raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "iteritems"):
        headers = make_headers(raw_headers)
    else:
        headers = make_headers(response.headers)

    # iter_content hands back decoded bytes; the origin's framing no longer applies
    if _decoded_by_requests(headers):
        headers.discard("content-encoding")
        headers.discard("content-length")
    return headers


class RequestsTransport:
    """
    Transport backed by a requests.Session.

    Design principles:
    - One session per transport (connection pooling)
    - stream=True so the body is only pulled when someone reads it
    - Timeout defaults prevent hanging on unresponsive origins
    """

    DEFAULT_TIMEOUT = 30  # seconds

    def __init__(self, session: requests.Session = None, timeout: float = None):
        self.session = session or requests.Session()
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._request_count = 0
        self._error_count = 0

    def _body(self, request: RequestDescriptor) -> Optional[Any]:
        body = request.body
        if isinstance(body, str):
            return body.encode("utf-8")
        return body

    def execute(self, request: RequestDescriptor) -> ResponseDescriptor:
        self._request_count += 1
        try:
            response = self.session.request(
                request.method,
                request.url,
                headers={name: request.headers[name] for name in request.headers},
                data=self._body(request),
                timeout=self.timeout,
                stream=True,
                allow_redirects=True,
            )
        except requests.Timeout:
            self._error_count += 1
            logger.error(f"Origin timeout: {request.method} {request.url} (>{self.timeout}s)")
            raise
        except requests.ConnectionError:
            self._error_count += 1
            logger.error(f"Origin connection error: {request.method} {request.url}")
            raise
        except requests.RequestException as e:
            self._error_count += 1
            logger.error(f"Origin request failed: {request.method} {request.url}: {e}")
            raise

        logger.debug(f"{request.method} {request.url} -> {response.status_code}")
        return ResponseDescriptor(
            status=response.status_code,
            headers=_response_headers(response),
            body=ResponseBody(_StreamedContent(response)),
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_requests": self._request_count,
            "total_errors": self._error_count,
        }

    def close(self):
        self.session.close()
