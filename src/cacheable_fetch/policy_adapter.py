"""Shape conversion between descriptors and the cache policy evaluator."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Union

from urllib3 import HTTPHeaderDict

from .models import RequestDescriptor, ResponseDescriptor

PolicyHeaders = Dict[str, Union[str, List[str]]]

# Header fields whose occurrences must not be comma-joined.
LIST_HEADERS = {"set-cookie"}


def flatten_headers(headers: HTTPHeaderDict) -> PolicyHeaders:
    """Lowercase names; join repeated values except for list-valued fields."""
    flat: PolicyHeaders = {}
    for name, value in headers.iteritems():
        name = name.lower()
        if name in LIST_HEADERS:
            flat.setdefault(name, []).append(value)
        elif name in flat:
            flat[name] = f"{flat[name]}, {value}"
        else:
            flat[name] = value
    return flat


def to_policy_request(request: RequestDescriptor) -> Dict[str, Any]:
    return {
        "method": request.method,
        "url": request.url,
        "headers": flatten_headers(request.headers),
    }


def to_policy_response(response: ResponseDescriptor) -> Dict[str, Any]:
    return {
        "status": response.status,
        "headers": flatten_headers(response.headers),
    }


def to_headers(policy_headers: Mapping[str, Any]) -> HTTPHeaderDict:
    """
    Rebuild a header multimap from the evaluator's flattened headers.

    List values become repeated occurrences in list order; absent or empty
    values are skipped.
    """
    headers = HTTPHeaderDict()
    for name, value in policy_headers.items():
        if not value:
            continue
        if isinstance(value, str):
            headers.add(name, value)
        else:
            for item in value:
                headers.add(name, item)
    return headers
