#!/usr/bin/env python3
"""
Unit tests for descriptor <-> policy evaluator shape conversion
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from cacheable_fetch.models import RequestDescriptor, ResponseDescriptor
from cacheable_fetch.policy_adapter import to_headers, to_policy_request, to_policy_response


class TestToPolicyShapes:

    def test_policy_request(self):
        request = RequestDescriptor.build(
            "https://h/a?b", headers=[("Accept", "text/html"), ("Accept", "text/plain")]
        )
        assert to_policy_request(request) == {
            "method": "GET",
            "url": "https://h/a?b",
            "headers": {"accept": "text/html, text/plain"},
        }

    def test_policy_response_keeps_set_cookie_list(self):
        response = ResponseDescriptor(
            status=200,
            headers=[("Cache-Control", "max-age=60"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")],
        )
        assert to_policy_response(response) == {
            "status": 200,
            "headers": {"cache-control": "max-age=60", "set-cookie": ["a=1", "b=2"]},
        }


class TestToHeaders:

    def test_list_values_become_repeated_entries(self):
        headers = to_headers({"set-cookie": ["a=1", "b=2"], "etag": '"x"'})
        assert headers.getlist("set-cookie") == ["a=1", "b=2"]
        assert headers.getlist("etag") == ['"x"']

    def test_order_preserved(self):
        headers = to_headers({"b": "2", "a": "1", "c": ["3", "4"]})
        assert list(headers.iteritems()) == [("b", "2"), ("a", "1"), ("c", "3"), ("c", "4")]

    def test_falsy_values_skipped(self):
        headers = to_headers({"empty": "", "none": None, "nolist": [], "kept": "1"})
        assert list(headers.keys()) == ["kept"]
