"""
Unit tests for payload and time helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from taskqueue.exceptions import EncodingError
from taskqueue.utils import (
    decode_payload,
    encode_payload,
    extract_payload_type,
    to_naive_utc,
    utcnow,
)


class TestPayloadCodec:
    def test_encode_is_compact_json(self):
        assert encode_payload({"type": "email", "to": "a@b.com"}) == '{"type":"email","to":"a@b.com"}'

    def test_encode_keeps_unicode(self):
        assert encode_payload({"greeting": "héllo"}) == '{"greeting":"héllo"}'

    @pytest.mark.parametrize("payload", [{1, 2}, object(), float("inf")])
    def test_encode_rejects_non_json(self, payload):
        with pytest.raises(EncodingError):
            encode_payload(payload)

    def test_decode(self):
        assert decode_payload('{"a":[1,2]}') == {"a": [1, 2]}
        assert decode_payload(b"null") is None

    @pytest.mark.parametrize("raw", ["", "{not json", None])
    def test_decode_rejects_corrupt_text(self, raw):
        with pytest.raises(EncodingError):
            decode_payload(raw)


class TestExtractPayloadType:
    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({"type": "push"}, "push"),
            ({"type": ""}, "default"),
            ({"type": None}, "default"),
            ({"type": 5}, "5"),
            ({"type": 2.5}, "2.5"),
            ({"type": ["push"]}, "default"),
            ({"type": {"kind": "push"}}, "default"),
            ({}, "default"),
            ("email", "default"),
            (None, "default"),
        ],
    )
    def test_extract(self, payload, expected: str):
        assert extract_payload_type(payload) == expected

    def test_truncates_long_types(self):
        assert extract_payload_type({"type": "a" * 80}) == "a" * 64


class TestTime:
    def test_utcnow_is_naive(self):
        now = utcnow()
        assert now.tzinfo is None
        assert abs(datetime.now(timezone.utc).replace(tzinfo=None) - now) < timedelta(seconds=5)

    def test_to_naive_utc(self):
        aware = datetime(2030, 6, 1, 9, 30, tzinfo=timezone(timedelta(hours=-4)))
        assert to_naive_utc(aware) == datetime(2030, 6, 1, 13, 30)

        naive = datetime(2030, 6, 1, 9, 30)
        assert to_naive_utc(naive) is naive
