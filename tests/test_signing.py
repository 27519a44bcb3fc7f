from datetime import datetime, timezone
from hashlib import sha1
import hmac

import pytest

from errors import ConfigError
from signing import HmacSigner, canonical_request, generate_timestamp

URL = "https://api.go-tellm.com/api/v2/posts/location"


def test_timestamp_format():
    moment = datetime(2017, 6, 17, 20, 40, 35, 123456, tzinfo=timezone.utc)
    assert generate_timestamp(moment) == "2017-06-17T20:40:35Z"


def test_canonical_request_layout():
    raw = canonical_request("get", URL, "", "2017-06-17T20:40:35Z", "tok", {"lat": "1.5", "lng": "2"})
    assert raw == "GET%api.go-tellm.com%443%/api/v2/posts/location%tok%2017-06-17T20:40:35Z%lat=1.5&lng=2%"


def test_canonical_request_without_token_uses_url_query():
    raw = canonical_request("POST", "https://example.com/v2/users?x=1", '{"a": 1}', "T")
    assert raw == 'POST%example.com%443%/v2/users%%T%x=1%{"a": 1}'


def test_signature_is_uppercase_hmac_sha1():
    signer = HmacSigner("secret")
    expected = hmac.new(
        b"secret",
        canonical_request("GET", URL, "", "T", "tok", {"limit": "100"}).encode(),
        sha1,
    ).hexdigest().upper()

    assert signer.sign("GET", URL, "", "T", "tok", {"limit": "100"}) == expected
    assert signer.sign("GET", URL, "", "T2", "tok", {"limit": "100"}) != expected


def test_signer_requires_secret():
    with pytest.raises(ConfigError):
        HmacSigner("")
