"""Webhook signature verification across the supported schemes."""

import time

import pytest

from opsagent.errors import AuthenticationError
from opsagent.inputs.signatures import (
    parse_multipart_signature,
    sign_payload,
    verify_hmac_signature,
    verify_multipart_signature,
    verify_request,
    verify_shared_token,
)

SECRET = "whsec_test"
BODY = b'{"event":"lead.created","message":"hello"}'


def test_valid_signature_with_timestamp_verifies():
    ts = str(int(time.time()))
    sig = sign_payload(SECRET, BODY, ts)
    assert verify_hmac_signature(BODY, sig, SECRET, timestamp=ts) is True


def test_single_byte_change_invalidates_signature():
    ts = str(int(time.time()))
    sig = sign_payload(SECRET, BODY, ts)
    tampered = BODY.replace(b"hello", b"hellp")
    with pytest.raises(AuthenticationError) as exc:
        verify_hmac_signature(tampered, sig, SECRET, timestamp=ts)
    assert exc.value.code == "INVALID_SIGNATURE"


def test_stale_timestamp_is_rejected_even_with_valid_signature():
    ts = str(int(time.time()) - 600)
    sig = sign_payload(SECRET, BODY, ts)
    with pytest.raises(AuthenticationError) as exc:
        verify_hmac_signature(BODY, sig, SECRET, timestamp=ts, window_s=300)
    assert exc.value.code == "STALE_SIGNATURE"


def test_millisecond_timestamps_and_version_prefix_are_accepted():
    now = time.time()
    ts = str(int(now * 1000))
    sig = sign_payload(SECRET, BODY, ts)
    assert verify_hmac_signature(BODY, f"v1={sig}", SECRET, timestamp=ts, now=now) is True


def test_signature_without_timestamp_signs_body_only():
    sig = sign_payload(SECRET, BODY)
    assert verify_hmac_signature(BODY, sig, SECRET) is True


def test_missing_signature_raises_and_missing_secret_skips():
    with pytest.raises(AuthenticationError) as exc:
        verify_hmac_signature(BODY, None, SECRET)
    assert exc.value.code == "MISSING_SIGNATURE"
    assert verify_hmac_signature(BODY, None, "") is False


def test_shared_token_scheme():
    assert verify_shared_token("tok-1", "tok-1") is True
    with pytest.raises(AuthenticationError):
        verify_shared_token("tok-2", "tok-1")
    assert verify_request("token", BODY, {"Authorization": "Bearer tok-1"}, "tok-1") is True


def test_multipart_header_tries_every_candidate():
    ts = str(int(time.time()))
    good = sign_payload(SECRET, BODY, ts)
    header = f"t={ts},v1=deadbeef,v1={good}"
    assert parse_multipart_signature(header) == (ts, ["deadbeef", good])
    assert verify_multipart_signature(BODY, header, SECRET) is True
    with pytest.raises(AuthenticationError):
        verify_multipart_signature(BODY, f"t={ts},v1=deadbeef", SECRET)


def test_verify_request_reads_case_insensitive_headers():
    ts = str(int(time.time()))
    headers = {"X-Webhook-Signature": sign_payload(SECRET, BODY, ts), "X-Webhook-Timestamp": ts}
    assert verify_request("hmac", BODY, headers, SECRET) is True
