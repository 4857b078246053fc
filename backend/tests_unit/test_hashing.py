"""
PII Hashing Tests (Unit)
========================

WHAT: Phone normalization and hashing rules.
WHY: Vendors match conversions on these hashes; a formatting drift silently
     breaks match rates.

NOTE:
These tests live outside `backend/leadsignal/tests/` to avoid loading the
integration-test `conftest.py`.
"""

import hashlib

import pytest

from leadsignal.utils.hashing import hash_pii, normalize_phone


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("1-555-123-4567", "+15551234567"),
        ("+15551234567", "+15551234567"),
        ("+44 20 7946 0958", "+44 20 7946 0958"),
        ("020 7946 0958", "+02079460958"),
        ("12345", "+12345"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "no digits here", 5551234567])
def test_normalize_phone_without_digits_is_none(raw):
    assert normalize_phone(raw) is None


@pytest.mark.parametrize("raw", ["(555) 123-4567", "+44 20 7946 0958", "12345", "1 555 123 4567"])
def test_normalize_phone_is_idempotent(raw):
    once = normalize_phone(raw)
    assert normalize_phone(once) == once


def test_hash_pii_trims_and_lowercases():
    expected = hashlib.sha256(b"jane@example.com").hexdigest()

    assert hash_pii("jane@example.com") == expected
    assert hash_pii("  Jane@Example.COM ") == expected


def test_hash_pii_is_hex_sha256():
    digest = hash_pii("x")

    assert len(digest) == 64
    assert all(c in "0123456789abcdef" for c in digest)


@pytest.mark.parametrize("raw", [None, "", "   ", 42])
def test_hash_pii_empty_is_none(raw):
    assert hash_pii(raw) is None


def test_phone_hash_covers_e164_form():
    assert hash_pii(normalize_phone("555-123-4567")) == hashlib.sha256(b"+15551234567").hexdigest()
