"""Tests for API key authentication."""
import hashlib

import pytest
from fastapi import HTTPException

from sitelift.middleware.auth import hash_api_key, require_admin_key, verify_api_key


def test_hash_api_key_is_deterministic():
    """Test that hash_api_key produces consistent results."""
    api_key = "test-key-12345"

    assert hash_api_key(api_key) == hash_api_key(api_key), "Hash should be deterministic"


def test_hash_api_key_is_sha256():
    """Test that hash_api_key uses SHA256."""
    api_key = "test-key-12345"
    expected = hashlib.sha256(api_key.encode()).hexdigest()
    actual = hash_api_key(api_key)

    assert actual == expected, "Should use SHA256 hashing"
    assert len(actual) == 64, "SHA256 hex digest should be 64 characters"


def test_different_keys_produce_different_hashes():
    """Test that different API keys produce different hashes."""
    assert hash_api_key("key-one") != hash_api_key("key-two")


def test_verify_api_key():
    assert verify_api_key("operator-key", "operator-key") is True
    assert verify_api_key("operator-kez", "operator-key") is False
    assert verify_api_key("", "operator-key") is False


@pytest.mark.asyncio
async def test_require_admin_key_accepts_configured_key():
    assert await require_admin_key(api_key="test-admin-key") == "test-admin-key"


@pytest.mark.asyncio
async def test_require_admin_key_missing():
    with pytest.raises(HTTPException) as exc_info:
        await require_admin_key(api_key=None)

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Missing API key"


@pytest.mark.asyncio
async def test_require_admin_key_wrong():
    with pytest.raises(HTTPException) as exc_info:
        await require_admin_key(api_key="guess")

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Invalid API key"
