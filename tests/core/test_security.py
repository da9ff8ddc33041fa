"""Tests for security utilities."""

from unittest.mock import patch

import jwt

from brdsync.core.config import SecuritySettings, Settings
from brdsync.core.security import (
    compute_signature,
    decode_access_token,
    verify_signature,
)


class TestWebhookSignature:
    """Test HMAC signatures of webhook bodies."""

    def test_compute_signature_format(self):
        signature = compute_signature(b'{"a": 1}', "secret")

        assert signature.startswith("sha256=")
        assert len(signature) == len("sha256=") + 64

    def test_verify_valid_signature(self):
        body = b'{"webhookEvent": "jira:issue_updated"}'
        signature = compute_signature(body, "secret")

        assert verify_signature(body, signature, "secret") is True

    def test_verify_rejects_modified_body(self):
        signature = compute_signature(b'{"a": 1}', "secret")

        assert verify_signature(b'{"a": 2}', signature, "secret") is False

    def test_verify_rejects_wrong_secret(self):
        body = b"payload"
        signature = compute_signature(body, "other")

        assert verify_signature(body, signature, "secret") is False

    def test_verify_rejects_missing_signature(self):
        assert verify_signature(b"payload", None, "secret") is False
        assert verify_signature(b"payload", "", "secret") is False

    def test_verify_rejects_missing_secret(self):
        body = b"payload"
        assert verify_signature(body, compute_signature(body, "x"), "") is False


class TestAccessToken:
    """Test bearer token decoding."""

    def _settings(self) -> Settings:
        return Settings(security=SecuritySettings(secret_key="unit-test-key"))

    def test_decode_valid_token(self):
        token = jwt.encode({"sub": "user-42"}, "unit-test-key", algorithm="HS256")

        with patch("brdsync.core.security.get_settings", return_value=self._settings()):
            payload = decode_access_token(token)

        assert payload == {"sub": "user-42"}

    def test_decode_wrong_key(self):
        token = jwt.encode({"sub": "user-42"}, "another-key", algorithm="HS256")

        with patch("brdsync.core.security.get_settings", return_value=self._settings()):
            assert decode_access_token(token) is None

    def test_decode_garbage(self):
        with patch("brdsync.core.security.get_settings", return_value=self._settings()):
            assert decode_access_token("not-a-jwt") is None
