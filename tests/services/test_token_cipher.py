"""Tests for token encryption at rest."""

import pytest

from brdsync.services.token_cipher import TokenCipher, TokenCipherError


@pytest.fixture(scope="module")
def token_cipher() -> TokenCipher:
    return TokenCipher("unit-test-key", "unit-test-salt")


class TestTokenCipher:
    """Test AES-GCM token encryption."""

    def test_roundtrip(self, token_cipher):
        stored = token_cipher.encrypt("access-token-value")

        assert "access-token-value" not in stored
        assert token_cipher.decrypt(stored) == "access-token-value"

    def test_storage_format(self, token_cipher):
        nonce, tag, ciphertext = token_cipher.encrypt("abc").split(":")

        assert len(bytes.fromhex(nonce)) == 12
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == 3

    def test_fresh_nonce_per_value(self, token_cipher):
        assert token_cipher.encrypt("same") != token_cipher.encrypt("same")

    def test_tampered_ciphertext_rejected(self, token_cipher):
        nonce, tag, ciphertext = token_cipher.encrypt("secret").split(":")
        flipped = f"{int(ciphertext[0], 16) ^ 1:x}{ciphertext[1:]}"

        with pytest.raises(TokenCipherError):
            token_cipher.decrypt(f"{nonce}:{tag}:{flipped}")

    def test_wrong_key_rejected(self, token_cipher):
        stored = token_cipher.encrypt("secret")

        with pytest.raises(TokenCipherError):
            TokenCipher("another-key", "unit-test-salt").decrypt(stored)

    @pytest.mark.parametrize("value", ["", None, "only:two", "zz:zz:zz"])
    def test_malformed_rejected(self, token_cipher, value):
        with pytest.raises(TokenCipherError):
            token_cipher.decrypt(value)

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            TokenCipher("", "salt")
