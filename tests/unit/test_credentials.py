"""
Credential encryption at rest: Fernet round trip and fail-closed decryption.
"""
import pytest

from copytrader.exceptions import CredentialDecryptionError
from copytrader.monitoring.logger import mask_secret
from copytrader.utils.credentials import CredentialCipher, decrypt_follower_credentials, derive_key


@pytest.fixture(scope="module")
def cipher():
    return CredentialCipher("correct horse battery staple")


def test_round_trip(cipher):
    token = cipher.encrypt("api-secret-123")
    assert token != "api-secret-123"
    assert cipher.decrypt(token) == "api-secret-123"


def test_ciphertext_is_never_returned_as_plaintext(cipher):
    token = CredentialCipher("another passphrase").encrypt("api-secret-123")
    with pytest.raises(CredentialDecryptionError):
        cipher.decrypt(token)


@pytest.mark.parametrize("blob", ["", "not-a-fernet-token", "gAAAAAB-truncated"])
def test_garbage_fails_closed(cipher, blob):
    with pytest.raises(CredentialDecryptionError):
        cipher.decrypt(blob)


def test_empty_plaintext_is_rejected(cipher):
    with pytest.raises(CredentialDecryptionError):
        cipher.decrypt(cipher.encrypt(""))


def test_salt_changes_key():
    assert derive_key("pw", b"salt-a") != derive_key("pw", b"salt-b")


def test_empty_passphrase_rejected():
    with pytest.raises(CredentialDecryptionError):
        CredentialCipher("")


def test_from_env_requires_key(monkeypatch):
    monkeypatch.delenv("COPYTRADER_TEST_KEY", raising=False)
    with pytest.raises(CredentialDecryptionError, match="COPYTRADER_TEST_KEY is not set"):
        CredentialCipher.from_env("COPYTRADER_TEST_KEY", "COPYTRADER_TEST_SALT")


def test_from_env_with_salt(monkeypatch):
    monkeypatch.setenv("COPYTRADER_TEST_KEY", "pw")
    monkeypatch.setenv("COPYTRADER_TEST_SALT", "custom-salt")
    writer = CredentialCipher("pw", b"custom-salt")

    reader = CredentialCipher.from_env("COPYTRADER_TEST_KEY", "COPYTRADER_TEST_SALT")

    assert reader.decrypt(writer.encrypt("k")) == "k"


def test_decrypt_follower_credentials(cipher, follower_factory):
    follower = follower_factory(api_key=cipher.encrypt("KEY"), api_secret=cipher.encrypt("SECRET"))

    creds = decrypt_follower_credentials(cipher, follower)

    assert (creds.api_key, creds.api_secret) == ("KEY", "SECRET")
    assert "SECRET" not in repr(creds)


def test_decrypt_follower_credentials_propagates_failure(cipher, follower_factory):
    follower = follower_factory(api_key=cipher.encrypt("KEY"), api_secret="stored-in-the-clear")
    with pytest.raises(CredentialDecryptionError):
        decrypt_follower_credentials(cipher, follower)


def test_mask_secret():
    assert mask_secret("abcdefgh") == "abcd***"
    assert mask_secret(None) == ""
