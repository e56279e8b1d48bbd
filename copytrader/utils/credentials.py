"""
Credential encryption at rest.

Follower API keys and secrets are stored as Fernet tokens. The Fernet key is
derived from a passphrase (env var named in SecurityConfig) with PBKDF2-SHA256.
Decryption fails closed: a token that does not verify raises
CredentialDecryptionError and the ciphertext is never handed back.
"""
import base64
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from copytrader.domain.models import Credentials, Follower
from copytrader.exceptions import CredentialDecryptionError
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)

PBKDF2_ITERATIONS = 480_000
DEFAULT_SALT = b"copytrader.credentials.v1"


def derive_key(passphrase: str, salt: bytes = DEFAULT_SALT) -> bytes:
    """Derive a urlsafe-base64 Fernet key from a passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


class CredentialCipher:
    """Encrypts and decrypts follower credentials. Implements CredentialDecryptor."""

    def __init__(self, passphrase: str, salt: bytes = DEFAULT_SALT):
        if not passphrase:
            raise CredentialDecryptionError("Credential encryption passphrase is empty")
        self._fernet = Fernet(derive_key(passphrase, salt))

    @classmethod
    def from_env(cls, key_env: str = "COPYTRADER_ENCRYPTION_KEY",
                 salt_env: str = "COPYTRADER_ENCRYPTION_SALT") -> "CredentialCipher":
        passphrase = os.getenv(key_env)
        if not passphrase:
            raise CredentialDecryptionError(f"{key_env} is not set; cannot decrypt follower credentials")
        salt: Optional[str] = os.getenv(salt_env)
        return cls(passphrase, salt.encode() if salt else DEFAULT_SALT)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, blob: str) -> str:
        if not blob:
            raise CredentialDecryptionError("Stored credential is empty")
        try:
            plaintext = self._fernet.decrypt(blob.encode()).decode()
        except (InvalidToken, UnicodeDecodeError, ValueError) as e:
            raise CredentialDecryptionError("Stored credential could not be decrypted") from e
        if not plaintext:
            raise CredentialDecryptionError("Stored credential decrypted to an empty value")
        return plaintext


def decrypt_follower_credentials(decryptor, follower: Follower) -> Credentials:
    """Decrypt both halves of a follower's credential pair, or raise."""
    try:
        return Credentials(
            api_key=decryptor.decrypt(follower.api_key),
            api_secret=decryptor.decrypt(follower.api_secret),
        )
    except CredentialDecryptionError:
        logger.error("CREDENTIAL_DECRYPT_FAILED", follower_id=follower.id)
        raise
