"""Encryption for stored marketplace credentials.

Access and refresh tokens are written through a Fernet-backed
TypeDecorator so they never sit in the database in plaintext.
"""

import base64
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String, TypeDecorator

from stocksync import metrics
from stocksync.config import settings

logger = logging.getLogger(__name__)

_generated_key: bytes | None = None


def get_encryption_key() -> bytes:
    """
    Get the Fernet key from settings.

    Returns:
        Encryption key as bytes

    A missing key falls back to a process-wide generated key, which means
    tokens stored by one process cannot be read after a restart.
    """
    global _generated_key

    key_str = settings.encryption_key
    if not key_str:
        if _generated_key is None:
            logger.warning(
                "ENCRYPTION_KEY not set, generating temporary key "
                "(stored tokens will not survive a restart)"
            )
            _generated_key = Fernet.generate_key()
        return _generated_key

    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
        if len(key_bytes) == 32:
            return base64.urlsafe_b64encode(key_bytes)
    except (ValueError, TypeError):
        pass
    # Derive a key from an arbitrary passphrase
    return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy TypeDecorator for transparently encrypting/decrypting string columns.

    Usage:
        access_token: Mapped[Optional[str]] = mapped_column(EncryptedString(1024))
    """

    impl = String
    cache_ok = True

    def __init__(self, length: int = 1024, *args: Any, **kwargs: Any):
        super().__init__(length, *args, **kwargs)
        self._fernet: Fernet | None = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(get_encryption_key())
        return self._fernet

    def process_bind_param(self, value: str | None, dialect: Any) -> str | None:
        """Encrypt value before storing in database."""
        if value is None:
            return None
        return self._get_fernet().encrypt(value.encode()).decode()

    def process_result_value(self, value: str | None, dialect: Any) -> str | None:
        """Decrypt value after reading from database.

        Undecryptable values (rotated key, corrupted row) read as None, which
        the credential store reports as a re-authentication condition.
        """
        if value is None:
            return None

        try:
            return self._get_fernet().decrypt(value.encode()).decode()
        except InvalidToken:
            metrics.record_decryption_failure()
            logger.error(
                f"Token decryption failed (value_length={len(value)}); "
                f"the encryption key may have been rotated"
            )
            return None
