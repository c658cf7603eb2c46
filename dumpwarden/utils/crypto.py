"""
Encryption of credentials at rest (database/SSH passwords, SSH keys, OAuth tokens, AWS keys).

Uses Fernet symmetric encryption with a key derived from the Flask SECRET_KEY,
so scheduled jobs can decrypt credentials without an interactive login.
"""

import base64
from typing import Optional

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from flask import current_app


class CredentialCipher:
    """Encrypts and decrypts short secrets for storage in the configuration store."""

    def __init__(self, secret_key: str):
        """
        Derive the Fernet key from SECRET_KEY.

        Args:
            secret_key: Flask app SECRET_KEY
        """
        if not secret_key:
            raise RuntimeError("SECRET_KEY not configured - cannot encrypt credentials")

        # SECRET_KEY is the secret, so the salt is fixed (version tagged for rotation)
        fixed_salt = b'dumpwarden_credentials_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: String to encrypt

        Returns:
            Base64-encoded encrypted string
        """
        encrypted_bytes = self._fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a string.

        Raises:
            cryptography.fernet.InvalidToken: If SECRET_KEY changed or data is corrupted
        """
        encrypted_bytes = base64.urlsafe_b64decode(encrypted.encode())
        return self._fernet.decrypt(encrypted_bytes).decode()


_ciphers = {}


def get_cipher(secret_key: Optional[str] = None) -> CredentialCipher:
    """
    Return a cached cipher for the given (or current app's) SECRET_KEY.

    Key derivation is slow, so one cipher per key is kept for the process.
    """
    if secret_key is None:
        secret_key = current_app.config.get('SECRET_KEY')

    cipher = _ciphers.get(secret_key)
    if cipher is None:
        cipher = CredentialCipher(secret_key)
        _ciphers[secret_key] = cipher
    return cipher


def encrypt_optional(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a value, mapping empty/None to None."""
    if not plaintext:
        return None
    return get_cipher().encrypt(plaintext)


def decrypt_optional(encrypted: Optional[str]) -> Optional[str]:
    """Decrypt a stored value, mapping empty/None to None."""
    if not encrypted:
        return None
    return get_cipher().decrypt(encrypted)
