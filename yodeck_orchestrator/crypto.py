"""
Encryption of integration credentials at rest.

Credentials (the Yodeck API token label/value) are stored encrypted in the
``integration_credentials`` table and decrypted on demand with a Fernet key
taken from ``ENCRYPTION_KEY``.
"""

import json
import os
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from yodeck_orchestrator.exceptions import ConfigurationError


def _fernet(key: Optional[str] = None) -> Fernet:
    key = key or os.environ.get("ENCRYPTION_KEY")
    if not key:
        raise ConfigurationError("ENCRYPTION_KEY must be set to read credentials")
    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("ENCRYPTION_KEY is not a valid Fernet key") from exc


def generate_key() -> str:
    """Generate a new key for ``ENCRYPTION_KEY``."""
    return Fernet.generate_key().decode()


def encrypt_credentials(data: Dict[str, str], key: Optional[str] = None) -> str:
    """Encrypt a credentials dict to a URL-safe token string."""
    return _fernet(key).encrypt(json.dumps(data).encode("utf-8")).decode("ascii")


def decrypt_credentials(token: str, key: Optional[str] = None) -> Dict[str, str]:
    """Decrypt a token produced by ``encrypt_credentials``.

    Raises:
        ConfigurationError: If the key is missing, invalid, or does not match.
    """
    try:
        plaintext = _fernet(key).decrypt(token.encode("ascii"))
    except InvalidToken as exc:
        raise ConfigurationError(
            "Stored credentials cannot be decrypted with ENCRYPTION_KEY"
        ) from exc
    return json.loads(plaintext.decode("utf-8"))


__all__ = ["generate_key", "encrypt_credentials", "decrypt_credentials"]
