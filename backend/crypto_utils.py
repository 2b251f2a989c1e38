"""Fernet encryption for integration tokens stored in integration_tokens.

Only the secret fields of a token payload (access_token, refresh_token)
are encrypted; instance_url, issued_at etc. stay readable so an operator
can tell which org a row belongs to.

    from crypto_utils import encrypt_token_fields, decrypt_token_fields

    row["token"] = encrypt_token_fields(token)
    token = decrypt_token_fields(row["token"])

ENCRYPTION_KEY must be a urlsafe base64 Fernet key. Without one (local
development) values pass through unchanged; with an invalid one the
import fails.
"""
import os
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

SECRET_TOKEN_FIELDS = ("access_token", "refresh_token")

_key = (os.environ.get('ENCRYPTION_KEY') or '').strip()
_fernet: Optional[Fernet] = None

if _key:
    try:
        _fernet = Fernet(_key.encode())
    except ValueError as e:
        raise RuntimeError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e
else:
    logger.warning("ENCRYPTION_KEY not set, integration tokens are stored unencrypted (development only)")


def configure(key: Optional[str]) -> None:
    """Swap the active key (tests, key rotation scripts)."""
    global _fernet
    _fernet = Fernet(key.encode()) if key else None


def encrypt_value(plaintext: str) -> str:
    if not _fernet or not plaintext:
        return plaintext
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt; a value that is not a Fernet token is returned as stored."""
    if not _fernet or not ciphertext:
        return ciphertext
    try:
        return _fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # rows written before ENCRYPTION_KEY was configured
        logger.warning("Stored token is not encrypted with the current key, using it as-is")
        return ciphertext


def encrypt_token_fields(token: dict) -> dict:
    out = dict(token)
    for field in SECRET_TOKEN_FIELDS:
        if out.get(field):
            out[field] = encrypt_value(out[field])
    return out


def decrypt_token_fields(token: dict) -> dict:
    out = dict(token)
    for field in SECRET_TOKEN_FIELDS:
        if out.get(field):
            out[field] = decrypt_value(out[field])
    return out
