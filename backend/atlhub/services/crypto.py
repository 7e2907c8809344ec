# atlhub/services/crypto.py
from __future__ import annotations

import base64
import os
from typing import List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

_FERNET: Optional[Union[Fernet, MultiFernet]] = None  # singleton

__all__ = ["get_fernet", "reset_fernet", "encrypt_token", "decrypt_token", "InvalidToken"]


def _coerce_to_fernet_key(raw: str) -> bytes:
    """Accepts either a urlsafe base64 Fernet key (44 chars) or a passphrase."""
    raw = raw.strip()
    if len(raw) == 44:
        return raw.encode()
    b = raw.encode("utf-8")
    if len(b) < 32:
        b = b.ljust(32, b"0")
    elif len(b) > 32:
        b = b[:32]
    return base64.urlsafe_b64encode(b)


def get_fernet() -> Union[Fernet, MultiFernet]:
    """
    Lazily construct a Fernet (or MultiFernet) from APP_ENCRYPTION_KEY.
    The first key encrypts; every listed key can decrypt, so keys rotate by
    prepending a new one.
    """
    global _FERNET
    if _FERNET is not None:
        return _FERNET

    key_env = os.getenv("APP_ENCRYPTION_KEY")
    if not key_env:
        raise RuntimeError("APP_ENCRYPTION_KEY not set")

    parts: List[str] = [p for p in key_env.split(",") if p.strip()]
    fernets = [Fernet(_coerce_to_fernet_key(p)) for p in parts]
    _FERNET = MultiFernet(fernets) if len(fernets) > 1 else fernets[0]
    return _FERNET


def reset_fernet() -> None:
    """Forget the cached key material; the next call re-reads the environment."""
    global _FERNET
    _FERNET = None


def encrypt_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return get_fernet().encrypt(token.encode()).decode()


def decrypt_token(token_enc: Optional[str]) -> Optional[str]:
    """Raises InvalidToken when the ciphertext was made with an unknown key."""
    if not token_enc:
        return None
    return get_fernet().decrypt(token_enc.encode()).decode()
