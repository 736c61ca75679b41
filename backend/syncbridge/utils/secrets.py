"""
店铺凭证加密存储（Fernet = AES-128-CBC + HMAC-SHA256）。
  - 优先使用 ENCRYPTION_KEY（Fernet key 字符串）
  - 未配置时由 SECRET_KEY 经 PBKDF2 派生
  - 明文永远不出 API，只给 mask 后的值
"""

from __future__ import annotations
import base64
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from syncbridge.core.config import settings


class SecretDecryptError(Exception):
    """Stored ciphertext could not be decrypted with the current key."""


@lru_cache(maxsize=4)
def _fernet_for(raw_key: Optional[str], secret_key: str) -> Fernet:
    if raw_key:
        return Fernet(raw_key.encode())
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"syncbridge-credential-salt-v1",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
    return Fernet(key)


def _get_fernet() -> Fernet:
    raw = settings.ENCRYPTION_KEY.get_secret_value() if settings.ENCRYPTION_KEY else None
    return _fernet_for(raw, settings.SECRET_KEY)


def encrypt_value(plaintext: Optional[str]) -> Optional[str]:
    if plaintext is None or plaintext == "":
        return None
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: Optional[str]) -> Optional[str]:
    if not ciphertext:
        return None
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        raise SecretDecryptError("stored secret cannot be decrypted (key rotated?)") from e


def mask_value(plaintext: Optional[str]) -> str:
    """只显示末 4 位。"""
    if not plaintext:
        return ""
    if len(plaintext) <= 4:
        return "****"
    return "*" * min(8, len(plaintext) - 4) + plaintext[-4:]
