"""Hashing, HMAC signing, PII encryption and random identifiers."""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from evidence_vault.utils.time import as_utc, iso_millis

CODE_ALPHABET: str = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
FILE_CHUNK_SIZE: int = 64 * 1024


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: str | Path) -> str:
    """Hash a file in fixed-size chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(FILE_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hmac_sign(data: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def hmac_verify(data: str, signature: str, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature."""
    expected = hmac_sign(data, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", errors="replace"))


def random_hex(num_bytes: int = 32) -> str:
    return secrets.token_hex(num_bytes)


def _random_code(length: int) -> str:
    return "".join(CODE_ALPHABET[byte % len(CODE_ALPHABET)] for byte in secrets.token_bytes(length))


def generate_order_number() -> str:
    """Return ``ORD-XXXXXX`` using an unambiguous alphabet."""
    return f"ORD-{_random_code(6)}"


def generate_license_key() -> str:
    """Return ``LIC-XXXX-XXXX-XXXX``."""
    code = _random_code(12)
    return "LIC-" + "-".join(code[index : index + 4] for index in range(0, 12, 4))


def hash_redeem_token(salt: str, token: str) -> str:
    """Salted digest for human-facing redeem links (distinct from download tokens)."""
    return sha256_hex(f"{salt}:{token}")


def _canonical_value(value: Any) -> Any:
    if isinstance(value, bool) or value is None or isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return iso_millis(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _canonical_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(item) for item in value]
    raise TypeError(f"Value of type {type(value).__name__} cannot enter a hash computation")


def canonical_json(value: Any) -> str:
    """Deterministic JSON for hash inputs.

    Keys are sorted recursively, separators carry no whitespace, integral
    floats collapse to integers and Decimal/datetime values become strings.
    The output is only ever hashed, never parsed back.
    """
    return json.dumps(
        _canonical_value(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def mask_ip(ip: str | None) -> str | None:
    """Mask an address: ``190.1.2.3`` -> ``190.xxx.xxx.xxx``."""
    if not ip:
        return None
    if "." in ip:
        parts = ip.split(".")
        if len(parts) == 4:
            return f"{parts[0]}.xxx.xxx.xxx"
    if ":" in ip:
        parts = ip.split(":")
        if len(parts) >= 2:
            return f"{parts[0]}:xxxx:xxxx::xxxx"
    return ip


def retention_expiry(created_at: datetime, days: int = 540) -> datetime:
    return as_utc(created_at) + timedelta(days=days)


class CryptoContext:
    """Secrets and keyed operations handed explicitly to each component."""

    def __init__(self, *, download_secret: str, ip_encryption_key: str = "", redeem_token_salt: str = "") -> None:
        if not download_secret:
            raise ValueError("download_secret must not be empty")
        self.download_secret = download_secret
        self.redeem_token_salt = redeem_token_salt
        self._fernet: Fernet | None = Fernet(ip_encryption_key.encode("ascii")) if ip_encryption_key else None

    @classmethod
    def from_settings(cls, settings: Any) -> "CryptoContext":
        return cls(
            download_secret=settings.download_secret,
            ip_encryption_key=settings.ip_encryption_key,
            redeem_token_salt=settings.redeem_token_salt,
        )

    @property
    def can_encrypt(self) -> bool:
        return self._fernet is not None

    def sign(self, data: str) -> str:
        return hmac_sign(data, self.download_secret)

    def verify_signature(self, data: str, signature: str) -> bool:
        return hmac_verify(data, signature, self.download_secret)

    def encrypt_ip(self, ip: str | None) -> bytes | None:
        """Encrypt an address, or return None when no key is configured."""
        if not ip or self._fernet is None:
            return None
        return self._fernet.encrypt(ip.encode("utf-8"))

    def decrypt_ip(self, token: bytes | None) -> str | None:
        if not token or self._fernet is None:
            return None
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken:
            return None

    def redeem_hash(self, token: str) -> str:
        return hash_redeem_token(self.redeem_token_salt, token)
