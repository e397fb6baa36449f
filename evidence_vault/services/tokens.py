"""Signed, single-use download tokens.

A raw token is ``base64url(payload).nonce.hmac`` where the HMAC covers
``payload.nonce``. Only ``SHA256(raw_token)`` is persisted, so reading the
database is not enough to rebuild a usable link.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from evidence_vault.core.crypto import CryptoContext, random_hex, sha256_hex
from evidence_vault.utils.time import utc_now

logger = logging.getLogger(__name__)

TOKEN_PART_SEPARATOR: str = "."
NONCE_BYTES: int = 8
HASH_PREFIX_LENGTH: int = 8


@dataclass(frozen=True)
class TokenPayload:
    order_id: str
    exp: int
    stage_id: str | None = None


@dataclass(frozen=True)
class IssuedToken:
    raw_token: str
    token_hash: str
    expires_at: datetime

    @property
    def hash_prefix(self) -> str:
        return self.token_hash[:HASH_PREFIX_LENGTH]


def hash_token(raw_token: str) -> str:
    return sha256_hex(raw_token)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


class DownloadTokenIssuer:
    """Mints and cryptographically verifies download tokens."""

    def __init__(self, crypto: CryptoContext) -> None:
        self._crypto = crypto

    def issue(self, order_id: str, stage_id: str | None = None, ttl_minutes: int = 15) -> IssuedToken:
        expires_at = utc_now().replace(microsecond=0) + timedelta(minutes=ttl_minutes)
        payload: dict[str, str | int] = {"orderId": order_id, "exp": int(expires_at.timestamp())}
        if stage_id:
            payload["stageId"] = stage_id

        encoded = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        signed_part = f"{encoded}{TOKEN_PART_SEPARATOR}{random_hex(NONCE_BYTES)}"
        raw_token = f"{signed_part}{TOKEN_PART_SEPARATOR}{self._crypto.sign(signed_part)}"
        return IssuedToken(raw_token=raw_token, token_hash=hash_token(raw_token), expires_at=expires_at)

    def verify(self, raw_token: str, now: datetime | None = None) -> TokenPayload | None:
        """Return the payload of an authentic, unexpired token, else None."""
        parts = raw_token.split(TOKEN_PART_SEPARATOR)
        if len(parts) != 3:
            return None
        encoded, nonce, signature = parts
        if not self._crypto.verify_signature(f"{encoded}{TOKEN_PART_SEPARATOR}{nonce}", signature):
            return None

        try:
            decoded = json.loads(_b64url_decode(encoded).decode("utf-8"))
            order_id = str(decoded["orderId"])
            exp = int(decoded["exp"])
        except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError):
            # Signed by us but unreadable: treat as forged.
            logger.warning("[TOKEN] Authentic signature over undecodable payload")
            return None

        current = now or datetime.now(timezone.utc)
        if exp < int(current.timestamp()):
            return None
        stage_id = decoded.get("stageId")
        return TokenPayload(order_id=order_id, exp=exp, stage_id=str(stage_id) if stage_id else None)
