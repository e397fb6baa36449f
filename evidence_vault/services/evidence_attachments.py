"""Operator-supplied supporting files linked to an order."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from evidence_vault.core.crypto import random_hex, sha256_bytes
from evidence_vault.models import EvidenceAttachment, Order
from evidence_vault.services.errors import NotFound, ValidationFailed
from evidence_vault.services.file_store import FileStore
from evidence_vault.services.ledger import EventLedger
from evidence_vault.utils.time import as_utc

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES: int = 20 * 1024 * 1024
ALLOWED_MIME_TYPES: frozenset[str] = frozenset(
    {
        "image/png",
        "image/jpeg",
        "image/webp",
        "application/pdf",
        "text/plain",
        "message/rfc822",
        "application/zip",
    }
)
ATTACHMENT_TYPES: frozenset[str] = frozenset({"screenshot", "receipt", "communication", "invoice", "other"})


def sanitize_filename(value: str, max_length: int = 120) -> str:
    """Return a storage-safe filename."""
    normalized = re.sub(r"[\\/:*?\"<>|]+", "_", (value or "").strip())
    normalized = re.sub(r"\s+", "_", normalized)
    normalized = re.sub(r"_+", "_", normalized).strip("._")
    return (normalized or "attachment")[:max_length]


@dataclass
class StoredAttachment:
    id: int
    attachment_type: str
    filename: str
    mime_type: str
    file_size: int
    sha256_hash: str
    uploaded_by: str
    created_at: datetime


class EvidenceAttachmentService:
    def __init__(self, session_factory: sessionmaker, ledger: EventLedger, file_store: FileStore) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._file_store = file_store

    def attach(
        self,
        order_id: str,
        *,
        data: bytes,
        filename: str,
        mime_type: str,
        uploaded_by: str,
        attachment_type: str = "other",
        description: str | None = None,
    ) -> StoredAttachment:
        if not data:
            raise ValidationFailed("ATTACHMENT_EMPTY", "File is empty")
        if len(data) > MAX_ATTACHMENT_BYTES:
            raise ValidationFailed("ATTACHMENT_TOO_LARGE", "File exceeds the 20 MB limit", 413)
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationFailed("ATTACHMENT_TYPE_NOT_ALLOWED", f"File type {mime_type} is not allowed", 415)
        if attachment_type not in ATTACHMENT_TYPES:
            raise ValidationFailed("ATTACHMENT_KIND_INVALID", f"Unknown attachment type {attachment_type}")

        with self._session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFound("ORDER_NOT_FOUND", "Order not found")
            order_number = order.order_number

        safe_name = sanitize_filename(filename)
        digest = sha256_bytes(data)
        key = f"evidence/{order_number}/attachments/{random_hex(6)}-{safe_name}"
        self._file_store.upload(key, data, mime_type)

        with self._session_factory() as db:
            attachment = EvidenceAttachment(
                order_id=order_id,
                attachment_type=attachment_type,
                description=description,
                storage_key=key,
                filename=safe_name,
                mime_type=mime_type,
                file_size=len(data),
                sha256_hash=digest,
                uploaded_by=uploaded_by,
            )
            db.add(attachment)
            db.commit()
            db.refresh(attachment)
            stored = StoredAttachment(
                id=attachment.id,
                attachment_type=attachment.attachment_type,
                filename=attachment.filename,
                mime_type=attachment.mime_type,
                file_size=attachment.file_size,
                sha256_hash=attachment.sha256_hash,
                uploaded_by=attachment.uploaded_by,
                created_at=as_utc(attachment.created_at),
            )

        logger.info("[EVIDENCE] Attachment %s (%s bytes) added to order %s", safe_name, len(data), order_number)
        self._ledger.append(
            order_id,
            "admin.evidence_attached",
            {
                "attachment_id": stored.id,
                "attachment_type": stored.attachment_type,
                "filename": stored.filename,
                "sha256_hash": stored.sha256_hash,
                "file_size": stored.file_size,
                "uploaded_by": uploaded_by,
            },
        )
        return stored
