"""Product snapshots captured at purchase time."""

from typing import Any

from sqlalchemy.orm import Session

from evidence_vault.core.crypto import canonical_json, sha256_hex
from evidence_vault.models import OrderSnapshot, Product
from evidence_vault.utils.time import iso_millis, utc_now


def build_product_snapshot_data(product: Product) -> dict[str, Any]:
    """Everything the buyer was shown about ``product``, as plain JSON."""
    return {
        "id": product.id,
        "slug": product.slug,
        "name": product.name,
        "shortDescription": product.short_description,
        "description": product.description,
        "category": product.category,
        "priceUsd": str(product.price_usd),
        "metadata": product.extra_metadata,
        "isActive": product.is_active,
        "isStaged": product.is_staged,
        "downloadLimit": product.download_limit,
        "downloadExpiresDays": product.download_expires_days,
        "files": [
            {
                "id": product_file.id,
                "filename": product_file.filename,
                "fileSize": str(product_file.file_size),
                "sha256Hash": product_file.sha256_hash,
                "mimeType": product_file.mime_type,
                "sortOrder": product_file.sort_order,
            }
            for product_file in product.files
        ],
        "snapshotTakenAt": iso_millis(utc_now()),
    }


def snapshot_hash(data: dict[str, Any]) -> str:
    return sha256_hex(canonical_json(data))


def create_product_snapshot(db: Session, order_id: str, data: dict[str, Any]) -> OrderSnapshot:
    snapshot = OrderSnapshot(
        order_id=order_id,
        snapshot_type="json",
        snapshot_json=data,
        snapshot_hash=snapshot_hash(data),
    )
    db.add(snapshot)
    return snapshot
