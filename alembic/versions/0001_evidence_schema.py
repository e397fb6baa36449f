"""evidence vault schema

Revision ID: 0001_evidence
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_evidence"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.Enum("ADMIN", "SUPER_ADMIN", name="user_role"), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        _timestamp("last_login_at", nullable=True),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _timestamp("timestamp"),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("actor_identifier", sa.String(length=255), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("order_id", sa.String(length=36), nullable=True),
        sa.Column("before_snapshot", sa.JSON(), nullable=True),
        sa.Column("after_snapshot", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_logs_order_id", "audit_logs", ["order_id"])
    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        _timestamp("updated_at"),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("slug", sa.String(length=128), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("short_description", sa.String(length=500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("price_usd", sa.Numeric(10, 2), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_staged", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("download_limit", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("download_expires_days", sa.Integer(), nullable=False, server_default="30"),
        _timestamp("created_at"),
    )
    op.create_table(
        "product_files",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("storage_key", sa.String(length=500), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("sha256_hash", sa.String(length=64), nullable=False),
        sa.Column("mime_type", sa.String(length=128), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_product_files_product_id", "product_files", ["product_id"])
    op.create_table(
        "terms_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("version_label", sa.String(length=32), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
    )
    op.create_table(
        "manual_sales",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("buyer_email", sa.String(length=255), nullable=False),
        sa.Column("buyer_name", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("payment_ref", sa.String(length=128), nullable=True),
        sa.Column("redeem_token_hash", sa.String(length=64), nullable=False, unique=True),
        _timestamp("redeem_expires_at"),
        sa.Column("max_redeems", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("redeem_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("require_payment_first", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=16), nullable=False),
        _timestamp("redeemed_at", nullable=True),
        sa.Column("order_id", sa.String(length=36), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
    )
    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("order_number", sa.String(length=16), nullable=False),
        sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("product_snapshot", sa.JSON(), nullable=False),
        sa.Column("buyer_name", sa.String(length=255), nullable=True),
        sa.Column("buyer_email", sa.String(length=255), nullable=False),
        sa.Column("buyer_ip", sa.String(length=64), nullable=True),
        sa.Column("buyer_ip_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("buyer_user_agent", sa.Text(), nullable=True),
        sa.Column("buyer_country", sa.String(length=64), nullable=True),
        sa.Column("buyer_city", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("frozen_from_status", sa.String(length=16), nullable=True),
        sa.Column("provider_order_id", sa.String(length=64), nullable=True),
        sa.Column("provider_capture_id", sa.String(length=64), nullable=True),
        _timestamp("provider_webhook_received_at", nullable=True),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("download_limit", sa.Integer(), nullable=False, server_default="3"),
        _timestamp("downloads_expire_at", nullable=True),
        sa.Column("downloads_revoked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("delivery_package_key", sa.String(length=500), nullable=True),
        _timestamp("evidence_frozen_at", nullable=True),
        sa.Column("evidence_frozen_by", sa.String(length=255), nullable=True),
        sa.Column("frozen_evidence_pdf_key", sa.String(length=500), nullable=True),
        sa.Column("frozen_evidence_pdf_hash", sa.String(length=64), nullable=True),
        _timestamp("retention_expires_at", nullable=True),
        sa.Column("terms_version_id", sa.Integer(), sa.ForeignKey("terms_versions.id"), nullable=True),
        _timestamp("terms_accepted_at", nullable=True),
        sa.Column("terms_accepted_ip", sa.String(length=64), nullable=True),
        sa.Column("terms_accepted_ip_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("terms_accepted_ua", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("uq_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_buyer_email", "orders", ["buyer_email"])
    op.create_index("ix_orders_provider_capture_id", "orders", ["provider_capture_id"])
    op.create_table(
        "order_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("snapshot_type", sa.String(length=16), nullable=False),
        sa.Column("snapshot_json", sa.JSON(), nullable=False),
        sa.Column("snapshot_hash", sa.String(length=64), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_order_snapshots_order_id", "order_snapshots", ["order_id"])
    op.create_table(
        "licenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False, unique=True),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("license_key", sa.String(length=32), nullable=False, unique=True),
        sa.Column("buyer_email", sa.String(length=255), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _timestamp("created_at"),
    )
    op.create_table(
        "delivery_stages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("stage_order", sa.Integer(), nullable=False),
        sa.Column("stage_type", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("storage_key", sa.String(length=500), nullable=True),
        sa.Column("filename", sa.String(length=255), nullable=True),
        sa.Column("sha256_hash", sa.String(length=64), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("download_limit", sa.Integer(), nullable=False, server_default="3"),
        _timestamp("released_at", nullable=True),
        sa.Column("released_by", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_delivery_stages_order_id", "delivery_stages", ["order_id"])
    op.create_index("uq_delivery_stages_order_stage", "delivery_stages", ["order_id", "stage_order"], unique=True)
    op.create_table(
        "order_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("ip_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("external_ref", sa.String(length=255), nullable=True),
        sa.Column("prev_hash", sa.String(length=64), nullable=False),
        sa.Column("event_hash", sa.String(length=64), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint("order_id", "sequence_number", name="uq_order_events_order_seq"),
    )
    op.create_index("ix_order_events_order_id", "order_events", ["order_id"])
    op.create_table(
        "download_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("stage_id", sa.String(length=36), sa.ForeignKey("delivery_stages.id"), nullable=True),
        sa.Column("token_hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("source", sa.String(length=32), nullable=False),
        _timestamp("expires_at"),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        _timestamp("used_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_download_tokens_order_id", "download_tokens", ["order_id"])
    op.create_table(
        "notification_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("provider_event_id", sa.String(length=128), nullable=False, unique=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("processing_result", sa.Text(), nullable=True),
        sa.Column("linked_order_id", sa.String(length=36), nullable=True),
        _timestamp("received_at"),
        _timestamp("processed_at", nullable=True),
    )
    op.create_index("ix_notification_logs_linked_order_id", "notification_logs", ["linked_order_id"])
    op.create_table(
        "evidence_attachments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("attachment_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("storage_key", sa.String(length=500), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=128), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("sha256_hash", sa.String(length=64), nullable=False),
        sa.Column("uploaded_by", sa.String(length=255), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_evidence_attachments_order_id", "evidence_attachments", ["order_id"])


def downgrade() -> None:
    for table in (
        "evidence_attachments",
        "notification_logs",
        "download_tokens",
        "order_events",
        "delivery_stages",
        "licenses",
        "order_snapshots",
        "orders",
        "manual_sales",
        "terms_versions",
        "product_files",
        "products",
        "app_settings",
        "audit_logs",
        "users",
    ):
        op.drop_table(table)
