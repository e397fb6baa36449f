"""Application models package."""

from evidence_vault.models.app_setting import AppSetting
from evidence_vault.models.audit_log import AuditLog
from evidence_vault.models.download_token import DownloadToken
from evidence_vault.models.event import OrderEvent
from evidence_vault.models.evidence_attachment import EvidenceAttachment
from evidence_vault.models.manual_sale import ManualSale
from evidence_vault.models.notification_log import NotificationLog
from evidence_vault.models.order import DeliveryStage, License, Order, OrderSnapshot
from evidence_vault.models.product import Product, ProductFile
from evidence_vault.models.terms import TermsVersion
from evidence_vault.models.user import User

__all__ = [
    "AppSetting", "AuditLog", "DownloadToken", "OrderEvent", "EvidenceAttachment", "ManualSale", "NotificationLog",
    "DeliveryStage", "License", "Order", "OrderSnapshot", "Product", "ProductFile", "TermsVersion", "User",
]
