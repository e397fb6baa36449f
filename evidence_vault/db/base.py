"""Shared SQLAlchemy base declarative class and model imports."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for ORM models."""


# Import model modules so metadata is populated before create_all.
from evidence_vault.models import app_setting as _app_setting  # noqa: E402,F401
from evidence_vault.models import audit_log as _audit_log  # noqa: E402,F401
from evidence_vault.models import download_token as _download_token  # noqa: E402,F401
from evidence_vault.models import event as _event  # noqa: E402,F401
from evidence_vault.models import evidence_attachment as _evidence_attachment  # noqa: E402,F401
from evidence_vault.models import manual_sale as _manual_sale  # noqa: E402,F401
from evidence_vault.models import notification_log as _notification_log  # noqa: E402,F401
from evidence_vault.models import order as _order  # noqa: E402,F401
from evidence_vault.models import product as _product  # noqa: E402,F401
from evidence_vault.models import terms as _terms  # noqa: E402,F401
from evidence_vault.models import user as _user  # noqa: E402,F401
