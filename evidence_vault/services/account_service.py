"""Operator account provisioning and authentication."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from evidence_vault.core.config import Settings
from evidence_vault.core.security import get_password_hash, verify_password
from evidence_vault.models import User
from evidence_vault.utils.time import utc_now

logger = logging.getLogger(__name__)


def ensure_default_admin(db: Session, settings: Settings) -> bool:
    """Make sure the configured bootstrap operator exists as SUPER_ADMIN.

    Returns:
        bool: True when the account existed before this call. Nothing is
        created when ``ADMIN_USER``/``ADMIN_PASS`` are not configured.
    """
    username = settings.admin_user.strip()
    if not username or not settings.admin_pass:
        logger.info("[BOOTSTRAP] ADMIN_USER/ADMIN_PASS not set; skipping admin bootstrap")
        return False

    existing = db.scalar(select(User).where(User.username == username).limit(1))
    if existing is not None:
        if not existing.is_active or existing.role != "SUPER_ADMIN":
            existing.is_active = True
            existing.role = "SUPER_ADMIN"
            db.commit()
            logger.info("[BOOTSTRAP] Admin %s re-activated as SUPER_ADMIN", username)
        else:
            logger.info("[BOOTSTRAP] Admin exists")
        return True

    db.add(
        User(
            username=username,
            password_hash=get_password_hash(settings.admin_pass),
            role="SUPER_ADMIN",
            email=username if "@" in username else None,
            is_active=True,
        )
    )
    db.commit()
    logger.warning("[BOOTSTRAP] Admin account %s created from environment", username)
    return False


def authenticate_user(db: Session, username: str, password: str) -> User | None:
    user = db.scalar(select(User).where(User.username == username.strip()).limit(1))
    if user is None or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    user.last_login_at = utc_now()
    db.commit()
    db.refresh(user)
    return user
