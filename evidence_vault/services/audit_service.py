"""Audit log helpers."""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from evidence_vault.models import AuditLog, User


def log_action(
    db: Session,
    *,
    actor: User | None,
    action_type: str,
    order_id: str | None = None,
    before_snapshot: dict[str, Any] | None = None,
    after_snapshot: dict[str, Any] | None = None,
) -> AuditLog:
    actor_identifier = "system"
    actor_id = None
    if actor is not None:
        actor_id = actor.id
        actor_identifier = actor.identifier

    entry = AuditLog(
        actor_user_id=actor_id,
        actor_identifier=actor_identifier,
        action_type=action_type,
        order_id=order_id,
        before_snapshot=before_snapshot,
        after_snapshot=after_snapshot,
    )
    db.add(entry)
    return entry


def record_action(session_factory, **kwargs: Any) -> None:
    """Write one audit row in its own short transaction."""
    with session_factory() as db:
        log_action(db, **kwargs)
        db.commit()
