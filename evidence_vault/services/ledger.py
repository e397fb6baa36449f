"""Append-only, hash-chained event ledger per order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from evidence_vault.core.crypto import CryptoContext, canonical_json, mask_ip, sha256_hex
from evidence_vault.models.event import OrderEvent
from evidence_vault.models.order import Order
from evidence_vault.services.errors import LedgerContention
from evidence_vault.services.event_types import validate_event_payload
from evidence_vault.utils.time import iso_millis, utc_now

logger = logging.getLogger(__name__)

GENESIS: str = "GENESIS"
HASH_DELIMITER: str = "|"


def compute_event_hash(
    order_id: str,
    sequence_number: int,
    event_type: str,
    event_data: dict[str, Any],
    prev_hash: str,
    created_at: datetime,
) -> str:
    """SHA-256 over the pipe-joined event fields."""
    parts = [
        order_id,
        str(sequence_number),
        event_type,
        canonical_json(event_data),
        prev_hash,
        iso_millis(created_at),
    ]
    return sha256_hex(HASH_DELIMITER.join(parts))


def _recompute(event: OrderEvent) -> str:
    return compute_event_hash(
        event.order_id,
        event.sequence_number,
        event.event_type,
        event.event_data or {},
        event.prev_hash,
        event.created_at,
    )


@dataclass
class ChainVerification:
    valid: bool
    total_events: int
    broken_at_sequence: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    detail: str | None = None
    first_event_at: datetime | None = None
    last_event_at: datetime | None = None


@dataclass
class ResealResult:
    resealed: int
    total_events: int
    repairs: list[dict[str, Any]] = field(default_factory=list)


class EventLedger:
    """Appends, verifies and (audited) re-seals per-order event chains.

    Every operation runs in its own short session so that a lost race on
    ``(order_id, sequence_number)`` can be rolled back and retried without
    touching the caller's unit of work.
    """

    def __init__(self, session_factory: sessionmaker, crypto: CryptoContext, *, max_retries: int = 5) -> None:
        self._session_factory = session_factory
        self._crypto = crypto
        self._max_retries = max_retries

    def append(
        self,
        order_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
        external_ref: str | None = None,
    ) -> OrderEvent:
        event_data = validate_event_payload(event_type, payload or {})
        masked_ip = mask_ip(ip)
        encrypted_ip = self._crypto.encrypt_ip(ip)

        for attempt in range(1, self._max_retries + 1):
            with self._session_factory() as db:
                last = self._tail(db, order_id)
                sequence_number = last.sequence_number + 1 if last else 1
                prev_hash = last.event_hash if last else GENESIS
                created_at = utc_now()
                event = OrderEvent(
                    order_id=order_id,
                    sequence_number=sequence_number,
                    event_type=event_type,
                    event_data=event_data,
                    ip_address=masked_ip,
                    ip_encrypted=encrypted_ip,
                    user_agent=user_agent,
                    external_ref=external_ref,
                    prev_hash=prev_hash,
                    event_hash=compute_event_hash(order_id, sequence_number, event_type, event_data, prev_hash, created_at),
                    created_at=created_at,
                )
                db.add(event)
                try:
                    db.flush()
                    if last is not None and self._stored_hash(db, last.id) != prev_hash:
                        db.rollback()
                        logger.info(
                            "[LEDGER] Tail of order %s rewritten before #%s landed; retrying (attempt %s/%s)",
                            order_id,
                            sequence_number,
                            attempt,
                            self._max_retries,
                        )
                        continue
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.info(
                        "[LEDGER] Sequence %s of order %s taken concurrently; retrying (attempt %s/%s)",
                        sequence_number,
                        order_id,
                        attempt,
                        self._max_retries,
                    )
                    continue
                db.refresh(event)
                logger.debug("[LEDGER] %s #%s appended to order %s", event_type, sequence_number, order_id)
                return event

        logger.error("[LEDGER] Giving up appending %s to order %s", event_type, order_id)
        raise LedgerContention(order_id, self._max_retries)

    def events(self, order_id: str) -> list[OrderEvent]:
        with self._session_factory() as db:
            return self._ordered(db, order_id)

    def verify(self, order_id: str) -> ChainVerification:
        """Replay the chain and report the first discrepancy."""
        with self._session_factory() as db:
            events = self._ordered(db, order_id)
        return verify_events(events)

    def reseal(self, order_id: str, *, actor: str) -> ResealResult:
        """Rewrite every hash with the canonical serialization.

        Repairs chains broken by a serialization defect, not by tampering.
        Previous hashes of every rewritten row are preserved inside the
        ``ledger.resealed`` event appended afterwards. The order row is
        write-locked before the chain is read; an append that read the old
        tail sees the rewritten hash after its INSERT and retries.
        """
        repairs: list[dict[str, Any]] = []
        with self._session_factory() as db:
            self._lock_order(db, order_id)
            events = self._ordered(db, order_id)
            prev_hash = GENESIS
            for event in events:
                new_hash = compute_event_hash(
                    event.order_id,
                    event.sequence_number,
                    event.event_type,
                    event.event_data or {},
                    prev_hash,
                    event.created_at,
                )
                if event.prev_hash != prev_hash or event.event_hash != new_hash:
                    repairs.append(
                        {
                            "sequence_number": event.sequence_number,
                            "previous_event_hash": event.event_hash,
                            "new_event_hash": new_hash,
                            "previous_prev_hash": event.prev_hash,
                        }
                    )
                    event.prev_hash = prev_hash
                    event.event_hash = new_hash
                prev_hash = new_hash
            total_events = len(events)
            db.commit()

        logger.warning("[LEDGER] Order %s resealed by %s: %s of %s events rewritten", order_id, actor, len(repairs), total_events)
        self.append(
            order_id,
            "ledger.resealed",
            {
                "resealed_by": actor,
                "resealed_count": len(repairs),
                "total_events": total_events,
                "repairs": repairs,
            },
        )
        return ResealResult(resealed=len(repairs), total_events=total_events, repairs=repairs)

    @staticmethod
    def _tail(db: Session, order_id: str) -> OrderEvent | None:
        return db.scalar(
            select(OrderEvent)
            .where(OrderEvent.order_id == order_id)
            .order_by(OrderEvent.sequence_number.desc())
            .limit(1)
        )

    @staticmethod
    def _lock_order(db: Session, order_id: str) -> None:
        # Self-assignment keeps updated_at out of the onupdate hook.
        db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(updated_at=Order.updated_at)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _stored_hash(db: Session, event_id: int) -> str | None:
        return db.scalar(select(OrderEvent.event_hash).where(OrderEvent.id == event_id).with_for_update())

    @staticmethod
    def _ordered(db: Session, order_id: str) -> list[OrderEvent]:
        return list(
            db.scalars(
                select(OrderEvent)
                .where(OrderEvent.order_id == order_id)
                .order_by(OrderEvent.sequence_number.asc())
            )
        )


def verify_events(events: list[OrderEvent]) -> ChainVerification:
    """Check sequence contiguity, ``prev_hash`` linkage and each stored hash."""
    if not events:
        return ChainVerification(valid=True, total_events=0)

    total = len(events)
    first_at = events[0].created_at
    last_at = events[-1].created_at

    def broken(event: OrderEvent, expected: str, actual: str, detail: str) -> ChainVerification:
        return ChainVerification(
            valid=False,
            total_events=total,
            broken_at_sequence=event.sequence_number,
            expected_hash=expected,
            actual_hash=actual,
            detail=detail,
            first_event_at=first_at,
            last_event_at=last_at,
        )

    expected_prev = GENESIS
    for position, event in enumerate(events, start=1):
        if event.sequence_number != position:
            return broken(
                event,
                expected_prev,
                event.prev_hash,
                f"sequence gap: expected #{position}, found #{event.sequence_number}",
            )
        if event.prev_hash != expected_prev:
            return broken(
                event,
                expected_prev,
                event.prev_hash,
                f"prevHash mismatch at seq #{event.sequence_number}: expected {expected_prev}, stored {event.prev_hash}",
            )
        recomputed = _recompute(event)
        if recomputed != event.event_hash:
            return broken(
                event,
                recomputed,
                event.event_hash,
                f"eventHash mismatch at seq #{event.sequence_number} ({event.event_type})",
            )
        expected_prev = recomputed

    return ChainVerification(valid=True, total_events=total, first_event_at=first_at, last_event_at=last_at)
