from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from evidence_vault.core.crypto import CryptoContext, canonical_json
from evidence_vault.db.base import Base
from evidence_vault.db.session import build_engine
from evidence_vault.models import Order, OrderEvent, Product
from evidence_vault.services.errors import ValidationFailed
from evidence_vault.services.ledger import GENESIS, EventLedger, compute_event_hash


def _build_session_local(tmp_path: Path) -> sessionmaker:
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def _seed_order(session_local: sessionmaker) -> str:
    with session_local() as db:
        product = Product(slug="starter-kit", name="Starter Kit", price_usd=Decimal("19.00"))
        db.add(product)
        db.flush()
        order = Order(
            order_number="ORD-LEDGR1",
            product_id=product.id,
            product_snapshot={"name": "Starter Kit"},
            buyer_email="buyer@example.com",
            amount=Decimal("19.00"),
            status="paid",
        )
        db.add(order)
        db.commit()
        return order.id


def _ledger(session_local: sessionmaker, **crypto_kwargs) -> EventLedger:
    return EventLedger(session_local, CryptoContext(download_secret="ledger-test-secret", **crypto_kwargs))


def _append_purchase_story(ledger: EventLedger, order_id: str) -> None:
    ledger.append(
        order_id,
        "order.created",
        {
            "order_number": "ORD-LEDGR1",
            "source": "checkout",
            "product_slug": "starter-kit",
            "product_name": "Starter Kit",
            "amount": "19.00",
            "currency": "USD",
        },
        ip="203.0.113.7",
        user_agent="pytest",
    )
    ledger.append(order_id, "terms.accepted", {"terms_version_id": 1, "terms_version_label": "v1", "terms_content_hash": "a" * 64})
    ledger.append(order_id, "payment.captured", {"capture_id": "CAP-1", "source": "checkout", "amount": "19.00", "currency": "USD"})
    ledger.append(order_id, "license.created", {"license_key": "LIC-AAAA-BBBB-CCCC", "fingerprint": "f" * 64})


def test_append_links_events_into_a_chain(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    ledger = _ledger(session_local)

    _append_purchase_story(ledger, order_id)
    events = ledger.events(order_id)

    assert [event.sequence_number for event in events] == [1, 2, 3, 4]
    assert events[0].prev_hash == GENESIS
    for previous, current in zip(events, events[1:]):
        assert current.prev_hash == previous.event_hash
    assert events[0].ip_address == "203.xxx.xxx.xxx"
    assert events[0].ip_encrypted is None

    result = ledger.verify(order_id)
    assert result.valid is True
    assert result.total_events == 4


def test_verify_reports_first_tampered_sequence(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    ledger = _ledger(session_local)
    _append_purchase_story(ledger, order_id)

    with session_local() as db:
        db.execute(
            update(OrderEvent)
            .where(OrderEvent.order_id == order_id, OrderEvent.sequence_number == 3)
            .values(event_type="payment.captureD")
        )
        db.commit()

    result = ledger.verify(order_id)
    assert result.valid is False
    assert result.broken_at_sequence == 3
    assert result.total_events == 4
    assert result.expected_hash != result.actual_hash


def test_verify_detects_deleted_event(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    ledger = _ledger(session_local)
    _append_purchase_story(ledger, order_id)

    with session_local() as db:
        event = db.scalar(select(OrderEvent).where(OrderEvent.order_id == order_id, OrderEvent.sequence_number == 2))
        db.delete(event)
        db.commit()

    result = ledger.verify(order_id)
    assert result.valid is False
    assert result.broken_at_sequence == 3
    assert "sequence gap" in result.detail


def test_empty_chain_is_valid(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)

    result = _ledger(session_local).verify(order_id)

    assert result.valid is True
    assert result.total_events == 0


def test_concurrent_appends_produce_contiguous_sequence(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    ledger = EventLedger(session_local, CryptoContext(download_secret="ledger-test-secret"), max_retries=50)

    def append(index: int) -> int:
        event = ledger.append(order_id, "note.added", {"index": index})
        return event.sequence_number

    with ThreadPoolExecutor(max_workers=8) as pool:
        sequences = list(pool.map(append, range(20)))

    assert sorted(sequences) == list(range(1, 21))
    assert ledger.verify(order_id).valid is True


def test_known_event_type_rejects_unknown_payload_keys(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    ledger = _ledger(session_local)

    with pytest.raises(ValidationFailed) as exc_info:
        ledger.append(order_id, "license.created", {"license_key": "LIC-1", "fingerprint": "x", "extra": True})

    assert exc_info.value.code == "INVALID_EVENT_PAYLOAD"
    assert ledger.events(order_id) == []


def test_ip_is_encrypted_when_key_configured(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    crypto = CryptoContext(download_secret="ledger-test-secret", ip_encryption_key=Fernet.generate_key().decode("ascii"))
    assert crypto.can_encrypt is True
    ledger = EventLedger(session_local, crypto)

    event = ledger.append(order_id, "note.added", {"text": "hello"}, ip="198.51.100.20")

    assert event.ip_address == "198.xxx.xxx.xxx"
    assert crypto.decrypt_ip(event.ip_encrypted) == "198.51.100.20"


def test_reseal_repairs_serialization_breaks_and_keeps_old_hashes(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    ledger = _ledger(session_local)
    _append_purchase_story(ledger, order_id)

    with session_local() as db:
        event = db.scalar(select(OrderEvent).where(OrderEvent.order_id == order_id, OrderEvent.sequence_number == 2))
        original_hash = event.event_hash
        event.event_hash = "0" * 64
        db.commit()
    assert ledger.verify(order_id).broken_at_sequence == 2

    result = ledger.reseal(order_id, actor="owner@example.com")

    assert result.resealed >= 1
    assert result.total_events == 4
    assert result.repairs[0]["sequence_number"] == 2
    assert result.repairs[0]["previous_event_hash"] == "0" * 64
    assert result.repairs[0]["new_event_hash"] == original_hash

    verification = ledger.verify(order_id)
    assert verification.valid is True
    assert verification.total_events == 5
    last = ledger.events(order_id)[-1]
    assert last.event_type == "ledger.resealed"
    assert last.event_data["resealed_by"] == "owner@example.com"


def test_append_relinks_when_tail_hash_is_rewritten_underneath(tmp_path: Path, monkeypatch) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    ledger = _ledger(session_local)
    _append_purchase_story(ledger, order_id)
    read_tail = EventLedger._tail
    rewritten: list[int] = []

    def tail_then_rewrite(db, requested_order_id):
        tail = read_tail(db, requested_order_id)
        if not rewritten:
            rewritten.append(tail.sequence_number)
            with session_local() as other:
                other.execute(update(OrderEvent).where(OrderEvent.id == tail.id).values(event_hash="e" * 64))
                other.commit()
        return tail

    monkeypatch.setattr(EventLedger, "_tail", staticmethod(tail_then_rewrite))

    event = ledger.append(order_id, "note.added", {"text": "after rewrite"})

    assert rewritten == [4]
    assert event.sequence_number == 5
    assert event.prev_hash == "e" * 64
    assert [item.sequence_number for item in ledger.events(order_id)] == [1, 2, 3, 4, 5]


def test_reseal_leaves_order_timestamp_untouched(tmp_path: Path) -> None:
    session_local = _build_session_local(tmp_path)
    order_id = _seed_order(session_local)
    ledger = _ledger(session_local)
    _append_purchase_story(ledger, order_id)
    with session_local() as db:
        before = db.get(Order, order_id).updated_at

    ledger.reseal(order_id, actor="owner@example.com")

    with session_local() as db:
        assert db.get(Order, order_id).updated_at == before
    assert ledger.verify(order_id).valid is True


def test_event_hash_depends_on_every_field() -> None:
    moment = datetime(2024, 5, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)
    base = compute_event_hash("order-1", 1, "order.created", {"b": 1, "a": 2}, GENESIS, moment)

    assert base == compute_event_hash("order-1", 1, "order.created", {"a": 2, "b": 1}, GENESIS, moment)
    assert base != compute_event_hash("order-1", 2, "order.created", {"a": 2, "b": 1}, GENESIS, moment)
    assert base != compute_event_hash("order-1", 1, "order.created", {"a": 2, "b": 1.5}, GENESIS, moment)
    assert canonical_json({"b": 1.0, "a": [Decimal("1.50")]}) == '{"a":["1.50"],"b":1}'
