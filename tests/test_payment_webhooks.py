import json
from decimal import Decimal
from pathlib import Path

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from evidence_vault.core.config import Settings, settings
from evidence_vault.core.context import AppContext, build_context
from evidence_vault.db import session as db_session
from evidence_vault.db.base import Base
from evidence_vault.main import app
from evidence_vault.models import NotificationLog, Order, OrderEvent, Product
from evidence_vault.services.file_store import LocalFileStore
from evidence_vault.services.geoip import GeoIpResolver
from evidence_vault.services.paypal import PayPalWebhookVerifier

GOOD_SIGNATURE = {"paypal-transmission-sig": "good"}
FORGED_SIGNATURE = {"paypal-transmission-sig": "forged"}


class HeaderVerifier:
    def verify(self, headers, payload) -> bool:
        return headers.get("paypal-transmission-sig") == "good"


class NullMailer:
    def send(self, template: str, recipient: str, data: dict) -> dict[str, str]:
        return {"messageId": "test"}


def _prepare_db(tmp_path: Path, monkeypatch) -> sessionmaker:
    engine = db_session.build_engine(f"sqlite:///{tmp_path / 'webhooks.db'}")
    session_local = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(db_session, "engine", engine)
    monkeypatch.setattr(db_session, "SessionLocal", session_local)
    monkeypatch.setattr(settings, "storage_dir", str(tmp_path / "storage"))
    return session_local


def _context(session_local: sessionmaker, tmp_path: Path) -> AppContext:
    return build_context(
        session_local,
        settings,
        file_store=LocalFileStore(tmp_path / "storage"),
        mailer=NullMailer(),
        verifier=HeaderVerifier(),
        geoip=GeoIpResolver(enabled=False),
    )


def _seed_order(session_local: sessionmaker, *, status: str = "paid", capture_id: str = "CAP-100") -> str:
    with session_local() as db:
        product = Product(slug="ebook", name="Ebook", price_usd=Decimal("15.00"))
        db.add(product)
        db.flush()
        order = Order(
            order_number="ORD-HOOK01",
            product_id=product.id,
            product_snapshot={"name": "Ebook"},
            buyer_email="reader@example.com",
            amount=Decimal("15.00"),
            status=status,
            provider_capture_id=capture_id,
        )
        db.add(order)
        db.commit()
        return order.id


def _capture_completed(event_id: str, capture_id: str = "CAP-100") -> dict:
    return {
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {"id": capture_id, "custom_id": "ORD-HOOK01", "amount": {"value": "15.00", "currency_code": "USD"}},
    }


def _post(client: TestClient, payload: dict, headers: dict[str, str]):
    return client.post("/api/v1/webhooks/paypal", content=json.dumps(payload), headers=headers)


def _order(session_local: sessionmaker, order_id: str) -> Order:
    with session_local() as db:
        return db.get(Order, order_id)


def _events(session_local: sessionmaker, order_id: str) -> list[OrderEvent]:
    with session_local() as db:
        return list(db.scalars(select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.sequence_number)))


def test_capture_completed_confirms_order_once(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)
    order_id = _seed_order(session_local)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path)
        first = _post(client, _capture_completed("WH-1"), GOOD_SIGNATURE)
        duplicate = _post(client, _capture_completed("WH-1"), GOOD_SIGNATURE)

    assert first.status_code == 200
    assert first.text == "OK"
    assert duplicate.status_code == 200
    assert duplicate.text == "OK (duplicate)"
    assert _order(session_local, order_id).status == "confirmed"

    events = _events(session_local, order_id)
    assert [event.event_type for event in events] == ["webhook.payment_confirmed"]
    assert events[0].external_ref == "paypal:WH-1"

    with session_local() as db:
        logs = db.scalars(select(NotificationLog)).all()
    assert len(logs) == 1
    assert logs[0].processed is True
    assert logs[0].linked_order_id == order_id
    assert logs[0].processing_result.startswith("Confirmed capture CAP-100")


def test_invalid_signature_is_rejected_and_not_dispatched(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)
    order_id = _seed_order(session_local)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path)
        response = _post(client, _capture_completed("WH-2"), FORGED_SIGNATURE)

    assert response.status_code == 401
    assert _order(session_local, order_id).status == "paid"
    assert _events(session_local, order_id) == []
    with session_local() as db:
        log = db.scalar(select(NotificationLog).where(NotificationLog.provider_event_id == "WH-2"))
    assert log.signature_valid is False
    assert log.processing_result == "REJECTED: invalid signature"


def test_forged_delivery_does_not_block_authentic_event(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)
    order_id = _seed_order(session_local)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path)
        forged = _post(client, _capture_completed("WH-3"), FORGED_SIGNATURE)
        authentic = _post(client, _capture_completed("WH-3"), GOOD_SIGNATURE)
        forged_again = _post(client, _capture_completed("WH-3"), FORGED_SIGNATURE)

    assert forged.status_code == 401
    assert authentic.status_code == 200
    assert authentic.text == "OK"
    assert forged_again.text == "OK (duplicate)"
    assert _order(session_local, order_id).status == "confirmed"


def test_refund_and_dispute_on_frozen_order_keep_overlay(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)
    order_id = _seed_order(session_local, status="confirmed", capture_id="CAP-200")

    with TestClient(app) as client:
        context = _context(session_local, tmp_path)
        app.state.context = context
        context.delivery.freeze(order_id, actor="ops@example.com", chain_valid=True, chain_total_events=0)
        dispute = _post(
            client,
            {
                "id": "WH-4",
                "event_type": "CUSTOMER.DISPUTE.CREATED",
                "resource": {
                    "dispute_id": "PP-D-1",
                    "reason": "MERCHANDISE_OR_SERVICE_NOT_RECEIVED",
                    "disputed_transactions": [{"seller_transaction_id": "CAP-200"}],
                },
            },
            GOOD_SIGNATURE,
        )
        refund = _post(
            client,
            {
                "id": "WH-5",
                "event_type": "PAYMENT.CAPTURE.REFUNDED",
                "resource": {
                    "id": "RF-9",
                    "links": [{"rel": "up", "href": "https://api-m.paypal.com/v2/payments/captures/CAP-200"}],
                },
            },
            GOOD_SIGNATURE,
        )

    assert dispute.status_code == 200
    assert refund.status_code == 200
    order = _order(session_local, order_id)
    assert order.status == "frozen"
    assert order.frozen_from_status == "refunded"
    event_types = [event.event_type for event in _events(session_local, order_id)]
    assert event_types[-2:] == ["dispute.created", "payment.refunded"]


def test_unknown_event_type_and_missing_order(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)
    _seed_order(session_local)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path)
        ignored = _post(client, {"id": "WH-6", "event_type": "BILLING.PLAN.CREATED", "resource": {}}, GOOD_SIGNATURE)
        orphan = _post(client, _capture_completed("WH-7", capture_id="CAP-UNKNOWN") | {"resource": {"id": "CAP-UNKNOWN"}}, GOOD_SIGNATURE)

    assert ignored.status_code == 200
    assert orphan.status_code == 200
    with session_local() as db:
        results = dict(db.execute(select(NotificationLog.provider_event_id, NotificationLog.processing_result)).all())
    assert results["WH-6"] == "IGNORED: BILLING.PLAN.CREATED"
    assert results["WH-7"] == "No order found for capture CAP-UNKNOWN"


def test_malformed_notifications(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path)
        not_json = client.post("/api/v1/webhooks/paypal", content=b"{not json", headers=GOOD_SIGNATURE)
        no_id = _post(client, {"event_type": "PAYMENT.CAPTURE.COMPLETED"}, GOOD_SIGNATURE)

    assert not_json.status_code == 400
    assert no_id.status_code == 400
    with session_local() as db:
        assert db.scalars(select(NotificationLog)).all() == []


def test_paypal_verifier_uses_verification_api() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        body = json.loads(request.content)
        assert body["webhook_id"] == "WH-CONFIG"
        assert body["transmission_sig"] == "sig-value"
        return httpx.Response(200, json={"verification_status": "SUCCESS"})

    client = httpx.Client(base_url="https://api-m.sandbox.paypal.com", transport=httpx.MockTransport(handler))
    verifier = PayPalWebhookVerifier(Settings(paypal_webhook_id="WH-CONFIG"), client=client)

    assert verifier.verify({"PAYPAL-TRANSMISSION-SIG": "sig-value"}, {"id": "WH-8"}) is True
    assert verifier.verify({"PAYPAL-TRANSMISSION-SIG": "sig-value"}, {"id": "WH-9"}) is True
    assert calls.count("/v1/oauth2/token") == 1


def test_paypal_verifier_without_webhook_id_rejects() -> None:
    verifier = PayPalWebhookVerifier(Settings(paypal_webhook_id=""), client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500))))

    assert verifier.verify({}, {"id": "WH-10"}) is False
