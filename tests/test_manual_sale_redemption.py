from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from evidence_vault.core.config import settings
from evidence_vault.core.context import AppContext, build_context
from evidence_vault.core.crypto import sha256_bytes, sha256_hex
from evidence_vault.core.security import create_access_token, get_password_hash
from evidence_vault.db import session as db_session
from evidence_vault.db.base import Base
from evidence_vault.main import app
from evidence_vault.models import License, ManualSale, Order, OrderEvent, OrderSnapshot, Product, ProductFile, TermsVersion, User
from evidence_vault.services.file_store import LocalFileStore
from evidence_vault.services.geoip import GeoIpResolver
from evidence_vault.utils.time import utc_now

ARCHIVE = b"PK\x03\x04 template pack" * 32


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def send(self, template: str, recipient: str, data: dict) -> dict[str, str]:
        self.sent.append((template, recipient, data))
        return {"messageId": f"msg-{len(self.sent)}"}


class StaticVerifier:
    def verify(self, headers, payload) -> bool:
        return True


def _prepare_db(tmp_path: Path, monkeypatch) -> sessionmaker:
    engine = db_session.build_engine(f"sqlite:///{tmp_path / 'redeem.db'}")
    session_local = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(db_session, "engine", engine)
    monkeypatch.setattr(db_session, "SessionLocal", session_local)
    monkeypatch.setattr(settings, "storage_dir", str(tmp_path / "storage"))
    return session_local


def _context(session_local: sessionmaker, tmp_path: Path, mailer: RecordingMailer) -> AppContext:
    return build_context(
        session_local,
        settings,
        file_store=LocalFileStore(tmp_path / "storage"),
        mailer=mailer,
        verifier=StaticVerifier(),
        geoip=GeoIpResolver(enabled=False),
    )


def _seed_catalog(session_local: sessionmaker, context: AppContext, *, with_terms: bool = True) -> tuple[str, dict[str, str]]:
    context.file_store.upload("products/templates/pack.zip", ARCHIVE)
    with session_local() as db:
        admin = User(username="ops@example.com", password_hash=get_password_hash("secret"), role="ADMIN", email="ops@example.com")
        product = Product(slug="template-pack", name="Template Pack", price_usd=Decimal("39.00"), download_limit=5)
        product.files = [
            ProductFile(
                filename="pack.zip",
                storage_key="products/templates/pack.zip",
                file_size=len(ARCHIVE),
                sha256_hash=sha256_bytes(ARCHIVE),
                mime_type="application/zip",
            )
        ]
        db.add_all([admin, product])
        if with_terms:
            content = "All sales of digital goods are final once downloaded."
            db.add(TermsVersion(version_label="2024-01", content=content, content_hash=sha256_hex(content)))
        db.commit()
        headers = {"Authorization": f"Bearer {create_access_token({'sub': str(admin.id), 'role': admin.role})}"}
        return product.id, headers


def _create_sale(client: TestClient, product_id: str, headers: dict[str, str], **extra) -> str:
    response = client.post(
        "/api/v1/admin/manual-sales",
        json={"productId": product_id, "buyerEmail": "Client@Example.com", "paymentRef": "INV-42", **extra},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["redeemUrl"].rsplit("/", 1)[-1]


def test_redeem_creates_paid_order_with_full_story(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)
    mailer = RecordingMailer()

    with TestClient(app) as client:
        context = _context(session_local, tmp_path, mailer)
        app.state.context = context
        product_id, headers = _seed_catalog(session_local, context)
        token = _create_sale(client, product_id, headers)

        response = client.post(
            "/api/v1/redeem/confirm",
            json={"token": token, "termsAccepted": True, "buyerName": "Client Co"},
            headers={"User-Agent": "pytest-browser", "X-Forwarded-For": "203.0.113.9"},
        )
        assert response.status_code == 200
        body = response.json()
        download = client.get("/download/" + body["downloadUrl"].split("/download/", 1)[1])

    assert body["orderNumber"].startswith("ORD-")
    assert body["licenseKey"].startswith("LIC-")
    assert body["downloadLimit"] == 5
    assert download.status_code == 200
    assert download.content == ARCHIVE

    order_id = body["orderId"]
    with session_local() as db:
        order = db.get(Order, order_id)
        assert order.status == "paid"
        assert order.buyer_email == "client@example.com"
        assert order.buyer_name == "Client Co"
        assert order.buyer_ip == "203.xxx.xxx.xxx"
        assert order.terms_accepted_ua == "pytest-browser"
        assert order.retention_expires_at is not None
        assert order.download_count == 1
        assert db.scalar(select(License).where(License.order_id == order_id)).license_key == body["licenseKey"]
        snapshot = db.scalar(select(OrderSnapshot).where(OrderSnapshot.order_id == order_id))
        assert snapshot.snapshot_json["name"] == "Template Pack"
        sale = db.scalar(select(ManualSale))
        assert sale.status == "redeemed"
        assert sale.order_id == order_id
        event_types = list(
            db.scalars(select(OrderEvent.event_type).where(OrderEvent.order_id == order_id).order_by(OrderEvent.sequence_number))
        )
        payment_ref = db.scalar(
            select(OrderEvent.external_ref).where(OrderEvent.order_id == order_id, OrderEvent.event_type == "payment.recorded")
        )

    assert event_types[:6] == [
        "order.created",
        "terms.accepted",
        "payment.recorded",
        "license.created",
        "download.token_generated",
        "redeem.completed",
    ]
    assert "email.sent" in event_types
    assert event_types[-1] == "download.completed"
    assert payment_ref == "manual:INV-42"
    assert mailer.sent[0][0] == "purchase"
    assert mailer.sent[0][1] == "client@example.com"
    assert context.ledger.verify(order_id).valid is True


def test_redeem_link_is_single_use(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path, RecordingMailer())
        product_id, headers = _seed_catalog(session_local, app.state.context)
        token = _create_sale(client, product_id, headers)

        first = client.post("/api/v1/redeem/confirm", json={"token": token, "termsAccepted": True})
        second = client.post("/api/v1/redeem/confirm", json={"token": token, "termsAccepted": True})

    assert first.status_code == 200
    assert second.status_code == 410
    assert second.json()["code"] == "REDEEM_USED"
    with session_local() as db:
        assert len(db.scalars(select(Order)).all()) == 1


def test_redeem_validation_errors(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path, RecordingMailer())
        product_id, headers = _seed_catalog(session_local, app.state.context)
        token = _create_sale(client, product_id, headers)

        no_terms = client.post("/api/v1/redeem/confirm", json={"token": token, "termsAccepted": False})
        no_token = client.post("/api/v1/redeem/confirm", json={"termsAccepted": True})
        unknown = client.post("/api/v1/redeem/confirm", json={"token": "0" * 64, "termsAccepted": True})

    assert no_terms.status_code == 400
    assert no_terms.json()["code"] == "TERMS_NOT_ACCEPTED"
    assert no_token.json()["code"] == "TOKEN_REQUIRED"
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "REDEEM_NOT_FOUND"


def test_expired_redeem_link(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path, RecordingMailer())
        product_id, headers = _seed_catalog(session_local, app.state.context)
        token = _create_sale(client, product_id, headers)
        with session_local() as db:
            db.execute(update(ManualSale).values(redeem_expires_at=utc_now() - timedelta(minutes=1)))
            db.commit()

        response = client.post("/api/v1/redeem/confirm", json={"token": token, "termsAccepted": True})

    assert response.status_code == 410
    assert response.json()["code"] == "REDEEM_EXPIRED"
    with session_local() as db:
        assert db.scalar(select(ManualSale)).status == "expired"


def test_payment_first_sale_waits_for_payment(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path, RecordingMailer())
        product_id, headers = _seed_catalog(session_local, app.state.context)
        token = _create_sale(client, product_id, headers, requirePaymentFirst=True)

        response = client.post("/api/v1/redeem/confirm", json={"token": token, "termsAccepted": True})

    assert response.status_code == 402
    assert response.json()["code"] == "PAYMENT_PENDING"


def test_redeem_without_active_terms_fails(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path, RecordingMailer())
        product_id, headers = _seed_catalog(session_local, app.state.context, with_terms=False)
        token = _create_sale(client, product_id, headers)

        response = client.post("/api/v1/redeem/confirm", json={"token": token, "termsAccepted": True})

    assert response.status_code == 500
    assert response.json()["code"] == "NO_ACTIVE_TERMS"
    with session_local() as db:
        assert db.scalar(select(ManualSale)).redeem_count == 0


def test_manual_sale_requires_operator(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path, RecordingMailer())
        product_id, _ = _seed_catalog(session_local, app.state.context)
        response = client.post("/api/v1/admin/manual-sales", json={"productId": product_id, "buyerEmail": "a@b.c"})

    assert response.status_code == 401


def test_my_downloads_issues_fresh_link_for_matching_email(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        app.state.context = _context(session_local, tmp_path, RecordingMailer())
        product_id, headers = _seed_catalog(session_local, app.state.context)
        token = _create_sale(client, product_id, headers)
        order_id = client.post("/api/v1/redeem/confirm", json={"token": token, "termsAccepted": True}).json()["orderId"]

        fresh = client.post("/api/v1/my-downloads/new-token", json={"orderId": order_id, "email": "CLIENT@example.com"})
        wrong = client.post("/api/v1/my-downloads/new-token", json={"orderId": order_id, "email": "other@example.com"})

    assert fresh.status_code == 200
    assert "/download/" in fresh.json()["downloadUrl"]
    assert wrong.status_code == 404
    assert wrong.json()["code"] == "ORDER_NOT_FOUND"
