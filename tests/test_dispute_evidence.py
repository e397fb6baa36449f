from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest
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
from evidence_vault.models import AuditLog, EvidenceAttachment, Order, OrderEvent, Product, ProductFile, TermsVersion, User
from evidence_vault.services.evidence_report import summarize_access
from evidence_vault.services.file_store import LocalFileStore
from evidence_vault.services.geoip import GeoIpResolver
from evidence_vault.services.settings_service import StoreIdentity, save_store_identity
from evidence_vault.utils.time import utc_now

ARCHIVE = b"dataset archive" * 128
SCREENSHOT = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class NullMailer:
    def send(self, template: str, recipient: str, data: dict) -> dict[str, str]:
        return {"messageId": "test"}


class StaticVerifier:
    def verify(self, headers, payload) -> bool:
        return True


def _prepare_db(tmp_path: Path, monkeypatch) -> sessionmaker:
    engine = db_session.build_engine(f"sqlite:///{tmp_path / 'evidence.db'}")
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
        verifier=StaticVerifier(),
        geoip=GeoIpResolver(enabled=False),
    )


def _auth_headers(session_local: sessionmaker, username: str, role: str) -> dict[str, str]:
    with session_local() as db:
        user = User(username=username, password_hash=get_password_hash("secret"), role=role, email=username)
        db.add(user)
        db.commit()
        return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id), 'role': role})}"}


def _redeemed_order(client: TestClient, session_local: sessionmaker, context: AppContext, headers: dict[str, str]) -> str:
    context.file_store.upload("products/dataset/data.zip", ARCHIVE)
    with session_local() as db:
        product = Product(slug="dataset", name="Research Dataset", price_usd=Decimal("250.00"))
        product.files = [
            ProductFile(
                filename="data.zip",
                storage_key="products/dataset/data.zip",
                file_size=len(ARCHIVE),
                sha256_hash=sha256_bytes(ARCHIVE),
                mime_type="application/zip",
            )
        ]
        content = "Licensed for a single research group."
        db.add_all([product, TermsVersion(version_label="v3", content=content, content_hash=sha256_hex(content))])
        db.commit()
        product_id = product.id

    sale = client.post(
        "/api/v1/admin/manual-sales",
        json={"productId": product_id, "buyerEmail": "lab@example.org", "paymentMethod": "wire", "paymentRef": "WIRE-7"},
        headers=headers,
    )
    token = sale.json()["redeemUrl"].rsplit("/", 1)[-1]
    redeemed = client.post("/api/v1/redeem/confirm", json={"token": token, "termsAccepted": True, "buyerName": "Lab"})
    body = redeemed.json()
    client.get("/download/" + body["downloadUrl"].split("/download/", 1)[1])
    return body["orderId"]


def test_evidence_report_json(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        context = _context(session_local, tmp_path)
        app.state.context = context
        headers = _auth_headers(session_local, "ops@example.com", "ADMIN")
        order_id = _redeemed_order(client, session_local, context, headers)
        with session_local() as db:
            save_store_identity(db, StoreIdentity(store_name="Lab Goods", support_email="help@lab.example", legal_entity="Lab Goods GmbH"))

        response = client.get(f"/api/v1/admin/orders/{order_id}/evidence", headers=headers)

    assert response.status_code == 200
    report = response.json()
    assert report["documentId"].startswith("EVD-ORD-")
    assert report["generatedBy"] == "ops@example.com"
    assert report["storeName"] == "Lab Goods"
    assert report["legalEntity"] == "Lab Goods GmbH"
    assert report["order"]["orderId"] == order_id
    assert report["order"]["downloadCount"] == 1
    assert report["buyer"]["email"] == "lab@example.org"
    assert report["terms"]["versionLabel"] == "v3"
    assert report["license"]["licenseKey"].startswith("LIC-")
    assert report["access"]["successfulDownloads"] == 1
    assert report["chain"]["valid"] is True
    assert report["chain"]["totalEvents"] == len(report["timeline"])
    assert [entry["eventType"] for entry in report["downloads"]] == ["download.token_generated", "download.completed"]
    assert len(report["tokens"]) == 1
    assert report["tokens"][0]["used"] is True
    assert len(report["snapshots"]) == 1


def test_evidence_pdf_download(tmp_path: Path, monkeypatch) -> None:
    pytest.importorskip("reportlab")
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        context = _context(session_local, tmp_path)
        app.state.context = context
        headers = _auth_headers(session_local, "ops@example.com", "ADMIN")
        order_id = _redeemed_order(client, session_local, context, headers)

        response = client.get(f"/api/v1/admin/orders/{order_id}/evidence.pdf", headers=headers)

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")
    assert 'filename="EVD-ORD-' in response.headers["content-disposition"]


def test_dispute_mode_freezes_and_stores_pdf(tmp_path: Path, monkeypatch) -> None:
    pytest.importorskip("reportlab")
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        context = _context(session_local, tmp_path)
        app.state.context = context
        headers = _auth_headers(session_local, "ops@example.com", "ADMIN")
        order_id = _redeemed_order(client, session_local, context, headers)

        response = client.post(f"/api/v1/admin/orders/{order_id}/dispute-mode", headers=headers)
        again = client.post(f"/api/v1/admin/orders/{order_id}/dispute-mode", headers=headers)
        fresh_link = client.post("/api/v1/my-downloads/new-token", json={"orderId": order_id, "email": "lab@example.org"})

    assert response.status_code == 200
    body = response.json()
    assert body["chainValid"] is True
    assert body["evidencePdfKey"].startswith("evidence/ORD-")
    stored = context.file_store.stream(body["evidencePdfKey"])
    pdf = b"".join(stored.body)
    assert pdf.startswith(b"%PDF")
    assert sha256_bytes(pdf) == body["evidencePdfHash"]

    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_FROZEN"
    assert fresh_link.status_code == 403
    assert fresh_link.json()["code"] == "DENIED_FROZEN"

    with session_local() as db:
        order = db.get(Order, order_id)
        assert order.status == "frozen"
        assert order.frozen_from_status == "paid"
        assert order.frozen_evidence_pdf_hash == body["evidencePdfHash"]
        event_types = list(
            db.scalars(select(OrderEvent.event_type).where(OrderEvent.order_id == order_id).order_by(OrderEvent.sequence_number))
        )
        audit = db.scalar(select(AuditLog).where(AuditLog.action_type == "dispute_mode"))
    assert "admin.dispute_mode_activated" in event_types
    assert "admin.evidence_pdf_generated" in event_types
    assert event_types[-1] == "download.denied_frozen"
    assert audit.actor_identifier == "ops@example.com"
    assert context.ledger.verify(order_id).valid is True


def test_evidence_attachment_upload(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        context = _context(session_local, tmp_path)
        app.state.context = context
        headers = _auth_headers(session_local, "ops@example.com", "ADMIN")
        order_id = _redeemed_order(client, session_local, context, headers)

        uploaded = client.post(
            f"/api/v1/admin/orders/{order_id}/evidence-attachments",
            files={"file": ("chat log/1.png", SCREENSHOT, "image/png")},
            data={"description": "Buyer confirms receipt", "type": "communication"},
            headers=headers,
        )
        rejected = client.post(
            f"/api/v1/admin/orders/{order_id}/evidence-attachments",
            files={"file": ("run.exe", b"MZ", "application/x-msdownload")},
            headers=headers,
        )

    assert uploaded.status_code == 201
    body = uploaded.json()
    assert body["attachmentType"] == "communication"
    assert body["sha256Hash"] == sha256_bytes(SCREENSHOT)
    assert "/" not in body["filename"]
    assert rejected.status_code == 415
    assert rejected.json()["code"] == "ATTACHMENT_TYPE_NOT_ALLOWED"

    with session_local() as db:
        attachment = db.scalar(select(EvidenceAttachment).where(EvidenceAttachment.order_id == order_id))
        last_event = db.scalar(
            select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.sequence_number.desc()).limit(1)
        )
    assert context.file_store.head(attachment.storage_key).content_length == len(SCREENSHOT)
    assert last_event.event_type == "admin.evidence_attached"


def test_verify_and_reseal_chain_endpoints(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        context = _context(session_local, tmp_path)
        app.state.context = context
        admin = _auth_headers(session_local, "ops@example.com", "ADMIN")
        owner = _auth_headers(session_local, "owner@example.com", "SUPER_ADMIN")
        order_id = _redeemed_order(client, session_local, context, admin)
        with session_local() as db:
            db.execute(
                update(OrderEvent)
                .where(OrderEvent.order_id == order_id, OrderEvent.sequence_number == 2)
                .values(event_hash="f" * 64)
            )
            db.commit()

        broken = client.get(f"/api/v1/admin/orders/{order_id}/verify-chain", headers=admin)
        forbidden = client.post(f"/api/v1/admin/orders/{order_id}/reseal-chain", headers=admin)
        resealed = client.post(f"/api/v1/admin/orders/{order_id}/reseal-chain", headers=owner)
        repaired = client.get(f"/api/v1/admin/orders/{order_id}/verify-chain", headers=admin)
        missing = client.get("/api/v1/admin/orders/no-such-order/verify-chain", headers=admin)

    assert broken.json()["valid"] is False
    assert broken.json()["brokenAtSequence"] == 2
    assert forbidden.status_code == 403
    assert resealed.status_code == 200
    assert resealed.json()["chainValidAfter"] is True
    assert resealed.json()["resealed"] >= 1
    assert repaired.json()["valid"] is True
    assert missing.status_code == 404


def test_release_and_revoke_endpoints(tmp_path: Path, monkeypatch) -> None:
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        context = _context(session_local, tmp_path)
        app.state.context = context
        headers = _auth_headers(session_local, "ops@example.com", "ADMIN")
        order_id = _redeemed_order(client, session_local, context, headers)

        revoked = client.post(f"/api/v1/admin/orders/{order_id}/revoke", json={"reason": "license_violation"}, headers=headers)
        twice = client.post(f"/api/v1/admin/orders/{order_id}/revoke", headers=headers)
        unknown_stage = client.post(f"/api/v1/admin/orders/{order_id}/stages/nope/release", headers=headers)

    assert revoked.status_code == 200
    assert revoked.json()["reason"] == "license_violation"
    assert revoked.json()["stagesRevoked"] == 0
    assert twice.status_code == 409
    assert twice.json()["code"] == "ALREADY_REVOKED"
    assert unknown_stage.status_code == 404


def test_hard_delete_respects_retention(tmp_path: Path, monkeypatch) -> None:
    pytest.importorskip("reportlab")
    session_local = _prepare_db(tmp_path, monkeypatch)

    with TestClient(app) as client:
        context = _context(session_local, tmp_path)
        app.state.context = context
        admin = _auth_headers(session_local, "ops@example.com", "ADMIN")
        owner = _auth_headers(session_local, "owner@example.com", "SUPER_ADMIN")
        order_id = _redeemed_order(client, session_local, context, admin)
        client.post(f"/api/v1/admin/orders/{order_id}/dispute-mode", headers=admin)

        by_admin = client.delete(f"/api/v1/admin/orders/{order_id}", headers=admin)
        under_retention = client.delete(f"/api/v1/admin/orders/{order_id}", headers=owner)
        with session_local() as db:
            db.execute(update(Order).where(Order.id == order_id).values(retention_expires_at=utc_now() - timedelta(days=1)))
            db.commit()
            pdf_key = db.get(Order, order_id).frozen_evidence_pdf_key
        deleted = client.delete(f"/api/v1/admin/orders/{order_id}", headers=owner)

    assert by_admin.status_code == 403
    assert under_retention.status_code == 409
    assert under_retention.json()["code"] == "RETENTION_ACTIVE"
    assert deleted.status_code == 204
    assert context.file_store.head(pdf_key) is None
    with session_local() as db:
        assert db.get(Order, order_id) is None
        assert db.scalars(select(OrderEvent).where(OrderEvent.order_id == order_id)).all() == []


def test_access_summary_counts() -> None:
    events = [
        OrderEvent(event_type="download.completed", event_data={"result": "OK", "content_length": 10}, ip_address="1.xxx.xxx.xxx", created_at=utc_now()),
        OrderEvent(event_type="download.completed", event_data={"result": "OK_RANGE", "content_length": 4}, ip_address="2.xxx.xxx.xxx", created_at=utc_now()),
        OrderEvent(event_type="download.denied", event_data={"result": "DENIED_TOKEN_USED"}, ip_address="1.xxx.xxx.xxx", created_at=utc_now()),
    ]

    summary = summarize_access(events)

    assert summary.successful_downloads == 1
    assert summary.resumed_transfers == 1
    assert summary.denied_attempts == 1
    assert summary.distinct_ips == 2
    assert summary.bytes_delivered == 14
