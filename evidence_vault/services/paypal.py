"""PayPal webhook signature verification."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Mapping, Protocol

import httpx

from evidence_vault.core.config import Settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS: dict[str, str] = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class WebhookSignatureVerifier(Protocol):
    def verify(self, headers: Mapping[str, str], payload: dict[str, Any]) -> bool: ...


def webhook_ref(event_id: str) -> str:
    """External reference stored on ledger events caused by a notification."""
    return f"paypal:{event_id}"


class PayPalWebhookVerifier:
    """Delegates verification to PayPal's verify-webhook-signature API."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.Client(base_url=settings.paypal_base_url, timeout=10.0)
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._lock = threading.Lock()

    def _access_token(self) -> str:
        with self._lock:
            if self._token and self._token_expires_at > time.monotonic() + 30:
                return self._token
            response = self._client.post(
                "/v1/oauth2/token",
                auth=(self._settings.paypal_client_id, self._settings.paypal_client_secret),
                data={"grant_type": "client_credentials"},
            )
            response.raise_for_status()
            data = response.json()
            self._token = data["access_token"]
            self._token_expires_at = time.monotonic() + int(data.get("expires_in", 0))
            return self._token

    def verify(self, headers: Mapping[str, str], payload: dict[str, Any]) -> bool:
        if not self._settings.paypal_webhook_id:
            logger.warning("[WEBHOOK] PAYPAL_WEBHOOK_ID not set; rejecting signature")
            return False
        lowered = {key.lower(): value for key, value in headers.items()}
        body: dict[str, Any] = {field: lowered.get(header) for field, header in SIGNATURE_HEADERS.items()}
        body["webhook_id"] = self._settings.paypal_webhook_id
        body["webhook_event"] = payload
        try:
            response = self._client.post(
                "/v1/notifications/verify-webhook-signature",
                json=body,
                headers={"Authorization": f"Bearer {self._access_token()}"},
            )
        except httpx.HTTPError:
            logger.exception("[WEBHOOK] Signature verification request failed")
            return False
        if response.status_code != 200:
            logger.warning("[WEBHOOK] Verification endpoint answered %s", response.status_code)
            return False
        return response.json().get("verification_status") == "SUCCESS"
