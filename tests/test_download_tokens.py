from datetime import timedelta

from evidence_vault.core.crypto import CryptoContext
from evidence_vault.services.tokens import DownloadTokenIssuer, hash_token
from evidence_vault.utils.time import utc_now


def _issuer(secret: str = "token-test-secret") -> DownloadTokenIssuer:
    return DownloadTokenIssuer(CryptoContext(download_secret=secret))


def test_issued_token_verifies_and_carries_order_and_stage() -> None:
    issuer = _issuer()

    issued = issuer.issue("order-1", "stage-2", ttl_minutes=15)
    payload = issuer.verify(issued.raw_token)

    assert payload is not None
    assert payload.order_id == "order-1"
    assert payload.stage_id == "stage-2"
    assert issued.token_hash == hash_token(issued.raw_token)
    assert issued.token_hash not in issued.raw_token
    assert len(issued.hash_prefix) == 8


def test_tokens_are_unique_per_issue() -> None:
    issuer = _issuer()

    first = issuer.issue("order-1")
    second = issuer.issue("order-1")

    assert first.raw_token != second.raw_token
    assert first.token_hash != second.token_hash


def test_tampered_token_is_rejected() -> None:
    issuer = _issuer()
    issued = issuer.issue("order-1")
    encoded, nonce, signature = issued.raw_token.split(".")

    forged_payload = _issuer().issue("order-2").raw_token.split(".")[0]
    assert issuer.verify(f"{forged_payload}.{nonce}.{signature}") is None
    assert issuer.verify(f"{encoded}.{nonce}x.{signature}") is None
    assert issuer.verify(f"{encoded}.{nonce}") is None
    assert issuer.verify("not-a-token") is None


def test_token_signed_with_other_secret_is_rejected() -> None:
    issued = _issuer("secret-a").issue("order-1")

    assert _issuer("secret-b").verify(issued.raw_token) is None


def test_expired_token_is_rejected() -> None:
    issuer = _issuer()
    issued = issuer.issue("order-1", ttl_minutes=15)

    assert issuer.verify(issued.raw_token, now=utc_now() + timedelta(minutes=14)) is not None
    assert issuer.verify(issued.raw_token, now=utc_now() + timedelta(minutes=16)) is None
