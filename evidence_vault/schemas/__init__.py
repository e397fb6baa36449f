"""Schema exports."""

from evidence_vault.schemas.auth import AuthUserResponse, LoginRequest, TokenResponse
from evidence_vault.schemas.delivery import (
    AttachmentResponse,
    ChainVerifyResponse,
    DisputeModeResponse,
    ManualSaleCreate,
    ManualSaleCreated,
    NewTokenRequest,
    NewTokenResponse,
    RedeemConfirmRequest,
    RedeemConfirmResponse,
    ResealResponse,
    RevokeRequest,
    RevokeResponse,
    StageReleaseResponse,
)
from evidence_vault.schemas.evidence import EvidenceReport

__all__ = [
    "AuthUserResponse",
    "LoginRequest",
    "TokenResponse",
    "AttachmentResponse",
    "ChainVerifyResponse",
    "DisputeModeResponse",
    "ManualSaleCreate",
    "ManualSaleCreated",
    "NewTokenRequest",
    "NewTokenResponse",
    "RedeemConfirmRequest",
    "RedeemConfirmResponse",
    "ResealResponse",
    "RevokeRequest",
    "RevokeResponse",
    "StageReleaseResponse",
    "EvidenceReport",
]
