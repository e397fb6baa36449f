"""Operator authentication endpoints (API JWT)."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from evidence_vault.core.security import create_access_token, get_current_user
from evidence_vault.db.session import get_db
from evidence_vault.models.user import User
from evidence_vault.schemas.auth import AuthUserResponse, LoginRequest, TokenResponse
from evidence_vault.services.account_service import authenticate_user

router: APIRouter = APIRouter()


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse:
    user: User | None = authenticate_user(db, payload.username, payload.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect username or password")
    return TokenResponse(access_token=create_access_token(data={"sub": str(user.id), "role": user.role}))


@router.get("/me", response_model=AuthUserResponse)
def me(current_user: User = Depends(get_current_user)) -> AuthUserResponse:
    return AuthUserResponse.model_validate(current_user)
