import hmac

from fastapi import APIRouter, Depends, HTTPException

from homebase import config
from homebase.auth import create_access_token, require_token_claims
from homebase.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from homebase.services.notification_store import notification_store

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if not hmac.compare_digest(payload.password, config.AUTH_DEMO_PASSWORD):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    notification_store.get_or_create_preferences(user_id=user_id, role=payload.role)
    token, expires_at = create_access_token(user_id=user_id, role=payload.role)
    return AuthLoginResponse(access_token=token, user_id=user_id, role=payload.role, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(claims: tuple[str, str] = Depends(require_token_claims)):
    user_id, role = claims
    return AuthMeResponse(
        user_id=user_id,
        role=role,
        unread_notifications=notification_store.count_unread(user_id=user_id, role=role),
    )
