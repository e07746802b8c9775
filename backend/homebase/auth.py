import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from homebase import config
from homebase.errors import PermissionDeniedError

TOKEN_TTL_HOURS = config.AUTH_TOKEN_TTL_HOURS


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(payload: bytes) -> bytes:
    return hmac.new(config.AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(user_id: str, role: str = "homeowner") -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{role}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(payload))}"
    return token, expiry.isoformat()


def decode_access_token(token: str) -> Optional[tuple[str, str]]:
    """Return ``(user_id, role)`` for a valid unexpired token."""
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
    except ValueError:
        return None
    if not hmac.compare_digest(sent_sig, _sign(payload)):
        return None
    try:
        user_id, role, expiry_ts = payload.decode("utf-8").rsplit("|", 2)
        expires = int(expiry_ts)
    except (UnicodeDecodeError, ValueError):
        return None
    if datetime.now(timezone.utc).timestamp() > expires:
        return None
    return user_id, role


def verify_access_token(token: str) -> Optional[str]:
    claims = decode_access_token(token)
    return claims[0] if claims else None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_user(authorization: Optional[str]) -> Optional[str]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def require_token_claims(authorization: Optional[str] = Header(default=None)) -> tuple[str, str]:
    token = parse_bearer_token(authorization)
    claims = decode_access_token(token) if token else None
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return claims


def assert_actor_authorized(
    actor_user_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    token_user = resolve_request_user(authorization)
    if not token_user:
        if config.AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if token_user != actor_user_id:
        raise PermissionDeniedError("Token user does not match actor user")


def require_service_role(x_service_key: Optional[str] = Header(default=None)) -> None:
    """Guard for backend-to-backend calls (workflow advance, dispatch, outbox drain)."""
    if not config.SERVICE_ROLE_KEY:
        if config.AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Service key not configured")
        return
    if not x_service_key or not hmac.compare_digest(x_service_key, config.SERVICE_ROLE_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid service key")
