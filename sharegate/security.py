from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from sharegate.errors import ApiError
from sharegate.services.ip_bans import get_ip_ban_list
from sharegate.settings import get_settings, get_trusted_proxies

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

UNKNOWN_IP = "0.0.0.0"


@dataclass(frozen=True, slots=True)
class SessionCheck:
    valid: bool
    user_id: str | None = None
    is_admin: bool = False
    username: str | None = None
    reason: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        return False


def _is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _is_trusted_proxy(host: str | None) -> bool:
    if not host:
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(address in network for network in get_trusted_proxies())


def client_ip(request: Request) -> str:
    """Resolve the caller address; proxy headers count only from a trusted peer."""
    peer = request.client.host if request.client else None
    candidates: list[str] = []
    if _is_trusted_proxy(peer):
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            for item in forwarded_for.split(","):
                item = item.strip()
                if item and item.lower() != "unknown":
                    candidates.append(item)
                    break
        real_ip = (request.headers.get("x-real-ip") or "").strip()
        if real_ip:
            candidates.append(real_ip)
    if peer:
        candidates.append(peer)

    # Only the first candidate that is present is used; a malformed value is
    # not silently replaced by the next header.
    if candidates and _is_valid_ip(candidates[0]):
        return candidates[0]
    return UNKNOWN_IP


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def require_unbanned_ip(request: Request) -> str:
    ip = client_ip(request)
    status = get_ip_ban_list().is_ip_banned(ip)
    if status.banned:
        raise ApiError(
            status_code=403,
            code="IP_BANNED",
            message="Access from this address is temporarily blocked.",
            data={"until": status.until.isoformat() if status.until else None},
        )
    request.state.client_ip = ip
    return ip


def create_session_token(
    *,
    user_id: str | int,
    ip: str,
    username: str | None = None,
    is_admin: bool = False,
    expires_delta: timedelta | None = None,
) -> tuple[str, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    exp = now + (expires_delta or timedelta(minutes=settings.session_token_minutes))
    claims = {
        "sub": str(user_id),
        "username": username,
        "is_admin": bool(is_admin),
        "ip": ip,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
        "jti": str(uuid4()),
        "typ": "session",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, claims


def verify_session(session_token: str, ip: str) -> SessionCheck:
    settings = get_settings()
    if not session_token:
        return SessionCheck(valid=False, reason="missing")
    try:
        payload = jwt.decode(
            session_token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except ExpiredSignatureError:
        return SessionCheck(valid=False, reason="expired")
    except JWTError:
        return SessionCheck(valid=False, reason="invalid")

    if payload.get("typ") != "session":
        return SessionCheck(valid=False, reason="invalid")
    if payload.get("ip") != ip:
        return SessionCheck(valid=False, reason="ip")

    return SessionCheck(
        valid=True,
        user_id=str(payload["sub"]),
        is_admin=bool(payload.get("is_admin")),
        username=payload.get("username"),
    )


def require_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> SessionCheck:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    session = verify_session(credentials.credentials, client_ip(request))
    if not session.valid:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Session token is invalid or expired.")

    request.state.actor = "admin" if session.is_admin else "user"
    request.state.actor_id = session.user_id
    return session


def require_admin(session: SessionCheck = Depends(require_session)) -> SessionCheck:
    if not session.is_admin:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return session
