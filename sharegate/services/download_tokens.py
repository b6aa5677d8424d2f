from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import case, delete, false, func, select, true, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sharegate.models import DownloadToken
from sharegate.services.storage import resolve_and_validate_file_path
from sharegate.settings import get_settings

logger = logging.getLogger("sharegate.download_tokens")

TOKEN_MAX_ATTEMPTS = 10
TIMESTAMP_HEX_WIDTH = 8
_HEX_RE = re.compile(r"[0-9a-f]+")

TokenFactory = Callable[[int], str]


@dataclass(frozen=True, slots=True)
class DownloadTokenIssue:
    success: bool
    reason: str | None = None
    token: str | None = None
    expires_at: datetime | None = None
    max_uses: int | None = None
    file_name: str | None = None


@dataclass(frozen=True, slots=True)
class DownloadTokenCheck:
    success: bool
    reason: str | None = None
    token_info: dict[str, Any] | None = None
    remaining_uses: int | None = None
    expires_in_seconds: int | None = None


@dataclass(frozen=True, slots=True)
class DownloadTokenUse:
    success: bool
    reason: str | None = None
    token_info: dict[str, Any] | None = None
    used_count: int | None = None
    remaining_uses: int | None = None
    token_exhausted: bool = False


@dataclass(frozen=True, slots=True)
class DownloadTokenOutcome:
    success: bool
    reason: str | None = None
    tokens: list[dict[str, Any]] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def random_hex(length: int) -> str:
    return secrets.token_hex((length + 1) // 2)[:length]


def token_info(row: DownloadToken) -> dict[str, Any]:
    return {
        "id": row.id,
        "token": row.token,
        "share_code": row.share_code,
        "user_id": row.user_id,
        "file_path": row.file_path,
        "file_name": row.file_name,
        "created_at": _to_utc(row.created_at),
        "expires_at": _to_utc(row.expires_at),
        "max_uses": row.max_uses,
        "used_count": row.used_count,
        "is_active": bool(row.is_active),
    }


def is_well_formed_token(token: str | None) -> bool:
    length = get_settings().download_token_length
    return isinstance(token, str) and len(token) == length and _HEX_RE.fullmatch(token) is not None


def _token_exists(db: Session, token: str) -> bool:
    return db.scalar(select(DownloadToken.id).where(DownloadToken.token == token)) is not None


def _unique_token(db: Session, now: datetime, factory: TokenFactory) -> str:
    length = get_settings().download_token_length
    for _ in range(TOKEN_MAX_ATTEMPTS):
        candidate = factory(length)
        if not _token_exists(db, candidate):
            return candidate

    # Random draws keep colliding: append the clock in hex and step it until free.
    prefix = factory(length - TIMESTAMP_HEX_WIDTH)
    taken = set(db.scalars(select(DownloadToken.token).where(DownloadToken.token.startswith(prefix))).all())
    stamp = int(now.timestamp())
    while True:
        candidate = f"{prefix}{stamp & 0xFFFFFFFF:08x}"
        if candidate not in taken:
            logger.warning("download_token_fallback_used", extra={"attempts": TOKEN_MAX_ATTEMPTS})
            return candidate
        stamp += 1


def _deactivate(db: Session, token_id: int) -> None:
    db.execute(
        update(DownloadToken)
        .where(DownloadToken.id == token_id)
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    db.commit()


# is_active is only flipped lazily; stale rows can stay flagged active until touched.
def _deactivate_expired(db: Session, now: datetime, share_code: str | None = None) -> int:
    stmt = update(DownloadToken).where(
        DownloadToken.expires_at < now,
        DownloadToken.is_active.is_(True),
    )
    if share_code is not None:
        stmt = stmt.where(DownloadToken.share_code == share_code)
    result = db.execute(stmt.values(is_active=False).execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


def generate_download_token(
    db: Session,
    *,
    share_code: str,
    user_id: str | int,
    file_path: str,
    file_name: str,
    max_uses: int | None = None,
    expiry_hours: int | None = None,
    now: datetime | None = None,
    token_factory: TokenFactory | None = None,
) -> DownloadTokenIssue:
    if not share_code or user_id in (None, "") or not file_path or not file_name:
        return DownloadTokenIssue(success=False, reason="invalid_parameters")

    settings = get_settings()
    max_uses = settings.download_token_max_uses if max_uses is None else int(max_uses)
    expiry_hours = settings.download_token_expiry_hours if expiry_hours is None else int(expiry_hours)
    if max_uses < 1 or expiry_hours < 1:
        return DownloadTokenIssue(success=False, reason="invalid_parameters")

    check = resolve_and_validate_file_path(user_id, file_path)
    if not check.valid:
        logger.warning(
            "download_token_path_rejected",
            extra={"share_code": share_code, "user_id": str(user_id), "reason": check.reason},
        )
        return DownloadTokenIssue(success=False, reason="invalid_file_path")

    now_utc = _to_utc(now or _utcnow())
    expires_at = now_utc + timedelta(hours=expiry_hours)
    try:
        _deactivate_expired(db, now_utc, share_code)
        token = _unique_token(db, now_utc, token_factory or random_hex)
        db.add(
            DownloadToken(
                token=token,
                share_code=share_code,
                user_id=str(user_id),
                file_path=file_path,
                file_name=file_name,
                created_at=now_utc,
                expires_at=expires_at,
                max_uses=max_uses,
                used_count=0,
                is_active=True,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("download_token_generate_db_error", extra={"share_code": share_code})
        return DownloadTokenIssue(success=False, reason="database_error")
    except Exception:
        db.rollback()
        logger.exception("download_token_generate_failed", extra={"share_code": share_code})
        return DownloadTokenIssue(success=False, reason="system_error")

    logger.info(
        "download_token_generated",
        extra={
            "share_code": share_code,
            "user_id": str(user_id),
            "max_uses": max_uses,
            "expires_at": expires_at.isoformat(),
        },
    )
    return DownloadTokenIssue(
        success=True,
        token=token,
        expires_at=expires_at,
        max_uses=max_uses,
        file_name=file_name,
    )


def verify_download_token(db: Session, token: str, *, now: datetime | None = None) -> DownloadTokenCheck:
    """Check a token without spending a use. Expired or spent tokens are deactivated."""
    if not is_well_formed_token(token):
        return DownloadTokenCheck(success=False, reason="invalid_token_format")

    now_utc = _to_utc(now or _utcnow())
    try:
        row = db.scalar(select(DownloadToken).where(DownloadToken.token == token))
        if row is None:
            return DownloadTokenCheck(success=False, reason="token_not_found")

        expires_at = _to_utc(row.expires_at)
        if not row.is_active:
            # Spent and expired rows keep their reason; a revoked row reads as missing.
            if row.used_count >= row.max_uses:
                return DownloadTokenCheck(success=False, reason="token_exhausted")
            if now_utc > expires_at:
                return DownloadTokenCheck(success=False, reason="token_expired")
            return DownloadTokenCheck(success=False, reason="token_not_found")

        if now_utc > expires_at:
            _deactivate(db, row.id)
            logger.info("download_token_expired", extra={"share_code": row.share_code})
            return DownloadTokenCheck(success=False, reason="token_expired")

        if row.used_count >= row.max_uses:
            _deactivate(db, row.id)
            return DownloadTokenCheck(success=False, reason="token_exhausted")

        return DownloadTokenCheck(
            success=True,
            token_info=token_info(row),
            remaining_uses=row.max_uses - row.used_count,
            expires_in_seconds=int((expires_at - now_utc).total_seconds()),
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("download_token_verify_db_error")
        return DownloadTokenCheck(success=False, reason="database_error")
    except Exception:
        logger.exception("download_token_verify_failed")
        return DownloadTokenCheck(success=False, reason="system_error")


def consume_download_token(db: Session, token: str, *, now: datetime | None = None) -> DownloadTokenUse:
    # Single conditional UPDATE: two concurrent redemptions cannot both take the last use.
    now_utc = _to_utc(now or _utcnow())
    verification = verify_download_token(db, token, now=now_utc)
    if not verification.success or verification.token_info is None:
        return DownloadTokenUse(success=False, reason=verification.reason)

    info = verification.token_info
    try:
        result = db.execute(
            update(DownloadToken)
            .where(
                DownloadToken.id == info["id"],
                DownloadToken.is_active.is_(True),
                DownloadToken.used_count < DownloadToken.max_uses,
                DownloadToken.expires_at >= now_utc,
            )
            .values(
                used_count=DownloadToken.used_count + 1,
                is_active=case(
                    (DownloadToken.used_count + 1 >= DownloadToken.max_uses, false()),
                    else_=true(),
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            db.rollback()
            # Lost the race: report whatever terminal state the token is in now.
            retry = verify_download_token(db, token, now=now_utc)
            return DownloadTokenUse(success=False, reason=retry.reason or "token_exhausted")

        used_count = int(db.scalar(select(DownloadToken.used_count).where(DownloadToken.id == info["id"])))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("download_token_consume_db_error", extra={"share_code": info["share_code"]})
        return DownloadTokenUse(success=False, reason="database_error")

    remaining = max(0, int(info["max_uses"]) - used_count)
    logger.info(
        "download_token_consumed",
        extra={"share_code": info["share_code"], "used_count": used_count, "remaining_uses": remaining},
    )
    return DownloadTokenUse(
        success=True,
        token_info={**info, "used_count": used_count, "is_active": remaining > 0},
        used_count=used_count,
        remaining_uses=remaining,
        token_exhausted=remaining <= 0,
    )


def revoke_download_token(db: Session, token: str) -> DownloadTokenOutcome:
    if not token:
        return DownloadTokenOutcome(success=False, reason="invalid_token")
    try:
        result = db.execute(
            update(DownloadToken)
            .where(DownloadToken.token == token, DownloadToken.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("download_token_revoke_db_error")
        return DownloadTokenOutcome(success=False, reason="database_error")

    if not result.rowcount:
        return DownloadTokenOutcome(success=False, reason="token_not_found")
    logger.info("download_token_revoked")
    return DownloadTokenOutcome(success=True)


def find_download_token(db: Session, token: str) -> dict[str, Any] | None:
    """Look a token up regardless of state; used for ownership checks."""
    if not is_well_formed_token(token):
        return None
    row = db.scalar(select(DownloadToken).where(DownloadToken.token == token))
    return token_info(row) if row is not None else None


def list_tokens_for_share(db: Session, share_code: str, include_inactive: bool = False) -> DownloadTokenOutcome:
    if not share_code:
        return DownloadTokenOutcome(success=False, reason="invalid_share_code")

    stmt = select(DownloadToken).where(DownloadToken.share_code == share_code)
    if not include_inactive:
        stmt = stmt.where(DownloadToken.is_active.is_(True))
    stmt = stmt.order_by(DownloadToken.created_at.desc(), DownloadToken.id.desc())
    try:
        rows = db.scalars(stmt).all()
    except SQLAlchemyError:
        logger.exception("download_token_list_db_error", extra={"share_code": share_code})
        return DownloadTokenOutcome(success=False, reason="database_error")

    tokens = [token_info(row) for row in rows]
    return DownloadTokenOutcome(success=True, tokens=tokens, counts={"count": len(tokens)})


def cleanup_expired_tokens(db: Session, *, now: datetime | None = None) -> DownloadTokenOutcome:
    """Deactivate expired tokens and delete rows past the retention period."""
    now_utc = _to_utc(now or _utcnow())
    retention = timedelta(days=get_settings().download_token_retention_days)
    try:
        expired_count = _deactivate_expired(db, now_utc)
        deleted = db.execute(
            delete(DownloadToken)
            .where(DownloadToken.created_at < now_utc - retention)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("download_token_cleanup_db_error")
        return DownloadTokenOutcome(success=False, reason="database_error")

    counts = {"expired_count": expired_count, "deleted_count": int(deleted.rowcount or 0)}
    logger.info("download_token_cleanup", extra=counts)
    return DownloadTokenOutcome(success=True, counts=counts)


def cleanup_expired_tokens_for_share(
    db: Session,
    share_code: str,
    *,
    now: datetime | None = None,
) -> DownloadTokenOutcome:
    if not share_code:
        return DownloadTokenOutcome(success=False, reason="invalid_share_code")
    now_utc = _to_utc(now or _utcnow())
    try:
        cleaned = _deactivate_expired(db, now_utc, share_code)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("download_token_share_cleanup_db_error", extra={"share_code": share_code})
        return DownloadTokenOutcome(success=False, reason="database_error")
    return DownloadTokenOutcome(success=True, counts={"cleaned_count": cleaned})


def get_token_statistics(db: Session, *, now: datetime | None = None) -> DownloadTokenOutcome:
    now_utc = _to_utc(now or _utcnow())
    day_start = now_utc.replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=1)
    active = DownloadToken.is_active.is_(True)
    created_today = (DownloadToken.created_at >= day_start, DownloadToken.created_at < day_end)

    def _count(*conditions: Any) -> int:
        return int(db.scalar(select(func.count(DownloadToken.id)).where(*conditions)) or 0)

    try:
        counts = {
            "active_tokens": _count(active),
            "expired_tokens": _count(active, DownloadToken.expires_at < now_utc),
            "exhausted_tokens": _count(active, DownloadToken.used_count >= DownloadToken.max_uses),
            "today_generated": _count(*created_today),
            "today_used": _count(*created_today, DownloadToken.used_count > 0),
        }
    except SQLAlchemyError:
        logger.exception("download_token_statistics_db_error")
        return DownloadTokenOutcome(success=False, reason="database_error")
    return DownloadTokenOutcome(success=True, counts=counts)
