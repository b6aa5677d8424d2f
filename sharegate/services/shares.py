from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sharegate.errors import ApiError
from sharegate.models import Share, ShareFile
from sharegate.security import hash_password, verify_password
from sharegate.services.storage import format_bytes, guess_file_type, resolve_and_validate_file_path
from sharegate.settings import get_settings

logger = logging.getLogger("sharegate.shares")

SHARE_CODE_ALPHABET = string.ascii_letters + string.digits
SHARE_CODE_MAX_ATTEMPTS = 100
_SHARE_CODE_RE = re.compile(r"[A-Za-z0-9]+")


@dataclass(frozen=True, slots=True)
class ShareAccessResult:
    success: bool
    reason: str | None = None
    data: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class CounterResult:
    success: bool
    reason: str | None = None
    previous_count: int | None = None
    new_count: int | None = None


@dataclass(frozen=True, slots=True)
class ShareStatisticsResult:
    success: bool
    reason: str | None = None
    statistics: dict[str, Any] | None = None


def is_valid_share_code(share_code: str | None) -> bool:
    return (
        isinstance(share_code, str)
        and len(share_code) == get_settings().share_code_length
        and _SHARE_CODE_RE.fullmatch(share_code) is not None
    )


def _generate_share_code() -> str:
    length = get_settings().share_code_length
    return "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(length))


def _unique_share_code(db: Session) -> str:
    for _ in range(SHARE_CODE_MAX_ATTEMPTS):
        code = _generate_share_code()
        if db.scalar(select(Share.id).where(Share.share_code == code)) is None:
            return code
    raise ApiError(status_code=500, code="SHARE_CODE_EXHAUSTED", message="Could not allocate a share code.")


def create_share(
    db: Session,
    *,
    user_id: str | int,
    file_path: str,
    share_name: str | None = None,
    password: str | None = None,
    extension: dict[str, Any] | None = None,
) -> Share:
    check = resolve_and_validate_file_path(user_id, file_path)
    if not check.valid or check.absolute_path is None:
        raise ApiError(status_code=400, code="INVALID_FILE_PATH", message="File path is invalid or unsafe.")

    normalized_path = file_path.lstrip("/")
    file_name = check.absolute_path.name
    share_file = db.scalar(
        select(ShareFile).where(
            ShareFile.user_id == str(user_id),
            ShareFile.file_path == normalized_path,
        )
    )
    if share_file is None:
        share_file = ShareFile(user_id=str(user_id), file_path=normalized_path, file_name=file_name)
        db.add(share_file)
    share_file.file_size = check.absolute_path.stat().st_size
    share_file.file_type = guess_file_type(file_name)

    share = Share(
        share_code=_unique_share_code(db),
        share_name=(share_name or file_name).strip()[:255],
        file=share_file,
        access_password_hash=hash_password(password) if password else None,
        extension=dict(extension or {}),
    )
    db.add(share)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(status_code=409, code="SHARE_CONFLICT", message="Share could not be created.") from exc
    db.refresh(share)
    logger.info(
        "share_created",
        extra={"share_code": share.share_code, "user_id": str(user_id), "has_password": password is not None},
    )
    return share


def find_share(db: Session, share_code: str) -> Share | None:
    return db.scalar(select(Share).where(Share.share_code == share_code))


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def validate_share_access(db: Session, share_code: str, password: str | None = None) -> ShareAccessResult:
    if not is_valid_share_code(share_code):
        return ShareAccessResult(success=False, reason="invalid_share_code")

    try:
        share = find_share(db, share_code)
        if share is None:
            return ShareAccessResult(success=False, reason="share_not_found")

        share_file = share.file
        has_password = bool(share.access_password_hash)
        if has_password:
            if not password:
                return ShareAccessResult(
                    success=False,
                    reason="password_required",
                    data={
                        "share_name": share.share_name,
                        "has_password": True,
                        "file_name": share_file.file_name,
                        "file_size": share_file.file_size,
                        "created_at": _isoformat(share.created_at),
                    },
                )
            if not verify_password(password, share.access_password_hash or ""):
                return ShareAccessResult(success=False, reason="password_incorrect")

        check = resolve_and_validate_file_path(share_file.user_id, share_file.file_path)
        if not check.valid:
            logger.warning(
                "share_file_unavailable",
                extra={"share_code": share_code, "reason": check.reason},
            )
            return ShareAccessResult(success=False, reason="file_error")

        return ShareAccessResult(
            success=True,
            data={
                "share_id": share.id,
                "share_code": share.share_code,
                "share_name": share.share_name,
                "file_name": share_file.file_name,
                "file_size": share_file.file_size,
                "file_size_formatted": format_bytes(share_file.file_size),
                "file_type": share_file.file_type,
                "user_id": share_file.user_id,
                "file_path": share_file.file_path,
                "created_at": _isoformat(share.created_at),
                "view_count": share.view_count,
                "download_count": share.download_count,
                "has_password": has_password,
                "extension_data": dict(share.extension or {}),
            },
        )
    except SQLAlchemyError:
        logger.exception("share_access_database_error", extra={"share_code": share_code})
        return ShareAccessResult(success=False, reason="database_error")
    except Exception:
        logger.exception("share_access_failed", extra={"share_code": share_code})
        return ShareAccessResult(success=False, reason="system_error")


def _increment_counter(db: Session, share_code: str, column_name: str) -> CounterResult:
    if not share_code:
        return CounterResult(success=False, reason="invalid_share_code")

    column = getattr(Share, column_name)
    try:
        previous = db.scalar(select(column).where(Share.share_code == share_code))
        if previous is None:
            return CounterResult(success=False, reason="share_not_found")
        db.execute(update(Share).where(Share.share_code == share_code).values({column_name: column + 1}))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("share_counter_update_failed", extra={"share_code": share_code, "counter": column_name})
        return CounterResult(success=False, reason="database_error")

    return CounterResult(success=True, previous_count=int(previous), new_count=int(previous) + 1)


def increment_share_view_count(db: Session, share_code: str) -> CounterResult:
    return _increment_counter(db, share_code, "view_count")


def increment_share_download_count(db: Session, share_code: str, file_path: str | None = None) -> CounterResult:
    result = _increment_counter(db, share_code, "download_count")
    if result.success:
        logger.info("share_download_counted", extra={"share_code": share_code, "file_path": file_path})
    return result


def get_share_statistics(db: Session, share_code: str) -> ShareStatisticsResult:
    if not share_code:
        return ShareStatisticsResult(success=False, reason="invalid_share_code")
    try:
        share = find_share(db, share_code)
    except SQLAlchemyError:
        logger.exception("share_statistics_failed", extra={"share_code": share_code})
        return ShareStatisticsResult(success=False, reason="database_error")
    if share is None:
        return ShareStatisticsResult(success=False, reason="share_not_found")
    return ShareStatisticsResult(
        success=True,
        statistics={
            "share_code": share.share_code,
            "view_count": share.view_count,
            "download_count": share.download_count,
            "created_at": _isoformat(share.created_at),
        },
    )
