import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from sharegate.audit import log_audit
from sharegate.db import get_db
from sharegate.errors import DOWNLOAD_TOKEN_REASON_MESSAGES, SHARE_REASON_MESSAGES, ApiError
from sharegate.models import AuditActorType
from sharegate.schemas import (
    DownloadTokenListResponse,
    DownloadTokenRead,
    DownloadTokenRequest,
    DownloadTokenResponse,
    DownloadTokenRevokeResponse,
    ShareCreateRequest,
    ShareCreateResponse,
    ShareInfoResponse,
)
from sharegate.security import SessionCheck, require_session, require_unbanned_ip, user_agent
from sharegate.services.download_tokens import (
    consume_download_token,
    find_download_token,
    generate_download_token,
    list_tokens_for_share,
    revoke_download_token,
    verify_download_token,
)
from sharegate.services.shares import (
    ShareAccessResult,
    create_share,
    find_share,
    increment_share_download_count,
    increment_share_view_count,
    validate_share_access,
)
from sharegate.services.storage import resolve_and_validate_file_path
from sharegate.services.transmitter import serve_file
from sharegate.settings import get_settings

router = APIRouter(tags=["shares"], dependencies=[Depends(require_unbanned_ip)])
logger = logging.getLogger("sharegate.shares.http")

SHARE_REASON_STATUS: dict[str, int] = {
    "invalid_share_code": 400,
    "share_not_found": 404,
    "password_required": 401,
    "password_incorrect": 403,
    "file_error": 404,
    "database_error": 503,
    "system_error": 500,
}

DOWNLOAD_TOKEN_REASON_STATUS: dict[str, int] = {
    "invalid_parameters": 400,
    "invalid_file_path": 400,
    "invalid_token_format": 400,
    "invalid_token": 400,
    "token_not_found": 404,
    "token_expired": 410,
    "token_exhausted": 410,
    "file_error": 404,
    "file_too_large": 413,
    "database_error": 503,
    "system_error": 500,
}


def _share_error(result: ShareAccessResult) -> ApiError:
    reason = result.reason or "system_error"
    return ApiError(
        status_code=SHARE_REASON_STATUS.get(reason, 500),
        code=reason.upper(),
        message=SHARE_REASON_MESSAGES.get(reason, "Share is not available."),
        data=result.data if reason == "password_required" else None,
    )


def _token_error(reason: str | None) -> ApiError:
    reason = reason or "system_error"
    return ApiError(
        status_code=DOWNLOAD_TOKEN_REASON_STATUS.get(reason, 500),
        code=reason.upper(),
        message=DOWNLOAD_TOKEN_REASON_MESSAGES.get(reason, "Download failed."),
    )


@router.post("/api/shares", response_model=ShareCreateResponse, status_code=status.HTTP_201_CREATED)
def create_share_endpoint(
    payload: ShareCreateRequest,
    request: Request,
    session: SessionCheck = Depends(require_session),
    db: Session = Depends(get_db),
) -> ShareCreateResponse:
    share = create_share(
        db,
        user_id=session.user_id or "",
        file_path=payload.file_path,
        share_name=payload.share_name,
        password=payload.password,
        extension=payload.extension,
    )
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=session.user_id or "unknown",
        action="SHARE_CREATED",
        success=True,
        entity_type="share",
        entity_id=share.share_code,
        ip=request.state.client_ip,
        user_agent=user_agent(request),
        details={"file_path": share.file.file_path, "has_password": payload.password is not None},
        request_id=getattr(request.state, "request_id", None),
    )
    return ShareCreateResponse(
        share_code=share.share_code,
        share_name=share.share_name,
        file_name=share.file.file_name,
        has_password=share.access_password_hash is not None,
        created_at=share.created_at,
    )


@router.get("/api/shares/{share_code}", response_model=ShareInfoResponse)
def get_share_info(
    share_code: str,
    password: str | None = Query(default=None, max_length=128),
    db: Session = Depends(get_db),
) -> ShareInfoResponse:
    result = validate_share_access(db, share_code, password)
    if not result.success or result.data is None:
        raise _share_error(result)

    counter = increment_share_view_count(db, share_code)
    data = dict(result.data)
    if counter.success and counter.new_count is not None:
        data["view_count"] = counter.new_count
    return ShareInfoResponse(**data)


@router.post("/api/shares/{share_code}/download-token", response_model=DownloadTokenResponse)
def issue_download_token(
    share_code: str,
    payload: DownloadTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> DownloadTokenResponse:
    result = validate_share_access(db, share_code, payload.password)
    if not result.success or result.data is None:
        raise _share_error(result)

    shared_path = str(result.data["file_path"])
    if payload.file_path and payload.file_path.lstrip("/") != shared_path:
        logger.warning(
            "download_token_path_mismatch",
            extra={"share_code": share_code, "ip": request.state.client_ip},
        )
        raise ApiError(status_code=400, code="FILE_MISMATCH", message="File does not belong to this share.")

    issued = generate_download_token(
        db,
        share_code=share_code,
        user_id=result.data["user_id"],
        file_path=shared_path,
        file_name=str(result.data["file_name"]),
    )
    if not issued.success or issued.token is None or issued.expires_at is None:
        raise _token_error(issued.reason)

    return DownloadTokenResponse(
        token=issued.token,
        download_url=f"/api/download/{issued.token}",
        expires_at=issued.expires_at,
        max_uses=issued.max_uses or 0,
        file_name=issued.file_name or "",
    )


@router.get("/api/download/{token}")
def download_by_token(
    token: str,
    request: Request,
    force_download: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> Response:
    verification = verify_download_token(db, token)
    if not verification.success or verification.token_info is None:
        raise _token_error(verification.reason)
    info = verification.token_info

    counter = increment_share_download_count(db, info["share_code"], info["file_path"])
    if not counter.success:
        logger.warning(
            "share_download_count_failed",
            extra={"share_code": info["share_code"], "reason": counter.reason},
        )

    check = resolve_and_validate_file_path(info["user_id"], info["file_path"])
    if not check.valid or check.absolute_path is None:
        logger.warning(
            "download_token_file_unavailable",
            extra={"share_code": info["share_code"], "reason": check.reason},
        )
        raise _token_error("file_error")

    try:
        size = check.absolute_path.stat().st_size
    except OSError:
        logger.warning("download_file_stat_failed", extra={"share_code": info["share_code"]})
        raise _token_error("file_error")
    if size > get_settings().max_download_bytes:
        raise _token_error("file_too_large")

    used = consume_download_token(db, token)
    if not used.success:
        raise _token_error(used.reason)

    logger.info(
        "download_by_token",
        extra={
            "share_code": info["share_code"],
            "ip": request.state.client_ip,
            "used_count": used.used_count,
            "remaining_uses": used.remaining_uses,
        },
    )
    return serve_file(
        check.absolute_path,
        info["file_name"],
        force_download,
        request.headers.get("range"),
    )


@router.get("/api/shares/{share_code}/tokens", response_model=DownloadTokenListResponse)
def list_share_tokens(
    share_code: str,
    include_inactive: bool = Query(default=False),
    session: SessionCheck = Depends(require_session),
    db: Session = Depends(get_db),
) -> DownloadTokenListResponse:
    share = find_share(db, share_code)
    if share is None:
        raise ApiError(status_code=404, code="SHARE_NOT_FOUND", message=SHARE_REASON_MESSAGES["share_not_found"])
    if share.file.user_id != session.user_id and not session.is_admin:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")

    listing = list_tokens_for_share(db, share_code, include_inactive)
    if not listing.success:
        raise _token_error(listing.reason)
    return DownloadTokenListResponse(
        share_code=share_code,
        count=len(listing.tokens),
        tokens=[DownloadTokenRead(**item) for item in listing.tokens],
    )


@router.delete("/api/download-tokens/{token}", response_model=DownloadTokenRevokeResponse)
def revoke_token(
    token: str,
    request: Request,
    session: SessionCheck = Depends(require_session),
    db: Session = Depends(get_db),
) -> DownloadTokenRevokeResponse:
    info = find_download_token(db, token)
    if info is None:
        raise _token_error("token_not_found")
    if info["user_id"] != session.user_id and not session.is_admin:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")

    result = revoke_download_token(db, token)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN if session.is_admin else AuditActorType.USER,
        actor_id=session.user_id or "unknown",
        action="DOWNLOAD_TOKEN_REVOKED",
        success=result.success,
        entity_type="download_token",
        entity_id=info["share_code"],
        ip=request.state.client_ip,
        user_agent=user_agent(request),
        details={"reason": result.reason},
        request_id=getattr(request.state, "request_id", None),
    )
    if not result.success:
        raise _token_error(result.reason)
    return DownloadTokenRevokeResponse(token=token)
