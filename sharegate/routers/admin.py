import ipaddress
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from sharegate.audit import log_audit
from sharegate.db import get_db
from sharegate.errors import ApiError
from sharegate.models import AuditActorType
from sharegate.schemas import (
    IpBanRead,
    IpBanRemoveResponse,
    IpLedgerClearResponse,
    TokenCleanupResponse,
    TokenStatisticsResponse,
)
from sharegate.security import SessionCheck, require_admin, require_unbanned_ip, user_agent
from sharegate.services.download_tokens import cleanup_expired_tokens, get_token_statistics
from sharegate.services.ip_bans import IpBanList, get_ip_ban_list
from sharegate.services.temp_jwt import TempTokenService, get_temp_token_service

router = APIRouter(tags=["admin"], dependencies=[Depends(require_unbanned_ip)])


def _normalize_ip(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError as exc:
        raise ApiError(status_code=422, code="INVALID_IP", message="Invalid IP address.") from exc


def _audit(
    db: Session,
    request: Request,
    session: SessionCheck,
    action: str,
    *,
    success: bool = True,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(session.username or session.user_id or "admin"),
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=request.state.client_ip,
        user_agent=user_agent(request),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )


@router.post("/api/admin/download-tokens/cleanup", response_model=TokenCleanupResponse)
def cleanup_download_tokens(
    request: Request,
    session: SessionCheck = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TokenCleanupResponse:
    result = cleanup_expired_tokens(db)
    _audit(db, request, session, "DOWNLOAD_TOKENS_CLEANUP", success=result.success, details=result.counts)
    if not result.success:
        raise ApiError(status_code=503, code="DATABASE_ERROR", message="Token cleanup failed.")
    return TokenCleanupResponse(**result.counts)


@router.get("/api/admin/download-tokens/statistics", response_model=TokenStatisticsResponse)
def download_token_statistics(
    _session: SessionCheck = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TokenStatisticsResponse:
    result = get_token_statistics(db)
    if not result.success:
        raise ApiError(status_code=503, code="DATABASE_ERROR", message="Statistics are unavailable.")
    return TokenStatisticsResponse(**result.counts)


@router.delete("/api/admin/temp-token/ip/{ip}", response_model=IpLedgerClearResponse)
def clear_temp_token_ip(
    ip: str,
    request: Request,
    session: SessionCheck = Depends(require_admin),
    db: Session = Depends(get_db),
    service: TempTokenService = Depends(get_temp_token_service),
) -> IpLedgerClearResponse:
    target = _normalize_ip(ip)
    cleared = service.clear_ip(target)
    _audit(
        db,
        request,
        session,
        "TEMP_TOKEN_LEDGER_CLEARED",
        entity_type="ip",
        entity_id=target,
        details={"cleared": cleared},
    )
    return IpLedgerClearResponse(ip=target, cleared=cleared)


@router.get("/api/admin/ip-bans", response_model=list[IpBanRead])
def list_ip_bans(
    _session: SessionCheck = Depends(require_admin),
    ban_list: IpBanList = Depends(get_ip_ban_list),
) -> list[IpBanRead]:
    return [IpBanRead(**item) for item in ban_list.list_bans()]


@router.delete("/api/admin/ip-bans/{ip}", response_model=IpBanRemoveResponse)
def remove_ip_ban(
    ip: str,
    request: Request,
    session: SessionCheck = Depends(require_admin),
    db: Session = Depends(get_db),
    ban_list: IpBanList = Depends(get_ip_ban_list),
) -> IpBanRemoveResponse:
    target = _normalize_ip(ip)
    removed = ban_list.unban_ip(target)
    _audit(db, request, session, "IP_UNBANNED", entity_type="ip", entity_id=target, details={"removed": removed})
    if not removed:
        raise ApiError(status_code=404, code="BAN_NOT_FOUND", message="No ban recorded for this address.")
    return IpBanRemoveResponse(ip=target, removed=True)
