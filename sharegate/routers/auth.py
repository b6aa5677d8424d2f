import logging

from fastapi import APIRouter, Depends

from sharegate.errors import ApiError
from sharegate.schemas import (
    TempTokenIssueRequest,
    TempTokenIssueResponse,
    TempTokenValidateRequest,
    TempTokenValidateResponse,
)
from sharegate.security import require_unbanned_ip
from sharegate.services.temp_jwt import TempTokenService, get_temp_token_service

router = APIRouter(tags=["auth"])
logger = logging.getLogger("sharegate.auth")


@router.post("/api/auth/temp-token", response_model=TempTokenIssueResponse)
def issue_temp_token(
    payload: TempTokenIssueRequest,
    ip: str = Depends(require_unbanned_ip),
    service: TempTokenService = Depends(get_temp_token_service),
) -> TempTokenIssueResponse:
    result = service.issue(ip, payload.scene, payload.username)
    if not result.ok or result.token is None:
        # Banned, rate limited, unknown scene and internal failures look identical.
        logger.info("temp_token_rejected", extra={"ip": ip, "status": result.status})
        raise ApiError(
            status_code=429,
            code="TEMP_TOKEN_REJECTED",
            message="Too many attempts. Try again later.",
        )
    return TempTokenIssueResponse(token=result.token, expires_in=service.ttl_seconds)


@router.post("/api/auth/temp-token/validate", response_model=TempTokenValidateResponse)
def validate_temp_token(
    payload: TempTokenValidateRequest,
    ip: str = Depends(require_unbanned_ip),
    service: TempTokenService = Depends(get_temp_token_service),
) -> TempTokenValidateResponse:
    result = service.validate(ip, payload.token)
    if not result.valid or result.scene is None:
        logger.info("temp_token_invalid", extra={"ip": ip, "reason": result.reason})
        raise ApiError(
            status_code=401,
            code="TEMP_TOKEN_INVALID",
            message="Token is invalid or expired.",
        )
    return TempTokenValidateResponse(valid=True, scene=result.scene, username=result.username)
