import logging

from fastapi import APIRouter, Depends, Query, Request, Response

from sharegate.errors import ApiError
from sharegate.security import SessionCheck, require_session, require_unbanned_ip
from sharegate.services.storage import format_bytes, resolve_and_validate_file_path
from sharegate.services.transmitter import serve_file
from sharegate.settings import get_settings

router = APIRouter(tags=["files"], dependencies=[Depends(require_unbanned_ip)])
logger = logging.getLogger("sharegate.files")

PATH_REASON_STATUS: dict[str, int] = {
    "invalid_path": 400,
    "user_dir_not_exists": 404,
    "file_not_exists": 404,
    "not_a_file": 400,
    "file_not_readable": 403,
}


@router.get("/api/files/download")
def download_own_file(
    request: Request,
    path: str = Query(min_length=1, max_length=1024),
    force_download: bool = Query(default=True),
    session: SessionCheck = Depends(require_session),
) -> Response:
    user_id = session.user_id or ""
    check = resolve_and_validate_file_path(user_id, path)
    if not check.valid or check.absolute_path is None:
        reason = check.reason or "invalid_path"
        logger.info("file_download_rejected", extra={"user_id": user_id, "reason": reason})
        raise ApiError(
            status_code=PATH_REASON_STATUS.get(reason, 400),
            code=reason.upper(),
            message="File does not exist or cannot be accessed.",
        )

    limit = get_settings().max_direct_download_bytes
    try:
        size = check.absolute_path.stat().st_size
    except OSError:
        logger.warning("file_download_stat_failed", extra={"user_id": user_id})
        raise ApiError(
            status_code=PATH_REASON_STATUS["file_not_exists"],
            code="FILE_NOT_EXISTS",
            message="File does not exist or cannot be accessed.",
        )
    if size > limit:
        raise ApiError(
            status_code=413,
            code="FILE_TOO_LARGE",
            message=f"File exceeds the direct download limit of {format_bytes(limit)}.",
        )

    logger.info("file_download", extra={"user_id": user_id, "size": size})
    return serve_file(
        check.absolute_path,
        check.absolute_path.name,
        force_download,
        request.headers.get("range"),
    )
