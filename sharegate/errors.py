from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, *, data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.data = data


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    data: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": get_request_id(request),
    }
    if data is not None:
        error["data"] = data
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


# Messages shown to callers for service reason codes. Unknown reasons fall back
# to the generic message of the calling endpoint.
SHARE_REASON_MESSAGES: dict[str, str] = {
    "invalid_share_code": "Invalid share code.",
    "share_not_found": "Share does not exist or is no longer available.",
    "password_required": "This share requires a password.",
    "password_incorrect": "Share password is incorrect.",
    "file_error": "Shared file is missing or unreadable.",
    "database_error": "Storage is temporarily unavailable.",
    "system_error": "Unexpected server error.",
}

DOWNLOAD_TOKEN_REASON_MESSAGES: dict[str, str] = {
    "invalid_parameters": "Missing download token parameters.",
    "invalid_file_path": "File path is invalid or unsafe.",
    "invalid_token_format": "Download token format is invalid.",
    "invalid_token": "Download token is invalid.",
    "token_not_found": "Download token does not exist or is no longer active.",
    "token_expired": "Download token has expired.",
    "token_exhausted": "Download token has no remaining uses.",
    "file_error": "File does not exist or cannot be accessed.",
    "file_too_large": "File exceeds the download size limit.",
    "database_error": "Storage is temporarily unavailable.",
    "system_error": "Unexpected server error.",
}
