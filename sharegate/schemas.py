from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class TempTokenIssueRequest(BaseModel):
    scene: str = Field(min_length=1, max_length=32)
    username: str | None = Field(default=None, max_length=255)


class TempTokenIssueResponse(BaseModel):
    status: Literal["ok"] = "ok"
    token: str
    expires_in: int


class TempTokenValidateRequest(BaseModel):
    token: str = Field(min_length=1, max_length=4096)


class TempTokenValidateResponse(BaseModel):
    valid: bool
    scene: str
    username: str | None = None


class ShareCreateRequest(BaseModel):
    file_path: str = Field(min_length=1, max_length=1024)
    share_name: str | None = Field(default=None, max_length=255)
    password: str | None = Field(default=None, min_length=1, max_length=128)
    extension: dict[str, Any] = Field(default_factory=dict)


class ShareCreateResponse(BaseModel):
    share_code: str
    share_name: str
    file_name: str
    has_password: bool
    created_at: datetime


class ShareInfoResponse(BaseModel):
    share_code: str
    share_name: str
    file_name: str
    file_size: int
    file_size_formatted: str
    file_type: str
    created_at: str | None = None
    view_count: int
    download_count: int
    has_password: bool
    extension_data: dict[str, Any] = Field(default_factory=dict)


class DownloadTokenRequest(BaseModel):
    password: str | None = Field(default=None, max_length=128)
    file_path: str | None = Field(default=None, max_length=1024)


class DownloadTokenResponse(BaseModel):
    token: str
    download_url: str
    expires_at: datetime
    max_uses: int
    file_name: str


class DownloadTokenRead(BaseModel):
    token: str
    share_code: str
    file_name: str
    created_at: datetime
    expires_at: datetime
    max_uses: int
    used_count: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class DownloadTokenListResponse(BaseModel):
    share_code: str
    count: int
    tokens: list[DownloadTokenRead]


class DownloadTokenRevokeResponse(BaseModel):
    ok: bool = True
    token: str


class TokenCleanupResponse(BaseModel):
    expired_count: int
    deleted_count: int


class TokenStatisticsResponse(BaseModel):
    active_tokens: int
    expired_tokens: int
    exhausted_tokens: int
    today_generated: int
    today_used: int


class IpLedgerClearResponse(BaseModel):
    ip: str
    cleared: bool


class IpBanRead(BaseModel):
    ip: str
    strikes: int
    banned_at: datetime
    until: datetime
    active: bool


class IpBanRemoveResponse(BaseModel):
    ip: str
    removed: bool
