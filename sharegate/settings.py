import ipaddress
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "ShareGate"
    database_url: str = "sqlite:///./data/sharegate.db"
    data_dir: str = "./data"
    file_data_root: str = "./data/files"
    jwt_secret: str = ""
    jwt_issuer: str = "sharegate"
    jwt_audience: str = "sharegate-web"
    session_token_minutes: int = 60 * 24
    cors_allow_origins: str = "http://127.0.0.1:5173,http://localhost:5173"
    # Comma-separated proxy addresses or CIDR ranges allowed to set X-Forwarded-For / X-Real-IP
    trusted_proxies: str = ""
    log_level: str = "INFO"
    auto_create_schema: bool = True
    schema_guard_strict: bool = False

    # Scoped short-lived tokens and the attempt ledger guarding them
    temp_jwt_ledger_path: str | None = None
    temp_jwt_salt: str = ""
    temp_jwt_ttl_seconds: int = 300
    temp_jwt_attempt_limit: int = 20
    temp_jwt_attempt_window_seconds: int = 600
    key_rotation_timezone: str = "UTC"

    # IP bans
    ip_ban_path: str | None = None
    ip_ban_base_minutes: int = 60
    ip_ban_max_minutes: int = 60 * 24 * 7
    ip_ban_strike_memory_days: int = 30

    # Download capability tokens
    download_token_length: int = 32
    download_token_max_uses: int = 5
    download_token_expiry_hours: int = 12
    download_token_retention_days: int = 30

    share_code_length: int = 8
    max_download_bytes: int = 1024 * 1024 * 1024
    max_direct_download_bytes: int = 100 * 1024 * 1024

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_cors_origins() -> list[str]:
    raw = get_settings().cors_allow_origins
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def get_trusted_proxies() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for item in get_settings().trusted_proxies.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            networks.append(ipaddress.ip_network(item, strict=False))
        except ValueError:
            continue
    return networks


def get_data_dir() -> Path:
    return Path(get_settings().data_dir)


def get_ledger_path() -> Path:
    settings = get_settings()
    if settings.temp_jwt_ledger_path:
        return Path(settings.temp_jwt_ledger_path)
    return get_data_dir() / "temp-jwt.json"


def get_ip_ban_path() -> Path:
    settings = get_settings()
    if settings.ip_ban_path:
        return Path(settings.ip_ban_path)
    return get_data_dir() / "ip-bans.json"


def get_file_data_root() -> Path:
    return Path(get_settings().file_data_root)


def get_key_rotation_timezone() -> ZoneInfo:
    name = (get_settings().key_rotation_timezone or "UTC").strip()
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return ZoneInfo("UTC")
