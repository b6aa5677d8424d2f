from __future__ import annotations

import hashlib
import json
import logging
import platform
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Protocol

from jose import jws
from jose.exceptions import JWSError

from sharegate.services.ip_bans import BanStatus, get_ip_ban_list
from sharegate.services.ip_ledger import IpAttemptLedger
from sharegate.settings import get_key_rotation_timezone, get_ledger_path, get_settings

logger = logging.getLogger("sharegate.temp_jwt")

TEMP_TOKEN_SCENES: frozenset[str] = frozenset({"account", "mfa", "robots"})
TEMP_TOKEN_TTL_SECONDS = 5 * 60
TEMP_TOKEN_ALGORITHM = "HS256"


class BanChecker(Protocol):
    def is_ip_banned(self, ip: str) -> BanStatus: ...


@dataclass(frozen=True, slots=True)
class TempTokenIssueResult:
    status: str
    token: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True, slots=True)
class TempTokenValidation:
    valid: bool
    reason: str | None = None
    scene: str | None = None
    username: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _host_identity() -> str:
    return f"{platform.node()}|{platform.system()}|{Path(__file__).resolve()}"


class DailyKeyCache:
    """Holds the signing key for the current calendar day only."""

    def __init__(self, secret_material: str, *, host_identity: str | None = None) -> None:
        self._secret_material = secret_material
        self._host_identity = host_identity if host_identity is not None else _host_identity()
        self._day: date | None = None
        self._key: bytes | None = None

    def _derive(self, day: date) -> bytes:
        seed = f"{day:%Y%m%d}|{self._host_identity}|{self._secret_material}"
        return hashlib.sha256(seed.encode("utf-8")).digest()

    def key_for(self, day: date) -> bytes:
        if self._day != day or self._key is None:
            self._key = self._derive(day)
            self._day = day
        return self._key


class TempTokenService:
    def __init__(
        self,
        ledger: IpAttemptLedger,
        ban_checker: BanChecker,
        *,
        key_cache: DailyKeyCache,
        ttl_seconds: int = TEMP_TOKEN_TTL_SECONDS,
        rotation_tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ledger = ledger
        self.ban_checker = ban_checker
        self.key_cache = key_cache
        self.ttl_seconds = ttl_seconds
        self.rotation_tz = rotation_tz
        self.clock = clock

    def _signing_key(self, now: datetime) -> bytes:
        return self.key_cache.key_for(now.astimezone(self.rotation_tz).date())

    def issue(self, ip: str, scene: str, username: str | None = None) -> TempTokenIssueResult:
        normalized_scene = (scene or "").strip().lower()
        if normalized_scene not in TEMP_TOKEN_SCENES:
            # Same answer as a rate limit so probing cannot enumerate scenes.
            return TempTokenIssueResult(status="limit")

        try:
            if self.ban_checker.is_ip_banned(ip).banned:
                return TempTokenIssueResult(status="banned")

            record = self.ledger.record_attempt(ip)
            if self.ledger.is_over_limit(record):
                self.ledger.ban_and_clear(ip)
                logger.warning("temp_token_issue_banned", extra={"ip": ip, "attempts": record.count})
                return TempTokenIssueResult(status="banned")

            now = self.clock()
            iat = int(now.timestamp())
            payload: dict[str, Any] = {
                "ip": ip,
                "scene": normalized_scene,
                "iat": iat,
                "exp": iat + self.ttl_seconds,
            }
            if username:
                payload["username"] = username
            token = jws.sign(payload, self._signing_key(now), algorithm=TEMP_TOKEN_ALGORITHM)
        except Exception:
            logger.exception("temp_token_issue_failed", extra={"ip": ip, "scene": normalized_scene})
            return TempTokenIssueResult(status="error")

        logger.info(
            "temp_token_issued",
            extra={"ip": ip, "scene": normalized_scene, "attempts": record.count},
        )
        return TempTokenIssueResult(status="ok", token=token)

    def _decode(self, token: str, now: datetime) -> tuple[dict[str, Any] | None, str | None]:
        if not isinstance(token, str) or token.count(".") != 2:
            return None, "format"
        try:
            header = jws.get_unverified_header(token)
            raw_payload = jws.get_unverified_claims(token)
        except JWSError:
            return None, "format"
        if header.get("alg") != TEMP_TOKEN_ALGORITHM:
            return None, "format"
        # jose reports every verification failure as JWSError; the token already parsed.
        try:
            jws.verify(token, self._signing_key(now), algorithms=[TEMP_TOKEN_ALGORITHM])
        except JWSError:
            return None, "signature"
        try:
            payload = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError):
            return None, "format"
        if not isinstance(payload, dict):
            return None, "format"
        return payload, None

    def validate(self, ip: str, token: str) -> TempTokenValidation:
        now = self.clock()
        payload, reason = self._decode(token, now)
        if payload is None:
            return TempTokenValidation(valid=False, reason=reason)

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or int(now.timestamp()) > exp:
            return TempTokenValidation(valid=False, reason="expired")
        if payload.get("ip") != ip:
            return TempTokenValidation(valid=False, reason="ip")
        scene = payload.get("scene")
        if not scene:
            return TempTokenValidation(valid=False, reason="scene")

        try:
            record = self.ledger.record_attempt(ip)
            if self.ledger.is_over_limit(record):
                self.ledger.ban_and_clear(ip)
                logger.warning("temp_token_validate_banned", extra={"ip": ip, "attempts": record.count})
                return TempTokenValidation(valid=False, reason="banned")
        except Exception:
            logger.exception("temp_token_validate_failed", extra={"ip": ip})
            return TempTokenValidation(valid=False, reason="system_error")

        username = payload.get("username")
        return TempTokenValidation(
            valid=True,
            scene=str(scene),
            username=str(username) if username else None,
        )

    def clear_ip(self, ip: str) -> bool:
        return self.ledger.clear(ip)


@lru_cache
def get_temp_token_service() -> TempTokenService:
    settings = get_settings()
    ban_list = get_ip_ban_list()
    ledger = IpAttemptLedger(
        get_ledger_path(),
        banner=ban_list,
        limit=settings.temp_jwt_attempt_limit,
        window_seconds=settings.temp_jwt_attempt_window_seconds,
    )
    return TempTokenService(
        ledger,
        ban_list,
        key_cache=DailyKeyCache(f"{settings.temp_jwt_salt}|{settings.jwt_secret}"),
        ttl_seconds=settings.temp_jwt_ttl_seconds,
        rotation_tz=get_key_rotation_timezone(),
    )
