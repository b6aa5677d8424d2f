from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable

from sharegate.services.json_store import JsonFileStore
from sharegate.settings import get_ip_ban_path, get_settings

logger = logging.getLogger("sharegate.ip_bans")


@dataclass(frozen=True, slots=True)
class BanStatus:
    banned: bool
    until: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IpBanList:
    """Each ban adds a strike; the ban length doubles per strike up to a cap."""

    def __init__(
        self,
        path: Path | str,
        *,
        base_duration: timedelta = timedelta(hours=1),
        max_duration: timedelta = timedelta(days=7),
        strike_memory: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = JsonFileStore(path, root_key="bans")
        self.base_duration = base_duration
        self.max_duration = max_duration
        self.strike_memory = strike_memory
        self.clock = clock
        self._lock = threading.Lock()

    def _now_ts(self) -> int:
        return int(self.clock().timestamp())

    @staticmethod
    def _normalize(entry: Any) -> dict[str, int] | None:
        if not isinstance(entry, dict):
            return None
        try:
            normalized = {
                "until": int(entry.get("until", 0)),
                "strikes": int(entry.get("strikes", 0)),
                "banned_at": int(entry.get("banned_at", 0)),
            }
            datetime.fromtimestamp(normalized["until"], timezone.utc)
            datetime.fromtimestamp(normalized["banned_at"], timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None
        return normalized

    def _load(self, now_ts: int) -> dict[str, Any]:
        data = self.store.load()
        bans: dict[str, Any] = data["bans"]
        memory_seconds = int(self.strike_memory.total_seconds())
        stale = []
        for ip, entry in bans.items():
            normalized = self._normalize(entry)
            if normalized is None or now_ts - normalized["banned_at"] > memory_seconds:
                stale.append(ip)
            else:
                bans[ip] = normalized
        for ip in stale:
            bans.pop(ip, None)
        if stale:
            self.store.save(data)
        return data

    def is_ip_banned(self, ip: str) -> BanStatus:
        now_ts = self._now_ts()
        with self._lock:
            entry = self._load(now_ts)["bans"].get(ip)
        if not entry:
            return BanStatus(banned=False)
        until_ts = entry["until"]
        if until_ts <= now_ts:
            return BanStatus(banned=False)
        return BanStatus(banned=True, until=datetime.fromtimestamp(until_ts, timezone.utc))

    def _duration_for(self, strikes: int) -> timedelta:
        duration = self.base_duration * (2 ** max(0, strikes - 1))
        return min(duration, self.max_duration)

    def ban_ip(self, ip: str) -> BanStatus:
        now_ts = self._now_ts()
        with self._lock:
            data = self._load(now_ts)
            previous = data["bans"].get(ip) or {}
            strikes = previous.get("strikes", 0) + 1
            until_ts = now_ts + int(self._duration_for(strikes).total_seconds())
            data["bans"][ip] = {"until": until_ts, "strikes": strikes, "banned_at": now_ts}
            self.store.save(data)

        until = datetime.fromtimestamp(until_ts, timezone.utc)
        logger.warning("ip_banned", extra={"ip": ip, "strikes": strikes, "until": until.isoformat()})
        return BanStatus(banned=True, until=until)

    def unban_ip(self, ip: str) -> bool:
        with self._lock:
            data = self._load(self._now_ts())
            if ip not in data["bans"]:
                return False
            data["bans"].pop(ip)
            self.store.save(data)
        logger.info("ip_unbanned", extra={"ip": ip})
        return True

    def list_bans(self) -> list[dict[str, Any]]:
        now_ts = self._now_ts()
        with self._lock:
            bans = self._load(now_ts)["bans"]
        items = []
        for ip, entry in sorted(bans.items()):
            until_ts = entry["until"]
            items.append(
                {
                    "ip": ip,
                    "strikes": entry["strikes"],
                    "banned_at": datetime.fromtimestamp(entry["banned_at"], timezone.utc),
                    "until": datetime.fromtimestamp(until_ts, timezone.utc),
                    "active": until_ts > now_ts,
                }
            )
        return items


def build_ip_ban_list(clock: Callable[[], datetime] = _utcnow) -> IpBanList:
    settings = get_settings()
    return IpBanList(
        get_ip_ban_path(),
        base_duration=timedelta(minutes=max(1, settings.ip_ban_base_minutes)),
        max_duration=timedelta(minutes=max(1, settings.ip_ban_max_minutes)),
        strike_memory=timedelta(days=max(1, settings.ip_ban_strike_memory_days)),
        clock=clock,
    )


@lru_cache
def get_ip_ban_list() -> IpBanList:
    return build_ip_ban_list()
