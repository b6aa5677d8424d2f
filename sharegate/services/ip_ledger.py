from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from sharegate.services.json_store import JsonFileStore

logger = logging.getLogger("sharegate.ip_ledger")

DEFAULT_ATTEMPT_LIMIT = 20
DEFAULT_WINDOW_SECONDS = 10 * 60


class IpBanner(Protocol):
    def ban_ip(self, ip: str) -> Any: ...


@dataclass(frozen=True, slots=True)
class IpAttemptRecord:
    count: int
    first: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IpAttemptLedger:
    def __init__(
        self,
        path: Path | str,
        *,
        banner: IpBanner,
        limit: int = DEFAULT_ATTEMPT_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = JsonFileStore(path, root_key="ip_logs")
        self.banner = banner
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._lock = threading.Lock()

    def _now_ts(self) -> int:
        return int(self.clock().timestamp())

    @staticmethod
    def _parse(entry: Any) -> IpAttemptRecord | None:
        if not isinstance(entry, dict):
            return None
        try:
            return IpAttemptRecord(count=int(entry.get("count", 0)), first=int(entry["first"]))
        except (KeyError, TypeError, ValueError, OverflowError):
            return None

    def _window_elapsed(self, entry: Any, now_ts: int) -> bool:
        record = self._parse(entry)
        return record is None or now_ts - record.first > self.window_seconds

    def _load(self, now_ts: int) -> dict[str, Any]:
        data = self.store.load()
        logs: dict[str, Any] = data["ip_logs"]
        expired = [ip for ip, entry in logs.items() if self._window_elapsed(entry, now_ts)]
        for ip in expired:
            logs.pop(ip, None)
        if expired:
            self.store.save(data)
        return data

    def get(self, ip: str) -> IpAttemptRecord | None:
        with self._lock:
            entry = self._load(self._now_ts())["ip_logs"].get(ip)
        return self._parse(entry)

    def record_attempt(self, ip: str) -> IpAttemptRecord:
        now_ts = self._now_ts()
        with self._lock:
            data = self._load(now_ts)
            previous = self._parse(data["ip_logs"].get(ip))
            if previous is None or now_ts - previous.first > self.window_seconds:
                previous = IpAttemptRecord(count=0, first=now_ts)
            record = IpAttemptRecord(count=previous.count + 1, first=previous.first)
            data["ip_logs"][ip] = {"count": record.count, "first": record.first}
            self.store.save(data)
        return record

    def is_over_limit(self, record: IpAttemptRecord) -> bool:
        return record.count > self.limit

    def ban_and_clear(self, ip: str) -> None:
        self.banner.ban_ip(ip)
        try:
            self.clear(ip)
        except OSError:
            # The ban already holds; a stale counter only expires with its window.
            logger.exception("ip_ledger_clear_failed", extra={"ip": ip})

    def clear(self, ip: str) -> bool:
        with self._lock:
            data = self._load(self._now_ts())
            if ip not in data["ip_logs"]:
                return False
            data["ip_logs"].pop(ip)
            self.store.save(data)
        return True
