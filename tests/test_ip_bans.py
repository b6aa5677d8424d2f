from __future__ import annotations

import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sharegate.services.ip_bans import IpBanList


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class IpBanListTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = _Clock(datetime(2026, 3, 1, 8, 0, 0, tzinfo=timezone.utc))
        self.bans = IpBanList(
            Path(self._tmp.name) / "ip-bans.json",
            base_duration=timedelta(hours=1),
            max_duration=timedelta(hours=6),
            strike_memory=timedelta(days=30),
            clock=self.clock,
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_unknown_ip_is_not_banned(self) -> None:
        self.assertFalse(self.bans.is_ip_banned("192.0.2.10").banned)

    def test_ban_lasts_base_duration_then_lapses(self) -> None:
        status = self.bans.ban_ip("192.0.2.10")

        self.assertTrue(status.banned)
        self.assertEqual(status.until, self.clock.now + timedelta(hours=1))
        self.assertTrue(self.bans.is_ip_banned("192.0.2.10").banned)

        self.clock.now += timedelta(hours=1, seconds=1)
        self.assertFalse(self.bans.is_ip_banned("192.0.2.10").banned)

    def test_repeat_offenders_get_doubling_bans_up_to_cap(self) -> None:
        start = self.clock.now
        durations = []
        for _ in range(5):
            status = self.bans.ban_ip("192.0.2.11")
            durations.append(status.until - self.clock.now)  # type: ignore[operator]
            self.clock.now = status.until + timedelta(seconds=1)  # type: ignore[operator]

        self.assertEqual(
            durations,
            [timedelta(hours=1), timedelta(hours=2), timedelta(hours=4), timedelta(hours=6), timedelta(hours=6)],
        )
        self.assertGreater(self.clock.now, start)

    def test_strikes_are_forgotten_after_memory_period(self) -> None:
        self.bans.ban_ip("192.0.2.12")
        self.clock.now += timedelta(days=31)

        status = self.bans.ban_ip("192.0.2.12")

        self.assertEqual(status.until, self.clock.now + timedelta(hours=1))

    def test_unban_and_list(self) -> None:
        self.bans.ban_ip("192.0.2.13")
        self.bans.ban_ip("2001:db8::1")

        listed = {item["ip"]: item for item in self.bans.list_bans()}
        self.assertEqual(set(listed), {"192.0.2.13", "2001:db8::1"})
        self.assertTrue(listed["192.0.2.13"]["active"])
        self.assertEqual(listed["192.0.2.13"]["strikes"], 1)

        self.assertTrue(self.bans.unban_ip("192.0.2.13"))
        self.assertFalse(self.bans.unban_ip("192.0.2.13"))
        self.assertFalse(self.bans.is_ip_banned("192.0.2.13").banned)

    def test_undecodable_file_reads_as_no_bans(self) -> None:
        self.bans.store.path.write_bytes(b"\xff\xfe{garbage")

        self.assertFalse(self.bans.is_ip_banned("192.0.2.14").banned)
        self.assertTrue(self.bans.ban_ip("192.0.2.14").banned)

    def test_entries_with_non_numeric_fields_are_dropped(self) -> None:
        now_ts = int(self.clock.now.timestamp())
        self.bans.store.path.write_text(
            json.dumps(
                {
                    "bans": {
                        "192.0.2.15": {"until": "soon", "strikes": 1, "banned_at": now_ts},
                        "192.0.2.16": {"until": now_ts + 60, "strikes": 1, "banned_at": "abc"},
                        "192.0.2.17": {"until": now_ts + 60, "strikes": 2, "banned_at": now_ts},
                    }
                }
            ),
            encoding="utf-8",
        )

        self.assertFalse(self.bans.is_ip_banned("192.0.2.15").banned)
        self.assertTrue(self.bans.is_ip_banned("192.0.2.17").banned)
        self.assertEqual([item["ip"] for item in self.bans.list_bans()], ["192.0.2.17"])


if __name__ == "__main__":
    unittest.main()
