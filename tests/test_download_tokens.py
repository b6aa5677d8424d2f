from __future__ import annotations

import os
import re
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sharegate.db import Base
from sharegate.models import DownloadToken
from sharegate.services.download_tokens import (
    cleanup_expired_tokens,
    cleanup_expired_tokens_for_share,
    consume_download_token,
    generate_download_token,
    get_token_statistics,
    list_tokens_for_share,
    revoke_download_token,
    verify_download_token,
)
from sharegate.settings import get_settings

NOW = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class DownloadTokenServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        files_root = Path(self._tmp.name) / "files"
        user_dir = files_root / "7" / "2024"
        user_dir.mkdir(parents=True)
        (user_dir / "report.pdf").write_bytes(b"%PDF-1.4 quarterly numbers")

        self._env = patch.dict(os.environ, {"FILE_DATA_ROOT": str(files_root)}, clear=False)
        self._env.start()
        get_settings.cache_clear()

        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(engine)
        self.engine = engine
        self.db = sessionmaker(bind=engine, autoflush=False)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()
        self._env.stop()
        get_settings.cache_clear()
        self._tmp.cleanup()

    def _generate(self, **overrides):  # type: ignore[no-untyped-def]
        params = {
            "share_code": "abc12345",
            "user_id": 7,
            "file_path": "2024/report.pdf",
            "file_name": "report.pdf",
            "now": NOW,
        }
        params.update(overrides)
        return generate_download_token(self.db, **params)

    def test_generate_and_consume_single_use(self) -> None:
        issued = self._generate()

        self.assertTrue(issued.success)
        self.assertIsNotNone(re.fullmatch(r"[0-9a-f]{32}", issued.token or ""))
        self.assertEqual(issued.max_uses, 5)
        self.assertEqual(issued.expires_at, NOW + timedelta(hours=12))
        self.assertEqual(issued.file_name, "report.pdf")

        used = consume_download_token(self.db, issued.token or "", now=NOW + timedelta(minutes=1))

        self.assertTrue(used.success)
        self.assertEqual(used.used_count, 1)
        self.assertEqual(used.remaining_uses, 4)
        self.assertFalse(used.token_exhausted)
        row = self.db.scalar(select(DownloadToken).where(DownloadToken.token == issued.token))
        self.assertEqual(row.used_count, 1)  # type: ignore[union-attr]

    def test_budget_runs_out_and_token_deactivates(self) -> None:
        issued = self._generate(max_uses=3)
        token = issued.token or ""

        remaining = [consume_download_token(self.db, token, now=NOW).remaining_uses for _ in range(3)]
        self.assertEqual(remaining, [2, 1, 0])

        fourth = consume_download_token(self.db, token, now=NOW)
        self.assertFalse(fourth.success)
        self.assertEqual(fourth.reason, "token_exhausted")

        row = self.db.scalar(select(DownloadToken).where(DownloadToken.token == token))
        self.db.refresh(row)
        self.assertFalse(row.is_active)  # type: ignore[union-attr]
        self.assertEqual(row.used_count, 3)  # type: ignore[union-attr]

    def test_last_use_reports_exhausted(self) -> None:
        issued = self._generate(max_uses=1)

        used = consume_download_token(self.db, issued.token or "", now=NOW)

        self.assertTrue(used.success)
        self.assertTrue(used.token_exhausted)
        self.assertEqual(used.remaining_uses, 0)

    def test_expired_token_is_deactivated_on_verify(self) -> None:
        issued = self._generate(expiry_hours=1)

        result = verify_download_token(self.db, issued.token or "", now=NOW + timedelta(hours=1, seconds=1))

        self.assertFalse(result.success)
        self.assertEqual(result.reason, "token_expired")
        row = self.db.scalar(select(DownloadToken).where(DownloadToken.token == issued.token))
        self.db.refresh(row)
        self.assertFalse(row.is_active)  # type: ignore[union-attr]
        self.assertEqual(
            verify_download_token(self.db, issued.token or "", now=NOW).reason,
            "token_not_found",
        )

    def test_verify_does_not_consume(self) -> None:
        issued = self._generate()

        first = verify_download_token(self.db, issued.token or "", now=NOW + timedelta(hours=2))
        second = verify_download_token(self.db, issued.token or "", now=NOW + timedelta(hours=2))

        self.assertTrue(first.success)
        self.assertEqual(first.remaining_uses, 5)
        self.assertEqual(second.remaining_uses, 5)
        self.assertEqual(first.expires_in_seconds, 10 * 3600)
        self.assertEqual(first.token_info["share_code"], "abc12345")  # type: ignore[index]

    def test_used_up_row_still_flagged_active_is_exhausted_on_verify(self) -> None:
        issued = self._generate(max_uses=2)
        self.db.execute(update(DownloadToken).where(DownloadToken.token == issued.token).values(used_count=2))
        self.db.commit()

        result = verify_download_token(self.db, issued.token or "", now=NOW)

        self.assertEqual(result.reason, "token_exhausted")

    def test_lost_race_on_last_use_is_rejected(self) -> None:
        issued = self._generate(max_uses=1)
        real_verify = verify_download_token
        calls = {"n": 0}

        def verify_then_someone_else_consumes(db, token, *, now=None):  # type: ignore[no-untyped-def]
            result = real_verify(db, token, now=now)
            calls["n"] += 1
            if calls["n"] == 1:
                db.execute(update(DownloadToken).where(DownloadToken.token == token).values(used_count=1))
                db.commit()
            return result

        with patch("sharegate.services.download_tokens.verify_download_token", side_effect=verify_then_someone_else_consumes):
            used = consume_download_token(self.db, issued.token or "", now=NOW)

        self.assertFalse(used.success)
        self.assertEqual(used.reason, "token_exhausted")
        row = self.db.scalar(select(DownloadToken).where(DownloadToken.token == issued.token))
        self.db.refresh(row)
        self.assertEqual(row.used_count, 1)  # type: ignore[union-attr]

    def test_malformed_tokens_are_rejected_before_lookup(self) -> None:
        for token in ("", "abc", "G" * 32, "A" * 32, "a" * 31, "a" * 33):
            with self.subTest(token=token):
                self.assertEqual(verify_download_token(self.db, token).reason, "invalid_token_format")

    def test_unknown_token_not_found(self) -> None:
        self.assertEqual(verify_download_token(self.db, "0" * 32, now=NOW).reason, "token_not_found")

    def test_generate_rejects_missing_fields_and_unsafe_paths(self) -> None:
        self.assertEqual(self._generate(share_code="").reason, "invalid_parameters")
        self.assertEqual(self._generate(file_name="").reason, "invalid_parameters")
        self.assertEqual(self._generate(file_path="../8/secret.txt").reason, "invalid_file_path")
        self.assertEqual(self._generate(file_path="2024/missing.pdf").reason, "invalid_file_path")
        self.assertEqual(self._generate(user_id=99).reason, "invalid_file_path")

    def test_collision_prone_generator_never_duplicates(self) -> None:
        tokens = set()
        for _ in range(1000):
            issued = self._generate(token_factory=lambda length: "a" * length)
            self.assertTrue(issued.success)
            self.assertIsNotNone(re.fullmatch(r"[0-9a-f]{32}", issued.token or ""))
            tokens.add(issued.token)

        self.assertEqual(len(tokens), 1000)

    def test_revoke(self) -> None:
        issued = self._generate()

        self.assertTrue(revoke_download_token(self.db, issued.token or "").success)
        self.assertEqual(revoke_download_token(self.db, issued.token or "").reason, "token_not_found")
        self.assertEqual(revoke_download_token(self.db, "").reason, "invalid_token")
        self.assertEqual(verify_download_token(self.db, issued.token or "", now=NOW).reason, "token_not_found")

    def test_list_tokens_newest_first(self) -> None:
        older = self._generate(now=NOW)
        newer = self._generate(now=NOW + timedelta(minutes=5))
        revoke_download_token(self.db, older.token or "")

        active = list_tokens_for_share(self.db, "abc12345")
        everything = list_tokens_for_share(self.db, "abc12345", include_inactive=True)

        self.assertEqual([item["token"] for item in active.tokens], [newer.token])
        self.assertEqual([item["token"] for item in everything.tokens], [newer.token, older.token])
        self.assertEqual(everything.counts["count"], 2)
        self.assertEqual(list_tokens_for_share(self.db, "").reason, "invalid_share_code")

    def test_cleanup_deactivates_expired_and_deletes_old_rows(self) -> None:
        ancient = self._generate(now=NOW - timedelta(days=40))
        stale = self._generate(now=NOW - timedelta(days=1), expiry_hours=1)
        fresh = self._generate(now=NOW)

        result = cleanup_expired_tokens(self.db, now=NOW)

        self.assertTrue(result.success)
        # The generate calls above already deactivated this share's expired rows.
        self.assertEqual(result.counts["deleted_count"], 1)
        self.assertIsNone(self.db.scalar(select(DownloadToken).where(DownloadToken.token == ancient.token)))
        self.assertEqual(verify_download_token(self.db, stale.token or "", now=NOW).reason, "token_expired")
        self.assertTrue(verify_download_token(self.db, fresh.token or "", now=NOW).success)

    def test_cleanup_counts_rows_still_flagged_active(self) -> None:
        self._generate(now=NOW - timedelta(hours=3), expiry_hours=1)
        self._generate(share_code="zzz99999", now=NOW - timedelta(hours=3), expiry_hours=1)

        result = cleanup_expired_tokens(self.db, now=NOW)

        self.assertEqual(result.counts, {"expired_count": 2, "deleted_count": 0})

    def test_cleanup_for_one_share(self) -> None:
        self._generate(now=NOW - timedelta(hours=3), expiry_hours=1)
        self._generate(share_code="zzz99999", now=NOW - timedelta(hours=3), expiry_hours=1)

        result = cleanup_expired_tokens_for_share(self.db, "abc12345", now=NOW)

        self.assertEqual(result.counts["cleaned_count"], 1)
        self.assertEqual(cleanup_expired_tokens(self.db, now=NOW).counts["expired_count"], 1)

    def test_statistics(self) -> None:
        used = self._generate(now=NOW)
        self._generate(now=NOW, max_uses=1)
        self._generate(now=NOW - timedelta(days=2), expiry_hours=1, share_code="zzz99999")
        consume_download_token(self.db, used.token or "", now=NOW)

        stats = get_token_statistics(self.db, now=NOW + timedelta(hours=1))

        self.assertTrue(stats.success)
        self.assertEqual(
            stats.counts,
            {
                "active_tokens": 3,
                "expired_tokens": 1,
                "exhausted_tokens": 0,
                "today_generated": 2,
                "today_used": 1,
            },
        )


if __name__ == "__main__":
    unittest.main()
