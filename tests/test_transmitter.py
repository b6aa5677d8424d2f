from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from sharegate.services.transmitter import (
    ByteRange,
    RangeNotSatisfiable,
    content_disposition,
    guess_mime_type,
    iter_file_range,
    parse_range_header,
    serve_file,
)

PAYLOAD = bytes(range(256)) * 3 + bytes(range(232))  # 1000 bytes


class ParseRangeHeaderTests(unittest.TestCase):
    def test_explicit_range(self) -> None:
        self.assertEqual(parse_range_header("bytes=100-199", 1000), ByteRange(100, 199))

    def test_open_ended_range_runs_to_eof(self) -> None:
        byte_range = parse_range_header("bytes=900-", 1000)
        self.assertEqual(byte_range, ByteRange(900, 999))
        self.assertEqual(byte_range.length, 100)  # type: ignore[union-attr]

    def test_missing_or_unparseable_header_means_full_body(self) -> None:
        for header in (None, "", "items=0-1", "bytes=-500", "bytes=abc"):
            with self.subTest(header=header):
                self.assertIsNone(parse_range_header(header, 1000))

    def test_unsatisfiable_ranges(self) -> None:
        for header in ("bytes=1000-1001", "bytes=10-1000", "bytes=200-100", "bytes=5000-"):
            with self.subTest(header=header):
                with self.assertRaises(RangeNotSatisfiable):
                    parse_range_header(header, 1000)

    def test_only_first_range_is_used(self) -> None:
        self.assertEqual(parse_range_header("bytes=0-9, 20-29", 1000), ByteRange(0, 9))


class HeaderHelperTests(unittest.TestCase):
    def test_mime_lookup(self) -> None:
        self.assertEqual(guess_mime_type("report.PDF"), "application/pdf")
        self.assertEqual(guess_mime_type("clip.mkv"), "video/x-matroska")
        self.assertEqual(guess_mime_type("script.php"), "text/plain")
        self.assertEqual(guess_mime_type("blob.unknownext"), "application/octet-stream")
        self.assertEqual(guess_mime_type("noext"), "application/octet-stream")

    def test_content_disposition_has_ascii_fallback_and_utf8_name(self) -> None:
        header = content_disposition('季度 "报告".pdf', force_download=True)

        self.assertTrue(header.startswith("attachment; "))
        self.assertIn("filename*=UTF-8''%E5%AD%A3%E5%BA%A6%20%22%E6%8A%A5%E5%91%8A%22.pdf", header)
        fallback = header.split('filename="', 1)[1].split('"', 1)[0]
        self.assertTrue(fallback.isascii())
        self.assertNotIn('"', fallback)

    def test_inline_disposition(self) -> None:
        self.assertTrue(content_disposition("a.png", force_download=False).startswith("inline; "))

    def test_iter_file_range_reads_in_chunks_and_closes(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "data.bin"
            path.write_bytes(PAYLOAD)
            handle = path.open("rb")

            chunks = list(iter_file_range(handle, 10, 25, chunk_size=10))

            self.assertEqual([len(chunk) for chunk in chunks], [10, 10, 5])
            self.assertEqual(b"".join(chunks), PAYLOAD[10:35])
            self.assertTrue(handle.closed)


class ServeFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "sample.pdf"
        self.path.write_bytes(PAYLOAD)

        app = FastAPI()
        target = self.path

        @app.get("/file")
        def _file(request: Request, force_download: bool = True):  # type: ignore[no-untyped-def]
            return serve_file(target, "sample.pdf", force_download, request.headers.get("range"), chunk_size=64)

        @app.get("/missing")
        def _missing():  # type: ignore[no-untyped-def]
            return serve_file(Path(self._tmp.name) / "nope.bin", "nope.bin")

        self.client = TestClient(app, raise_server_exceptions=False)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_full_body(self) -> None:
        response = self.client.get("/file")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, PAYLOAD)
        self.assertEqual(response.headers["content-length"], "1000")
        self.assertEqual(response.headers["accept-ranges"], "bytes")
        self.assertEqual(response.headers["content-type"], "application/pdf")
        self.assertEqual(response.headers["cache-control"], "no-cache, must-revalidate")
        self.assertTrue(response.headers["content-disposition"].startswith("attachment;"))
        self.assertNotIn("content-range", response.headers)

    def test_middle_range(self) -> None:
        response = self.client.get("/file", headers={"Range": "bytes=100-199"})

        self.assertEqual(response.status_code, 206)
        self.assertEqual(response.headers["content-range"], "bytes 100-199/1000")
        self.assertEqual(response.headers["content-length"], "100")
        self.assertEqual(response.content, PAYLOAD[100:200])

    def test_tail_range(self) -> None:
        response = self.client.get("/file", headers={"Range": "bytes=900-999"})

        self.assertEqual(response.status_code, 206)
        self.assertEqual(response.content, PAYLOAD[900:])

    def test_range_past_end_is_416(self) -> None:
        response = self.client.get("/file", headers={"Range": "bytes=1000-1001"})

        self.assertEqual(response.status_code, 416)
        self.assertEqual(response.headers["content-range"], "bytes */1000")
        self.assertEqual(response.content, b"")

    def test_garbage_range_serves_everything(self) -> None:
        response = self.client.get("/file", headers={"Range": "lines=1-2"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.content), 1000)

    def test_inline_when_not_forced(self) -> None:
        response = self.client.get("/file", params={"force_download": "false"})

        self.assertTrue(response.headers["content-disposition"].startswith("inline;"))

    def test_missing_file_fails_before_headers(self) -> None:
        response = self.client.get("/missing")

        self.assertEqual(response.status_code, 500)


if __name__ == "__main__":
    unittest.main()
