from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from urllib.parse import quote

from fastapi import Response
from fastapi.responses import StreamingResponse

CHUNK_SIZE = 8192
DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES: dict[str, str] = {
    # images
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "ico": "image/x-icon",
    # documents
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "txt": "text/plain",
    "md": "text/markdown",
    "csv": "text/csv",
    "rtf": "application/rtf",
    # audio
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
    "aac": "audio/aac",
    "m4a": "audio/mp4",
    # video
    "mp4": "video/mp4",
    "m4v": "video/mp4",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    "mov": "video/quicktime",
    "wmv": "video/x-ms-wmv",
    "flv": "video/x-flv",
    "webm": "video/webm",
    # archives
    "zip": "application/zip",
    "rar": "application/x-rar-compressed",
    "7z": "application/x-7z-compressed",
    "tar": "application/x-tar",
    "gz": "application/gzip",
    "bz2": "application/x-bzip2",
    # web and source files are served as inert text
    "html": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "json": "application/json",
    "xml": "application/xml",
    "php": "text/plain",
    "py": "text/plain",
    "java": "text/plain",
    "c": "text/plain",
    "cpp": "text/plain",
    "go": "text/plain",
    "rs": "text/plain",
}

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d+)\s*-\s*(\d*)")
_UNSAFE_FALLBACK_CHARS = re.compile(r'[\x00-\x1f\x7f"\\;]')


class RangeNotSatisfiable(Exception):
    def __init__(self, size: int):
        super().__init__(f"Requested range not satisfiable for {size} bytes")
        self.size = size


class FileTransmitError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def guess_mime_type(file_name: str) -> str:
    ext = Path(file_name or "").suffix.lower().lstrip(".")
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


def content_disposition(file_name: str, force_download: bool) -> str:
    disposition = "attachment" if force_download else "inline"
    name = file_name or "download"
    fallback = _UNSAFE_FALLBACK_CHARS.sub("_", name).encode("ascii", "replace").decode("ascii").replace("?", "_")
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


def parse_range_header(range_header: str | None, size: int) -> ByteRange | None:
    """Parse ``bytes=start-end``; ``None`` means serve the whole file."""
    if not range_header:
        return None
    match = _RANGE_RE.match(range_header)
    if match is None:
        return None

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else size - 1
    if start > end or start >= size or end >= size:
        raise RangeNotSatisfiable(size)
    return ByteRange(start=start, end=end)


def iter_file_range(
    handle: BinaryIO,
    start: int,
    length: int,
    chunk_size: int = CHUNK_SIZE,
) -> Iterator[bytes]:
    try:
        handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        handle.close()


def serve_file(
    file_path: Path | str,
    file_name: str,
    force_download: bool = True,
    range_header: str | None = None,
    *,
    chunk_size: int = CHUNK_SIZE,
) -> Response:
    path = Path(file_path)
    try:
        size = path.stat().st_size
    except OSError as exc:
        raise FileTransmitError(f"Cannot stat {path.name}") from exc

    try:
        byte_range = parse_range_header(range_header, size)
    except RangeNotSatisfiable:
        return Response(
            status_code=416,
            headers={"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
        )

    try:
        handle = path.open("rb")
    except OSError as exc:
        raise FileTransmitError(f"Cannot open {path.name}") from exc

    headers = {
        "Accept-Ranges": "bytes",
        "Content-Disposition": content_disposition(file_name, force_download),
        "Cache-Control": "no-cache, must-revalidate",
        "X-Content-Type-Options": "nosniff",
    }
    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(
            iter_file_range(handle, 0, size, chunk_size),
            status_code=200,
            media_type=guess_mime_type(file_name),
            headers=headers,
        )

    headers["Content-Length"] = str(byte_range.length)
    headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{size}"
    return StreamingResponse(
        iter_file_range(handle, byte_range.start, byte_range.length, chunk_size),
        status_code=206,
        media_type=guess_mime_type(file_name),
        headers=headers,
    )
