from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from sharegate.settings import get_file_data_root

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


@dataclass(frozen=True, slots=True)
class PathCheck:
    valid: bool
    absolute_path: Path | None = None
    reason: str | None = None


def user_root(user_id: str | int) -> Path:
    return get_file_data_root() / str(user_id)


def resolve_and_validate_file_path(user_id: str | int, relative_path: str) -> PathCheck:
    """Map a user-relative path onto disk and make sure it stays in the user's root."""
    if user_id is None or str(user_id).strip() in {"", ".", ".."} or "/" in str(user_id):
        return PathCheck(valid=False, reason="invalid_path")
    if not relative_path or "\x00" in relative_path:
        return PathCheck(valid=False, reason="invalid_path")

    base_dir = user_root(user_id)
    try:
        if not base_dir.is_dir():
            return PathCheck(valid=False, reason="user_dir_not_exists")

        real_base = base_dir.resolve()
        real_target = (real_base / relative_path.lstrip("/\\")).resolve()
        if real_target != real_base and real_base not in real_target.parents:
            return PathCheck(valid=False, reason="invalid_path")
        if not real_target.exists():
            return PathCheck(valid=False, reason="file_not_exists")
        if not real_target.is_file():
            return PathCheck(valid=False, reason="not_a_file")
        if not os.access(real_target, os.R_OK):
            return PathCheck(valid=False, reason="file_not_readable")
    except OSError:
        return PathCheck(valid=False, reason="invalid_path")

    return PathCheck(valid=True, absolute_path=real_target)


def guess_file_type(file_name: str) -> str:
    ext = Path(file_name).suffix.lower().lstrip(".")
    if ext in {"jpg", "jpeg", "png", "gif", "webp", "bmp", "svg", "ico"}:
        return "image"
    if ext in {"pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "md", "rtf", "csv"}:
        return "document"
    if ext in {"mp4", "avi", "mov", "mkv", "wmv", "flv", "webm", "m4v"}:
        return "video"
    if ext in {"mp3", "wav", "flac", "aac", "ogg", "m4a"}:
        return "audio"
    if ext in {"zip", "rar", "7z", "tar", "gz", "bz2"}:
        return "archive"
    return "other"


def format_bytes(size: int, precision: int = 2) -> str:
    value = float(max(0, size))
    unit_index = 0
    while value >= 1024 and unit_index < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit_index += 1
    return f"{round(value, precision):g} {_SIZE_UNITS[unit_index]}"
