from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any

logger = logging.getLogger("sharegate.json_store")


# Whole-document rewrites through a temp file and os.replace; last writer wins across processes.
class JsonFileStore:
    def __init__(self, path: Path | str, *, root_key: str) -> None:
        self.path = Path(path)
        self.root_key = root_key

    def empty(self) -> dict[str, Any]:
        return {self.root_key: {}}

    def load(self) -> dict[str, Any]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return self.empty()

        try:
            data = json.loads(raw.decode("utf-8")) if raw.strip() else self.empty()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("json_store_corrupt", extra={"path": str(self.path)})
            return self.empty()

        if not isinstance(data, dict) or not isinstance(data.get(self.root_key), dict):
            logger.warning("json_store_unexpected_shape", extra={"path": str(self.path)})
            return self.empty()
        return data

    def save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, separators=(",", ":"), ensure_ascii=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            with suppress(OSError):
                os.unlink(tmp_name)
            raise

