"""Structured audit trail of terminal action outcomes, written as JSON Lines."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
from pathlib import Path
from typing import Any, Dict, Optional

from homedash.utils.env import get_path_env


DEFAULT_AUDIT_LOG = Path("artifacts/actions.log")


class AuditLogger:
    """Append one record per finished launch/stop/job action."""

    def __init__(self, path: Optional[Path] = None) -> None:
        target = path or get_path_env("HOMEDASH_AUDIT_LOG") or DEFAULT_AUDIT_LOG
        target.parent.mkdir(parents=True, exist_ok=True)
        self._path = target
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def log(self, *, event: str, target_id: str, payload: Dict[str, Any]) -> None:
        record = {
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "event": event,
            "target_id": target_id,
            "payload": payload,
        }
        async with self._lock:
            await asyncio.to_thread(self._append_line, record)

    def _append_line(self, record: Dict[str, Any]) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, ensure_ascii=False, default=str))
            fh.write("\n")
