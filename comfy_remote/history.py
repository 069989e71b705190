"""
Comfy Remote - Run History
===========================

Persists finished runs: the downloaded artifact under an outputs directory
and one metadata record per run in a JSON list (newest first).

Usage:
    store = HistoryStore()
    record = store.append(png_bytes, "ComfyUI_00001_.png", {"job_id": "abc", "seed": 42})
    path = store.file_path(record.stored_filename)
"""

import json
import re
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import settings
from .exceptions import HistoryItemNotFoundError
from .logging_config import get_logger
from .retry import retry_with_backoff
from .validation import validate_stored_filename

logger = get_logger(__name__)

__all__ = ["RunRecord", "HistoryStore", "safe_filename"]

DEFAULT_EXTENSION = ".png"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str | None) -> str:
    """Reduce an artifact name to a filesystem-safe basename with an extension."""
    base = Path(name or "").name
    base = _UNSAFE_CHARS.sub("_", base).strip("._") or "output"
    if not Path(base).suffix:
        base += DEFAULT_EXTENSION
    return base


@dataclass
class RunRecord:
    """Metadata of one completed run."""

    id: str
    created_at: str
    original_filename: str
    stored_filename: str
    job_id: str | None = None
    workflow_id: str | None = None
    workflow_name: str | None = None
    positive_prompt: str | None = None
    negative_prompt: str | None = None
    seed: int | None = None
    steps: int | None = None
    input_filename: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunRecord":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values.setdefault("created_at", "")
        values.setdefault("original_filename", values.get("stored_filename", ""))
        return cls(**values)


class HistoryStore:
    """JSON-file backed run history with an artifact directory."""

    def __init__(
        self,
        history_path: str | Path | None = None,
        outputs_dir: str | Path | None = None,
    ):
        self.history_path = Path(history_path) if history_path else settings.storage.history_path
        self.outputs_dir = Path(outputs_dir) if outputs_dir else settings.storage.outputs_path
        self._lock = threading.Lock()

    def _ensure_dirs(self):
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)

    def read_all(self) -> list[RunRecord]:
        """All records, newest first. Missing or unreadable files give []."""
        if not self.history_path.exists():
            return []
        try:
            with open(self.history_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read history: {e}", extra={"path": str(self.history_path)})
            return []
        if not isinstance(data, list):
            return []
        return [
            RunRecord.from_dict(item)
            for item in data
            if isinstance(item, Mapping) and item.get("id") and item.get("stored_filename")
        ]

    def get(self, record_id: str) -> RunRecord:
        """
        Raises:
            HistoryItemNotFoundError: If no record has this id
        """
        for record in self.read_all():
            if record.id == record_id:
                return record
        raise HistoryItemNotFoundError(record_id)

    @retry_with_backoff(exceptions=(OSError,))
    def _persist(self, records: list[RunRecord]):
        self._ensure_dirs()
        tmp = self.history_path.with_suffix(self.history_path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([record.to_dict() for record in records], f, indent=2)
        tmp.replace(self.history_path)

    @retry_with_backoff(exceptions=(OSError,))
    def _write_artifact(self, stored_filename: str, content: bytes):
        self._ensure_dirs()
        (self.outputs_dir / stored_filename).write_bytes(content)

    def append(
        self,
        content: bytes,
        original_filename: str | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> RunRecord:
        """Store an artifact and prepend its record."""
        record_id = str(uuid.uuid4())
        original = Path(original_filename).name if original_filename else ""
        stored_filename = (
            f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{safe_filename(original)}"
        )

        self._write_artifact(stored_filename, content)

        values = dict(metadata or {})
        record = RunRecord(
            id=record_id,
            created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            original_filename=original or "output.png",
            stored_filename=stored_filename,
            **{
                k: v
                for k, v in values.items()
                if k not in ("id", "created_at", "original_filename", "stored_filename")
                and k in {f.name for f in fields(RunRecord)}
            },
        )

        with self._lock:
            records = self.read_all()
            records.insert(0, record)
            self._persist(records)

        logger.info(
            "Saved run to history",
            extra={"record_id": record.id, "stored_filename": stored_filename},
        )
        return record

    def delete(self, record_id: str) -> RunRecord:
        """
        Remove a record and its artifact file.

        Raises:
            HistoryItemNotFoundError: If no record has this id
        """
        with self._lock:
            records = self.read_all()
            target = next((r for r in records if r.id == record_id), None)
            if target is None:
                raise HistoryItemNotFoundError(record_id)
            self._persist([r for r in records if r.id != record_id])

        artifact = self.outputs_dir / target.stored_filename
        try:
            if artifact.is_file():
                artifact.unlink()
        except OSError as e:
            logger.warning(f"Failed to delete artifact {target.stored_filename}: {e}")

        logger.info("Deleted history record", extra={"record_id": record_id})
        return target

    def file_path(self, name: str) -> Path:
        """
        Resolve a stored artifact name to its path.

        Raises:
            SecurityError: If *name* is not a plain basename
            HistoryItemNotFoundError: If the file does not exist
        """
        safe = validate_stored_filename(name)
        path = self.outputs_dir / safe
        if not path.is_file():
            raise HistoryItemNotFoundError(safe, message=f"Stored file not found: {safe}")
        return path
