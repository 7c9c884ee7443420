"""Append-only conversation log: one JSON file per completed exchange."""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import PersistenceFailure
from .models import ConversationRecord, StreamMetadata

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_session_id() -> str:
    # Millisecond prefix keeps filenames in creation order; the suffix avoids
    # collisions between requests landing in the same millisecond.
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _safe_name(name: str) -> str:
    s = re.sub(r"[^\w.\-]+", "_", name.strip() or "session")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", delete=False, dir=str(path.parent), suffix=".tmp"
    ) as tmp:
        tmp_name = tmp.name
        try:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            tmp.close()
            os.unlink(tmp_name)
            raise
    try:
        os.replace(tmp_name, path)
    except BaseException:
        # Only finished records may sit in the log directory.
        os.unlink(tmp_name)
        raise


# -----------------------------
# ConversationLog
# -----------------------------
class ConversationLog:
    """Flat directory of write-once conversation records.

    Layout:
        log_dir/
          <sessionId>_<timestamp>.json     # one ConversationRecord each

    Records are never updated or deleted. Listing is a linear scan ordered by
    filename, which embeds the creation time.
    """

    def __init__(self, log_dir: str | Path) -> None:
        self.root = Path(log_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("Conversation logs will be saved to %s", self.root)

    def path_for(self, record: ConversationRecord) -> Path:
        stamp = record.completed_at.replace(":", "-")
        return self.root / f"{_safe_name(record.session_id)}_{stamp}.json"

    def save(self, record: ConversationRecord) -> Path:
        """Write one record. Raises PersistenceFailure on I/O errors."""
        path = self.path_for(record)
        try:
            text = json.dumps(record.model_dump(by_alias=True), ensure_ascii=False, indent=2)
            _atomic_write_text(path, text)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"Could not write {path}: {e}") from e
        return path

    def record_exchange(self, metadata: StreamMetadata, response: str) -> Optional[Path]:
        """Persist a finished exchange. Failures are logged, never raised."""
        try:
            record = ConversationRecord(
                **metadata.model_dump(by_alias=True),
                response=response,
                completedAt=utc_now_iso(),
            )
            path = self.save(record)
        except (PersistenceFailure, ValidationError) as e:
            logger.error("Error saving conversation %s: %s", metadata.session_id, e)
            return None
        logger.info(
            "Conversation with prompt %r saved to %s", metadata.prompt[:30], path
        )
        return path

    def list_recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Return up to ``limit`` records, newest filename first."""
        files = sorted(
            (p for p in self.root.glob("*.json") if p.is_file()),
            key=lambda p: p.name,
            reverse=True,
        )
        out: List[Dict[str, Any]] = []
        for path in files[: max(0, limit)]:
            try:
                with path.open("r", encoding="utf-8") as f:
                    out.append(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable conversation file %s: %s", path, e)
        return out
