from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from prompt_relay.models import ConversationRecord, StreamMetadata
from prompt_relay.store import ConversationLog, new_session_id


def _metadata(session_id: str = "session_1", prompt: str = "hi") -> StreamMetadata:
    return StreamMetadata(
        timestamp="2024-01-01T00:00:00.000Z",
        source="test",
        prompt=prompt,
        model="test-model",
        sessionId=session_id,
        references=[{"title": "T", "url": "https://t.example"}],
    )


def _write_record(log: ConversationLog, i: int) -> Path:
    record = ConversationRecord(
        **_metadata(f"session_{1700000000000 + i}", prompt=f"p{i}").model_dump(by_alias=True),
        response=f"r{i}",
        completedAt=f"2024-01-01T00:00:{i:02d}.000Z",
    )
    return log.save(record)


def test_creates_log_dir(tmp_path: Path):
    target = tmp_path / "nested" / "logs"
    ConversationLog(target)
    assert target.is_dir()


def test_record_exchange_writes_one_file(log_dir: Path):
    log = ConversationLog(log_dir)
    path = log.record_exchange(_metadata(), "hello there")

    assert path is not None and path.exists()
    assert path.name.startswith("session_1_")
    assert ":" not in path.name
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["sessionId"] == "session_1"
    assert data["prompt"] == "hi"
    assert data["response"] == "hello there"
    assert data["references"] == [{"title": "T", "url": "https://t.example"}]
    assert data["completedAt"]
    assert list(log_dir.glob("*.json")) == [path]


def test_record_exchange_swallows_write_errors(log_dir: Path, monkeypatch):
    log = ConversationLog(log_dir)

    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("prompt_relay.store._atomic_write_text", boom)
    assert log.record_exchange(_metadata(), "text") is None
    assert list(log_dir.glob("*.json")) == []


@pytest.mark.parametrize("failing", ["fsync", "replace"])
def test_failed_write_leaves_no_temp_file(log_dir: Path, monkeypatch, failing: str):
    log = ConversationLog(log_dir)

    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(os, failing, boom)
    assert log.record_exchange(_metadata(), "text") is None
    assert list(log_dir.iterdir()) == []


def test_list_recent_returns_ten_newest_first(log_dir: Path):
    log = ConversationLog(log_dir)
    for i in range(12):
        _write_record(log, i)

    recent = log.list_recent()
    assert len(recent) == 10
    assert [r["prompt"] for r in recent] == [f"p{i}" for i in range(11, 1, -1)]


def test_list_recent_is_idempotent(log_dir: Path):
    log = ConversationLog(log_dir)
    for i in range(3):
        _write_record(log, i)
    assert log.list_recent() == log.list_recent()


def test_list_recent_skips_corrupt_files(log_dir: Path):
    log = ConversationLog(log_dir)
    _write_record(log, 1)
    (log_dir / "session_9999999999999_bad.json").write_text("{oops", encoding="utf-8")

    recent = log.list_recent()
    assert [r["prompt"] for r in recent] == ["p1"]


def test_list_recent_empty_dir(log_dir: Path):
    assert ConversationLog(log_dir).list_recent() == []


def test_session_ids_are_unique():
    ids = {new_session_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(i.startswith("session_") for i in ids)
