"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from prompt_relay.config import Settings, StorageSettings, UpstreamSettings  # noqa: E402
from prompt_relay.errors import CredentialsMissing  # noqa: E402
from prompt_relay.models import Message  # noqa: E402


class FakeUpstream:
    """Stands in for UpstreamClient: replays fixed chunks, records calls."""

    def __init__(
        self,
        chunks: Sequence[str] = ("Hel", "lo", " world"),
        *,
        fail_at: Optional[int] = None,
        has_credentials: bool = True,
    ) -> None:
        self.chunks = list(chunks)
        self.fail_at = fail_at
        self.has_credentials = has_credentials
        self.calls: List[List[Message]] = []
        self.closed_streams = 0
        self.network_calls = 0

    def check_credentials(self) -> None:
        if not self.has_credentials:
            raise CredentialsMissing("Upstream API credentials are not set")

    async def stream_text(self, messages, model=None):
        self.network_calls += 1
        self.calls.append(list(messages))
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_at is not None and i == self.fail_at:
                    raise ConnectionError("upstream went away")
                yield chunk
            if self.fail_at is not None and self.fail_at >= len(self.chunks):
                raise ConnectionError("upstream went away")
        finally:
            self.closed_streams += 1


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def log_dir(tmp_path: Path) -> Path:
    """Provide a temporary conversation log directory."""
    d = tmp_path / "logs"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def settings(log_dir: Path) -> Settings:
    return Settings(
        upstream=UpstreamSettings(api_key="test-key", model="test-model"),
        storage=StorageSettings(log_dir=str(log_dir)),
    )


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var.startswith("PROMPT_RELAY"):
            monkeypatch.delenv(var, raising=False)
    yield
