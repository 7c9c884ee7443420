"""Streaming client for the hosted text-generation endpoint.

Two wire dialects are supported, picked by ``upstream.api_style``:

- ``openai``: ``POST {base_url}/chat/completions`` with SSE ``data:`` lines
  carrying ``choices[0].delta.content``, terminated by ``data: [DONE]``.
- ``anthropic``: ``POST {base_url}/messages`` with SSE events, text arriving in
  ``content_block_delta`` events and ``message_stop`` closing the stream.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx

from .config import UpstreamSettings
from .errors import CredentialsMissing, UpstreamFailure
from .models import Message

logger = logging.getLogger(__name__)

API_STYLES = ("openai", "anthropic")


# -----------------------------
# Helpers
# -----------------------------
def _sse_data(line: str) -> Optional[str]:
    """Return the payload of a ``data:`` line, or None for other SSE fields."""
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


def _split_system(messages: Sequence[Message]) -> Tuple[Optional[str], List[Dict[str, str]]]:
    system: Optional[str] = None
    rest: List[Dict[str, str]] = []
    for m in messages:
        if m.role == "system":
            system = m.content
        else:
            rest.append({"role": m.role, "content": m.content})
    return system, rest


# -----------------------------
# Client
# -----------------------------
class UpstreamClient:
    """Thin async wrapper around :mod:`httpx` for one hosted model endpoint.

    Each call to :meth:`stream_text` opens its own HTTP response; nothing but
    the connection pool is shared between concurrent requests.
    """

    def __init__(
        self,
        settings: UpstreamSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if settings.api_style not in API_STYLES:
            raise ValueError(f"Unknown upstream api_style {settings.api_style!r}; expected one of {API_STYLES}")
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(
                connect=settings.connect_timeout,
                read=settings.read_timeout,
                write=settings.connect_timeout,
                pool=settings.connect_timeout,
            ),
            transport=transport,
        )

    @property
    def model(self) -> str:
        return self.settings.model

    def check_credentials(self) -> None:
        """Fail fast, before any network call, when no API key is set."""
        if not self.settings.api_key:
            raise CredentialsMissing("Upstream API credentials are not set")

    async def stream_text(
        self,
        messages: Sequence[Message],
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Yield text increments from the remote endpoint in arrival order."""
        self.check_credentials()
        path, headers, payload = self._build_request(messages, model or self.settings.model)
        logger.debug("Opening upstream stream %s (model=%s)", path, payload["model"])

        try:
            async with self._client.stream("POST", path, json=payload, headers=headers) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise UpstreamFailure(f"Upstream returned HTTP {resp.status_code}: {body[:500]}")
                async for line in resp.aiter_lines():
                    data = _sse_data(line)
                    if not data:
                        continue
                    if data == "[DONE]":
                        return
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError as e:
                        raise UpstreamFailure(f"Malformed upstream payload: {data[:200]}") from e
                    text, finished = self._parse_event(event)
                    if text:
                        yield text
                    if finished:
                        return
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Upstream request failed: {e}") from e

    async def complete(self, messages: Sequence[Message], model: Optional[str] = None) -> str:
        """Non-streaming convenience: drain the stream into one string."""
        parts: List[str] = []
        async for text in self.stream_text(messages, model):
            parts.append(text)
        return "".join(parts)

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------------
    # Internals
    # -------------------------
    def _build_request(
        self,
        messages: Sequence[Message],
        model: str,
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        s = self.settings
        if s.api_style == "anthropic":
            system, rest = _split_system(messages)
            payload: Dict[str, Any] = {
                "model": model,
                "messages": rest,
                "max_tokens": s.max_tokens,
                "temperature": s.temperature,
                "top_p": s.top_p,
                "stream": True,
            }
            if system:
                payload["system"] = system
            if s.top_k is not None:
                payload["top_k"] = s.top_k
            headers = {
                "x-api-key": s.api_key or "",
                "anthropic-version": s.anthropic_version,
                "content-type": "application/json",
            }
            return "/messages", headers, payload

        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": s.max_tokens,
            "temperature": s.temperature,
            "top_p": s.top_p,
            "stream": True,
        }
        headers = {
            "Authorization": f"Bearer {s.api_key}",
            "Content-Type": "application/json",
        }
        return "/chat/completions", headers, payload

    def _parse_event(self, event: Any) -> Tuple[str, bool]:
        """Return ``(text, finished)`` for one decoded SSE payload."""
        if not isinstance(event, dict):
            raise UpstreamFailure(f"Unexpected upstream payload: {event!r}")

        if self.settings.api_style == "anthropic":
            kind = event.get("type")
            if kind == "error":
                err = event.get("error") or {}
                raise UpstreamFailure(f"Upstream error: {err.get('message') or err}")
            if kind == "content_block_delta":
                delta = event.get("delta") or {}
                return str(delta.get("text") or ""), False
            return "", kind == "message_stop"

        if "error" in event:
            err = event.get("error") or {}
            msg = err.get("message") if isinstance(err, dict) else err
            raise UpstreamFailure(f"Upstream error: {msg}")
        choices = event.get("choices") or []
        if not choices:
            return "", False
        delta = choices[0].get("delta") or {}
        return str(delta.get("content") or ""), False
