"""Forward upstream text increments to the client as server-sent events.

Frame sequence for one request::

    event: customData
    data: {...metadata...}

    data: {"text": "..."}        (one per increment, arrival order)

    data: [DONE]                 (normal completion)

A failure after the first frame produces a single ``event: error`` frame
instead of the ``[DONE]`` sentinel.
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Sequence

from .errors import UpstreamFailure
from .models import Message, StreamMetadata

logger = logging.getLogger(__name__)

METADATA_EVENT = "customData"
ERROR_EVENT = "error"
DONE = "[DONE]"

DisconnectProbe = Callable[[], Awaitable[bool]]


class TextStreamer(Protocol):
    """What the relay needs from an upstream client."""

    def check_credentials(self) -> None:
        ...

    def stream_text(self, messages: Sequence[Message], model: Optional[str] = None) -> AsyncIterator[str]:
        ...


def format_event(data: Any, event: Optional[str] = None) -> str:
    """Frame one SSE event. Strings are sent as-is, everything else as JSON."""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    lines: List[str] = []
    if event:
        lines.append(f"event: {event}")
    for part in payload.split("\n"):
        lines.append(f"data: {part}")
    return "\n".join(lines) + "\n\n"


class StreamRelay:
    """One request's relay from the upstream stream to the HTTP response.

    Usage::

        relay = StreamRelay(upstream, metadata, messages, model)
        await relay.start()             # raises UpstreamFailure before any byte
        return StreamingResponse(relay.events(), ...)

    Nothing here is shared between requests.
    """

    def __init__(
        self,
        upstream: TextStreamer,
        metadata: StreamMetadata,
        messages: Sequence[Message],
        model: Optional[str] = None,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> None:
        self.upstream = upstream
        self.metadata = metadata
        self.messages = list(messages)
        self.model = model
        self._is_disconnected = is_disconnected
        self._source: Optional[AsyncIterator[str]] = None
        self._first: Optional[str] = None
        self._exhausted = False
        self._parts: List[str] = []
        self.completed = False
        self.failed = False

    @property
    def text(self) -> str:
        """Everything delivered to the client so far."""
        return "".join(self._parts)

    async def start(self) -> None:
        """Open the upstream stream and wait for the first increment."""
        self.upstream.check_credentials()
        self._source = self.upstream.stream_text(self.messages, self.model)
        try:
            self._first = await self._source.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
        except UpstreamFailure:
            await self._close_source()
            raise
        except Exception as e:
            await self._close_source()
            raise UpstreamFailure(f"Upstream request failed: {e}") from e

    async def events(self) -> AsyncIterator[str]:
        """Lazy, forward-only sequence of SSE frames. Call :meth:`start` first."""
        if self._source is None:
            raise RuntimeError("StreamRelay.start() must be awaited before events()")

        yield format_event(self.metadata.to_wire(), METADATA_EVENT)
        try:
            if self._first is not None:
                yield self._deliver(self._first)
                self._first = None
            while not self._exhausted:
                if self._is_disconnected is not None and await self._is_disconnected():
                    logger.info("Client disconnected from session %s; cancelling upstream", self.metadata.session_id)
                    return
                try:
                    chunk = await self._source.__anext__()
                except StopAsyncIteration:
                    break
                yield self._deliver(chunk)
        except Exception as e:
            self.failed = True
            logger.error("Streaming error in session %s: %s", self.metadata.session_id, e)
            yield format_event({"error": f"An error occurred: {e}"}, ERROR_EVENT)
            return
        finally:
            await self._close_source()

        self.completed = True
        yield format_event(DONE)

    def _deliver(self, chunk: str) -> str:
        logger.debug("Received text chunk: %s...", chunk[:20])
        self._parts.append(chunk)
        return format_event({"text": chunk})

    async def _close_source(self) -> None:
        source, self._source = self._source, None
        self._exhausted = True
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
