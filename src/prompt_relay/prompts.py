"""Request normalization: system prompt synthesis and message list building."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from pydantic import TypeAdapter

from .errors import InvalidRequest
from .models import Message, ReferenceDoc

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = (
    "You are a capable AI assistant. Give accurate, helpful answers to the user's questions.\n"
    "Keep answers concise and easy to follow, and include examples where they help."
)

_REFERENCES = TypeAdapter(List[ReferenceDoc])


@dataclass(frozen=True)
class NormalizedRequest:
    messages: List[Message]
    user_input: str
    references: List[ReferenceDoc]


def build_system_prompt(
    references: Sequence[ReferenceDoc] = (),
    base_instruction: str = DEFAULT_INSTRUCTION,
) -> str:
    """Return the system prompt, citing each reference in the given order."""
    prompt = base_instruction
    if not references:
        return prompt

    prompt += "\n\nUse the following reference documents to write your answer:\n"
    for i, doc in enumerate(references, 1):
        prompt += f"\n[{i}] {doc.title} ({doc.url})"
        if doc.content:
            prompt += f"\nContent: {doc.content}\n"
    prompt += "\nDraw on the reference documents and name the source where appropriate."
    return prompt


def with_system_prompt(
    messages: Sequence[Message],
    references: Sequence[ReferenceDoc] = (),
    base_instruction: str = DEFAULT_INSTRUCTION,
) -> List[Message]:
    """Put the synthesized system message at index 0.

    Any system message already in ``messages`` is replaced, so the result
    holds exactly one, first.
    """
    system = Message(role="system", content=build_system_prompt(references, base_instruction))
    return [system] + [m for m in messages if m.role != "system"]


def normalize_request(
    prompt: Optional[str] = None,
    messages: Optional[Sequence[Message]] = None,
    references: Optional[Sequence[ReferenceDoc]] = None,
    base_instruction: str = DEFAULT_INSTRUCTION,
) -> NormalizedRequest:
    """Build the canonical message list for one request.

    Raises
    ------
    InvalidRequest
        If neither a prompt nor a non-empty message list was given.
    """
    if not prompt and not messages:
        raise InvalidRequest("Prompt or messages is required")

    refs = list(references or [])
    if messages:
        history = [Message(role=m.role, content=m.content) for m in messages]
        user_input = history[-1].content
    else:
        history = [Message(role="user", content=prompt or "")]
        user_input = prompt or ""

    return NormalizedRequest(
        messages=with_system_prompt(history, refs, base_instruction),
        user_input=user_input,
        references=refs,
    )


def parse_references_param(raw: Optional[str]) -> List[ReferenceDoc]:
    """Decode the JSON ``references`` query parameter, tolerating bad input."""
    if not raw:
        return []
    try:
        data: Any = json.loads(raw)
        return _REFERENCES.validate_python(data)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError and ValidationError are both ValueErrors; very deep
        # nesting makes the decoder recurse out of stack instead.
        logger.warning("Failed to parse references: %s", e)
        return []
