"""Pydantic request/record models."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]


class Message(BaseModel):
    role: Role
    content: str


class ReferenceDoc(BaseModel):
    title: str
    url: str
    content: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        """Serialize, omitting ``content`` when it is empty."""
        out: Dict[str, Any] = {"title": self.title, "url": self.url}
        if self.content:
            out["content"] = self.content
        return out


class PromptRequest(BaseModel):
    prompt: Optional[str] = None
    messages: Optional[List[Message]] = None
    references: Optional[List[ReferenceDoc]] = None


class StreamMetadata(BaseModel):
    """Provenance sent to the client before any generated text."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    timestamp: str
    source: str
    prompt: str
    model: str
    session_id: str = Field(alias="sessionId")
    references: List[Dict[str, Any]] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ConversationRecord(StreamMetadata):
    """One completed exchange as persisted on disk."""

    response: str
    completed_at: str = Field(alias="completedAt")
