"""
Data models for conversation storage.
These define the shape of data flowing between the HTTP layer, the
provider adapters and the session store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

ROLES = ("system", "user", "assistant")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ConversationTurn:
    """A single turn of a conversation."""
    role: str = "user"       # "system", "user", "assistant"
    content: str = ""
    image_ref: str | None = None
    timestamp: str = field(default_factory=_now)

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationTurn":
        """Build a turn from client/stored JSON. Unknown roles become "user"."""
        role = data.get("role") or "user"
        if role not in ROLES:
            role = "user"
        content = data.get("content") or ""
        if not isinstance(content, str):
            content = str(content)
        return cls(
            role=role,
            content=content,
            image_ref=data.get("imageUrl") or data.get("image_ref"),
            timestamp=data.get("timestamp") or _now(),
        )

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "imageUrl": self.image_ref,
            "timestamp": self.timestamp,
        }


@dataclass
class ChatSession:
    """A stored chat: metadata plus its ordered turns."""
    session_id: str
    model_id: str
    title: str = "New Chat"
    messages: list[ConversationTurn] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_summary(self) -> dict:
        return {
            "sessionId": self.session_id,
            "title": self.title,
            "modelId": self.model_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def to_dict(self) -> dict:
        data = self.to_summary()
        data["messages"] = [m.to_dict() for m in self.messages]
        return data
