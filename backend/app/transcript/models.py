from dataclasses import dataclass
from enum import Enum
from typing import Any


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class StoredMessage:
    """
    One transcript entry.
    Position in the transcript array is the only ordering key.
    """
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any) -> "StoredMessage":
        if not isinstance(data, dict):
            raise ValueError("message must be an object")
        role = data.get("role")
        content = data.get("content")
        if role not in {r.value for r in Role}:
            raise ValueError(f"unknown role: {role!r}")
        if not isinstance(content, str):
            raise ValueError("content must be a string")
        return cls(role=Role(role), content=content)

    @classmethod
    def user(cls, content: str) -> "StoredMessage":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "StoredMessage":
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def system(cls, content: str) -> "StoredMessage":
        return cls(role=Role.SYSTEM, content=content)
