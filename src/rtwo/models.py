"""Conversation data model shared by the session, store, and transport."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant"]

PREVIEW_LENGTH = 32


class RenderMode(str, Enum):
    """How assistant output is fetched and displayed for a session."""

    BATCH = "batch"
    STREAM = "stream"


class TurnStats(BaseModel):
    """Token and timing accounting reported by the server for one reply."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(default=0, ge=0)
    response_tokens: int = Field(default=0, ge=0)
    elapsed_seconds: float = Field(default=0.0, ge=0.0)


class Turn(BaseModel):
    """One role-tagged message within a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    stats: TurnStats | None = None

    def as_message(self) -> dict[str, str]:
        """Return the ``{role, content}`` pair sent to the chat endpoint."""
        return {"role": self.role, "content": self.content}


class Conversation(BaseModel):
    """An ordered, append-only collection of turns with a stable identifier."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    host: str = ""
    model: str = ""
    turns: list[Turn] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _validate_id(cls, value: object) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Conversation id must be a non-empty string.")
        return value.strip()

    @property
    def preview(self) -> str:
        """First prompt of the conversation, truncated for pickers."""
        for turn in self.turns:
            if turn.role == "user":
                return turn.content.strip().replace("\n", " ")[:PREVIEW_LENGTH]
        return ""

    def append(self, turn: Turn) -> None:
        self.turns.append(turn)

    def messages(self) -> list[dict[str, str]]:
        """Build the ordered request history for the chat endpoint."""
        return [turn.as_message() for turn in self.turns]


@dataclass(frozen=True)
class ConversationSummary:
    """Row returned when enumerating stored conversations."""

    id: str
    created_at: datetime
    preview: str
    host: str = ""
    model: str = ""
    turn_count: int = 0

    def describe(self) -> str:
        """Single-line label used by the list, restore, and delete pickers."""
        stamp = self.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
        where = f"{self.model}@{self.host}" if self.host else self.model
        return f"{stamp}: {where} -> {self.preview} [{self.turn_count} turns]"


@dataclass(frozen=True)
class ModelDescriptor:
    """A model available on the Ollama server."""

    name: str
    size: int = 0
    modified_at: str = ""
    family: str = ""
    parameter_size: str = ""
    quantization_level: str = ""


@dataclass(frozen=True)
class ChatReply:
    """Complete, non-streamed assistant reply."""

    text: str
    model: str = ""
    stats: TurnStats | None = None


@dataclass(frozen=True)
class StreamFragment:
    """One incremental chunk of assistant text delivered during streaming."""

    text: str
    done: bool = False


@dataclass(frozen=True)
class PullProgress:
    """Progress update emitted while a model is downloaded to the server."""

    status: str
    completed: int = 0
    total: int = 0
