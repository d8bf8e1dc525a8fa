"""
Pydantic models for chat messages and the Chat API request/response contracts.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Sender(str, Enum):
    USER = "user"
    AI = "ai"


class Source(BaseModel):
    """A vault note used to ground an answer."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(..., description="Note title (file name without extension)")
    path: str = Field("", description="Vault-relative path of the note")
    tag: str = Field("", description="Citation tag used in the answer, e.g. [doc1]")


class ChatMessage(BaseModel):
    """A single entry of the visible transcript. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    sender: Sender = Field(..., description="Who wrote the message")
    message: str = Field(..., description="Message content")
    sources: list[Source] = Field(
        default_factory=list, description="Notes cited by an AI answer"
    )
    is_error: bool = Field(False, description="True for diagnostic messages")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChatRequest(BaseModel):
    """Request body for the POST /chat endpoint."""

    message: str = Field(..., min_length=1, description="The user's message")
    debug: bool = Field(False, description="Log each pipeline step")
    ignore_system_message: bool = Field(
        False, description="Build the prompt without a system message"
    )


class LoadHistoryRequest(BaseModel):
    """Request body for the POST /chat/history endpoint."""

    messages: list[ChatMessage] = Field(
        ..., description="Saved transcript, oldest message first"
    )


class StreamEvent(BaseModel):
    """One event of a streamed chat turn, serialized as a line of NDJSON."""

    type: Literal["partial", "final", "cancelled", "error"]
    text: str = ""
    message: ChatMessage | None = None
