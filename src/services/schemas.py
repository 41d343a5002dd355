"""Pydantic models for the wire formats this client speaks.

* AI proxy payloads use camelCase keys (``maxTokens``, ``shouldEscalate``).
* Amazon Connect participant payloads use PascalCase keys (``ContentType``).
* :data:`ConnectEvent` is the closed set of typed events the frame
  classifier produces; consumers dispatch on its ``type`` discriminator.
"""

from __future__ import annotations

from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel, to_pascal

from src.models import ConversationMessage


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class _PascalModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, frozen=True)


# ── AI proxy ─────────────────────────────────────────────────────────


class ConversationContext(_CamelModel):
    """Conversation history plus identifiers, sent with every AI request."""

    messages: list[ConversationMessage] = Field(default_factory=list)
    session_id: str = "local-session"
    customer_id: str | None = None
    customer_name: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class AIChatRequest(_CamelModel):
    messages: list[ConversationMessage]
    provider: str
    stream: bool = True
    max_tokens: int = 1024
    temperature: float = 0.7
    system_prompt: str | None = None
    session_id: str | None = None


class SummaryRequest(_CamelModel):
    messages: list[ConversationMessage]
    provider: str


class SentimentRequest(_CamelModel):
    messages: list[ConversationMessage]


class AIStreamChunk(_CamelModel):
    """One unit of streamed AI output.  Never persisted."""

    delta: str | None = None
    done: bool = False
    should_escalate: bool = False
    escalation_reason: str | None = None
    suggested_replies: list[str] | None = None
    error: str | None = None
    provider: str | None = None


class AIAgentResponse(_CamelModel):
    """A complete AI turn, assembled from the stream."""

    response_text: str
    should_escalate: bool
    escalation_reason: str | None
    suggested_replies: list[str]
    confidence: float
    provider: str


class HealthCheckResult(_CamelModel):
    primary_available: bool
    fallback_available: bool
    active_provider: str


class SentimentResult(_CamelModel):
    POSITIVE: ClassVar[str] = "positive"
    NEUTRAL: ClassVar[str] = "neutral"
    NEGATIVE: ClassVar[str] = "negative"
    FRUSTRATED: ClassVar[str] = "frustrated"

    sentiment: str
    confidence: float
    indicators: list[str] = Field(default_factory=list)


# ── Handover ─────────────────────────────────────────────────────────


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["customer", "virtual_agent"]
    content: str
    timestamp: int = 0


class HandoverContext(BaseModel):
    """Everything the human agent gets from the virtual-agent conversation."""

    model_config = ConfigDict(frozen=True)

    customer_id: str
    customer_name: str
    intent: str
    summary: str
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)


# ── Amazon Connect participant API ───────────────────────────────────


class StartChatResult(_PascalModel):
    contact_id: str
    participant_id: str
    participant_token: str


class ConnectionCredentials(_PascalModel):
    connection_token: str
    expiry: str | None = None


class WebsocketInfo(_PascalModel):
    url: str
    connection_expiry: str | None = None


class CreateConnectionResponse(_PascalModel):
    connection_credentials: ConnectionCredentials | None = None
    websocket: WebsocketInfo | None = None


class SendMessageResponse(_PascalModel):
    id: str
    absolute_time: str


class TranscriptItem(_PascalModel):
    id: str
    content: str | None = None
    content_type: str
    participant_id: str | None = None
    participant_role: str | None = None
    display_name: str | None = None
    absolute_time: str


class GetTranscriptResponse(_PascalModel):
    transcript: list[TranscriptItem] = Field(default_factory=list)
    next_token: str | None = None


class WebSocketMessage(_PascalModel):
    """Inner ``aws/chat`` payload (itself JSON-encoded inside the envelope)."""

    type: str | None = None
    content_type: str | None = None
    id: str | None = None
    content: str | None = None
    participant_id: str | None = None
    participant_role: str | None = None
    display_name: str | None = None
    absolute_time: str | None = None


# ── Connect events (closed tagged union) ─────────────────────────────


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class MessageReceived(_Event):
    type: Literal["message_received"] = "message_received"
    id: str = ""
    content: str = ""
    content_type: str = "text/plain"
    participant_role: str = ""
    display_name: str = ""
    timestamp: str = ""


class ParticipantJoined(_Event):
    type: Literal["participant_joined"] = "participant_joined"
    participant_id: str = ""
    participant_role: str = ""
    display_name: str = ""


class ParticipantLeft(_Event):
    type: Literal["participant_left"] = "participant_left"
    participant_id: str = ""
    participant_role: str = ""
    display_name: str = ""


class TypingIndicator(_Event):
    type: Literal["typing"] = "typing"
    participant_role: str = ""
    display_name: str = ""


class ChatEnded(_Event):
    type: Literal["chat_ended"] = "chat_ended"


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str
    cause: Exception | None = Field(default=None, exclude=True)


class Connected(_Event):
    type: Literal["connected"] = "connected"


class Disconnected(_Event):
    type: Literal["disconnected"] = "disconnected"


ConnectEvent = Annotated[
    Union[
        MessageReceived,
        ParticipantJoined,
        ParticipantLeft,
        TypingIndicator,
        ChatEnded,
        ErrorEvent,
        Connected,
        Disconnected,
    ],
    Field(discriminator="type"),
]

CONNECT_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "message_received",
        "participant_joined",
        "participant_left",
        "typing",
        "chat_ended",
        "error",
        "connected",
        "disconnected",
    }
)
