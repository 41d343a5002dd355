"""Actions understood by :func:`src.store.reducer.chat_reducer`.

Each action is a small frozen model.  Anything that is not a pure function of
the current state (message ids, timestamps) travels on the action itself.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from src.models import ChatMode, ChatSession, ConnectionState, Message, User


class Action(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── Messages ─────────────────────────────────────────────────────────


class SendMessage(Action):
    message: Message


class ReceiveMessage(Action):
    message: Message


class ClearMessages(Action):
    keep_count: int = Field(default=0, ge=0)


# ── Identity / connection ────────────────────────────────────────────


class SetCurrentUser(Action):
    user: User


class SetAgentUser(Action):
    user: User


class SetConnectionState(Action):
    state: ConnectionState


class SetChatMode(Action):
    mode: ChatMode


class SetChatSession(Action):
    session: ChatSession | None


class SetAgentTyping(Action):
    is_typing: bool


class SetError(Action):
    error: str | None


class ClearError(Action):
    pass


# ── Handover lifecycle ───────────────────────────────────────────────


class InitiateHandover(Action):
    pass


class HandoverComplete(Action):
    pass


class HandoverFailed(Action):
    error: str


class EndChat(Action):
    pass


# ── AI virtual agent ─────────────────────────────────────────────────


class AIProcessingStarted(Action):
    pass


class AIStreamChunk(Action):
    chunk: str


class AIFallbackNotice(Action):
    """The primary provider failed; the exchange restarts on *provider*."""

    notice: str
    provider: str


class AIResponseComplete(Action):
    message_id: str
    timestamp_ms: int
    suggested_replies: tuple[str, ...] = ()
    should_escalate: bool = False
    escalation_reason: str | None = None


class AIError(Action):
    error: str


class ShowEscalationDialog(Action):
    reason: str


class EscalationResponse(Action):
    confirmed: bool


class ClearAIBuffer(Action):
    pass


class SetQuickReplies(Action):
    replies: tuple[str, ...] = ()


class AIProviderChanged(Action):
    provider: str
