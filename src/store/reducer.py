"""Chat state and the pure transition function that evolves it.

``chat_reducer(state, action) -> state`` never reads the clock, never
generates ids and never performs I/O, so replaying an action sequence always
produces the same final state.  Chat-mode changes are validated against
:data:`ALLOWED_MODE_TRANSITIONS`; a request outside the table leaves the state
untouched.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from src.models import (
    VIRTUAL_AGENT_USER,
    ChatMode,
    ChatSession,
    ConnectionState,
    Message,
    User,
)
from src.services.markers import strip_markers
from src.store import actions as a

MAX_MESSAGES = 200

ALLOWED_MODE_TRANSITIONS: dict[ChatMode, frozenset[ChatMode]] = {
    ChatMode.VIRTUAL_AGENT: frozenset({ChatMode.CONNECTING_TO_AGENT}),
    ChatMode.CONNECTING_TO_AGENT: frozenset(
        {ChatMode.HUMAN_AGENT, ChatMode.VIRTUAL_AGENT, ChatMode.ENDED}
    ),
    ChatMode.HUMAN_AGENT: frozenset({ChatMode.ENDED}),
    ChatMode.ENDED: frozenset(),
}


class ChatState(BaseModel):
    """Single source of truth for one conversation."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...] = ()
    chat_mode: ChatMode = ChatMode.VIRTUAL_AGENT
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    current_user: User | None = None
    agent_user: User | None = None
    virtual_agent_user: User = VIRTUAL_AGENT_USER
    is_agent_typing: bool = False
    error: str | None = None
    chat_session: ChatSession | None = None

    is_ai_processing: bool = False
    ai_stream_buffer: str = ""
    suggested_replies: tuple[str, ...] = ()
    show_escalation_dialog: bool = False
    escalation_reason: str | None = None
    current_ai_provider: str = "claude"


def can_transition(current: ChatMode, target: ChatMode) -> bool:
    return target == current or target in ALLOWED_MODE_TRANSITIONS[current]


def _append(messages: tuple[Message, ...], message: Message) -> tuple[Message, ...]:
    return (messages + (message,))[-MAX_MESSAGES:]


_Handler = Callable[[ChatState, Any], ChatState]
_HANDLERS: dict[type[a.Action], _Handler] = {}


def _reduces(action_type: type[a.Action]) -> Callable[[_Handler], _Handler]:
    def register(fn: _Handler) -> _Handler:
        _HANDLERS[action_type] = fn
        return fn

    return register


def chat_reducer(state: ChatState, action: a.Action) -> ChatState:
    """Apply *action* to *state* and return the next state."""
    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise TypeError(f"No reducer registered for {type(action).__name__}")
    return handler(state, action)


# ── Messages ─────────────────────────────────────────────────────────


@_reduces(a.SendMessage)
def _send_message(state: ChatState, action: a.SendMessage) -> ChatState:
    return state.model_copy(update={"messages": _append(state.messages, action.message)})


@_reduces(a.ReceiveMessage)
def _receive_message(state: ChatState, action: a.ReceiveMessage) -> ChatState:
    return state.model_copy(
        update={
            "messages": _append(state.messages, action.message),
            "is_agent_typing": False,
        }
    )


@_reduces(a.ClearMessages)
def _clear_messages(state: ChatState, action: a.ClearMessages) -> ChatState:
    kept = state.messages[-action.keep_count:] if action.keep_count > 0 else ()
    return state.model_copy(update={"messages": kept})


# ── Identity / connection ────────────────────────────────────────────


@_reduces(a.SetCurrentUser)
def _set_current_user(state: ChatState, action: a.SetCurrentUser) -> ChatState:
    return state.model_copy(update={"current_user": action.user})


@_reduces(a.SetAgentUser)
def _set_agent_user(state: ChatState, action: a.SetAgentUser) -> ChatState:
    return state.model_copy(update={"agent_user": action.user})


@_reduces(a.SetConnectionState)
def _set_connection_state(state: ChatState, action: a.SetConnectionState) -> ChatState:
    return state.model_copy(update={"connection_state": action.state})


@_reduces(a.SetChatMode)
def _set_chat_mode(state: ChatState, action: a.SetChatMode) -> ChatState:
    if not can_transition(state.chat_mode, action.mode):
        return state
    return state.model_copy(update={"chat_mode": action.mode})


@_reduces(a.SetChatSession)
def _set_chat_session(state: ChatState, action: a.SetChatSession) -> ChatState:
    return state.model_copy(update={"chat_session": action.session})


@_reduces(a.SetAgentTyping)
def _set_agent_typing(state: ChatState, action: a.SetAgentTyping) -> ChatState:
    return state.model_copy(update={"is_agent_typing": action.is_typing})


@_reduces(a.SetError)
def _set_error(state: ChatState, action: a.SetError) -> ChatState:
    return state.model_copy(update={"error": action.error})


@_reduces(a.ClearError)
def _clear_error(state: ChatState, action: a.ClearError) -> ChatState:
    return state.model_copy(update={"error": None})


# ── Handover lifecycle ───────────────────────────────────────────────


def _begin_handover(state: ChatState) -> ChatState:
    if state.chat_mode != ChatMode.VIRTUAL_AGENT:
        return state
    return state.model_copy(
        update={
            "chat_mode": ChatMode.CONNECTING_TO_AGENT,
            "connection_state": ConnectionState.CONNECTING,
            "show_escalation_dialog": False,
            "suggested_replies": (),
        }
    )


@_reduces(a.InitiateHandover)
def _initiate_handover(state: ChatState, action: a.InitiateHandover) -> ChatState:
    return _begin_handover(state)


@_reduces(a.HandoverComplete)
def _handover_complete(state: ChatState, action: a.HandoverComplete) -> ChatState:
    if not can_transition(state.chat_mode, ChatMode.HUMAN_AGENT):
        return state
    return state.model_copy(
        update={
            "chat_mode": ChatMode.HUMAN_AGENT,
            "connection_state": ConnectionState.AGENT_CONNECTED,
        }
    )


@_reduces(a.HandoverFailed)
def _handover_failed(state: ChatState, action: a.HandoverFailed) -> ChatState:
    if state.chat_mode != ChatMode.CONNECTING_TO_AGENT:
        return state.model_copy(update={"error": action.error})
    return state.model_copy(
        update={
            "chat_mode": ChatMode.VIRTUAL_AGENT,
            "connection_state": ConnectionState.ERROR,
            "error": action.error,
        }
    )


@_reduces(a.EndChat)
def _end_chat(state: ChatState, action: a.EndChat) -> ChatState:
    mode = ChatMode.ENDED if can_transition(state.chat_mode, ChatMode.ENDED) else state.chat_mode
    return state.model_copy(
        update={
            "chat_mode": mode,
            "connection_state": ConnectionState.DISCONNECTED,
            "is_agent_typing": False,
        }
    )


# ── AI virtual agent ─────────────────────────────────────────────────


@_reduces(a.AIProcessingStarted)
def _ai_processing_started(state: ChatState, action: a.AIProcessingStarted) -> ChatState:
    return state.model_copy(
        update={
            "is_ai_processing": True,
            "ai_stream_buffer": "",
            "suggested_replies": (),
            "error": None,
        }
    )


@_reduces(a.AIStreamChunk)
def _ai_stream_chunk(state: ChatState, action: a.AIStreamChunk) -> ChatState:
    # Late chunks after completion/cancel must not refill the buffer.
    if not state.is_ai_processing:
        return state
    return state.model_copy(update={"ai_stream_buffer": state.ai_stream_buffer + action.chunk})


@_reduces(a.AIFallbackNotice)
def _ai_fallback_notice(state: ChatState, action: a.AIFallbackNotice) -> ChatState:
    # The fallback provider replays the whole exchange, so any partial
    # primary output is discarded.
    return state.model_copy(
        update={
            "error": action.notice,
            "current_ai_provider": action.provider,
            "ai_stream_buffer": "",
        }
    )


@_reduces(a.AIResponseComplete)
def _ai_response_complete(state: ChatState, action: a.AIResponseComplete) -> ChatState:
    if not state.is_ai_processing:
        return state
    text = strip_markers(state.ai_stream_buffer)
    messages = state.messages
    if text:
        reply = Message(
            id=action.message_id,
            user=state.virtual_agent_user,
            text=text,
            time_ms=action.timestamp_ms,
        )
        messages = _append(messages, reply)
    escalate = action.should_escalate and state.chat_mode == ChatMode.VIRTUAL_AGENT
    return state.model_copy(
        update={
            "messages": messages,
            "is_ai_processing": False,
            "ai_stream_buffer": "",
            "suggested_replies": tuple(action.suggested_replies),
            "show_escalation_dialog": escalate,
            "escalation_reason": action.escalation_reason if escalate else None,
        }
    )


@_reduces(a.AIError)
def _ai_error(state: ChatState, action: a.AIError) -> ChatState:
    return state.model_copy(
        update={
            "is_ai_processing": False,
            "ai_stream_buffer": "",
            "error": action.error,
        }
    )


@_reduces(a.ShowEscalationDialog)
def _show_escalation_dialog(state: ChatState, action: a.ShowEscalationDialog) -> ChatState:
    if state.chat_mode != ChatMode.VIRTUAL_AGENT:
        return state
    return state.model_copy(
        update={"show_escalation_dialog": True, "escalation_reason": action.reason}
    )


@_reduces(a.EscalationResponse)
def _escalation_response(state: ChatState, action: a.EscalationResponse) -> ChatState:
    if not state.show_escalation_dialog:
        return state
    if action.confirmed:
        return _begin_handover(state)
    return state.model_copy(update={"show_escalation_dialog": False, "escalation_reason": None})


@_reduces(a.ClearAIBuffer)
def _clear_ai_buffer(state: ChatState, action: a.ClearAIBuffer) -> ChatState:
    return state.model_copy(update={"ai_stream_buffer": ""})


@_reduces(a.SetQuickReplies)
def _set_quick_replies(state: ChatState, action: a.SetQuickReplies) -> ChatState:
    return state.model_copy(update={"suggested_replies": tuple(action.replies)})


@_reduces(a.AIProviderChanged)
def _ai_provider_changed(state: ChatState, action: a.AIProviderChanged) -> ChatState:
    if state.current_ai_provider == action.provider:
        return state
    return state.model_copy(update={"current_ai_provider": action.provider})
