"""Conversation orchestration: routes customer input and external events.

The orchestrator owns no state of its own beyond bookkeeping for background
tasks.  Everything the customer sees lives in the :class:`~src.store.store.Store`;
the orchestrator turns user intents, AI stream chunks and Connect events into
store actions:

* in ``VIRTUAL_AGENT`` mode messages go to the AI client and the stream is
  mirrored into the store chunk by chunk;
* a confirmed escalation builds a :class:`HandoverContext` and asks the
  Connect client to start the live chat;
* in ``HUMAN_AGENT`` mode messages go straight to the participant API.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Coroutine
from typing import Any

from src.config import AGENT_TYPING_TIMEOUT_SECONDS, CUSTOMER_ID
from src.models import (
    ROLE_ASSISTANT,
    ROLE_USER,
    SYSTEM_USER,
    VIRTUAL_AGENT_USER,
    ChatMode,
    ConnectionState,
    ConversationMessage,
    Message,
    ParticipantRole,
    User,
)
from src.services.ai_client import AIAgentClient
from src.services.connect_client import AGENT_ROLE, ConnectChatClient, ConnectChatError
from src.services.schemas import (
    AIStreamChunk,
    ConnectEvent,
    ConversationContext,
    HandoverContext,
    TranscriptEntry,
)
from src.store import actions as a
from src.store.reducer import ChatState
from src.store.store import Store

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = "Hello! I'm your virtual assistant. How can I help you today?"
DEFAULT_INTENT = "General Inquiry"
DEFAULT_ESCALATION_REASON = "Customer requested a human agent"
CUSTOMER_PARTICIPANT_ROLE = "CUSTOMER"
LOCAL_SESSION_ID = "local-session"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return uuid.uuid4().hex


def conversation_history(messages: tuple[Message, ...]) -> list[ConversationMessage]:
    """Provider-facing view of the transcript.  System notices are left out."""
    history = []
    for message in messages:
        role = message.user.role
        if role == ParticipantRole.CUSTOMER:
            llm_role = ROLE_USER
        elif role in (ParticipantRole.VIRTUAL_AGENT, ParticipantRole.HUMAN_AGENT):
            llm_role = ROLE_ASSISTANT
        else:
            continue
        history.append(
            ConversationMessage(role=llm_role, content=message.text, timestamp=message.time_ms)
        )
    return history


def handover_transcript(messages: tuple[Message, ...]) -> list[TranscriptEntry]:
    """Customer and virtual-agent messages, in order, for the human agent."""
    entries = []
    for message in messages:
        if message.user.role == ParticipantRole.CUSTOMER:
            entries.append(TranscriptEntry(role="customer", content=message.text, timestamp=message.time_ms))
        elif message.user.role == ParticipantRole.VIRTUAL_AGENT:
            entries.append(
                TranscriptEntry(role="virtual_agent", content=message.text, timestamp=message.time_ms)
            )
    return entries


class ChatOrchestrator:
    """Drives one customer conversation across the virtual and live agents.

    ``clock`` (epoch milliseconds) and ``id_factory`` are injectable so that
    tests get deterministic message ids and timestamps.
    """

    def __init__(
        self,
        store: Store,
        ai_client: AIAgentClient,
        connect_client: ConnectChatClient,
        *,
        auth_url: str,
        customer_name: str = "Customer",
        customer_id: str = CUSTOMER_ID,
        typing_timeout_seconds: float = AGENT_TYPING_TIMEOUT_SECONDS,
        clock: Callable[[], int] = _now_ms,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._store = store
        self._ai = ai_client
        self._connect = connect_client
        self._auth_url = auth_url
        self._customer = User(name=customer_name, role=ParticipantRole.CUSTOMER)
        self._customer_id = customer_id
        self._typing_timeout = typing_timeout_seconds
        self._clock = clock
        self._new_id = id_factory

        self._started = False
        self._ai_busy = False
        self._handover_busy = False
        self._typing_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._event_handlers: dict[str, Callable[[Any], None]] = {
            "message_received": self._on_message_received,
            "participant_joined": self._on_participant_joined,
            "participant_left": self._on_participant_left,
            "typing": self._on_typing,
            "chat_ended": self._on_chat_ended,
            "error": self._on_error,
            "connected": self._on_connected,
            "disconnected": self._on_disconnected,
        }

    @property
    def state(self) -> ChatState:
        return self._store.state

    # ── Helpers ──────────────────────────────────────────────────────

    def _message(self, user: User, text: str) -> Message:
        return Message(id=self._new_id(), user=user, text=text, time_ms=self._clock())

    def _system_message(self, text: str) -> None:
        self._store.send(a.ReceiveMessage(message=self._message(SYSTEM_USER, text)))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _context(self, state: ChatState) -> ConversationContext:
        session_id = state.chat_session.contact_id if state.chat_session else ""
        return ConversationContext(
            messages=conversation_history(state.messages),
            session_id=session_id or LOCAL_SESSION_ID,
            customer_id=self._customer_id,
            customer_name=self._customer.name,
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Register with the Connect client and greet the customer."""
        if self._started:
            return
        self._started = True
        self._store.send(a.SetCurrentUser(user=self._customer))
        self._connect.add_listener(self._on_connect_event)
        self._connect.add_state_listener(self._on_connection_state)
        self._store.send(a.ReceiveMessage(message=self._message(VIRTUAL_AGENT_USER, WELCOME_MESSAGE)))
        await self._store.join()

    async def end_chat(self) -> None:
        """Leave the live chat (if any) and mark the conversation ended."""
        await self._connect.disconnect()
        self._store.send(a.EndChat())
        await self._store.join()

    async def aclose(self) -> None:
        if self._typing_task is not None:
            self._typing_task.cancel()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._connect.disconnect()
        await self._store.join()

    # ── Customer intents ─────────────────────────────────────────────

    def input_enabled(self) -> bool:
        state = self._store.state
        if state.chat_mode == ChatMode.VIRTUAL_AGENT:
            return not (self._ai_busy or state.is_ai_processing)
        return state.chat_mode == ChatMode.HUMAN_AGENT

    async def submit_message(self, text: str) -> bool:
        """Route a customer message.  Returns ``False`` if input is disabled."""
        text = text.strip()
        if not text or not self.input_enabled():
            return False
        if self._store.state.chat_mode == ChatMode.VIRTUAL_AGENT:
            await self._run_ai_turn(text)
        else:
            await self._send_to_agent(text)
        return True

    async def send_typing(self) -> None:
        if self._store.state.chat_mode != ChatMode.HUMAN_AGENT:
            return
        try:
            await self._connect.send_typing_indicator()
        except ConnectChatError as exc:
            logger.debug("Typing indicator not sent: %s", exc)

    async def select_quick_reply(self, reply: str) -> bool:
        self._store.send(a.SetQuickReplies(replies=()))
        return await self.submit_message(reply)

    async def request_human_agent(self, reason: str = DEFAULT_ESCALATION_REASON) -> None:
        """Ask the customer to confirm a transfer to a live agent."""
        await self._store.dispatch(a.ShowEscalationDialog(reason=reason))

    async def respond_to_escalation(self, confirmed: bool) -> bool:
        """Answer the escalation prompt.  Returns ``True`` if the handover succeeded.

        Ignored unless the prompt is currently shown.
        """
        state = self._store.state
        if not state.show_escalation_dialog or self._handover_busy:
            return False
        reason = state.escalation_reason
        await self._store.dispatch(a.EscalationResponse(confirmed=confirmed))
        if not confirmed:
            return False
        self._handover_busy = True
        try:
            return await self._handover(reason)
        finally:
            self._handover_busy = False

    # ── Virtual agent ────────────────────────────────────────────────

    async def _run_ai_turn(self, text: str) -> None:
        self._ai_busy = True
        context = self._context(self._store.state)
        self._store.send(a.SendMessage(message=self._message(self._customer, text)))
        self._store.send(a.AIProcessingStarted())
        stream = self._ai.process_message_stream(text, context)
        try:
            async for chunk in stream:
                self._apply_chunk(chunk)
        except asyncio.CancelledError:
            self._store.send(a.AIError(error="Response cancelled."))
            raise
        except Exception as exc:
            logger.exception("AI turn failed")
            self._store.send(a.AIError(error=f"Failed to get AI response: {exc}"))
        finally:
            await stream.aclose()
            self._ai_busy = False
        await self._store.join()

    def _apply_chunk(self, chunk: AIStreamChunk) -> None:
        if chunk.provider:
            self._store.send(a.AIProviderChanged(provider=chunk.provider))
        if chunk.done:
            if chunk.error:
                self._store.send(a.AIError(error=chunk.error))
                return
            self._store.send(
                a.AIResponseComplete(
                    message_id=self._new_id(),
                    timestamp_ms=self._clock(),
                    suggested_replies=tuple(chunk.suggested_replies or ()),
                    should_escalate=chunk.should_escalate,
                    escalation_reason=chunk.escalation_reason,
                )
            )
        elif chunk.error:
            self._store.send(
                a.AIFallbackNotice(notice=chunk.error, provider=chunk.provider or self._ai.current_provider)
            )
        elif chunk.delta:
            self._store.send(a.AIStreamChunk(chunk=chunk.delta))

    # ── Handover ─────────────────────────────────────────────────────

    async def _handover(self, reason: str | None) -> bool:
        state = self._store.state
        context = self._context(state)
        summary = await self._ai.generate_summary(context)
        sentiment = await self._ai.analyze_sentiment(context)

        handover = HandoverContext(
            customer_id=self._customer_id,
            customer_name=self._customer.name,
            intent=reason or DEFAULT_INTENT,
            summary=summary,
            transcript=handover_transcript(state.messages),
            metadata={
                "aiProvider": state.current_ai_provider,
                "customerSentiment": sentiment.sentiment,
                "sentimentConfidence": str(sentiment.confidence),
                "escalationReason": reason or "",
            },
        )
        try:
            session = await self._connect.start_handover(self._auth_url, handover)
        except ConnectChatError as exc:
            cause = exc.__cause__ or exc
            logger.warning("Handover failed: %s", cause)
            self._store.send(a.HandoverFailed(error=f"Failed to connect to agent: {cause}"))
            await self._store.join()
            return False

        self._store.send(a.SetChatSession(session=session))
        await self._store.join()
        return True

    async def _send_to_agent(self, text: str) -> None:
        self._store.send(a.SendMessage(message=self._message(self._customer, text)))
        try:
            await self._connect.send_message(text)
        except ConnectChatError as exc:
            logger.warning("Message to agent failed: %s", exc)
            self._store.send(a.SetError(error=f"Failed to send message: {exc}"))
        await self._store.join()

    # ── Connect events ───────────────────────────────────────────────

    def _on_connection_state(self, state: ConnectionState) -> None:
        self._store.send(a.SetConnectionState(state=state))

    def _on_connect_event(self, event: ConnectEvent) -> None:
        self._event_handlers[event.type](event)

    def _on_message_received(self, event) -> None:
        if event.participant_role == CUSTOMER_PARTICIPANT_ROLE:
            return
        if event.participant_role == AGENT_ROLE:
            user = User(name=event.display_name or "Agent", role=ParticipantRole.HUMAN_AGENT)
        else:
            user = User(name=event.display_name or "System", role=ParticipantRole.SYSTEM)
        message = Message(
            id=event.id or self._new_id(), user=user, text=event.content, time_ms=self._clock(),
        )
        self._store.send(a.ReceiveMessage(message=message))

    def _on_participant_joined(self, event) -> None:
        if event.participant_role != AGENT_ROLE:
            return
        agent = User(name=event.display_name or "Agent", role=ParticipantRole.HUMAN_AGENT)
        self._store.send(a.SetAgentUser(user=agent))
        self._store.send(a.HandoverComplete())
        self._system_message(f"{agent.name} has joined the chat")

    def _on_participant_left(self, event) -> None:
        if event.participant_role != AGENT_ROLE:
            return
        self._system_message(f"{event.display_name or 'Agent'} has left the chat")

    def _on_typing(self, event) -> None:
        if event.participant_role != AGENT_ROLE:
            return
        self._store.send(a.SetAgentTyping(is_typing=True))
        if self._typing_task is not None:
            self._typing_task.cancel()
        self._typing_task = self._spawn(self._clear_typing_later(), name="agent-typing-clear")

    async def _clear_typing_later(self) -> None:
        await asyncio.sleep(self._typing_timeout)
        self._store.send(a.SetAgentTyping(is_typing=False))

    def _on_chat_ended(self, event) -> None:
        self._store.send(a.EndChat())
        self._system_message("Chat has ended")
        self._spawn(self._connect.disconnect(), name="connect-disconnect")

    def _on_error(self, event) -> None:
        self._store.send(a.SetError(error=event.message))

    def _on_connected(self, event) -> None:
        logger.info("Live chat connected; waiting for an agent")

    def _on_disconnected(self, event) -> None:
        self._store.send(a.SetConnectionState(state=ConnectionState.DISCONNECTED))
