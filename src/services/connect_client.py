"""Amazon Connect participant client: REST calls plus the chat WebSocket.

A session goes through these connection states::

    DISCONNECTED → CONNECTING → CONNECTED → WAITING_FOR_AGENT → AGENT_CONNECTED
                                   ↘ ERROR                         ↓
                                                              DISCONNECTED

``CONNECTED`` is transitional: it is set once the socket is open and
replaced by ``WAITING_FOR_AGENT`` as soon as the frame reader and the
heartbeat are running.

Inbound frames are classified by :func:`parse_frame` into typed
:data:`~src.services.schemas.ConnectEvent` objects and handed to the
registered listeners.  Listeners are plain callables invoked on the event
loop; an exception in one is logged and never reaches the frame reader.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from src.config import ConnectChatConfig
from src.models import ChatSession, ConnectionState
from src.services.metrics import metrics
from src.services.schemas import (
    ChatEnded,
    Connected,
    ConnectEvent,
    CreateConnectionResponse,
    Disconnected,
    ErrorEvent,
    GetTranscriptResponse,
    HandoverContext,
    MessageReceived,
    ParticipantJoined,
    ParticipantLeft,
    SendMessageResponse,
    StartChatResult,
    TranscriptItem,
    TypingIndicator,
    WebSocketMessage,
)

logger = logging.getLogger(__name__)

# ── Participant API ─────────────────────────────────────────────────
CONNECTION_PATH = "/participant/connection"
MESSAGE_PATH = "/participant/message"
EVENT_PATH = "/participant/event"
TRANSCRIPT_PATH = "/participant/transcript"
DISCONNECT_PATH = "/participant/disconnect"

TYPING_CONTENT_TYPE = "application/vnd.amazonaws.connect.event.typing"
AGENT_ROLE = "AGENT"

# ── WebSocket frames ────────────────────────────────────────────────
CHAT_TOPIC = "aws/chat"
SUBSCRIBE_FRAME = {"topic": "aws/subscribe", "content": {"topics": [CHAT_TOPIC]}}
HEARTBEAT_FRAME = {"topic": "aws/heartbeat", "content": {"eventType": "heartbeat"}}
_ACK_TOPICS = frozenset({"aws/subscribe", "aws/heartbeat"})

# ── Retry configuration (idempotent calls only) ─────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0

_AUTH_SERVICE = "connect_auth"
_PARTICIPANT_SERVICE = "connect_participant"

EventListener = Callable[[ConnectEvent], None]
StateListener = Callable[[ConnectionState], None]


class ConnectChatError(Exception):
    """Raised when a contact-center call or connection step fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class NotConnectedError(ConnectChatError):
    """Raised when an operation needs a live connection and there is none."""


# ── Frame classification ────────────────────────────────────────────


def _classify(payload: WebSocketMessage) -> ConnectEvent | None:
    content_type = payload.content_type or ""
    role = payload.participant_role or ""
    name = payload.display_name or ""

    if "participant.joined" in content_type:
        return ParticipantJoined(
            participant_id=payload.participant_id or "", participant_role=role, display_name=name,
        )
    if "participant.left" in content_type:
        return ParticipantLeft(
            participant_id=payload.participant_id or "", participant_role=role, display_name=name,
        )
    if "typing" in content_type:
        return TypingIndicator(participant_role=role, display_name=name)
    if "chat.ended" in content_type:
        return ChatEnded()
    if payload.type == "MESSAGE" or content_type in ("text/plain", "text/markdown"):
        return MessageReceived(
            id=payload.id or "",
            content=payload.content or "",
            content_type=content_type or "text/plain",
            participant_role=role,
            display_name=name,
            timestamp=payload.absolute_time or "",
        )
    logger.debug("Ignoring unclassified chat payload: type=%s contentType=%s", payload.type, content_type)
    return None


def parse_frame(raw: str) -> ConnectEvent | None:
    """Turn one WebSocket text frame into an event, or ``None`` to drop it.

    Only ``aws/chat`` frames carry events; their ``content`` is a JSON
    string holding the participant message.  Acknowledgements, unknown
    topics and malformed frames are logged and dropped.
    """
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Dropping non-JSON WebSocket frame: %.80s", raw)
        return None
    if not isinstance(envelope, dict):
        logger.warning("Dropping WebSocket frame without an envelope: %.80s", raw)
        return None

    topic = envelope.get("topic")
    if topic in _ACK_TOPICS:
        logger.debug("Acknowledgement on %s", topic)
        return None
    if topic != CHAT_TOPIC:
        logger.debug("Dropping frame on unknown topic %r", topic)
        return None

    content = envelope.get("content")
    try:
        if isinstance(content, str):
            payload = WebSocketMessage.model_validate_json(content)
        else:
            payload = WebSocketMessage.model_validate(content)
    except ValidationError:
        logger.warning("Dropping malformed %s payload: %.80s", CHAT_TOPIC, content)
        return None
    return _classify(payload)


def format_transcript(context: HandoverContext) -> str:
    """Render the virtual-agent conversation as one message for the human agent."""
    lines = [
        "--- Prior conversation with Virtual Agent ---",
        f"Customer: {context.customer_name}",
        f"Intent: {context.intent}",
    ]
    if context.summary.strip():
        lines.append(f"Summary: {context.summary}")
    lines.append("")
    for entry in context.transcript:
        speaker = "Customer" if entry.role == "customer" else "Virtual Agent"
        lines.append(f"[{speaker}]: {entry.content}")
    lines.append("")
    lines.append("--- Live agent conversation begins ---")
    return "\n".join(lines)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class ConnectChatClient:
    """One customer's live-agent session.

    ``http_client`` and ``ws_connect`` are injectable so tests can run the
    whole handover against ``httpx.MockTransport`` and a fake socket.
    """

    def __init__(
        self,
        config: ConnectChatConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        ws_connect: Callable[[str], Any] | None = None,
    ) -> None:
        self._config = config or ConnectChatConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self._config.connection_timeout_seconds,
        )
        self._ws_connect = ws_connect or connect
        self._region = self._config.region

        self._state = ConnectionState.DISCONNECTED
        self._session: ChatSession | None = None
        self._ws = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._listeners: list[EventListener] = []
        self._state_listeners: list[StateListener] = []

    # ── Observers ────────────────────────────────────────────────────

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> ChatSession | None:
        return self._session

    def is_connected(self) -> bool:
        return self._ws is not None and self._state in (
            ConnectionState.CONNECTED,
            ConnectionState.WAITING_FOR_AGENT,
            ConnectionState.AGENT_CONNECTED,
        )

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.info("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection state listener failed")

    def _emit(self, event: ConnectEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Connect event listener failed on %s", event.type)

    # ── HTTP helpers ─────────────────────────────────────────────────

    async def _call(
        self,
        path: str,
        body: dict[str, Any],
        *,
        token: str,
        retry: bool = False,
    ) -> dict[str, Any]:
        """POST to the participant API.  Only idempotent calls set ``retry``."""
        url = self._config.endpoint_for(self._region) + path
        operation = f"POST {path}"
        attempts = MAX_RETRIES if retry else 1
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                response = await self._client.post(
                    url,
                    json=body,
                    headers={"X-Amz-Bearer": token, "Content-Type": "application/json"},
                )
                if response.status_code >= 400:
                    raise ConnectChatError(
                        f"{operation} failed with {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(_PARTICIPANT_SERVICE, operation, latency_ms=_elapsed_ms(started))
                return response.json() if response.content else {}

            except httpx.TransportError as exc:
                last_error = exc
                metrics.record_failure(
                    _PARTICIPANT_SERVICE, operation, error_type=type(exc).__name__,
                    latency_ms=_elapsed_ms(started),
                )
                logger.warning(
                    "%s attempt %d/%d failed (%s)", operation, attempt, attempts, type(exc).__name__,
                )
            except ConnectChatError as exc:
                metrics.record_failure(
                    _PARTICIPANT_SERVICE, operation, error_type=f"http_{exc.status_code}",
                    latency_ms=_elapsed_ms(started),
                )
                if not (retry and exc.status_code and exc.status_code >= 500):
                    raise
                last_error = exc
                logger.warning("%s server error on attempt %d/%d", operation, attempt, attempts)
            except ValueError as exc:
                raise ConnectChatError(f"{operation} returned invalid JSON") from exc

            if attempt < attempts:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise ConnectChatError(
            f"{operation} failed after {attempts} attempt(s): {last_error}"
        ) from last_error

    @staticmethod
    def _parse(model: type[BaseModel], data: Any, what: str):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise ConnectChatError(f"Unexpected {what} response: {exc}") from exc

    def _require_connection_token(self) -> str:
        if self._session is None or not self._session.connection_token:
            raise NotConnectedError("Not connected to a chat session")
        return self._session.connection_token

    # ── Handover ─────────────────────────────────────────────────────

    async def _start_chat(self, auth_url: str, context: HandoverContext) -> StartChatResult:
        attributes = {
            "customerId": context.customer_id,
            "intent": context.intent,
            "summary": context.summary,
            "transcriptLength": str(len(context.transcript)),
            **context.metadata,
        }
        body = {
            "ParticipantDetails": {"DisplayName": context.customer_name},
            "Attributes": attributes,
        }
        started = time.perf_counter()
        try:
            response = await self._client.post(auth_url, json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_failure(
                _AUTH_SERVICE, "POST startChat", error_type=type(exc).__name__,
                latency_ms=_elapsed_ms(started),
            )
            raise ConnectChatError(f"Start chat request failed: {exc}") from exc
        metrics.record_success(_AUTH_SERVICE, "POST startChat", latency_ms=_elapsed_ms(started))

        result = (payload.get("data") or {}).get("startChatResult") if isinstance(payload, dict) else None
        return self._parse(StartChatResult, result, "start chat")

    async def start_handover(self, auth_url: str, context: HandoverContext) -> ChatSession:
        """Start a contact, connect to it and hand over the prior transcript.

        Raises:
            ConnectChatError: ``"Handover failed"``, chained to the cause.
        """
        self._set_state(ConnectionState.CONNECTING)
        try:
            started = await self._start_chat(auth_url, context)
            logger.info("Started contact %s", started.contact_id)
            session = await self._open(started.participant_token, started.contact_id)
            if context.transcript:
                await self.send_message(format_transcript(context))
        except Exception as exc:
            logger.error("Handover failed: %s", exc)
            await self._fail(exc, "Handover failed")
            raise ConnectChatError("Handover failed") from exc
        return session

    async def connect_with_token(
        self,
        participant_token: str,
        region: str | None = None,
        contact_id: str = "",
    ) -> ChatSession:
        """Connect to an already-started contact."""
        if region:
            self._region = region
        self._set_state(ConnectionState.CONNECTING)
        try:
            return await self._open(participant_token, contact_id)
        except Exception as exc:
            logger.error("Connection failed: %s", exc)
            await self._fail(exc, "Connection failed")
            if isinstance(exc, ConnectChatError):
                raise
            raise ConnectChatError(f"Connection failed: {exc}") from exc

    async def _open(self, participant_token: str, contact_id: str) -> ChatSession:
        data = await self._call(
            CONNECTION_PATH,
            {"Type": ["WEBSOCKET", "CONNECTION_CREDENTIALS"]},
            token=participant_token,
        )
        created = self._parse(CreateConnectionResponse, data, "create connection")
        if created.websocket is None or created.connection_credentials is None:
            raise ConnectChatError("Connection response is missing the WebSocket URL or credentials")

        self._session = ChatSession(
            contact_id=contact_id,
            participant_token=participant_token,
            connection_token=created.connection_credentials.connection_token,
            websocket_url=created.websocket.url,
        )

        async with asyncio.timeout(self._config.connection_timeout_seconds):
            ws = await self._ws_connect(created.websocket.url)
        self._ws = ws
        self._set_state(ConnectionState.CONNECTED)
        await ws.send(json.dumps(SUBSCRIBE_FRAME))

        self._reader_task = asyncio.create_task(self._read_frames(ws), name="connect-reader")
        self._heartbeat_task = asyncio.create_task(self._heartbeat(ws), name="connect-heartbeat")
        self._set_state(ConnectionState.WAITING_FOR_AGENT)
        self._emit(Connected())
        return self._session

    async def _fail(self, exc: Exception, message: str) -> None:
        await self._release()
        self._set_state(ConnectionState.ERROR)
        self._emit(ErrorEvent(message=f"{message}: {exc}", cause=exc))

    # ── Background tasks ─────────────────────────────────────────────

    async def _read_frames(self, ws) -> None:
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                event = parse_frame(raw)
                if event is None:
                    continue
                self._dispatch_inbound(event)
                if isinstance(event, ChatEnded):
                    break
        except ConnectionClosed as exc:
            logger.info("WebSocket closed: %s", exc)
        except Exception as exc:
            logger.exception("WebSocket reader failed")
            self._emit(ErrorEvent(message=f"Connection error: {exc}", cause=exc))

        if self._ws is ws:
            await self._closed_by_remote(ws)

    async def _closed_by_remote(self, ws) -> None:
        """Tear down after the contact ended or the socket dropped.

        The connection token is dead from here on, so the session goes with
        the socket and a later :meth:`disconnect` is a no-op.
        """
        self._ws = None
        self._session = None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._heartbeat_task = self._reader_task = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._emit(Disconnected())
        try:
            await ws.close()
        except Exception:
            logger.warning("WebSocket close failed", exc_info=True)

    def _dispatch_inbound(self, event: ConnectEvent) -> None:
        if isinstance(event, ParticipantJoined) and event.participant_role == AGENT_ROLE:
            self._set_state(ConnectionState.AGENT_CONNECTED)
        self._emit(event)

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval_seconds)
            if self._ws is not ws:
                return
            try:
                await ws.send(json.dumps(HEARTBEAT_FRAME))
            except Exception:
                logger.warning("Heartbeat send failed", exc_info=True)

    @staticmethod
    async def _cancel_task(task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _release(self) -> None:
        """Stop background tasks and close the socket without emitting events."""
        await self._cancel_task(self._heartbeat_task)
        await self._cancel_task(self._reader_task)
        self._heartbeat_task = self._reader_task = None
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.warning("WebSocket close failed", exc_info=True)
        self._session = None

    # ── Participant operations ───────────────────────────────────────

    async def send_message(self, content: str, content_type: str = "text/plain") -> SendMessageResponse:
        token = self._require_connection_token()
        data = await self._call(
            MESSAGE_PATH,
            {"ConnectionToken": token, "Content": content, "ContentType": content_type},
            token=token,
        )
        return self._parse(SendMessageResponse, data, "send message")

    async def send_typing_indicator(self) -> None:
        token = self._require_connection_token()
        await self._call(EVENT_PATH, {"ContentType": TYPING_CONTENT_TYPE}, token=token)

    async def get_transcript(self, max_results: int = 100) -> list[TranscriptItem]:
        """Fetch the contact's transcript, oldest first.  Retried on 5xx and timeouts."""
        token = self._require_connection_token()
        data = await self._call(
            TRANSCRIPT_PATH,
            {"MaxResults": max_results, "SortOrder": "ASCENDING"},
            token=token,
            retry=True,
        )
        return self._parse(GetTranscriptResponse, data, "transcript").transcript

    async def disconnect(self) -> None:
        """Leave the contact.  Every step is best-effort and runs regardless of the others."""
        if self._ws is None and self._session is None and self._state == ConnectionState.DISCONNECTED:
            return
        await self._cancel_task(self._heartbeat_task)
        await self._cancel_task(self._reader_task)
        self._heartbeat_task = self._reader_task = None

        session = self._session
        if session is not None and session.connection_token:
            try:
                await self._call(DISCONNECT_PATH, {}, token=session.connection_token)
            except ConnectChatError as exc:
                logger.warning("Participant disconnect call failed: %s", exc)

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.warning("WebSocket close failed", exc_info=True)

        self._session = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._emit(Disconnected())

    async def aclose(self) -> None:
        await self.disconnect()
        if self._owns_client:
            await self._client.aclose()
