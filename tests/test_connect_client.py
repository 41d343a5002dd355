"""Tests for the Amazon Connect participant client."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from src.config import ConnectChatConfig
from src.models import ConnectionState
from src.services import connect_client as cc
from src.services.connect_client import (
    HEARTBEAT_FRAME,
    SUBSCRIBE_FRAME,
    ConnectChatClient,
    ConnectChatError,
    NotConnectedError,
    format_transcript,
    parse_frame,
)
from src.services.schemas import (
    ChatEnded,
    Connected,
    Disconnected,
    ErrorEvent,
    HandoverContext,
    MessageReceived,
    ParticipantJoined,
    ParticipantLeft,
    TranscriptEntry,
    TypingIndicator,
)

# ── Helpers ──────────────────────────────────────────────────────────

AUTH_URL = "https://auth.example.test/start-chat"


def _chat_frame(**payload) -> str:
    return json.dumps({"topic": "aws/chat", "content": json.dumps(payload)})


def _context(transcript: list[TranscriptEntry] | None = None) -> HandoverContext:
    return HandoverContext(
        customer_id="cust-1",
        customer_name="Pat",
        intent="billing issue",
        summary="Customer disputes a charge.",
        transcript=transcript or [],
        metadata={"aiProvider": "claude", "customerSentiment": "negative"},
    )


class _Backend:
    """Mock auth + participant API; ``overrides`` maps a path to a status code."""

    def __init__(self, **overrides: int) -> None:
        self.requests: list[httpx.Request] = []
        self.overrides = overrides
        self.transcript_failures = 0

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def body(self, path: str) -> dict:
        request = next(r for r in self.requests if r.url.path == path)
        return json.loads(request.content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        key = path.strip("/").replace("/", "_")
        if key in self.overrides:
            return httpx.Response(self.overrides[key], text="failure")
        if request.url.host == "auth.example.test":
            return httpx.Response(
                200,
                json={
                    "data": {
                        "startChatResult": {
                            "ContactId": "contact-1",
                            "ParticipantId": "participant-1",
                            "ParticipantToken": "participant-token",
                        }
                    }
                },
            )
        if path == "/participant/connection":
            return httpx.Response(
                200,
                json={
                    "Websocket": {"Url": "wss://ws.example.test/chat", "ConnectionExpiry": "2030-01-01T00:00:00Z"},
                    "ConnectionCredentials": {"ConnectionToken": "connection-token", "Expiry": "2030-01-01T00:00:00Z"},
                },
            )
        if path == "/participant/message":
            return httpx.Response(200, json={"Id": "msg-1", "AbsoluteTime": "2030-01-01T00:00:00Z"})
        if path == "/participant/transcript":
            if self.transcript_failures:
                self.transcript_failures -= 1
                return httpx.Response(503, text="busy")
            return httpx.Response(
                200,
                json={
                    "Transcript": [
                        {
                            "Id": "t-1",
                            "Content": "Hi",
                            "ContentType": "text/plain",
                            "ParticipantRole": "CUSTOMER",
                            "AbsoluteTime": "2030-01-01T00:00:00Z",
                        }
                    ]
                },
            )
        return httpx.Response(200, json={})


def _client(backend: _Backend, ws_connect, **config) -> ConnectChatClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return ConnectChatClient(ConnectChatConfig(**config), http_client=http, ws_connect=ws_connect)


def _record(client: ConnectChatClient) -> tuple[list, list]:
    events: list = []
    states: list = []
    client.add_listener(events.append)
    client.add_state_listener(states.append)
    return events, states


# ── Tests: frame classification ──────────────────────────────────────


class TestParseFrame:
    def test_agent_message(self):
        event = parse_frame(
            _chat_frame(
                Type="MESSAGE", ContentType="text/plain", Id="m-1", Content="Hello!",
                ParticipantRole="AGENT", DisplayName="Sam", AbsoluteTime="2030-01-01T00:00:00Z",
            )
        )
        assert isinstance(event, MessageReceived)
        assert event.content == "Hello!"
        assert event.participant_role == "AGENT"
        assert event.display_name == "Sam"

    def test_participant_events(self):
        joined = parse_frame(
            _chat_frame(Type="EVENT", ContentType="application/vnd.amazonaws.connect.event.participant.joined",
                        ParticipantRole="AGENT", DisplayName="Sam")
        )
        left = parse_frame(
            _chat_frame(Type="EVENT", ContentType="application/vnd.amazonaws.connect.event.participant.left",
                        ParticipantRole="AGENT", DisplayName="Sam")
        )
        typing = parse_frame(
            _chat_frame(Type="EVENT", ContentType="application/vnd.amazonaws.connect.event.typing",
                        ParticipantRole="AGENT")
        )
        ended = parse_frame(_chat_frame(Type="EVENT", ContentType="application/vnd.amazonaws.connect.event.chat.ended"))

        assert isinstance(joined, ParticipantJoined)
        assert isinstance(left, ParticipantLeft)
        assert isinstance(typing, TypingIndicator)
        assert isinstance(ended, ChatEnded)

    def test_markdown_message_without_type(self):
        event = parse_frame(_chat_frame(ContentType="text/markdown", Content="**hi**"))
        assert isinstance(event, MessageReceived)
        assert event.content_type == "text/markdown"

    def test_acknowledgements_dropped(self):
        assert parse_frame(json.dumps({"topic": "aws/subscribe", "content": {"status": 200}})) is None
        assert parse_frame(json.dumps(HEARTBEAT_FRAME)) is None

    def test_unknown_and_malformed_dropped(self):
        assert parse_frame(json.dumps({"topic": "aws/other", "content": "{}"})) is None
        assert parse_frame("not json") is None
        assert parse_frame(json.dumps(["list"])) is None
        assert parse_frame(json.dumps({"topic": "aws/chat", "content": "{bad"})) is None
        assert parse_frame(_chat_frame(Type="ATTACHMENT", ContentType="application/pdf")) is None


class TestFormatTranscript:
    def test_layout(self):
        text = format_transcript(
            _context(
                [
                    TranscriptEntry(role="customer", content="I was double charged"),
                    TranscriptEntry(role="virtual_agent", content="Let me get someone"),
                ]
            )
        )
        assert text.splitlines() == [
            "--- Prior conversation with Virtual Agent ---",
            "Customer: Pat",
            "Intent: billing issue",
            "Summary: Customer disputes a charge.",
            "",
            "[Customer]: I was double charged",
            "[Virtual Agent]: Let me get someone",
            "",
            "--- Live agent conversation begins ---",
        ]

    def test_blank_summary_omitted(self):
        context = _context().model_copy(update={"summary": "  "})
        assert "Summary:" not in format_transcript(context)


# ── Tests: connecting ────────────────────────────────────────────────


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_with_token(self, fake_ws, ws_connect):
        backend = _Backend()
        client = _client(backend, ws_connect)
        events, states = _record(client)

        session = await client.connect_with_token("participant-token", contact_id="contact-1")

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.WAITING_FOR_AGENT,
        ]
        assert [e.type for e in events] == ["connected"]
        assert session.connection_token == "connection-token"
        assert session.websocket_url == "wss://ws.example.test/chat"
        assert ws_connect.urls == ["wss://ws.example.test/chat"]
        assert fake_ws.sent[0] == SUBSCRIBE_FRAME
        request = backend.requests[0]
        assert request.headers["X-Amz-Bearer"] == "participant-token"
        assert str(request.url) == "https://participant.connect.us-east-1.amazonaws.com/participant/connection"
        assert json.loads(request.content) == {"Type": ["WEBSOCKET", "CONNECTION_CREDENTIALS"]}
        assert client.is_connected()
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_region_override(self, ws_connect):
        backend = _Backend()
        client = _client(backend, ws_connect)
        await client.connect_with_token("participant-token", region="eu-west-2")
        assert backend.requests[0].url.host == "participant.connect.eu-west-2.amazonaws.com"
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_connection_failure_sets_error(self, ws_connect):
        backend = _Backend(participant_connection=403)
        client = _client(backend, ws_connect)
        events, _ = _record(client)

        with pytest.raises(ConnectChatError):
            await client.connect_with_token("participant-token")

        assert client.state == ConnectionState.ERROR
        assert [e.type for e in events] == ["error"]
        assert ws_connect.urls == []


class TestStartHandover:
    @pytest.mark.asyncio
    async def test_handover_sends_attributes_and_transcript(self, fake_ws, ws_connect):
        backend = _Backend()
        client = _client(backend, ws_connect)
        context = _context(
            [
                TranscriptEntry(role="customer", content="I was double charged"),
                TranscriptEntry(role="virtual_agent", content="Let me get someone"),
            ]
        )

        session = await client.start_handover(AUTH_URL, context)

        assert session.contact_id == "contact-1"
        auth_body = json.loads(backend.requests[0].content)
        assert auth_body["ParticipantDetails"] == {"DisplayName": "Pat"}
        assert auth_body["Attributes"] == {
            "customerId": "cust-1",
            "intent": "billing issue",
            "summary": "Customer disputes a charge.",
            "transcriptLength": "2",
            "aiProvider": "claude",
            "customerSentiment": "negative",
        }
        message = backend.body("/participant/message")
        assert message["Content"] == format_transcript(context)
        assert message["ContentType"] == "text/plain"
        sent = next(r for r in backend.requests if r.url.path == "/participant/message")
        assert sent.headers["X-Amz-Bearer"] == "connection-token"
        assert client.state == ConnectionState.WAITING_FOR_AGENT
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_empty_transcript_sends_no_message(self, ws_connect):
        backend = _Backend()
        client = _client(backend, ws_connect)
        await client.start_handover(AUTH_URL, _context())
        assert "/participant/message" not in backend.paths()
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_auth_failure(self, ws_connect):
        backend = _Backend(**{"start-chat": 500})
        client = _client(backend, ws_connect)
        events, _ = _record(client)

        with pytest.raises(ConnectChatError, match="Handover failed") as excinfo:
            await client.start_handover(AUTH_URL, _context())

        assert excinfo.value.__cause__ is not None
        assert client.state == ConnectionState.ERROR
        assert [e.type for e in events] == ["error"]
        assert client.session is None
        assert ws_connect.urls == []

    @pytest.mark.asyncio
    async def test_failure_after_socket_open_releases_it(self, fake_ws, ws_connect):
        backend = _Backend(participant_message=400)
        client = _client(backend, ws_connect)
        events, _ = _record(client)

        with pytest.raises(ConnectChatError, match="Handover failed"):
            await client.start_handover(AUTH_URL, _context([TranscriptEntry(role="customer", content="hi")]))

        assert fake_ws.closed is True
        assert client.state == ConnectionState.ERROR
        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert len(errors) == 1
        assert not any(isinstance(e, Disconnected) for e in events)
        assert client.session is None


# ── Tests: participant operations ────────────────────────────────────


class TestParticipantOperations:
    @pytest.mark.asyncio
    async def test_operations_require_connection(self, ws_connect):
        client = _client(_Backend(), ws_connect)
        with pytest.raises(NotConnectedError):
            await client.send_message("hi")
        with pytest.raises(NotConnectedError):
            await client.send_typing_indicator()
        with pytest.raises(NotConnectedError):
            await client.get_transcript()
        assert client.session is None

    @pytest.mark.asyncio
    async def test_typing_indicator(self, ws_connect):
        backend = _Backend()
        client = _client(backend, ws_connect)
        await client.connect_with_token("participant-token")

        await client.send_typing_indicator()

        assert backend.body("/participant/event") == {
            "ContentType": "application/vnd.amazonaws.connect.event.typing"
        }
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_send_message_not_retried(self, ws_connect):
        backend = _Backend(participant_message=500)
        client = _client(backend, ws_connect)
        await client.connect_with_token("participant-token")

        with pytest.raises(ConnectChatError) as excinfo:
            await client.send_message("hello")

        assert excinfo.value.status_code == 500
        assert backend.paths().count("/participant/message") == 1
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_get_transcript_retries_server_errors(self, ws_connect, monkeypatch):
        monkeypatch.setattr(cc, "INITIAL_BACKOFF_SECONDS", 0)
        backend = _Backend()
        backend.transcript_failures = 1
        client = _client(backend, ws_connect)
        await client.connect_with_token("participant-token")

        transcript = await client.get_transcript(max_results=10)

        assert [item.content for item in transcript] == ["Hi"]
        assert backend.paths().count("/participant/transcript") == 2
        assert backend.body("/participant/transcript") == {"MaxResults": 10, "SortOrder": "ASCENDING"}
        await client.disconnect()


# ── Tests: inbound frames and lifecycle ──────────────────────────────


class TestInbound:
    @pytest.mark.asyncio
    async def test_agent_join_moves_to_agent_connected(self, fake_ws, ws_connect, wait_until):
        client = _client(_Backend(), ws_connect)
        events, _ = _record(client)
        await client.connect_with_token("participant-token")

        fake_ws.push(
            _chat_frame(Type="EVENT", ContentType="application/vnd.amazonaws.connect.event.participant.joined",
                        ParticipantRole="AGENT", DisplayName="Sam")
        )
        await wait_until(lambda: client.state == ConnectionState.AGENT_CONNECTED)

        assert isinstance(events[-1], ParticipantJoined)
        assert events[-1].display_name == "Sam"
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_chat_ended(self, fake_ws, ws_connect, wait_until):
        client = _client(_Backend(), ws_connect)
        events, _ = _record(client)
        await client.connect_with_token("participant-token")

        fake_ws.push(_chat_frame(Type="EVENT", ContentType="application/vnd.amazonaws.connect.event.chat.ended"))
        await wait_until(lambda: any(isinstance(e, ChatEnded) for e in events))

        assert client.state == ConnectionState.DISCONNECTED
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_stream_end_emits_disconnected(self, fake_ws, ws_connect, wait_until):
        client = _client(_Backend(), ws_connect)
        events, _ = _record(client)
        await client.connect_with_token("participant-token")

        fake_ws.end()
        await wait_until(lambda: any(isinstance(e, Disconnected) for e in events))

        assert client.state == ConnectionState.DISCONNECTED
        assert not client.is_connected()

    @pytest.mark.asyncio
    async def test_stream_end_drops_session(self, fake_ws, ws_connect, wait_until):
        backend = _Backend()
        client = _client(backend, ws_connect)
        events, _ = _record(client)
        await client.connect_with_token("participant-token")

        fake_ws.end()
        await wait_until(lambda: any(isinstance(e, Disconnected) for e in events))

        assert client.session is None
        with pytest.raises(NotConnectedError):
            await client.send_message("hello")
        await client.disconnect()

        assert "/participant/message" not in backend.paths()
        assert "/participant/disconnect" not in backend.paths()
        assert sum(isinstance(e, Disconnected) for e in events) == 1

    @pytest.mark.asyncio
    async def test_chat_ended_stops_heartbeat(self, fake_ws, ws_connect, wait_until):
        client = _client(_Backend(), ws_connect, heartbeat_interval_seconds=0.01)
        events, _ = _record(client)
        await client.connect_with_token("participant-token")
        await wait_until(lambda: len(fake_ws.frames("aws/heartbeat")) >= 1)

        fake_ws.push(_chat_frame(Type="EVENT", ContentType="application/vnd.amazonaws.connect.event.chat.ended"))
        await wait_until(lambda: any(isinstance(e, Disconnected) for e in events))
        beats = len(fake_ws.frames("aws/heartbeat"))
        await asyncio.sleep(0.05)

        assert len(fake_ws.frames("aws/heartbeat")) == beats
        assert fake_ws.closed is True
        assert client.session is None
        assert [type(e) for e in events[-2:]] == [ChatEnded, Disconnected]

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_stop_reader(self, fake_ws, ws_connect, wait_until):
        client = _client(_Backend(), ws_connect)

        def _broken(event):
            raise ValueError("listener bug")

        client.add_listener(_broken)
        events, _ = _record(client)
        await client.connect_with_token("participant-token")

        fake_ws.push(_chat_frame(Type="MESSAGE", ContentType="text/plain", Content="one", ParticipantRole="AGENT"))
        fake_ws.push(_chat_frame(Type="MESSAGE", ContentType="text/plain", Content="two", ParticipantRole="AGENT"))
        await wait_until(lambda: len([e for e in events if isinstance(e, MessageReceived)]) == 2)
        await client.disconnect()


class TestHeartbeatAndDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_stops_heartbeat(self, fake_ws, ws_connect, wait_until):
        backend = _Backend()
        client = _client(backend, ws_connect, heartbeat_interval_seconds=0.01)
        events, states = _record(client)
        await client.connect_with_token("participant-token")

        await wait_until(lambda: len(fake_ws.frames("aws/heartbeat")) >= 1)
        await client.disconnect()
        beats = len(fake_ws.frames("aws/heartbeat"))
        await asyncio.sleep(0.05)

        assert len(fake_ws.frames("aws/heartbeat")) == beats
        assert fake_ws.closed is True
        assert "/participant/disconnect" in backend.paths()
        assert client.session is None
        assert states[-1] == ConnectionState.DISCONNECTED
        assert isinstance(events[-1], Disconnected)

    @pytest.mark.asyncio
    async def test_heartbeat_failure_keeps_loop_running(self, fake_ws, ws_connect, wait_until):
        client = _client(_Backend(), ws_connect, heartbeat_interval_seconds=0.01)
        await client.connect_with_token("participant-token")

        fake_ws.fail_sends = True
        await asyncio.sleep(0.03)
        fake_ws.fail_sends = False
        await wait_until(lambda: len(fake_ws.frames("aws/heartbeat")) >= 1)
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_is_best_effort(self, fake_ws, ws_connect):
        backend = _Backend(participant_disconnect=500)
        client = _client(backend, ws_connect)
        events, _ = _record(client)
        await client.connect_with_token("participant-token")

        await client.disconnect()

        assert fake_ws.closed is True
        assert client.state == ConnectionState.DISCONNECTED
        assert isinstance(events[-1], Disconnected)

    @pytest.mark.asyncio
    async def test_connected_event_emitted_once(self, ws_connect):
        client = _client(_Backend(), ws_connect)
        events, _ = _record(client)
        await client.connect_with_token("participant-token")
        assert sum(isinstance(e, Connected) for e in events) == 1
        await client.disconnect()
