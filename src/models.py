"""Domain types shared by the store, the clients and the orchestrator.

Everything here is an immutable pydantic model: state snapshots are
replaced, never mutated, so a snapshot handed to a subscriber can be read
safely while the store keeps moving.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ParticipantRole(str, Enum):
    """Who authored a message in the customer-facing transcript."""

    CUSTOMER = "CUSTOMER"
    VIRTUAL_AGENT = "VIRTUAL_AGENT"
    HUMAN_AGENT = "HUMAN_AGENT"
    SYSTEM = "SYSTEM"


class ChatMode(str, Enum):
    """Who the customer is currently talking to."""

    VIRTUAL_AGENT = "VIRTUAL_AGENT"
    CONNECTING_TO_AGENT = "CONNECTING_TO_AGENT"
    HUMAN_AGENT = "HUMAN_AGENT"
    ENDED = "ENDED"


class ConnectionState(str, Enum):
    """Lifecycle of the live contact-center connection."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    WAITING_FOR_AGENT = "WAITING_FOR_AGENT"
    AGENT_CONNECTED = "AGENT_CONNECTED"
    ERROR = "ERROR"


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    role: ParticipantRole


class Message(BaseModel):
    """A message in the customer-facing transcript.

    ``id`` and ``time_ms`` are assigned by whoever creates the message, never
    by the reducer, so replaying the same actions yields the same state.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    user: User
    text: str
    time_ms: int


class ConversationMessage(BaseModel):
    """A provider-facing message (the LLM's view of the conversation)."""

    model_config = ConfigDict(frozen=True)

    role: str
    content: str
    timestamp: int


ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

VIRTUAL_AGENT_USER = User(name="Virtual Assistant", role=ParticipantRole.VIRTUAL_AGENT)
SYSTEM_USER = User(name="System", role=ParticipantRole.SYSTEM)


class ChatSession(BaseModel):
    """Credentials and endpoint of a live contact-center session.

    ``connection_token`` stays ``None`` until the participant connection has
    been created and the WebSocket URL is known.
    """

    model_config = ConfigDict(frozen=True)

    contact_id: str = ""
    participant_token: str
    connection_token: str | None = None
    websocket_url: str | None = None
