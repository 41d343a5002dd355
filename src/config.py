"""Centralized configuration for the Connect handover chat client.

Values are read once from the environment (or a local ``.env`` file) into
module-level constants.  Components never read these globals directly at
call time: they receive a frozen :class:`AIAgentConfig` or
:class:`ConnectChatConfig` whose defaults come from the constants below, so
an embedding application can build its own config objects per session.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()

logger = logging.getLogger(__name__)


def require_env(name: str) -> str:
    """Return a required config value from the environment or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    raise OSError(
        f"Missing required configuration: {name}. Set it in the environment or in .env."
    )


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


# ── AI proxy ────────────────────────────────────────────────────────
AI_PROXY_BASE_URL: str = os.getenv("AI_PROXY_BASE_URL", "http://localhost:3000")
AI_PRIMARY_PROVIDER: str = os.getenv("AI_PRIMARY_PROVIDER", "claude")
AI_FALLBACK_PROVIDER: str = os.getenv("AI_FALLBACK_PROVIDER", "openai")
AI_MAX_TOKENS: int = int(_env_float("AI_MAX_TOKENS", 1024))
AI_TEMPERATURE: float = _env_float("AI_TEMPERATURE", 0.7)
AI_REQUEST_TIMEOUT_SECONDS: float = _env_float("AI_REQUEST_TIMEOUT_SECONDS", 60.0)

# ── Amazon Connect ──────────────────────────────────────────────────
CONNECT_AUTH_API_URL: str = os.getenv("CONNECT_AUTH_API_URL", "")
CONNECT_REGION: str = os.getenv("CONNECT_REGION", "us-east-1")
HEARTBEAT_INTERVAL_SECONDS: float = _env_float("HEARTBEAT_INTERVAL_SECONDS", 30.0)
CONNECTION_TIMEOUT_SECONDS: float = _env_float("CONNECTION_TIMEOUT_SECONDS", 10.0)

# ── Orchestration ───────────────────────────────────────────────────
AGENT_TYPING_TIMEOUT_SECONDS: float = _env_float("AGENT_TYPING_TIMEOUT_SECONDS", 3.0)
CUSTOMER_ID: str = os.getenv("CUSTOMER_ID", "anonymous-customer")


class AIAgentConfig(BaseModel):
    """Per-session settings for the AI streaming client."""

    model_config = ConfigDict(frozen=True)

    proxy_base_url: str = AI_PROXY_BASE_URL
    primary_provider: str = AI_PRIMARY_PROVIDER
    fallback_provider: str = AI_FALLBACK_PROVIDER
    max_tokens: int = Field(default=AI_MAX_TOKENS, gt=0)
    temperature: float = Field(default=AI_TEMPERATURE, ge=0.0, le=2.0)
    system_prompt: str | None = None
    request_timeout_seconds: float = AI_REQUEST_TIMEOUT_SECONDS


class ConnectChatConfig(BaseModel):
    """Per-session settings for the Amazon Connect participant client."""

    model_config = ConfigDict(frozen=True)

    region: str = CONNECT_REGION
    heartbeat_interval_seconds: float = Field(default=HEARTBEAT_INTERVAL_SECONDS, gt=0)
    connection_timeout_seconds: float = CONNECTION_TIMEOUT_SECONDS
    participant_endpoint: str = "https://participant.connect.{region}.amazonaws.com"

    def endpoint_for(self, region: str) -> str:
        return self.participant_endpoint.format(region=region)
