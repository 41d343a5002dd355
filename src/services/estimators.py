"""Local fallbacks for conversation summary and sentiment.

Used when the AI proxy's ``/summarize`` or ``/sentiment`` endpoint is
unreachable.  Both are deterministic keyword/heuristic passes over the
customer's own messages; they never raise.
"""

from __future__ import annotations

from collections.abc import Iterable

from src.models import ROLE_USER, ConversationMessage
from src.services.schemas import SentimentResult

NO_MESSAGES_SUMMARY = "New conversation, no messages exchanged yet."
TOPIC_PREVIEW_CHARS = 50
RECENT_TOPIC_COUNT = 3

NEGATIVE_INDICATORS = (
    "frustrated", "angry", "upset", "terrible", "awful",
    "hate", "horrible", "worst", "unacceptable", "ridiculous",
)
POSITIVE_INDICATORS = (
    "thanks", "thank you", "great", "awesome", "perfect",
    "excellent", "wonderful", "appreciate", "helpful", "good",
)


def _user_messages(messages: Iterable[ConversationMessage]) -> list[ConversationMessage]:
    return [m for m in messages if m.role == ROLE_USER]


def _preview(text: str) -> str:
    if len(text) > TOPIC_PREVIEW_CHARS:
        return text[:TOPIC_PREVIEW_CHARS] + "..."
    return text


def local_summary(messages: Iterable[ConversationMessage]) -> str:
    """Summarize the customer's side of the conversation.

    Reports how many messages the customer sent and previews the last three.
    """
    user_messages = _user_messages(messages)
    if not user_messages:
        return NO_MESSAGES_SUMMARY
    topics = "; ".join(_preview(m.content) for m in user_messages[-RECENT_TOPIC_COUNT:])
    return f"Customer had {len(user_messages)} messages. Recent topics: {topics}"


def local_sentiment(messages: Iterable[ConversationMessage]) -> SentimentResult:
    """Classify customer sentiment by keyword counts.

    More than two negative keywords means the customer is frustrated;
    otherwise the larger of the negative/positive counts wins, and a tie is
    neutral.
    """
    text = " ".join(m.content.lower() for m in _user_messages(messages))
    negative = sum(1 for word in NEGATIVE_INDICATORS if word in text)
    positive = sum(1 for word in POSITIVE_INDICATORS if word in text)

    if negative > 2:
        sentiment, confidence = SentimentResult.FRUSTRATED, 0.8
    elif negative > positive:
        sentiment, confidence = SentimentResult.NEGATIVE, 0.6
    elif positive > negative:
        sentiment, confidence = SentimentResult.POSITIVE, 0.6
    else:
        sentiment, confidence = SentimentResult.NEUTRAL, 0.5

    indicators = [w for w in NEGATIVE_INDICATORS + POSITIVE_INDICATORS if w in text]
    return SentimentResult(sentiment=sentiment, confidence=confidence, indicators=indicators)
