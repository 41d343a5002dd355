"""Minimal server-sent-events reader for the AI proxy's chat stream.

The proxy writes one JSON object per event as ``data: <json>\\n\\n`` and ends
the stream with ``data: [DONE]``.  Only ``data:`` lines carry payload; blank
separators, comments (``:``) and other fields are ignored.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator

DONE_SENTINEL = "[DONE]"


def parse_data_line(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or ``None`` for any other line."""
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip()


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield non-empty ``data:`` payloads until the ``[DONE]`` sentinel."""
    async for line in lines:
        payload = parse_data_line(line.rstrip("\r\n"))
        if not payload:
            continue
        if payload == DONE_SENTINEL:
            return
        yield payload
