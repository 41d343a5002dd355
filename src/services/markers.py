"""In-band control markers embedded in virtual-agent text.

The model is instructed (see ``src/prompts.py``) to signal escalation with
``[ESCALATE: reason]`` and to offer quick replies with
``[QUICK_REPLIES: a | b | c]``.  These markers must never reach the
customer, even when a marker arrives split across several stream deltas.

Known limitation: there is no escaping scheme, so literal text that happens
to look like ``[ESCALATE: ...]`` is treated as a marker.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

ESCALATE_PATTERN = re.compile(r"\[ESCALATE:\s*([^\]]+)\]")
QUICK_REPLIES_PATTERN = re.compile(r"\[QUICK_REPLIES:\s*([^\]]+)\]")
_ANY_MARKER = re.compile(r"\[(?:ESCALATE|QUICK_REPLIES):[^\]]*\]")
_MARKER_PREFIXES = ("[ESCALATE:", "[QUICK_REPLIES:")

MAX_QUICK_REPLY_LENGTH = 49


def strip_markers(text: str) -> str:
    """Remove every complete marker from *text* and trim the result."""
    return _ANY_MARKER.sub("", text).strip()


def parse_quick_replies(raw: str) -> list[str]:
    """Split a pipe-delimited option list, dropping empty or over-long options."""
    options = (option.strip() for option in raw.split("|"))
    return [option for option in options if 0 < len(option) <= MAX_QUICK_REPLY_LENGTH]


def _could_become_marker(fragment: str) -> bool:
    """True if *fragment* (starting with ``[``) may still turn into a marker."""
    for prefix in _MARKER_PREFIXES:
        if prefix.startswith(fragment):
            return True
        if fragment.startswith(prefix) and "]" not in fragment:
            return True
    return False


class MarkerScanner:
    """Incrementally filters markers out of a delta stream.

    ``feed()`` returns the part of each delta that is safe to show right away.
    Text that could be the beginning of a marker is held back until it either
    completes (and is swallowed) or stops looking like one.  ``finish()``
    releases whatever is still held once the stream is over.
    """

    def __init__(self) -> None:
        self._raw = ""
        self._pending = ""
        self.should_escalate = False
        self.escalation_reason: str | None = None
        self.suggested_replies: list[str] = []

    @property
    def raw_text(self) -> str:
        return self._raw

    @property
    def display_text(self) -> str:
        return strip_markers(self._raw)

    def feed(self, delta: str) -> str:
        self._raw += delta
        self._pending += delta
        visible = self._drain()
        self._scan()
        return visible

    def finish(self) -> str:
        tail, self._pending = self._pending, ""
        return tail

    def _drain(self) -> str:
        out: list[str] = []
        buf = self._pending
        while buf:
            start = buf.find("[")
            if start < 0:
                out.append(buf)
                buf = ""
                break
            out.append(buf[:start])
            buf = buf[start:]
            match = _ANY_MARKER.match(buf)
            if match:
                buf = buf[match.end():]
                continue
            if _could_become_marker(buf):
                break
            out.append("[")
            buf = buf[1:]
        self._pending = buf
        return "".join(out)

    def _scan(self) -> None:
        if not self.should_escalate:
            match = ESCALATE_PATTERN.search(self._raw)
            if match:
                self.should_escalate = True
                self.escalation_reason = match.group(1).strip() or None
                logger.info("Escalation marker detected: %s", self.escalation_reason)
        match = QUICK_REPLIES_PATTERN.search(self._raw)
        if match:
            self.suggested_replies = parse_quick_replies(match.group(1))
