"""Tests for the SSE data-line reader."""

from __future__ import annotations

import pytest

from src.services.sse import iter_sse_data, parse_data_line


async def _lines(*lines: str):
    for line in lines:
        yield line


async def _collect(*lines: str) -> list[str]:
    return [payload async for payload in iter_sse_data(_lines(*lines))]


class TestParseDataLine:
    def test_with_and_without_space(self):
        assert parse_data_line('data: {"a":1}') == '{"a":1}'
        assert parse_data_line('data:{"a":1}') == '{"a":1}'

    def test_other_fields_ignored(self):
        assert parse_data_line("event: message") is None
        assert parse_data_line(": keep-alive") is None


class TestIterSseData:
    @pytest.mark.asyncio
    async def test_yields_payloads_and_skips_noise(self):
        payloads = await _collect(
            ": comment",
            'data: {"delta":"a"}',
            "",
            "id: 7",
            'data:{"delta":"b"}\r',
        )
        assert payloads == ['{"delta":"a"}', '{"delta":"b"}']

    @pytest.mark.asyncio
    async def test_stops_at_done_sentinel(self):
        payloads = await _collect('data: {"delta":"a"}', "data: [DONE]", 'data: {"delta":"late"}')
        assert payloads == ['{"delta":"a"}']

    @pytest.mark.asyncio
    async def test_empty_data_lines_skipped(self):
        assert await _collect("data:", "data:   ") == []
