"""Incremental NDJSON parsing and text aggregation for stream_query responses.

The upstream body is one JSON object per line, but bytes arrive in arbitrary
chunks. ``LineChunkParser`` holds the partial trailing line between feeds;
``StreamAggregator`` reduces the parsed chunks to a single answer.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, Iterator

from ..types import (
    AggregationResult,
    AggregationState,
    ContentPart,
    DEFAULT_FALLBACK_TEXT,
    MalformedChunkError,
    ResponseChunk,
    TERMINAL_FINISH_REASON,
)

logger = logging.getLogger(__name__)


def parse_chunk(line: str) -> ResponseChunk:
    """Parse one stream line. Raises MalformedChunkError on bad input."""
    try:
        data = json.loads(line)
    except ValueError as e:
        raise MalformedChunkError("Unparseable stream line", details=line[:100]) from e
    if not isinstance(data, dict):
        raise MalformedChunkError("Stream line is not a JSON object", details=line[:100])

    parts: list[ContentPart] | None = None
    content = data.get("content")
    if isinstance(content, dict) and isinstance(content.get("parts"), list):
        parts = []
        for part in content["parts"]:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            parts.append(ContentPart(
                text=text if isinstance(text, str) else "",
                thought=bool(part.get("thought")),
            ))

    finish_reason = data.get("finish_reason")
    return ResponseChunk(
        parts=parts,
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        raw=data,
    )


class LineChunkParser:
    """Feed raw bytes, get back the chunks for every completed line.

    The trailing segment after the last newline stays buffered and is never
    parsed until its newline arrives. Malformed lines are logged and skipped.
    """

    def __init__(self) -> None:
        self.buffer = ""
        self.malformed = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def lines(self, data: bytes) -> Iterator[str]:
        """Yield each complete, non-blank line made available by *data*."""
        self.buffer += self._decoder.decode(data)
        *complete, self.buffer = self.buffer.split("\n")
        for line in complete:
            if line.strip():
                yield line

    def feed(self, data: bytes) -> Iterator[ResponseChunk]:
        for line in self.lines(data):
            try:
                yield parse_chunk(line)
            except MalformedChunkError:
                self.malformed += 1
                logger.warning("Failed to parse chunk: %s", line[:100])


class StreamAggregator:
    """Reduces a stream_query body to one text answer.

    Text from non-thought parts is concatenated in arrival order. The stream
    is complete once a chunk carries ``finish_reason == "STOP"`` and some text
    has accumulated; consumption stops right there. If the body ends first,
    whatever text accumulated is the answer, or ``fallback_text`` if none.
    """

    def __init__(self, fallback_text: str = DEFAULT_FALLBACK_TEXT) -> None:
        self.fallback_text = fallback_text

    @staticmethod
    def apply(state: AggregationState, chunk: ResponseChunk) -> bool:
        """Fold one chunk into *state*. Returns True once the answer is complete."""
        state.accumulated_text += chunk.visible_text()
        if chunk.finish_reason == TERMINAL_FINISH_REASON and state.accumulated_text:
            state.is_complete = True
        return state.is_complete

    async def aggregate(self, body: AsyncIterable[bytes]) -> AggregationResult:
        parser = LineChunkParser()
        state = AggregationState()
        chunks = 0

        async for raw_chunk in body:
            for chunk in parser.feed(raw_chunk):
                chunks += 1
                logger.debug(
                    "Stream chunk: finish_reason=%s has_text=%s",
                    chunk.finish_reason, bool(chunk.visible_text()),
                )
                if self.apply(state, chunk):
                    break
            if state.is_complete:
                logger.info(
                    "Stream complete, accumulated text length: %d",
                    len(state.accumulated_text),
                )
                break
        else:
            if parser.buffer.strip():
                logger.debug("Discarding unterminated trailing line (%d chars)", len(parser.buffer))

        state.buffer = parser.buffer
        return AggregationResult(
            text=state.accumulated_text or self.fallback_text,
            complete=state.is_complete,
            chunks=chunks,
            malformed=parser.malformed,
        )
