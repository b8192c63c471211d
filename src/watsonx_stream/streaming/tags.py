"""Incremental ``<think>``/``<response>`` tag tracking for streamed content.

Some models emit their reasoning inline, wrapped in XML-like tags, instead
of a separate ``reasoning_content`` field.  ``TagTracker`` classifies each
streamed chunk without waiting for the full text, so tags split across
chunk boundaries (``"<thi"`` + ``"nk>"``) are handled.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


@dataclass(frozen=True)
class ExtractionTags:
    """Tag names used to separate reasoning from the final answer.

    With ``response=None`` everything after the closing think tag is the
    answer.
    """

    think: str = "think"
    response: str | None = None


class TagState(enum.Enum):
    START = "start"  # nothing but whitespace seen yet
    THINKING = "thinking"
    RESPONSE = "response"
    NO_THINKING = "no_thinking"  # output began without a think tag
    UNKNOWN = "unknown"  # between known blocks


def _decode_escapes(text: str) -> str:
    return text.replace("\\u003c", "<").replace("\\u003e", ">")


class TagTracker:
    """Stateful classifier for one stream."""

    def __init__(self, tags: ExtractionTags) -> None:
        self._tags = tags
        self._think_open = f"<{tags.think}>"
        self._think_close = f"</{tags.think}>"
        self._response_open = f"<{tags.response}>" if tags.response else None
        self._response_close = f"</{tags.response}>" if tags.response else None
        self._tag_buffer = ""
        self.state = TagState.START

    def update(self, chunk: str) -> list[tuple[TagState, str]]:
        """Consume *chunk*; return the text outside tags, split by state.

        A partial tag at the end of *chunk* is held back until the next
        call decides whether it really is a tag.
        """
        if not chunk:
            return []

        segments: list[tuple[TagState, str]] = []
        text: list[str] = []

        def flush() -> None:
            if text:
                segments.append((self.state, "".join(text)))
                text.clear()

        for ch in _decode_escapes(chunk):
            if self.state is TagState.NO_THINKING:
                text.append(ch)
                continue

            if not self._tag_buffer:
                if ch == "<":
                    self._tag_buffer = ch
                    continue
                if self.state is TagState.START and not ch.isspace():
                    self.state = TagState.NO_THINKING
                text.append(ch)
                continue

            self._tag_buffer += ch
            if not self._could_be_tag(self._tag_buffer):
                if self.state is TagState.START:
                    self.state = TagState.NO_THINKING
                text.append(self._tag_buffer)
                self._tag_buffer = ""
                continue

            if ch == ">":
                flush()
                self._on_tag(self._tag_buffer)
                self._tag_buffer = ""

        flush()
        return segments

    def finish(self) -> list[tuple[TagState, str]]:
        """Release a partial tag still held back when the stream ends."""
        if not self._tag_buffer:
            return []
        if self.state is TagState.START:
            self.state = TagState.NO_THINKING
        text, self._tag_buffer = self._tag_buffer, ""
        return [(self.state, text)]

    def _candidates(self) -> tuple[str | None, ...]:
        if self.state is TagState.RESPONSE:
            return (self._response_close,)
        if self.state is TagState.THINKING:
            return (self._think_close,)
        return (
            self._think_open,
            self._think_close,
            self._response_open,
            self._response_close,
        )

    def _could_be_tag(self, partial: str) -> bool:
        return any(c is not None and c.startswith(partial) for c in self._candidates())

    def _on_tag(self, tag: str) -> None:
        if tag == self._think_open:
            self.state = TagState.THINKING
        elif tag == self._think_close:
            self.state = TagState.RESPONSE if self._tags.response is None else TagState.UNKNOWN
        elif tag == self._response_open:
            self.state = TagState.RESPONSE
        elif tag == self._response_close:
            self.state = TagState.UNKNOWN
