"""Incremental parser for the provider's streamed completion events.

The relay is a push parser: the caller feeds raw byte chunks as they arrive
and gets back the client-facing events recognised so far. It never blocks
and keeps only the trailing partial line between calls.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List


PREFILL_TOKENS = "function"
DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

PREPARING_STATUS = "Preparing request to Anthropic API..."
SENDING_STATUS = "Sending request to Anthropic API..."
STREAMING_STATUS = "Streaming response from Anthropic API..."
STREAM_ENDED_STATUS = "Stream ended"

# relay states
IDLE = "idle"
REQUEST_SENT = "request_sent"
STREAMING = "streaming"
COMPLETED = "completed"
ERRORED = "errored"
TERMINAL_STATES = {COMPLETED, ERRORED}

logger = logging.getLogger("appstore.stream")


@dataclass(frozen=True)
class StreamLabels:
    starting: str
    message_start: str
    complete: str


GENERATE_LABELS = StreamLabels(
    starting="Starting generation...",
    message_start="Starting message generation...",
    complete="Generation complete!",
)
MODIFY_LABELS = StreamLabels(
    starting="Starting code modification...",
    message_start="Starting code modification...",
    complete="Code modification complete!",
)


@dataclass
class RelayEvent:
    kind: str
    text: str | None = None
    payload: Dict[str, Any] | None = None

    def to_frame(self) -> str:
        """Render as one SSE frame; token and usage are named JSON events, the rest plain data."""
        if self.payload is not None:
            data = json.dumps(self.payload, ensure_ascii=False, separators=(",", ":"))
            return f"event: {self.kind}\ndata: {data}\n\n"
        lines = (self.text or "").split("\n")
        return "".join(f"data: {line}\n" for line in lines) + "\n"


def status_event(text: str) -> RelayEvent:
    return RelayEvent(kind="status", text=text)


def done_event(text: str) -> RelayEvent:
    return RelayEvent(kind="done", text=text)


def error_event(text: str) -> RelayEvent:
    return RelayEvent(kind="error", text=text)


def token_event(text: str) -> RelayEvent:
    return RelayEvent(kind="token", payload={"type": "token", "text": text})


def usage_event(usage: Dict[str, Any]) -> RelayEvent:
    return RelayEvent(
        kind="usage",
        payload={
            "type": "usage",
            "input_tokens": usage.get("input_tokens"),
            "output_tokens": usage.get("output_tokens"),
        },
    )


def _usage_from(event: Dict[str, Any]) -> Dict[str, Any] | None:
    usage = event.get("usage")
    if not isinstance(usage, dict):
        message = event.get("message")
        usage = message.get("usage") if isinstance(message, dict) else None
    if not isinstance(usage, dict):
        return None
    counters = {key: usage[key] for key in ("input_tokens", "output_tokens") if isinstance(usage.get(key), int)}
    return counters or None


@dataclass
class CompletionRelay:
    labels: StreamLabels = GENERATE_LABELS
    prefill: str = PREFILL_TOKENS
    state: str = IDLE
    buffer: str = ""
    first_token_seen: bool = False
    last_usage: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def request_sent(self) -> None:
        if not self.terminal:
            self.state = REQUEST_SENT

    def feed(self, chunk: bytes | str) -> List[RelayEvent]:
        if self.terminal:
            return []
        self.state = STREAMING
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self.buffer += chunk
        events: List[RelayEvent] = []
        while not self.terminal:
            newline = self.buffer.find("\n")
            if newline < 0:
                break
            line = self.buffer[:newline].strip()
            self.buffer = self.buffer[newline + 1 :]
            events.extend(self._handle_line(line))
        if self.terminal:
            self.buffer = ""
        return events

    def finish(self) -> List[RelayEvent]:
        """Byte stream closed; a non-terminal relay ends softly."""
        if self.terminal:
            return []
        tail = self._decoder.decode(b"", final=True)
        events = self.feed(tail + "\n") if (self.buffer or tail).strip() else []
        if self.terminal:
            return events
        self.state = COMPLETED
        return events + [status_event(STREAM_ENDED_STATUS)]

    def fail(self, message: str) -> List[RelayEvent]:
        if self.terminal:
            return []
        self.state = ERRORED
        self.buffer = ""
        return [error_event(message)]

    def _handle_line(self, line: str) -> List[RelayEvent]:
        if not line or not line.startswith(DATA_PREFIX):
            return []
        payload = line[len(DATA_PREFIX) :]
        if payload == DONE_SENTINEL:
            self.state = COMPLETED
            return [done_event(self.labels.complete)]
        try:
            event = json.loads(payload)
        except ValueError:
            logger.debug("stream_event_unparsed data=%s", payload[:200])
            return []
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            logger.debug("stream_event_untyped data=%s", payload[:200])
            return []
        event_type = event["type"]
        if event_type == "message_start":
            self._remember_usage(event)
            return [status_event(self.labels.message_start)]
        if event_type == "content_block_delta":
            delta = event.get("delta")
            text = delta.get("text") if isinstance(delta, dict) else None
            if not isinstance(text, str):
                return []
            if not self.first_token_seen:
                text = f"{self.prefill}{text}"
                self.first_token_seen = True
            return [token_event(text)]
        if event_type == "message_stop":
            self.state = COMPLETED
            events = [usage_event(self.last_usage)] if self.last_usage else []
            return events + [done_event(self.labels.complete)]
        self._remember_usage(event)
        return []

    def _remember_usage(self, event: Dict[str, Any]) -> None:
        usage = _usage_from(event)
        if usage:
            self.last_usage.update(usage)
