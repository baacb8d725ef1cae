"""Frame decoder for the line-oriented chat stream.

Every complete line of the response body is ``<tag>:<json-payload>``:

    0   text delta (JSON string)
    g   reasoning delta (JSON string)
    d   discarded
    2   data batch (array of typed frames, a bare frame, or {"data": [...]})
    3   error (a JSON string aborts the stream)

A trailing partial line is buffered until its newline arrives (or the body
ends).  Malformed payloads are skipped line by line since the peer may
truncate a frame; only a missing body or a ``3:`` string error is fatal.
"""

import asyncio
import codecs
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

from .items import ConversationItem, assistant_message, now_iso, parse_item
from .logger import get_logger, truncate

_log = get_logger("stream")


class StreamError(RuntimeError):
    """Terminal stream failure: missing body or an explicit error frame."""


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ConversationCreated:
    conversation_id: str


@dataclass
class DataBatch:
    items: List[ConversationItem] = field(default_factory=list)
    usage: Optional[Dict[str, int]] = None


Frame = Union[TextDelta, ReasoningDelta, ConversationCreated, DataBatch]


def _frames_of(raw: Any) -> List[Any]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict) and isinstance(raw.get("data"), list):
        return raw["data"]
    return [raw]


def normalize_data_frames(raw: Any) -> Tuple[Optional[str], List[ConversationItem]]:
    """Pull the conversation id and response items out of one ``2:`` payload."""
    conversation_id = None
    items: List[ConversationItem] = []
    for frame in _frames_of(raw):
        if not isinstance(frame, dict):
            continue
        kind = frame.get("type")
        if kind == "conversation-created":
            if isinstance(frame.get("conversationId"), str):
                conversation_id = frame["conversationId"]
        elif kind == "response_items" and isinstance(frame.get("items"), list):
            items.extend(parse_item(i) for i in frame["items"])
        elif kind == "response_item" and frame.get("item"):
            items.append(parse_item(frame["item"]))
        elif kind == "assistant-message" and isinstance(frame.get("content"), str):
            item = assistant_message(frame["content"], item_id=f"assistant-{now_iso()}")
            if isinstance(frame.get("createdAt"), str):
                item.created_at = frame["createdAt"]
            items.append(item)
    return conversation_id, items


def _token_count(usage: Dict[str, Any], camel: str, snake: str) -> Optional[int]:
    for key in (camel, snake):
        value = usage.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def extract_usage(raw: Any) -> Optional[Dict[str, int]]:
    """Normalize the first ``usage`` frame to snake_case token counts.

    Accepts ``promptTokens``/``prompt_tokens`` (and the completion/total
    equivalents).  ``total_tokens`` is derived when the peer omits it.
    """
    for frame in _frames_of(raw):
        if not isinstance(frame, dict) or frame.get("type") != "usage":
            continue
        usage = frame.get("usage")
        if not isinstance(usage, dict):
            continue
        out: Dict[str, int] = {}
        for camel, snake in (
            ("promptTokens", "prompt_tokens"),
            ("completionTokens", "completion_tokens"),
            ("totalTokens", "total_tokens"),
        ):
            value = _token_count(usage, camel, snake)
            if value is not None:
                out[snake] = value
        if "total_tokens" not in out and ("prompt_tokens" in out or "completion_tokens" in out):
            out["total_tokens"] = out.get("prompt_tokens", 0) + out.get("completion_tokens", 0)
        return out
    return None


def _string_payload(payload: str) -> Optional[str]:
    try:
        value = json.loads(payload)
    except json.JSONDecodeError:
        _log.debug("skipping malformed delta: %s", truncate(payload))
        return None
    return value if isinstance(value, str) else None


def decode_line(line: str) -> List[Frame]:
    """Decode one complete protocol line into zero or more frames."""
    if len(line) < 2 or line[1] != ":":
        return []
    tag, payload = line[0], line[2:].strip()
    if not payload or tag == "d":
        return []

    if tag == "0":
        text = _string_payload(payload)
        return [TextDelta(text)] if text is not None else []

    if tag == "g":
        text = _string_payload(payload)
        return [ReasoningDelta(text)] if text is not None else []

    if tag == "3":
        try:
            message = json.loads(payload)
        except json.JSONDecodeError:
            _log.debug("skipping malformed error frame: %s", truncate(payload))
            return []
        if isinstance(message, str):
            raise StreamError(message)
        return []

    if tag == "2":
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError:
            _log.debug("skipping malformed data frame: %s", truncate(payload))
            return []
        frames: List[Frame] = []
        conversation_id, items = normalize_data_frames(raw)
        usage = extract_usage(raw)
        if conversation_id:
            frames.append(ConversationCreated(conversation_id))
        if items or usage:
            frames.append(DataBatch(items=items, usage=usage))
        return frames

    return []


class FrameDecoder:
    """Incremental byte → line splitter.

    Bytes are decoded with an incremental UTF-8 decoder so a multi-byte
    character split across chunks is reassembled, and only complete lines
    are returned from feed().
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._remainder = ""

    def feed(self, chunk: bytes) -> List[str]:
        text = self._remainder + self._decoder.decode(chunk)
        lines = text.split("\n")
        self._remainder = lines.pop()
        return [line.rstrip("\r") for line in lines if line.strip()]

    def flush(self) -> List[str]:
        """Return the unterminated final line once the body has ended."""
        text = self._remainder + self._decoder.decode(b"", final=True)
        self._remainder = ""
        text = text.rstrip("\r")
        return [text] if text.strip() else []


async def iter_frames(
    response,
    should_stop: Optional[Callable[[], bool]] = None,
    on_stop: Optional[Callable[[], None]] = None,
) -> AsyncIterator[Frame]:
    """Lazily decode an httpx streaming response into frames.

    ``should_stop`` is polled before every decoded line (one network chunk
    can carry many lines).  Once it returns True the response is closed,
    ``on_stop`` fires and no further frames are produced.
    """
    if response is None or getattr(response, "stream", None) is None:
        raise StreamError("Missing response body")

    decoder = FrameDecoder()
    stopped = False
    lines_seen = 0

    async def _stop() -> None:
        try:
            await response.aclose()
        except Exception as e:  # closing an already-failed stream
            _log.debug("error while cancelling stream: %s", e)
        if on_stop:
            on_stop()

    chunks = response.aiter_bytes()
    try:
        async for chunk in chunks:
            for line in decoder.feed(chunk):
                if should_stop and should_stop():
                    stopped = True
                    break
                lines_seen += 1
                for frame in decode_line(line):
                    yield frame
            if stopped:
                break
        if not stopped:
            for line in decoder.flush():
                if should_stop and should_stop():
                    stopped = True
                    break
                lines_seen += 1
                for frame in decode_line(line):
                    yield frame
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()

    if stopped:
        _log.info("stream cancelled after %d lines", lines_seen)
        await _stop()
    else:
        _log.debug("stream finished: %d lines", lines_seen)


@dataclass
class StreamCallbacks:
    """Hooks fired while consuming a stream; ``on_items`` may be async."""
    on_text_delta: Optional[Callable[[str], None]] = None
    on_reasoning_delta: Optional[Callable[[str], None]] = None
    on_conversation_id: Optional[Callable[[str], None]] = None
    on_items: Optional[Callable[[List[ConversationItem]], Any]] = None
    on_usage: Optional[Callable[[Dict[str, int]], None]] = None
    should_stop: Optional[Callable[[], bool]] = None
    on_stop: Optional[Callable[[], None]] = None


async def consume_stream(response, callbacks: StreamCallbacks) -> None:
    """Drive iter_frames() and dispatch each frame to its callback."""
    async for frame in iter_frames(response, callbacks.should_stop, callbacks.on_stop):
        if isinstance(frame, TextDelta):
            if callbacks.on_text_delta:
                callbacks.on_text_delta(frame.text)
        elif isinstance(frame, ReasoningDelta):
            if callbacks.on_reasoning_delta:
                callbacks.on_reasoning_delta(frame.text)
        elif isinstance(frame, ConversationCreated):
            if callbacks.on_conversation_id:
                callbacks.on_conversation_id(frame.conversation_id)
        elif isinstance(frame, DataBatch):
            if frame.usage and callbacks.on_usage:
                callbacks.on_usage(frame.usage)
            if frame.items and callbacks.on_items:
                result = callbacks.on_items(frame.items)
                if asyncio.iscoroutine(result):
                    await result
