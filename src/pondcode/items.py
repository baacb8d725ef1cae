"""Conversation items: the typed transcript resent upstream on every turn.

Items arrive from the stream as loose JSON objects.  ``parse_item`` maps
each onto one of a closed set of kinds; anything unrecognised becomes an
``UnknownItem`` that keeps the raw payload so it round-trips unchanged.
Fields a kind does not model are kept in ``extra`` for the same reason.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

LIFECYCLE_TYPES = ("app_creation_started", "app_created")
LIFECYCLE_PREFIX = "tool_creation_"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _pop_extra(raw: Dict[str, Any], known: tuple) -> Dict[str, Any]:
    return {k: v for k, v in raw.items() if k not in known and k != "type"}


@dataclass
class MessageItem:
    """A user/assistant/system message; content is a list of text blocks."""
    role: str = "assistant"
    content: Any = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    type = "message"

    @property
    def text(self) -> str:
        return message_text(self.content, self.extra.get("text"))

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update({"type": self.type, "role": self.role, "content": self.content})
        if self.id is not None:
            out["id"] = self.id
        if self.created_at is not None:
            out["createdAt"] = self.created_at
        return out


@dataclass
class ToolCallItem:
    name: str = "tool"
    args: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    type = "tool_call"

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update({"type": self.type, "name": self.name, "args": self.args})
        if self.call_id is not None:
            out["callId"] = self.call_id
        if self.id is not None:
            out["id"] = self.id
        if self.created_at is not None:
            out["createdAt"] = self.created_at
        return out


@dataclass
class ToolOutputItem:
    name: Optional[str] = None
    ok: bool = True
    output: Any = None
    error: Optional[str] = None
    call_id: Optional[str] = None
    created_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    type = "tool_output"

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update({"type": self.type, "ok": self.ok})
        if self.name is not None:
            out["name"] = self.name
        if self.call_id is not None:
            out["callId"] = self.call_id
        if self.output is not None:
            out["output"] = self.output
        if self.error is not None:
            out["error"] = self.error
        if self.created_at is not None:
            out["createdAt"] = self.created_at
        return out


@dataclass
class ReasoningItem:
    segments: List[str] = field(default_factory=list)
    id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    type = "reasoning"

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update({"type": self.type, "segments": self.segments})
        if self.id is not None:
            out["id"] = self.id
        return out


@dataclass
class LifecycleItem:
    """App lifecycle events: app_creation_started, app_created, tool_creation_*."""
    kind: str
    app_id: Optional[str] = None
    app_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.kind

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out["type"] = self.kind
        if self.app_id is not None:
            out["appId"] = self.app_id
        if self.app_name is not None:
            out["appName"] = self.app_name
        return out


@dataclass
class UnknownItem:
    # Any JSON value, sent back upstream untouched
    raw: Any = field(default_factory=dict)

    @property
    def type(self) -> str:
        value = self.raw.get("type") if isinstance(self.raw, dict) else None
        return value if isinstance(value, str) else ""

    def to_dict(self) -> Any:
        return dict(self.raw) if isinstance(self.raw, dict) else self.raw


ConversationItem = Union[
    MessageItem, ToolCallItem, ToolOutputItem, ReasoningItem, LifecycleItem, UnknownItem
]


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def parse_item(raw: Any) -> ConversationItem:
    """Map one wire object onto its item kind."""
    if not isinstance(raw, dict):
        return UnknownItem(raw=raw)
    kind = raw.get("type")

    if kind == "message":
        return MessageItem(
            role=raw.get("role") if isinstance(raw.get("role"), str) else "assistant",
            content=raw.get("content", []),
            id=_str_or_none(raw.get("id")),
            created_at=_str_or_none(raw.get("createdAt")),
            extra=_pop_extra(raw, ("role", "content", "id", "createdAt")),
        )
    if kind == "tool_call":
        args = raw.get("args")
        return ToolCallItem(
            name=raw.get("name") if isinstance(raw.get("name"), str) else "tool",
            args=args if isinstance(args, dict) else {},
            call_id=_str_or_none(raw.get("callId")),
            id=_str_or_none(raw.get("id")),
            created_at=_str_or_none(raw.get("createdAt")),
            extra=_pop_extra(raw, ("name", "args", "callId", "id", "createdAt")),
        )
    if kind == "tool_output":
        return ToolOutputItem(
            name=_str_or_none(raw.get("name")),
            ok=raw.get("ok") is not False,
            output=raw.get("output"),
            error=_str_or_none(raw.get("error")),
            call_id=_str_or_none(raw.get("callId")),
            created_at=_str_or_none(raw.get("createdAt")),
            extra=_pop_extra(raw, ("name", "ok", "output", "error", "callId", "createdAt")),
        )
    if kind == "reasoning":
        segments = raw.get("segments")
        return ReasoningItem(
            segments=[s for s in segments if isinstance(s, str)] if isinstance(segments, list) else [],
            id=_str_or_none(raw.get("id")),
            extra=_pop_extra(raw, ("segments", "id")),
        )
    if isinstance(kind, str) and (kind in LIFECYCLE_TYPES or kind.startswith(LIFECYCLE_PREFIX)):
        return LifecycleItem(
            kind=kind,
            app_id=_str_or_none(raw.get("appId")),
            app_name=_str_or_none(raw.get("appName")),
            extra=_pop_extra(raw, ("appId", "appName")),
        )
    return UnknownItem(raw=dict(raw))


def user_message(text: str) -> MessageItem:
    return MessageItem(
        role="user",
        content=[{"type": "markdown", "text": text}],
        created_at=now_iso(),
    )


def assistant_message(text: str, item_id: Optional[str] = None) -> MessageItem:
    return MessageItem(
        role="assistant",
        content=[{"type": "markdown", "text": text}],
        id=item_id,
        created_at=now_iso(),
    )


def find_app_id(item: ConversationItem) -> Optional[str]:
    """App id carried by an item directly, or nested in its output."""
    data = item.to_dict()
    direct = data.get("appId")
    if isinstance(direct, str) and direct:
        return direct
    output = data.get("output")
    if isinstance(output, dict):
        nested = output.get("appId")
        if isinstance(nested, str) and nested:
            return nested
    return None


# ── Display formatting ───────────────────────────────────────

def message_text(content: Any, fallback: Any = None) -> str:
    """Join the text of a message's content blocks."""
    if isinstance(content, str):
        return content
    parts = []
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            for key in ("text", "content", "value"):
                value = block.get(key)
                if isinstance(value, str):
                    if value:
                        parts.append(value)
                    break
    if parts:
        return "\n".join(parts)
    return fallback if isinstance(fallback, str) else ""


def format_compact(value: Any, limit: int = 240) -> Optional[str]:
    """One-line preview of a value, JSON-encoded unless already a string."""
    if value is None:
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        return trimmed[:limit] + "..." if len(trimmed) > limit else trimmed
    try:
        raw = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        raw = str(value)
    if not raw:
        return None
    compact = re.sub(r"\s+", " ", raw)
    return compact[:limit] + "..." if len(compact) > limit else compact


_HEADING_RE = re.compile(r"^#{1,6}\s+")
_BULLET_RE = re.compile(r"^\s*[-*]\s+")


def format_markdown(text: str) -> str:
    """Flatten markdown for a plain terminal line."""
    out = []
    in_code = False
    for line in text.split("\n"):
        if line.strip().startswith("```"):
            in_code = not in_code
            out.append("[code]" if in_code else "[/code]")
            continue
        if in_code:
            out.append(f"  {line}")
            continue
        line = _HEADING_RE.sub("", line)
        line = _BULLET_RE.sub("• ", line)
        line = re.sub(r"\*\*(.+?)\*\*", r"\1", line)
        line = re.sub(r"\*(.+?)\*", r"\1", line)
        line = re.sub(r"__(.+?)__", r"\1", line)
        line = re.sub(r"`(.+?)`", r"\1", line)
        out.append(line)
    return "\n".join(out)


def _format_builder_output(item: ToolOutputItem) -> str:
    payload = item.output if isinstance(item.output, dict) else {}
    app_id = _str_or_none(payload.get("appId"))
    app_name = _str_or_none(payload.get("appName"))
    conversation_id = _str_or_none(payload.get("conversationId"))
    link = _str_or_none(payload.get("builderLink"))
    if link is None and conversation_id:
        link = f"/builder/{conversation_id}"
    status = _str_or_none(payload.get("status"))
    request = _str_or_none(payload.get("request"))
    action = _str_or_none(payload.get("action")) or (
        "create" if item.name == "create_tool" else "update"
    )
    parts = [f"builder {action}: {app_name or app_id or 'Builder session'}"]
    if status:
        parts.append(f"status={status}")
    if link:
        parts.append(f"link={link}")
    preview = format_compact(request, 120) if request else None
    if preview:
        parts.append('request="%s"' % preview.replace('"', "'"))
    return " ".join(parts)


def format_tool_output(name: Optional[str], ok: bool, output: Any, error: Any) -> str:
    parts = [f"tool_output: {name or 'tool'} ({'ok' if ok else 'error'})"]
    error_text = format_compact(error)
    output_text = format_compact(output)
    if error_text:
        parts.append(f"error={error_text}")
    elif output_text:
        parts.append(f"output={output_text}")
    return " ".join(parts)


def format_item(item: ConversationItem) -> Optional[str]:
    """Render an item as one transcript line, or None if it has no display form."""
    if isinstance(item, MessageItem):
        text = item.text
        if not text:
            return f"{item.role}: [message]"
        return f"{item.role}: {format_markdown(text)}"
    if isinstance(item, ReasoningItem):
        return f"reasoning: {' '.join(item.segments)}"
    if isinstance(item, ToolCallItem):
        args = format_compact(item.args) if item.args else None
        return f"tool_call: {item.name} args={args}" if args else f"tool_call: {item.name}"
    if isinstance(item, ToolOutputItem):
        if item.name in ("create_tool", "update_tool"):
            return _format_builder_output(item)
        return format_tool_output(item.name, item.ok, item.output, item.error)
    if isinstance(item, LifecycleItem):
        if item.kind == "app_creation_started":
            name = item.app_name or _str_or_none(item.extra.get("name")) or item.app_id or "app"
            template = _str_or_none(item.extra.get("templateRepoUrl")) or _str_or_none(
                item.extra.get("templateId")
            )
            suffix = f" template={template}" if template else ""
            return f"app_creation_started: {name}{suffix}"
        if item.kind == "app_created":
            app_id = item.app_id or "unknown"
            return f"app_created: {item.app_name} ({app_id})" if item.app_name else f"app_created: {app_id}"
        message = item.extra.get("message") or item.extra.get("content") or ""
        return f"{item.kind}: {message}" if message else item.kind
    return None
