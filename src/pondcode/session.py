"""Per-tab conversation driver.

A ChatSession owns one conversation: the transcript, the login state, the
ReadSet shared with its ToolSandbox and the live streaming buffer.  It
reports everything through three callbacks (``on_line``, ``on_stream``,
``on_state``) and never touches the terminal or the IPC socket itself.

A user turn is one request followed by a bounded loop of ``tool_result``
follow-ups: each tool_call decoded in local execution mode is executed,
its tool_output appended right after it, and queued for resubmission once
the current stream ends.
"""

import asyncio
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from .api import ApiClient, ApiError
from .config import Config, ConfigStore
from .history import SessionRecorder
from .items import (
    ConversationItem,
    MessageItem,
    ToolCallItem,
    ToolOutputItem,
    assistant_message,
    find_app_id,
    format_compact,
    format_item,
    format_tool_output,
    now_iso,
    user_message,
)
from .logger import get_logger, log_exception, truncate
from .sandbox import CodeIntelligence, ToolSandbox
from .stream import StreamCallbacks, StreamError, consume_stream

log = get_logger("session")

HELP_LINES = [
    "Commands:",
    "/app set <appId>",
    "/app clear",
    "/app create <name>",
    "/update <appId> <request>",
    "/mode builder | /mode chat",
    "/init [name]",
    "/link <appId>",
    "/link create <name>",
    "/login",
    "/login check",
    "/help",
]


class ToolLoopLimitError(RuntimeError):
    """A single user turn chained more tool results than max_tool_depth allows."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"tool loop limit reached ({limit})")


@dataclass
class LoginState:
    status: str = "idle"  # idle | pending | ready | error
    token: Optional[str] = None
    device_code: Optional[str] = None
    user_code: Optional[str] = None
    verification_url: Optional[str] = None
    message: Optional[str] = None


class ChatSession:
    """Conversation state machine for one chat tab.

    Args:
        config: Loaded configuration; mutated and persisted as the session changes.
        api: REST client.  Its token is kept in sync with the login state.
        root: Workspace root handed to the ToolSandbox.
        on_line: Receives each transcript line.
        on_stream: Receives the full live buffer on every change ("" clears it).
        on_state: Receives the footer state dict.
        store: Where config changes are written (None keeps them in memory).
        recorder: Optional history recorder.
        code_intel: Optional code-intelligence peer passed to the sandbox.
    """

    def __init__(
        self,
        config: Config,
        api: ApiClient,
        root: Path,
        on_line: Callable[[str], None],
        on_stream: Callable[[str], None],
        on_state: Callable[[Dict[str, Any]], None],
        store: Optional[ConfigStore] = None,
        recorder: Optional[SessionRecorder] = None,
        code_intel: Optional[CodeIntelligence] = None,
    ):
        self.config = config
        self.api = api
        self.root = Path(root)
        self.on_line = on_line
        self.on_stream = on_stream
        self.on_state = on_state
        self.store = store
        self.recorder = recorder

        self.items: List[ConversationItem] = []
        self.read_set: set = set()
        self.conversation_id: Optional[str] = config.conversation_id
        self.app_id: Optional[str] = config.app_id
        self.mode: str = config.mode
        self.streaming_text = ""
        self.reasoning_text = ""
        self.usage_totals: Dict[str, int] = {}

        if config.token:
            self.login = LoginState(status="ready", token=config.token)
        elif config.device_code:
            self.login = LoginState(status="pending", device_code=config.device_code)
        else:
            self.login = LoginState()
        self.api.token = self._token()

        self.sandbox = ToolSandbox(
            self.root, api, app_id=self.app_id, read_set=self.read_set, code_intel=code_intel
        )

        self._pending_outputs: List[ToolOutputItem] = []
        self._assistant_seen = False
        self._poll_handle: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None

        self._commands = {
            "app": self._cmd_app,
            "mode": self._cmd_mode,
            "login": self._cmd_login,
            "init": self._cmd_init,
            "update": self._cmd_update,
            "link": self._cmd_link,
            "help": self._cmd_help,
        }

    # ── Lifecycle ──────────────────────────────────────────────

    def start(self) -> None:
        self.emit_state()
        if self.login.status == "pending" and self.login.device_code:
            self._schedule_login_poll()

    def stop(self) -> None:
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    # ── Footer / output ────────────────────────────────────────

    @property
    def local_tools(self) -> bool:
        return self.mode == "builder" and self.config.execution_mode == "local"

    def mode_label(self) -> str:
        if self.mode == "builder":
            return f"builder:{self.app_id}" if self.app_id else "builder"
        return "chat"

    def footer_hint(self) -> str:
        if self.login.status == "pending":
            return "login pending · /login check"
        hint = "enter send · /help"
        total = self.usage_totals.get("total_tokens")
        if total:
            hint += f" · {total} tokens"
        return hint

    def footer_state(self) -> Dict[str, Any]:
        return {
            "modeLabel": self.mode_label(),
            "loginStatus": self.login.status,
            "lspLabel": "lsp:off",
            "conversationId": self.conversation_id,
            "footerHint": self.footer_hint(),
        }

    def emit_state(self) -> None:
        self.on_state(self.footer_state())

    def _line(self, text: str) -> None:
        self.on_line(text)

    def _set_stream(self, text: str) -> None:
        self.streaming_text = text
        self.on_stream(text)

    def _clear_stream(self) -> None:
        self.streaming_text = ""
        self.reasoning_text = ""
        self.on_stream("")

    def _token(self) -> Optional[str]:
        if self.login.status == "ready" and self.login.token:
            return self.login.token
        return self.config.api_key

    def _has_credentials(self) -> bool:
        return bool(self._token() or os.environ.get("POND_API_KEY"))

    def _persist(self, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(self.config, key, value)
        if self.store is None:
            return
        try:
            self.store.save(self.config)
        except OSError as e:
            log.warning("config save failed: %s", e)

    async def _record(self, role: str, kind: str, text: str) -> None:
        if self.recorder is not None:
            await self.recorder.record(role, kind, text, self.conversation_id, self.app_id)

    # ── Input ──────────────────────────────────────────────────

    async def handle_input(self, text: str) -> None:
        """Dispatch one line of input: a /command or a conversational turn."""
        trimmed = text.strip()
        if not trimmed:
            return
        try:
            if trimmed.startswith("/"):
                await self.handle_command(trimmed)
            else:
                await self.send_message(trimmed)
        except ApiError as e:
            self._line(f"request error: {e.status} {e.body}".rstrip())
        except httpx.HTTPError as e:
            self._line(f"request error: {e}")

    async def handle_command(self, text: str) -> None:
        parts = text[1:].strip().split()
        if not parts:
            return
        command, rest = parts[0], parts[1:]
        handler = self._commands.get(command)
        if handler is None:
            self._line(f"Unknown command: {command}")
            return
        await handler(rest)

    def _reset_conversation(self, **changes: Any) -> None:
        self.conversation_id = None
        self.items = []
        self._persist(conversation_id=None, **changes)

    def _link_app(self, app_id: Optional[str], message: str) -> None:
        self.app_id = app_id
        self.sandbox.app_id = app_id
        self._reset_conversation(app_id=app_id)
        self._line(message)
        self.emit_state()

    # ── Commands ───────────────────────────────────────────────

    async def _cmd_app(self, rest: List[str]) -> None:
        sub = rest[0] if rest else None
        if sub == "clear":
            self._link_app(None, "app cleared")
        elif sub == "set":
            if len(rest) < 2:
                self._line("usage: /app set <appId>")
                return
            self._link_app(rest[1], f"app set: {rest[1]}")
        elif sub == "create":
            name = " ".join(rest[1:]).strip()
            if not name:
                self._line("usage: /app create <name>")
                return
            if not self._has_credentials():
                self._line("login required to create app")
                return
            result = await self.api.create_local_project(name)
            self._link_app(result["appId"], f"app created: {result['appId']}")
        else:
            self._line("usage: /app set <appId> | /app clear | /app create <name>")

    async def _cmd_mode(self, rest: List[str]) -> None:
        requested = rest[0] if rest else None
        if requested not in ("builder", "chat"):
            self._line("usage: /mode builder | /mode chat")
            return
        next_mode = "general" if requested == "chat" else "builder"
        if self.mode == next_mode:
            self._line(f"mode already {requested}")
            return
        self.mode = next_mode
        self._reset_conversation(mode=next_mode)
        self._line(f"mode set: {requested}")
        self.emit_state()

    async def _cmd_login(self, rest: List[str]) -> None:
        if rest and rest[0] == "check":
            await self.poll_login(manual=True)
        else:
            await self.start_login()

    async def _cmd_init(self, rest: List[str]) -> None:
        name = " ".join(rest).strip()
        try:
            await self.run_project_init(name or None)
        except (OSError, RuntimeError) as e:
            self._line(f"init error: {e}")
            return
        self._line("init complete")

    async def _cmd_update(self, rest: List[str]) -> None:
        if self.mode != "general":
            self._line("update is only available in chat mode. Use /mode chat.")
            return
        if not rest:
            self._line("usage: /update <appId> <request>")
            return
        request = " ".join(rest[1:]).strip()
        outbound = f"/update {rest[0]} {request}" if request else f"/update {rest[0]}"
        await self.send_message(outbound)

    async def _cmd_link(self, rest: List[str]) -> None:
        if not self._has_credentials():
            self._line("login required to link app")
            return
        if rest and rest[0] == "create":
            name = " ".join(rest[1:]).strip()
            if not name:
                self._line("usage: /link create <name>")
                return
            result = await self.api.create_local_project(name)
            self._link_app(result["appId"], f"app linked: {result['appId']}")
            return
        if not rest:
            self._line("usage: /link <appId> or /link create <name>")
            return
        self._link_app(rest[0], f"app linked: {rest[0]}")

    async def _cmd_help(self, rest: List[str]) -> None:
        for line in HELP_LINES:
            self._line(line)

    async def run_project_init(self, name: Optional[str] = None) -> None:
        """Run ``opentool init`` in the workspace root."""
        local_path = os.environ.get("OPENTOOL_PATH")
        if local_path:
            cmd = ["node", os.path.join(local_path, "dist", "cli", "index.js"), "init"]
        else:
            cmd = ["npx", "opentool", "init"]
        if name:
            cmd += ["--name", name]
        log.info("init: %s", " ".join(shlex.quote(c) for c in cmd))
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(self.root),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await process.communicate()
        if process.returncode != 0:
            log.warning("init failed: %s", truncate(output.decode("utf-8", errors="replace"), 500))
            raise RuntimeError("opentool init failed")

    # ── Device login ───────────────────────────────────────────

    async def start_login(self) -> None:
        self.stop()
        self.login = LoginState(status="pending")
        self.api.token = self._token()
        self.emit_state()
        self._persist(token=None, device_code=None)
        try:
            device = await self.api.start_device_login()
        except (ApiError, httpx.HTTPError) as e:
            self.login = LoginState(status="error", message=str(e))
            self._line(f"login error: {e}")
            self.emit_state()
            return
        self.login = LoginState(
            status="pending",
            device_code=device.device_code,
            user_code=device.user_code,
            verification_url=device.verification_url,
        )
        self._persist(device_code=device.device_code)
        self._line(f"login: code {device.user_code}")
        self._line(f"login: url {device.verification_url}")
        self.emit_state()
        self._schedule_login_poll()

    def _schedule_login_poll(self) -> None:
        if self._poll_handle is not None:
            self._poll_handle.cancel()
        loop = asyncio.get_running_loop()
        self._poll_handle = loop.call_later(self.config.login_poll_interval, self._fire_login_poll)

    def _fire_login_poll(self) -> None:
        self._poll_handle = None
        self._poll_task = asyncio.ensure_future(self.poll_login(manual=False))

    async def poll_login(self, manual: bool = False) -> None:
        """Check a pending device login once.  Errors are reported only when ``manual``."""
        if self.login.status != "pending" or not self.login.device_code:
            if manual:
                self._line("login: no login pending")
            return
        try:
            token = await self.api.poll_device_login(self.login.device_code)
        except (ApiError, httpx.HTTPError) as e:
            log.info("login poll failed (manual=%s): %s", manual, e)
            self.login = LoginState(status="error", message=str(e))
            if manual:
                self._line(f"login error: {e}")
            self.emit_state()
            return
        if token:
            self.login = LoginState(status="ready", token=token)
            self.api.token = token
            self._persist(token=token, device_code=None)
            self._line("login: approved")
            self.emit_state()
            return
        if manual:
            self._line("login: still pending")
        self.emit_state()
        self._schedule_login_poll()

    # ── Turns ──────────────────────────────────────────────────

    def _request_body(self, items: List[ConversationItem]) -> Dict[str, Any]:
        builder = self.mode == "builder"
        body: Dict[str, Any] = {
            "input": [item.to_dict() for item in items],
            "mode": self.mode,
            "conversationId": self.conversation_id,
            "appId": self.app_id if builder else None,
        }
        if builder:
            body["executionMode"] = self.config.execution_mode
        return body

    async def send_message(self, text: str) -> None:
        """Run one user turn, including the tool_result follow-ups it triggers."""
        if not self._has_credentials():
            self._line("login required")
            return

        user_item = user_message(text)
        self._line(f"user: {text}")
        body = self._request_body(self.items + [user_item])

        async def accepted() -> None:
            self.items.append(user_item)
            await self._record("user", "message", text)

        self._pending_outputs = []
        if not await self._stream_turn(body, accepted):
            return
        try:
            await self._drain_tool_results()
        except ToolLoopLimitError as e:
            log.warning("%s", e)
            self._pending_outputs = []
            self._line(str(e))

    async def _drain_tool_results(self) -> None:
        depth = 0
        while self._pending_outputs:
            output = self._pending_outputs.pop(0)
            if depth >= self.config.max_tool_depth:
                raise ToolLoopLimitError(self.config.max_tool_depth)
            if not self.conversation_id:
                self._pending_outputs = []
                self._line("tool_result error: missing conversation id")
                return
            depth += 1
            body = self._request_body(self.items)
            body["action"] = "tool_result"
            body["toolResult"] = {
                "toolName": output.name or "tool",
                "callId": output.call_id,
                "output": output.output,
                "ok": output.ok,
                "error": output.error,
            }
            log.info("tool_result %d/%d: %s", depth, self.config.max_tool_depth, output.name)
            if not await self._stream_turn(body):
                self._pending_outputs = []
                return

    async def _stream_turn(self, body: Dict[str, Any], accepted=None) -> bool:
        """POST one request and consume its stream.

        Returns False when the request was refused before streaming began,
        in which case nothing was appended.
        """
        self._assistant_seen = False
        try:
            async with self.api.chat_stream(body) as response:
                if accepted is not None:
                    await accepted()
                self._clear_stream()
                try:
                    await consume_stream(response, StreamCallbacks(
                        on_text_delta=self._on_text_delta,
                        on_reasoning_delta=self._on_reasoning_delta,
                        on_conversation_id=self._on_conversation_id,
                        on_items=self._on_items,
                        on_usage=self._on_usage,
                    ))
                except (StreamError, httpx.HTTPError) as e:
                    log_exception(log, "stream failed", e)
                    await self._flush_assistant()
                    self._line(f"stream error: {e}")
                    return True
        except ApiError as e:
            log.warning("chat request refused: %s", e)
            self._line(f"request error: {e.status} {e.body}".rstrip())
            return False
        except httpx.HTTPError as e:
            log.warning("chat request failed: %s", e)
            self._line(f"request error: {e}")
            return False
        await self._flush_assistant()
        return True

    async def _flush_assistant(self) -> None:
        text = self.streaming_text
        if text.strip():
            self._line(f"assistant: {text}")
            if not self._assistant_seen:
                self.items.append(assistant_message(text))
            await self._record("assistant", "message", text)
        self._clear_stream()

    # ── Stream callbacks ───────────────────────────────────────

    def _on_text_delta(self, delta: str) -> None:
        self._set_stream(self.streaming_text + delta)

    def _on_reasoning_delta(self, delta: str) -> None:
        self.reasoning_text += delta
        if not self.streaming_text:
            self.on_stream(f"reasoning: {self.reasoning_text}")

    def _on_conversation_id(self, conversation_id: str) -> None:
        if self.conversation_id:
            return
        self.conversation_id = conversation_id
        self._persist(conversation_id=conversation_id)
        self.emit_state()

    def _on_usage(self, usage: Dict[str, int]) -> None:
        for key, value in usage.items():
            self.usage_totals[key] = self.usage_totals.get(key, 0) + value
        self.emit_state()

    def _capture_app_id(self, items: List[ConversationItem]) -> None:
        if self.app_id:
            return
        for item in items:
            app_id = find_app_id(item)
            if app_id:
                self.app_id = app_id
                self.sandbox.app_id = app_id
                self._persist(app_id=app_id)
                self._line(f"app linked: {app_id}")
                self.emit_state()
                return

    async def _on_items(self, items: List[ConversationItem]) -> None:
        self._capture_app_id(items)
        for item in items:
            self.items.append(item)
            if isinstance(item, MessageItem) and item.role == "assistant":
                self._assistant_seen = True
                formatted = format_item(item) or ""
                text = formatted[len("assistant: "):] if formatted.startswith("assistant: ") else formatted
                if text != self.streaming_text:
                    self._set_stream(text)
                continue
            formatted = format_item(item)
            if formatted:
                self._line(formatted)
            if isinstance(item, ToolCallItem):
                await self._record("tool", "tool_call", item.name)
                if self.local_tools:
                    await self._run_tool(item)
            elif isinstance(item, ToolOutputItem):
                await self._record("tool", "tool_output", "ok" if item.ok else "error")
            elif isinstance(item, MessageItem) and item.text:
                await self._record(item.role, "message", item.text)

    async def _run_tool(self, call: ToolCallItem) -> None:
        self.sandbox.app_id = self.app_id
        result = await self.sandbox.execute(call.name, call.args)
        output = ToolOutputItem(
            name=call.name,
            ok=result.ok,
            output=result.output,
            error=result.error,
            call_id=call.call_id,
            created_at=now_iso(),
        )
        self.items.append(output)
        self._pending_outputs.append(output)
        self._line(format_tool_output(call.name, result.ok, result.output, result.error))
        await self._record("tool", "tool_output", format_compact(result.output) or result.error or "")
