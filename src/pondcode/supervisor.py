"""Supervisor: owns the IPC server, the worker processes and per-tab UI state.

One Tab per spawned worker.  Workers connect back over the bus and
``register`` their tab id; from then on everything they report is stored
on that Tab and announced through ``on_event`` for the terminal layer to
render.  Input typed by the user is either a supervisor meta-command
(``/new``, ``/history``, ``/tabs``, ``/tab``, ``/close``, ``/quit``) or
forwarded verbatim to the active tab's worker.
"""

import asyncio
import os
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from .ipc import SOCKET_ENV, IpcServer, MessageChannel, MessageType, make_message, read_messages
from .logger import get_logger

log = get_logger("supervisor")

MAX_TAB_LINES = 2000
SHUTDOWN_GRACE = 2.0


def kill_process_tree(pid: int, timeout: float = 3.0) -> None:
    """Kill a process and all its descendants, children first."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    children = []
    try:
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    for proc in list(reversed(children)) + [parent]:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(children + [parent], timeout=timeout)
    for proc in alive:
        log.warning("process %d survived kill", proc.pid)


def default_footer(mode: str) -> Dict[str, Any]:
    return {
        "modeLabel": mode,
        "loginStatus": "idle",
        "lspLabel": "lsp:off",
        "conversationId": None,
        "footerHint": "enter send · /help",
    }


@dataclass
class Tab:
    id: str
    mode: str  # chat | history
    title: str
    process: Optional[asyncio.subprocess.Process] = None
    channel: Optional[MessageChannel] = None
    lines: List[str] = field(default_factory=list)
    streaming: str = ""
    history_rows: List[str] = field(default_factory=list)
    status_line: str = ""
    footer: Dict[str, Any] = field(default_factory=dict)
    pending_input: List[str] = field(default_factory=list)
    alive: bool = True

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def connected(self) -> bool:
        return self.channel is not None and not self.channel.closed

    def add_line(self, text: str) -> None:
        self.lines.append(text)
        if len(self.lines) > MAX_TAB_LINES:
            del self.lines[: len(self.lines) - MAX_TAB_LINES]


class Supervisor:
    """Spawns tab workers and routes messages between them and the terminal.

    Args:
        socket_path: Bus socket; a private temporary directory is used when None.
        root: Workspace root every worker runs in (default: cwd).
        on_event: Called as ``on_event(tab, kind)`` after any tab change;
            ``kind`` is a MessageType value or ``"system"``/``"switch"``/``"exit"``.
        worker_command: argv prefix used to start a worker.
    """

    def __init__(
        self,
        socket_path: Optional[str] = None,
        root: Optional[Path] = None,
        on_event: Optional[Callable[[Tab, str], None]] = None,
        worker_command: Optional[List[str]] = None,
    ):
        self._temp_dir: Optional[str] = None
        if socket_path is None:
            self._temp_dir = tempfile.mkdtemp(prefix="pondcode-")
            socket_path = os.path.join(self._temp_dir, "bus.sock")
        self.socket_path = socket_path
        self.root = Path(root or os.getcwd())
        self.on_event = on_event
        self.worker_command = worker_command or [sys.executable, "-m", "pondcode.worker"]
        self.tabs: List[Tab] = []
        self.active_id: Optional[str] = None
        self.server = IpcServer(self.socket_path, self._on_connection)
        self._watchers: List[asyncio.Task] = []
        # Closed tabs whose process may still be winding down
        self._closed: List[Tab] = []
        self._counter = 0

    # ── Lookup ─────────────────────────────────────────────────

    def get_tab(self, tab_id: Optional[str]) -> Optional[Tab]:
        for tab in self.tabs:
            if tab.id == tab_id:
                return tab
        return None

    @property
    def active_tab(self) -> Optional[Tab]:
        return self.get_tab(self.active_id) or (self.tabs[0] if self.tabs else None)

    def _notify(self, tab: Tab, kind: str) -> None:
        if self.on_event is not None:
            self.on_event(tab, kind)

    def system_line(self, text: str) -> None:
        """Show a supervisor-generated line in the active tab."""
        tab = self.active_tab
        if tab is None:
            log.info("system: %s", text)
            return
        tab.add_line(text)
        self._notify(tab, "system")

    # ── Lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        """Listen on the bus, then spawn the history tab and the active chat tab."""
        await self.server.start()
        await self.spawn_tab("history", activate=False)
        await self.spawn_tab("chat")

    def _new_tab_id(self, mode: str) -> str:
        self._counter += 1
        return f"{mode}-{int(time.time() * 1000)}-{self._counter}"

    async def spawn_tab(self, mode: str, activate: bool = True) -> Tab:
        """Start a worker process for a new tab.  Spawn failures propagate."""
        tab_id = self._new_tab_id(mode)
        tab = Tab(id=tab_id, mode=mode, title=mode, footer=default_footer(mode))
        # The tab exists before the process does so an early register finds it.
        self.tabs.append(tab)
        env = dict(os.environ)
        env[SOCKET_ENV] = self.socket_path
        try:
            tab.process = await asyncio.create_subprocess_exec(
                *self.worker_command,
                "--mode", mode, "--tab", tab_id, "--socket", self.socket_path,
                cwd=str(self.root),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            self.tabs.remove(tab)
            raise
        log.info("spawned tab=%s mode=%s pid=%s", tab_id, mode, tab.pid)
        self._watchers.append(asyncio.create_task(self._watch(tab)))
        if activate:
            self.active_id = tab_id
            self._notify(tab, "switch")
        return tab

    async def _watch(self, tab: Tab) -> None:
        code = await tab.process.wait()
        tab.alive = False
        log.info("tab %s exited with code %s", tab.id, code)
        if tab in self.tabs:
            self._notify(tab, "exit")

    async def shutdown(self) -> None:
        """Ask every worker to stop, then kill whatever is still running."""
        for tab in self.tabs:
            if tab.connected:
                tab.channel.send(make_message(MessageType.SHUTDOWN, tab.id))
                await tab.channel.drain()

        every_tab = self.tabs + self._closed
        processes = [t.process for t in every_tab if t.process is not None and t.alive]
        if processes:
            waits = [asyncio.ensure_future(p.wait()) for p in processes]
            _, pending = await asyncio.wait(waits, timeout=SHUTDOWN_GRACE)
            for future in pending:
                future.cancel()
        for tab in every_tab:
            if tab.process is not None and tab.process.returncode is None:
                log.warning("killing unresponsive tab %s (pid %s)", tab.id, tab.pid)
                kill_process_tree(tab.pid)

        for watcher in self._watchers:
            watcher.cancel()
        await asyncio.gather(*self._watchers, return_exceptions=True)
        await self.server.close()
        if self._temp_dir is not None:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
        log.info("supervisor stopped")

    # ── Bus ────────────────────────────────────────────────────

    async def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        channel = MessageChannel(writer)
        bound: Optional[Tab] = None
        async for message in read_messages(reader):
            tab = self.dispatch(message, channel)
            if tab is not None and bound is None and tab.channel is channel:
                bound = tab
        if bound is not None:
            log.info("tab %s disconnected", bound.id)
            bound.channel = None
            self._notify(bound, "exit")

    def dispatch(self, message: Dict[str, Any], channel: Optional[MessageChannel] = None) -> Optional[Tab]:
        """Apply one worker message to its tab.  Unknown tabs and kinds are ignored."""
        kind = message.get("type")
        tab = self.get_tab(message.get("tabId"))
        if tab is None:
            log.debug("message for unknown tab: %s", message.get("tabId"))
            return None

        if kind == MessageType.REGISTER.value:
            tab.channel = channel
            log.info("tab %s registered (%s)", tab.id, message.get("mode"))
            while tab.pending_input and channel is not None:
                channel.send(make_message(MessageType.INPUT, tab.id, text=tab.pending_input.pop(0)))
        elif kind == MessageType.LINE.value:
            text = str(message.get("text", ""))
            if tab.mode == "history":
                tab.status_line = text
            else:
                tab.add_line(text)
        elif kind == MessageType.STREAM.value:
            tab.streaming = str(message.get("text", ""))
        elif kind == MessageType.HISTORY.value:
            rows = message.get("rows")
            tab.history_rows = [str(r) for r in rows] if isinstance(rows, list) else []
        elif kind == MessageType.STATE.value:
            state = message.get("footerState")
            if isinstance(state, dict):
                tab.footer = state
        else:
            return tab
        self._notify(tab, kind)
        return tab

    def send_input(self, tab: Tab, text: str) -> None:
        if not tab.alive:
            self.system_line(f"tab {tab.id} has exited; /new opens a fresh tab")
            return
        if tab.connected:
            tab.channel.send(make_message(MessageType.INPUT, tab.id, text=text))
        else:
            tab.pending_input.append(text)

    # ── Input ──────────────────────────────────────────────────

    def switch_to(self, tab: Tab) -> None:
        self.active_id = tab.id
        if tab.mode == "history":
            self.send_input(tab, "refresh")
        self._notify(tab, "switch")

    def find_tab(self, ref: str) -> Optional[Tab]:
        """A tab by 1-based position or by id."""
        if ref.isdigit():
            index = int(ref) - 1
            return self.tabs[index] if 0 <= index < len(self.tabs) else None
        return self.get_tab(ref)

    def tab_listing(self) -> List[str]:
        lines = []
        for i, tab in enumerate(self.tabs, 1):
            marker = "*" if tab.id == self.active_id else ""
            lines.append(f"{i}. {tab.title} ({tab.mode}) pid:{tab.pid} id:{tab.id}{marker}")
        return lines

    async def close_tab(self, tab: Tab) -> None:
        if tab.connected:
            tab.channel.send(make_message(MessageType.SHUTDOWN, tab.id))
            await tab.channel.drain()
        elif tab.process is not None and tab.process.returncode is None:
            # No channel to ask it over yet
            log.info("killing unregistered tab %s (pid %s)", tab.id, tab.pid)
            kill_process_tree(tab.pid)
        index = self.tabs.index(tab)
        self.tabs.remove(tab)
        self._closed.append(tab)
        log.info("closed tab %s", tab.id)
        if self.active_id == tab.id:
            self.active_id = None
            if self.tabs:
                self.switch_to(self.tabs[max(0, index - 1)])

    async def handle_input(self, text: str) -> bool:
        """Route one line of user input.  Returns False when the user asked to quit."""
        trimmed = text.strip()
        if not trimmed:
            return True
        command, _, arg = trimmed.partition(" ")
        arg = arg.strip()

        if command in ("/quit", "/exit"):
            return False
        if command == "/new":
            await self.spawn_tab("chat")
            return True
        if command == "/history":
            history = next((t for t in self.tabs if t.mode == "history" and t.alive), None)
            if history is None:
                await self.spawn_tab("history")
            else:
                self.switch_to(history)
            return True
        if command == "/tabs":
            for line in self.tab_listing():
                self.system_line(line)
            return True
        if command == "/tab":
            tab = self.find_tab(arg) if arg else None
            if tab is None:
                self.system_line(f"no such tab: {arg}" if arg else "usage: /tab <n|id>")
            else:
                self.switch_to(tab)
            return True
        if command == "/close":
            tab = self.active_tab
            if tab is not None:
                await self.close_tab(tab)
            return True

        tab = self.active_tab
        if tab is None:
            self.system_line("no tabs open; /new opens one")
            return True
        self.send_input(tab, trimmed)
        if tab.connected:
            await tab.channel.drain()
        return True
