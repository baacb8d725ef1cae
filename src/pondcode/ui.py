"""Terminal front end for the supervisor.

Transcript lines are printed with rich above a prompt_toolkit prompt; the
prompt's bottom toolbar shows the tab bar, the active tab's live buffer
and its footer state.

Keys:
    Enter          send
    Esc+Enter      newline
    Alt+1..9       switch tab
    Alt+h          history tab
    Ctrl+Q         quit
"""

import sys
from pathlib import Path
from typing import List, Optional, Tuple

from prompt_toolkit import PromptSession
from prompt_toolkit.application.current import get_app_or_none
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.text import Text

from .config import get_global_dir
from .logger import get_logger
from .supervisor import Supervisor, Tab

log = get_logger("ui")

REDRAW_LINES = 200

_LINE_STYLES = (
    ("user:", "bold cyan"),
    ("assistant:", ""),
    ("reasoning:", "italic dim"),
    ("tool_call:", "dim"),
    ("tool_output:", "dim"),
    ("builder ", "magenta"),
    ("login", "yellow"),
    ("stream error:", "bold red"),
    ("request error:", "bold red"),
    ("error:", "bold red"),
)


def line_style(text: str) -> str:
    for prefix, style in _LINE_STYLES:
        if text.startswith(prefix):
            return style
    return ""


def footer_text(tab: Tab) -> str:
    footer = tab.footer or {}
    parts = [
        str(footer.get("modeLabel") or tab.mode),
        str(footer.get("loginStatus") or "idle"),
        str(footer.get("lspLabel") or "lsp:off"),
    ]
    if footer.get("conversationId"):
        parts.append(str(footer["conversationId"]))
    parts.append(str(footer.get("footerHint") or ""))
    return " · ".join(p for p in parts if p)


def create_prompt_session(history_file: Path, ui: "TerminalUI") -> PromptSession:
    bindings = KeyBindings()

    @bindings.add(Keys.Escape, Keys.Enter)
    def _(event):
        """Esc+Enter: insert newline."""
        event.current_buffer.insert_text("\n")

    @bindings.add("c-q")
    def _(event):
        event.app.exit(exception=EOFError())

    @bindings.add(Keys.Escape, "h")
    def _(event):
        ui.jump_to_history()

    for digit in "123456789":
        @bindings.add(Keys.Escape, digit)
        def _(event, digit=digit):
            ui.switch_by_ref(digit)

    history_file.parent.mkdir(parents=True, exist_ok=True)
    return PromptSession(
        history=FileHistory(str(history_file)),
        auto_suggest=AutoSuggestFromHistory(),
        key_bindings=bindings,
        multiline=False,
    )


class TerminalUI:
    """Renders Supervisor events and feeds it user input."""

    def __init__(self, socket_path: Optional[str] = None, root: Optional[Path] = None,
                 console: Optional[Console] = None):
        self.console = console or Console(force_terminal=sys.stdout.isatty())
        self.supervisor = Supervisor(socket_path=socket_path, root=root, on_event=self.on_event)
        self.session: Optional[PromptSession] = None

    # ── Rendering ──────────────────────────────────────────────

    def _print_line(self, text: str) -> None:
        self.console.print(Text(text, style=line_style(text)))

    def _invalidate(self) -> None:
        app = get_app_or_none()
        if app is not None:
            app.invalidate()

    def render_tab(self, tab: Tab) -> None:
        self.console.clear()
        self.console.rule(f"{tab.title} · {tab.id}")
        if tab.mode == "history":
            for row in tab.history_rows:
                self.console.print(Text(row))
            if tab.status_line:
                self._print_line(tab.status_line)
        else:
            for line in tab.lines[-REDRAW_LINES:]:
                self._print_line(line)

    def on_event(self, tab: Tab, kind: str) -> None:
        active = self.supervisor.active_tab
        if active is not None and tab.id == active.id:
            if kind in ("line", "system"):
                if tab.mode == "history" and kind == "line":
                    self._print_line(tab.status_line)
                elif tab.lines:
                    self._print_line(tab.lines[-1])
            elif kind in ("history", "switch"):
                self.render_tab(tab)
            elif kind == "exit":
                self.console.print(Text(f"[tab {tab.id} closed]", style="bold red"))
        self._invalidate()

    def toolbar(self) -> List[Tuple[str, str]]:
        fragments: List[Tuple[str, str]] = []
        active = self.supervisor.active_tab
        for i, tab in enumerate(self.supervisor.tabs, 1):
            label = f" {i}:{tab.title}{'' if tab.alive else '✗'} "
            style = "reverse bold" if active is not None and tab.id == active.id else ""
            fragments.append((style, label))
        if active is None:
            return fragments
        if active.streaming:
            preview = active.streaming.replace("\n", " ")
            fragments.append(("", "\n" + preview[-200:]))
        fragments.append(("class:bottom-toolbar.text", "\n" + footer_text(active)))
        return fragments

    # ── Key actions ────────────────────────────────────────────

    def switch_by_ref(self, ref: str) -> None:
        tab = self.supervisor.find_tab(ref)
        if tab is not None:
            self.supervisor.switch_to(tab)

    def jump_to_history(self) -> None:
        tab = next((t for t in self.supervisor.tabs if t.mode == "history" and t.alive), None)
        if tab is not None:
            self.supervisor.switch_to(tab)

    # ── Main loop ──────────────────────────────────────────────

    async def run(self) -> int:
        self.session = create_prompt_session(get_global_dir() / "prompt_history", self)
        await self.supervisor.start()
        log.info("ui started: socket=%s", self.supervisor.socket_path)
        try:
            with patch_stdout(raw=True):
                while True:
                    try:
                        text = await self.session.prompt_async(
                            "> ", bottom_toolbar=self.toolbar, refresh_interval=0.5
                        )
                    except KeyboardInterrupt:
                        continue
                    except EOFError:
                        break
                    if not await self.supervisor.handle_input(text):
                        break
        finally:
            await self.supervisor.shutdown()
        return 0
