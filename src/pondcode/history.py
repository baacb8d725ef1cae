"""Append-only per-session history records and the read-only history browser."""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import get_global_dir
from .items import now_iso
from .logger import get_logger

log = get_logger("history")

SUMMARY_HEADERS = ["#", "ID", "CONVO", "APP", "MESSAGES", "UPDATED", "GIT"]
SHOW_LAST = 20


def get_history_dir() -> Path:
    return get_global_dir() / "history"


async def get_git_hash(root: Path) -> Optional[str]:
    """``git rev-parse HEAD`` in ``root``, or None outside a repository."""
    try:
        process = await asyncio.create_subprocess_exec(
            "git", "rev-parse", "HEAD",
            cwd=str(root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await process.communicate()
    except OSError as e:
        log.debug("git rev-parse unavailable: %s", e)
        return None
    if process.returncode != 0:
        return None
    return stdout.decode("utf-8", errors="replace").strip() or None


class HistoryStore:
    """JSON files under one directory, one per session id."""

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory) if directory else get_history_dir()

    def _path(self, record_id: str) -> Path:
        return self.directory / f"{record_id}.json"

    def load(self, record_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(record_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    def save(self, record: Dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(record["id"]).write_text(json.dumps(record, indent=2) + "\n", encoding="utf-8")

    def append(
        self,
        record_id: str,
        role: str,
        kind: str,
        text: str,
        conversation_id: Optional[str] = None,
        app_id: Optional[str] = None,
        git_hash: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Add one message to the record, creating it on first use."""
        now = now_iso()
        record = self.load(record_id) or {
            "id": record_id,
            "gitHash": git_hash,
            "startedAt": started_at or now,
            "messages": [],
        }
        record["conversationId"] = conversation_id
        record["appId"] = app_id
        record["updatedAt"] = now
        if not record.get("gitHash"):
            record["gitHash"] = git_hash
        record.setdefault("messages", []).append(
            {"role": role, "type": kind, "text": text, "createdAt": now}
        )
        self.save(record)
        return record

    def list(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Records ordered newest first by file modification time."""
        if not self.directory.is_dir():
            return []
        files = sorted(
            (p for p in self.directory.glob("*.json") if p.is_file()),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        records = []
        for path in files[:limit]:
            try:
                records.append(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError) as e:
                log.warning("skipping unreadable history file %s: %s", path, e)
        return records

    def summary_rows(self, records: Optional[List[Dict[str, Any]]] = None) -> List[str]:
        """Aligned text table of the newest records."""
        if records is None:
            records = self.list()
        rows = []
        for index, record in enumerate(records, 1):
            git_hash = record.get("gitHash")
            rows.append([
                str(index),
                str(record.get("id", "")),
                record.get("conversationId") or "-",
                record.get("appId") or "-",
                str(len(record.get("messages") or [])),
                str(record.get("updatedAt") or "").replace("T", " ")[:19],
                git_hash[:8] if git_hash else "-",
            ])
        widths = [
            max([len(header)] + [len(row[i]) for row in rows])
            for i, header in enumerate(SUMMARY_HEADERS)
        ]

        def line(cols: List[str]) -> str:
            return "  ".join(col.ljust(widths[i]) for i, col in enumerate(cols)).rstrip()

        return [line(SUMMARY_HEADERS), line(["-" * w for w in widths])] + [line(r) for r in rows]


class SessionRecorder:
    """Writes one chat session's messages to a HistoryStore."""

    def __init__(self, store: HistoryStore, root: Path):
        self.store = store
        self.root = Path(root)
        self.record_id = f"chat-{int(time.time() * 1000)}"
        self.started_at = now_iso()
        self._git_hash: Optional[str] = None
        self._git_checked = False

    async def record(self, role: str, kind: str, text: str,
                     conversation_id: Optional[str], app_id: Optional[str]) -> None:
        if not self._git_checked:
            self._git_hash = await get_git_hash(self.root)
            self._git_checked = True
        try:
            self.store.append(
                self.record_id, role, kind, text,
                conversation_id=conversation_id,
                app_id=app_id,
                git_hash=self._git_hash,
                started_at=self.started_at,
            )
        except OSError as e:
            log.warning("history write failed: %s", e)


class HistoryBrowser:
    """Input handler for the read-only history tab.

    Accepts ``refresh`` and ``show <id|index>``; rows and lines are reported
    through the same callbacks a chat session uses.
    """

    FOOTER_STATE = {
        "modeLabel": "history",
        "loginStatus": "idle",
        "lspLabel": "lsp:off",
        "conversationId": None,
        "footerHint": "type: show <id> | refresh",
    }

    def __init__(
        self,
        store: HistoryStore,
        on_line: Callable[[str], None],
        on_rows: Callable[[List[str]], None],
        on_state: Callable[[Dict[str, Any]], None],
    ):
        self.store = store
        self.on_line = on_line
        self.on_rows = on_rows
        self.on_state = on_state
        self.last_records: List[Dict[str, Any]] = []

    async def start(self) -> None:
        self.on_state(dict(self.FOOTER_STATE))
        await self.refresh()

    async def refresh(self) -> None:
        self.last_records = self.store.list(50)
        self.on_rows(self.store.summary_rows(self.last_records))

    def _find(self, value: str) -> Optional[Dict[str, Any]]:
        for record in self.last_records:
            if record.get("id") == value:
                return record
        if value.isdigit() and int(value) > 0 and int(value) <= len(self.last_records):
            return self.last_records[int(value) - 1]
        if "/" in value or "\\" in value:
            return None
        return self.store.load(value)

    async def handle_input(self, text: str) -> None:
        trimmed = text.strip()
        if not trimmed:
            return
        if trimmed == "refresh":
            await self.refresh()
            return
        if trimmed == "show" or trimmed.startswith("show "):
            value = trimmed[4:].strip()
            if not value:
                self.on_line("usage: show <id>")
                return
            record = self._find(value)
            if record is None:
                self.on_line(f"not found: {value}")
                return
            messages = record.get("messages") or []
            self.on_line(f"history {record.get('id')} ({len(messages)} messages)")
            for message in messages[-SHOW_LAST:]:
                self.on_line(f"{message.get('role')}: {message.get('text')}")
            return
        self.on_line("unknown command (try: show <id> | refresh)")

    def stop(self) -> None:
        pass
