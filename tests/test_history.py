"""Tests for session history records and the history browser."""

import asyncio
import json
import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from pondcode.history import HistoryBrowser, HistoryStore, SessionRecorder, get_git_hash


def set_mtime(store, record_id, offset):
    path = store.directory / f"{record_id}.json"
    stamp = time.time() + offset
    os.utime(path, (stamp, stamp))


class TestHistoryStore:
    def test_append_creates_and_extends(self, tmp_path):
        store = HistoryStore(tmp_path)
        store.append("chat-1", "user", "message", "hi", git_hash="abc", started_at="2024-01-01T00:00:00Z")
        record = store.append("chat-1", "assistant", "message", "hello", conversation_id="c1", app_id="a1")
        assert record["startedAt"] == "2024-01-01T00:00:00Z"
        assert record["gitHash"] == "abc"
        assert record["conversationId"] == "c1"
        assert [m["text"] for m in record["messages"]] == ["hi", "hello"]
        assert store.load("chat-1") == record

    def test_load_missing_or_corrupt(self, tmp_path):
        store = HistoryStore(tmp_path)
        assert store.load("nope") is None
        (tmp_path / "bad.json").write_text("{", encoding="utf-8")
        assert store.load("bad") is None

    def test_list_newest_first_skips_corrupt(self, tmp_path):
        store = HistoryStore(tmp_path)
        store.append("old", "user", "message", "a")
        store.append("new", "user", "message", "b")
        set_mtime(store, "old", -100)
        (tmp_path / "broken.json").write_text("{", encoding="utf-8")
        set_mtime(store, "broken", -200)
        assert [r["id"] for r in store.list()] == ["new", "old"]
        assert [r["id"] for r in store.list(limit=1)] == ["new"]
        assert HistoryStore(tmp_path / "absent").list() == []

    def test_summary_rows(self, tmp_path):
        store = HistoryStore(tmp_path)
        record = {
            "id": "chat-1", "conversationId": None, "appId": "app-1",
            "updatedAt": "2024-05-06T07:08:09.123Z", "gitHash": "0123456789abcdef",
            "messages": [{}, {}],
        }
        rows = store.summary_rows([record])
        assert rows[0].split() == ["#", "ID", "CONVO", "APP", "MESSAGES", "UPDATED", "GIT"]
        assert set(rows[1].replace(" ", "")) == {"-"}
        assert rows[2].split() == ["1", "chat-1", "-", "app-1", "2", "2024-05-06", "07:08:09", "01234567"]
        assert all(row == row.rstrip() for row in rows)

    def test_summary_rows_empty(self, tmp_path):
        assert len(HistoryStore(tmp_path).summary_rows([])) == 2


class TestSessionRecorder:
    def test_record_outside_git(self, tmp_path):
        store = HistoryStore(tmp_path / "history")
        recorder = SessionRecorder(store, tmp_path)
        assert recorder.record_id.startswith("chat-")

        async def run():
            await recorder.record("user", "message", "hi", None, None)
            await recorder.record("assistant", "message", "yo", "c1", "a1")

        asyncio.run(run())
        record = store.load(recorder.record_id)
        assert record["gitHash"] is None
        assert record["appId"] == "a1"
        assert len(record["messages"]) == 2

    def test_git_hash_missing_repo(self, tmp_path):
        assert asyncio.run(get_git_hash(tmp_path)) is None


class TestHistoryBrowser:
    def make(self, tmp_path):
        store = HistoryStore(tmp_path / "history")
        lines, rows, states = [], [], []
        browser = HistoryBrowser(store, lines.append, rows.append, states.append)
        return store, browser, lines, rows, states

    def test_start_emits_state_then_rows(self, tmp_path):
        store, browser, lines, rows, states = self.make(tmp_path)
        store.append("chat-1", "user", "message", "hi")
        asyncio.run(browser.start())
        assert states[0]["modeLabel"] == "history"
        assert states[0]["footerHint"] == "type: show <id> | refresh"
        assert len(rows) == 1
        assert "chat-1" in rows[0][2]

    def test_show_by_index_and_id(self, tmp_path):
        store, browser, lines, rows, states = self.make(tmp_path)
        for i in range(25):
            store.append("chat-1", "user", "message", f"m{i}")

        async def run():
            await browser.refresh()
            await browser.handle_input("show 1")
            await browser.handle_input("show chat-1")

        asyncio.run(run())
        assert lines[0] == "history chat-1 (25 messages)"
        assert lines[1] == "user: m5"
        assert lines[20] == "user: m24"
        assert lines[21] == "history chat-1 (25 messages)"

    def test_show_unlisted_record_loaded_from_disk(self, tmp_path):
        store, browser, lines, rows, states = self.make(tmp_path)
        store.append("chat-2", "user", "message", "late")
        asyncio.run(browser.handle_input("show chat-2"))
        assert lines == ["history chat-2 (1 messages)", "user: late"]

    def test_errors(self, tmp_path):
        store, browser, lines, rows, states = self.make(tmp_path)
        (tmp_path / "outside.json").write_text(json.dumps({"id": "x"}), encoding="utf-8")

        async def run():
            for text in ("show", "show nope", "show ../outside", "frobnicate", "   "):
                await browser.handle_input(text)

        asyncio.run(run())
        assert lines == [
            "usage: show <id>",
            "not found: nope",
            "not found: ../outside",
            "unknown command (try: show <id> | refresh)",
        ]

    def test_refresh(self, tmp_path):
        store, browser, lines, rows, states = self.make(tmp_path)
        asyncio.run(browser.handle_input("refresh"))
        store.append("chat-1", "user", "message", "hi")
        asyncio.run(browser.handle_input("refresh"))
        assert len(rows) == 2
        assert len(rows[0]) == 2
        assert len(rows[1]) == 3
