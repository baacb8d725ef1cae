"""Tab worker process: one chat session or history browser behind the IPC bus.

    python -m pondcode.worker --mode chat --tab tab-1 --socket /tmp/pondcode-x/bus.sock
"""

import argparse
import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Optional

import httpx

from .api import ApiClient
from .config import ConfigStore
from .history import HistoryBrowser, HistoryStore, SessionRecorder
from .ipc import (
    SOCKET_ENV,
    MessageChannel,
    MessageType,
    make_message,
    open_ipc_connection,
    read_messages,
)
from .logger import get_logger, init_logging, log_exception
from .session import ChatSession

log = get_logger("worker")


async def run_worker(
    mode: str,
    tab_id: str,
    socket_path: str,
    root: Optional[Path] = None,
    config_store: Optional[ConfigStore] = None,
    history_store: Optional[HistoryStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """Connect, register, then serve input until shutdown or disconnect."""
    root = Path(root or os.getcwd())
    history_store = history_store or HistoryStore()
    reader, writer = await open_ipc_connection(socket_path)
    channel = MessageChannel(writer)
    channel.send(make_message(MessageType.REGISTER, tab_id, mode=mode))
    log.info("registered tab=%s mode=%s root=%s", tab_id, mode, root)

    def on_line(text):
        channel.send(make_message(MessageType.LINE, tab_id, text=text))

    def on_stream(text):
        channel.send(make_message(MessageType.STREAM, tab_id, text=text))

    def on_rows(rows):
        channel.send(make_message(MessageType.HISTORY, tab_id, rows=rows))

    def on_state(state):
        channel.send(make_message(MessageType.STATE, tab_id, footerState=state))

    api = None
    if mode == "history":
        handler = HistoryBrowser(history_store, on_line, on_rows, on_state)
        await handler.start()
    else:
        store = config_store or ConfigStore()
        config = store.load()
        api = ApiClient(config.base_url, transport=transport)
        recorder = SessionRecorder(history_store, root) if config.history_enabled else None
        handler = ChatSession(
            config, api, root, on_line, on_stream, on_state, store=store, recorder=recorder
        )
        handler.start()
    await channel.drain()

    # Inputs are handled strictly one at a time, in arrival order.
    queue: asyncio.Queue = asyncio.Queue()

    async def consume() -> None:
        while True:
            text = await queue.get()
            try:
                await handler.handle_input(text)
            except Exception as e:
                log_exception(log, "input handler failed", e)
                on_line(f"error: {e}")
            await channel.drain()

    consumer = asyncio.create_task(consume())
    try:
        async for message in read_messages(reader):
            kind = message.get("type")
            if kind == MessageType.INPUT.value and isinstance(message.get("text"), str):
                queue.put_nowait(message["text"])
            elif kind == MessageType.SHUTDOWN.value:
                log.info("shutdown requested")
                break
        else:
            log.info("supervisor connection closed")
    finally:
        handler.stop()
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)
        if api is not None:
            await api.aclose()
        await channel.close()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="pondcode-worker", description="pondcode tab worker")
    parser.add_argument("--mode", choices=["chat", "history"], default="chat")
    parser.add_argument("--tab", default=None, help="Tab id (default: tab-<millis>)")
    parser.add_argument("--socket", default=os.environ.get(SOCKET_ENV), help="IPC socket path")
    parser.add_argument("--root", default=None, help="Workspace root (default: cwd)")
    args = parser.parse_args(argv)

    tab_id = args.tab or f"tab-{int(time.time() * 1000)}"
    if not args.socket:
        print(f"pondcode-worker: --socket or {SOCKET_ENV} is required", file=sys.stderr)
        return 2

    init_logging(process_name=f"worker-{tab_id}")
    try:
        return asyncio.run(run_worker(args.mode, tab_id, args.socket, root=args.root))
    except OSError as e:
        log_exception(log, "worker failed", e)
        print(f"pondcode-worker: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
