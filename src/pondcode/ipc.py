"""Newline-delimited JSON message bus over a Unix domain socket.

The supervisor listens; each worker is one client connection.  Every
message is a JSON object with a ``type`` and a ``tabId`` followed by
``\\n``.  Standard JSON encoding escapes newlines inside strings, so no
length prefix is needed.  Receivers buffer partial reads and silently drop
lines that are not valid JSON objects.

Usage:
    server = IpcServer(path, on_connection)
    await server.start()
    ...
    reader, writer = await open_ipc_connection(path)
    channel = MessageChannel(writer)
    channel.send(make_message(MessageType.REGISTER, tab_id, mode="chat"))
"""

import asyncio
import codecs
import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .logger import get_logger, truncate

log = get_logger("ipc")

SOCKET_ENV = "POND_IPC_SOCKET"
READ_CHUNK = 64 * 1024


class MessageType(str, Enum):
    REGISTER = "register"    # worker → supervisor: {tabId, mode}
    LINE = "line"            # worker → supervisor: {tabId, text}
    STREAM = "stream"        # worker → supervisor: {tabId, text} replaces the live buffer
    HISTORY = "history"      # worker → supervisor: {tabId, rows}
    STATE = "state"          # worker → supervisor: {tabId, footerState}
    INPUT = "input"          # supervisor → worker: {tabId, text}
    SHUTDOWN = "shutdown"    # supervisor → worker: {tabId}


def make_message(kind: MessageType, tab_id: str, **fields: Any) -> Dict[str, Any]:
    message = {"type": kind.value, "tabId": tab_id}
    message.update(fields)
    return message


def encode_message(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


class JsonLineBuffer:
    """Accumulates socket bytes and yields each complete JSON object."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        self._buffer += self._decoder.decode(data)
        messages = []
        while True:
            index = self._buffer.find("\n")
            if index == -1:
                break
            line = self._buffer[:index].strip()
            self._buffer = self._buffer[index + 1:]
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                log.debug("dropping malformed ipc line: %s", truncate(line))
                continue
            if isinstance(parsed, dict):
                messages.append(parsed)
        return messages


async def read_messages(reader: asyncio.StreamReader) -> AsyncIterator[Dict[str, Any]]:
    """Yield messages from ``reader`` until the peer closes the connection."""
    buffer = JsonLineBuffer()
    while True:
        try:
            data = await reader.read(READ_CHUNK)
        except ConnectionError as e:
            log.debug("ipc read failed: %s", e)
            return
        if not data:
            return
        for message in buffer.feed(data):
            yield message


class MessageChannel:
    """Fire-and-forget writer for one connection.

    ``send`` is synchronous so session callbacks can call it directly;
    writes are queued on the transport in call order.
    """

    def __init__(self, writer: asyncio.StreamWriter):
        self.writer = writer

    @property
    def closed(self) -> bool:
        return self.writer.is_closing()

    def send(self, message: Dict[str, Any]) -> bool:
        if self.writer.is_closing():
            log.debug("dropping %s: connection closed", message.get("type"))
            return False
        self.writer.write(encode_message(message))
        return True

    async def drain(self) -> None:
        try:
            await self.writer.drain()
        except ConnectionError as e:
            log.debug("ipc drain failed: %s", e)

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except ConnectionError as e:
            log.debug("ipc close failed: %s", e)


ConnectionHandler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class IpcServer:
    """Unix-socket listener owned by the supervisor.

    A stale socket file at ``socket_path`` is unlinked before listening, and
    the file is removed again on close().
    """

    def __init__(self, socket_path: str, on_connection: ConnectionHandler):
        self.socket_path = socket_path
        self._on_connection = on_connection
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: Set[asyncio.StreamWriter] = set()

    async def start(self) -> None:
        socket_file = Path(self.socket_path)
        socket_file.parent.mkdir(parents=True, exist_ok=True)
        if socket_file.exists() or socket_file.is_symlink():
            socket_file.unlink()
        self._server = await asyncio.start_unix_server(self._handle, path=self.socket_path)
        os.chmod(self.socket_path, 0o600)
        log.info("ipc server listening on %s", self.socket_path)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        log.debug("ipc client connected")
        self._writers.add(writer)
        try:
            await self._on_connection(reader, writer)
        finally:
            self._writers.discard(writer)
            if not writer.is_closing():
                writer.close()
            log.debug("ipc client disconnected")

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            # wait_closed() also waits for open client connections
            for writer in list(self._writers):
                writer.close()
            await self._server.wait_closed()
            self._server = None
        socket_file = Path(self.socket_path)
        if socket_file.exists():
            socket_file.unlink()
        log.info("ipc server stopped")


async def open_ipc_connection(socket_path: str) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_unix_connection(socket_path)
