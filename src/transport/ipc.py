"""
IPC transport between the daemon and local management tools.

Each message is one JSON object {id, type, data, timestamp} written to a
Unix socket with no delimiter. Readers split back-to-back or partial
objects with an incremental JSON decoder. Responses reuse the request id.
"""

import asyncio
import codecs
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from utils import now_ms
from .errors import ConnectionClosed, ConnectionTimeout, NotConnected, ParseError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
READ_CHUNK_SIZE = 64 * 1024
MAX_BUFFER_SIZE = 1024 * 1024
SOCKET_MODE = 0o600


class IPCMessageType(str, Enum):
    # Client -> daemon
    UNLOCK_KEYSTORE = "unlock_keystore"
    LOCK_KEYSTORE = "lock_keystore"
    GET_STATUS = "get_status"
    SHUTDOWN = "shutdown"
    GET_ACCOUNTS = "get_accounts"
    CREATE_ACCOUNT = "create_account"
    HIDE_ACCOUNT = "hide_account"
    SHOW_ACCOUNT = "show_account"
    SET_ACCOUNT_LABEL = "set_account_label"

    # Daemon -> client
    STATUS_RESPONSE = "status_response"
    UNLOCK_RESPONSE = "unlock_response"
    ACCOUNTS_RESPONSE = "accounts_response"
    ACCOUNT_RESPONSE = "account_response"
    ERROR = "error"


@dataclass
class IPCMessage:
    """A single IPC message."""
    type: str
    data: Any = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self):
        if isinstance(self.type, IPCMessageType):
            self.type = self.type.value

    def reply(self, type: str, data: Any = None) -> "IPCMessage":
        """A response correlated to this message."""
        return IPCMessage(type=type, data=data if data is not None else {}, id=self.id)

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type, "data": self.data, "timestamp": self.timestamp}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def encode(self) -> bytes:
        return self.to_json().encode("utf-8")

    @classmethod
    def from_dict(cls, obj: Any) -> "IPCMessage":
        """Create from a decoded JSON object. Raises ParseError."""
        if not isinstance(obj, dict):
            raise ParseError("IPC message must be a JSON object")
        if not isinstance(obj.get("type"), str):
            raise ParseError("IPC message has no type")
        return cls(
            type=obj["type"],
            data=obj.get("data") if obj.get("data") is not None else {},
            id=obj.get("id") or str(uuid.uuid4()),
            timestamp=obj.get("timestamp") or now_ms(),
        )


class IPCStreamDecoder:
    """
    Splits a byte stream of concatenated JSON objects.

    Object boundaries are found by tracking brace depth outside string
    literals; each complete object is then parsed with json. Incomplete
    objects stay buffered. Malformed input raises ParseError and discards
    the buffer, since there is no delimiter to resynchronize on. Objects
    completed earlier in the same chunk travel on the error as `objects`.
    """

    def __init__(self, max_buffer: int = MAX_BUFFER_SIZE):
        self.max_buffer = max_buffer
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._reset()

    @property
    def buffered(self) -> int:
        return len(self._text)

    def feed(self, chunk: bytes) -> list[Any]:
        try:
            self._text += self._utf8.decode(chunk)
        except UnicodeDecodeError as e:
            self._reset()
            raise ParseError(f"Invalid UTF-8 in IPC stream: {e}") from e

        objects = []
        text = self._text
        i = self._pos
        while i < len(text):
            char = text[i]
            if self._depth == 0:
                if char.isspace():
                    i += 1
                    self._start = i
                    continue
                if char != "{":
                    self._reset()
                    raise ParseError("IPC stream does not start with a JSON object", objects)

            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif char == "\\":
                    self._escaped = True
                elif char == '"':
                    self._in_string = False
            elif char == '"':
                self._in_string = True
            elif char in "{[":
                self._depth += 1
            elif char in "}]":
                self._depth -= 1
                if self._depth == 0:
                    segment = text[self._start:i + 1]
                    try:
                        objects.append(json.loads(segment))
                    except json.JSONDecodeError as e:
                        self._reset()
                        raise ParseError(f"Invalid JSON in IPC stream: {e.msg}", objects) from e
                    self._start = i + 1
            i += 1

        # Keep only the unfinished object
        self._text = text[self._start:]
        self._pos = len(self._text)
        self._start = 0

        if len(self._text) > self.max_buffer:
            self._reset()
            raise ParseError("IPC message exceeds size limit", objects)
        return objects

    def _reset(self) -> None:
        self._text = ""
        self._pos = 0
        self._start = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._utf8.reset()


# ============================================
# Server
# ============================================

class IPCConnection:
    """One connected client."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.id = str(uuid.uuid4())[:8]
        self.reader = reader
        self.writer = writer

    @property
    def is_closing(self) -> bool:
        return self.writer.is_closing()

    async def send(self, message: IPCMessage) -> bool:
        if self.writer.is_closing():
            return False
        self.writer.write(message.encode())
        try:
            await self.writer.drain()
        except (ConnectionError, BrokenPipeError) as e:
            logger.debug(f"IPC client {self.id} write failed: {e}")
            return False
        return True

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, BrokenPipeError):
            pass


RequestHandler = Callable[[IPCMessage, IPCConnection], Awaitable[Optional[IPCMessage]]]


class IPCServer:
    """
    Async Unix socket server.

    Serves many clients concurrently; messages from one client are handled
    in arrival order. The handler returns the reply (or None).
    """

    def __init__(self, socket_path: str | Path, handler: RequestHandler):
        self.socket_path = Path(socket_path)
        self.handler = handler
        self.server: Optional[asyncio.AbstractServer] = None
        self.clients: set[IPCConnection] = set()

    async def start(self) -> None:
        # Clean up stale socket
        if self.socket_path.exists() or self.socket_path.is_symlink():
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self.server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )

        # Set socket permissions (owner only)
        os.chmod(self.socket_path, SOCKET_MODE)
        logger.info(f"IPC server listening on {self.socket_path}")

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter) -> None:
        connection = IPCConnection(reader, writer)
        self.clients.add(connection)
        decoder = IPCStreamDecoder()
        logger.debug(f"IPC client {connection.id} connected")

        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                try:
                    objects = decoder.feed(chunk)
                except ParseError as e:
                    logger.warning(f"IPC client {connection.id}: {e}")
                    for obj in e.objects:
                        await self._dispatch(obj, connection)
                    await connection.send(IPCMessage(IPCMessageType.ERROR,
                                                     {"code": e.code, "message": e.message}))
                    continue

                for obj in objects:
                    await self._dispatch(obj, connection)
        except (ConnectionError, BrokenPipeError) as e:
            logger.debug(f"IPC client {connection.id} connection error: {e}")
        finally:
            self.clients.discard(connection)
            await connection.close()
            logger.debug(f"IPC client {connection.id} disconnected")

    async def _dispatch(self, obj: Any, connection: IPCConnection) -> None:
        try:
            message = IPCMessage.from_dict(obj)
        except ParseError as e:
            request_id = obj.get("id") if isinstance(obj, dict) else None
            error = IPCMessage(IPCMessageType.ERROR, {"code": e.code, "message": e.message})
            if request_id:
                error.id = request_id
            await connection.send(error)
            return

        try:
            reply = await self.handler(message, connection)
        except Exception:
            logger.exception(f"Error handling IPC message {message.type}")
            reply = message.reply(IPCMessageType.ERROR,
                                  {"code": "internal_error", "message": "Internal error"})
        if reply is not None:
            await connection.send(reply)

    async def send_to_client(self, connection: IPCConnection, message: IPCMessage) -> bool:
        return await connection.send(message)

    async def broadcast(self, message: IPCMessage) -> None:
        for connection in list(self.clients):
            await connection.send(message)

    async def stop(self) -> None:
        for connection in list(self.clients):
            await connection.close()
        self.clients.clear()

        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        self.socket_path.unlink(missing_ok=True)
        logger.info("IPC server stopped")


# ============================================
# Client
# ============================================

class IPCClient:
    """
    Client for the daemon socket.

    Usage:
        client = IPCClient(socket_path)
        await client.connect()
        status = await client.request_status()
        await client.close()
    """

    def __init__(self, socket_path: str | Path, timeout: float = DEFAULT_TIMEOUT):
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.connected = False
        self.messages: asyncio.Queue = asyncio.Queue()  # uncorrelated messages
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._read_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config) -> "IPCClient":
        """Client for the socket and request timeout of a DaemonConfig."""
        return cls(config.socket_path, timeout=config.ipc_timeout_s)

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_unix_connection(str(self.socket_path))
        self.connected = True
        self._read_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        decoder = IPCStreamDecoder()
        try:
            while True:
                chunk = await self._reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                try:
                    objects = decoder.feed(chunk)
                except ParseError as e:
                    logger.warning(f"Daemon sent malformed data: {e}")
                    objects = e.objects
                for obj in objects:
                    self._deliver(obj)
        except (ConnectionError, BrokenPipeError) as e:
            logger.debug(f"IPC connection error: {e}")
        finally:
            self.connected = False
            self._fail_pending(ConnectionClosed())

    def _deliver(self, obj: Any) -> None:
        try:
            message = IPCMessage.from_dict(obj)
        except ParseError as e:
            logger.warning(f"Ignoring malformed daemon message: {e}")
            return
        future = self._pending.pop(message.id, None)
        if future is not None and not future.done():
            future.set_result(message)
        else:
            self.messages.put_nowait(message)

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def send(self, message: IPCMessage, wait_for_response: bool = False,
                   timeout: Optional[float] = None) -> Optional[IPCMessage]:
        """
        Send a message, optionally waiting for the correlated reply.

        Raises:
            NotConnected: if the client is not connected
            ConnectionTimeout: if no reply arrives within the timeout
            ConnectionClosed: if the socket closes before the reply
        """
        if not self.connected or self._writer is None:
            raise NotConnected()

        if not wait_for_response:
            self._writer.write(message.encode())
            await self._writer.drain()
            return None

        future = asyncio.get_running_loop().create_future()
        self._pending[message.id] = future
        try:
            self._writer.write(message.encode())
            await self._writer.drain()
            return await asyncio.wait_for(future, timeout or self.timeout)
        except asyncio.TimeoutError as e:
            raise ConnectionTimeout() from e
        except (ConnectionError, BrokenPipeError) as e:
            raise ConnectionClosed() from e
        finally:
            self._pending.pop(message.id, None)

    async def request(self, type: IPCMessageType, data: Optional[dict] = None) -> IPCMessage:
        return await self.send(IPCMessage(type, data or {}), wait_for_response=True)

    async def request_status(self) -> dict:
        return (await self.request(IPCMessageType.GET_STATUS)).data

    async def request_unlock(self, password: str) -> dict:
        return (await self.request(IPCMessageType.UNLOCK_KEYSTORE, {"password": password})).data

    async def request_accounts(self, include_hidden: bool = False) -> dict:
        return (await self.request(IPCMessageType.GET_ACCOUNTS,
                                   {"includeHidden": include_hidden})).data

    async def request_lock(self) -> None:
        await self.send(IPCMessage(IPCMessageType.LOCK_KEYSTORE))

    async def request_shutdown(self) -> None:
        await self.send(IPCMessage(IPCMessageType.SHUTDOWN))

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, BrokenPipeError):
                pass
            self._writer = None
        if self._read_task is not None:
            await self._read_task
            self._read_task = None
        self.connected = False
