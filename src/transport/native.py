"""
Native messaging transport.

Browser native messaging frames every message as a 4-byte little-endian
length followed by that many bytes of UTF-8 JSON, in both directions, over
the host's stdin and stdout.

Usage:
    channel = NativeMessagingChannel(handle_message)
    await channel.open()          # attach to stdin/stdout
    await channel.run()           # until the browser closes stdin
"""

import asyncio
import json
import logging
import struct
import sys
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

from .errors import ParseError, ProtocolError

logger = logging.getLogger(__name__)

HEADER = struct.Struct("<I")
HEADER_SIZE = HEADER.size
MAX_FRAME_SIZE = 64 * 1024 * 1024  # browser -> host limit
READ_CHUNK_SIZE = 64 * 1024

PARSE_ERROR_CODE = -32700
GENERAL_ERROR_CODE = -1


def encode_frame(obj: Any) -> bytes:
    """Encode one JSON-serializable object as a length-prefixed frame."""
    payload = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    if len(payload) > 0xFFFFFFFF:
        raise ProtocolError("Message too large to frame")
    return HEADER.pack(len(payload)) + payload


class FrameDecoder:
    """
    Incremental decoder for length-prefixed JSON frames.

    Bytes may arrive in arbitrary chunks; partial headers and partial
    payloads stay buffered until the rest arrives.
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE):
        self.max_frame_size = max_frame_size
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> Iterator[Union[Any, ParseError]]:
        """
        Add bytes and yield every complete frame's decoded object.

        A complete frame whose payload is not valid JSON yields a ParseError
        instance (not raised) and decoding continues with the next frame.

        Raises:
            ProtocolError: if a header announces a frame above max_frame_size
        """
        self._buffer.extend(chunk)
        while len(self._buffer) >= HEADER_SIZE:
            (length,) = HEADER.unpack_from(self._buffer)
            if length > self.max_frame_size:
                raise ProtocolError(f"Frame of {length} bytes exceeds limit")
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                return

            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]
            try:
                yield json.loads(payload.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                yield ParseError(f"Invalid JSON message: {e}")


MessageHandler = Callable[[dict], Awaitable[Optional[dict]]]


class NativeMessagingChannel:
    """
    Native messaging connection to the browser.

    Messages are handled one at a time in arrival order. The handler returns
    the response dict (or None for no response). End of stdin is reported
    as a disconnect immediately; a handler already running finishes, its
    response is dropped, and messages not yet started are discarded.
    """

    def __init__(self, handler: MessageHandler,
                 reader: Optional[asyncio.StreamReader] = None,
                 writer=None,
                 on_connect: Optional[Callable[[], None]] = None,
                 on_disconnect: Optional[Callable[[], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None):
        self.handler = handler
        self.reader = reader
        self.writer = writer
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.on_error = on_error

        self.connected = False
        self._decoder = FrameDecoder()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    async def open(self) -> None:
        """Attach to the process stdin/stdout unless streams were supplied."""
        loop = asyncio.get_running_loop()
        if self.reader is None:
            self.reader = asyncio.StreamReader()
            protocol = asyncio.StreamReaderProtocol(self.reader)
            await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
        if self.writer is None:
            transport, protocol = await loop.connect_write_pipe(
                asyncio.streams.FlowControlMixin, sys.stdout.buffer
            )
            self.writer = asyncio.StreamWriter(transport, protocol, None, loop)

    def connect(self) -> None:
        self.connected = True
        logger.info("Browser extension connected")
        if self.on_connect:
            self.on_connect()

    def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        logger.info("Browser extension disconnected")
        if self.on_disconnect:
            self.on_disconnect()

    async def run(self) -> None:
        """Read frames until end of input, dispatching them to the worker."""
        if self.reader is None or self.writer is None:
            await self.open()

        self.connect()
        self._worker = asyncio.create_task(self._process())
        try:
            while True:
                chunk = await self.reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for item in self._decoder.feed(chunk):
                    if isinstance(item, ParseError):
                        await self._report_parse_error(item)
                    else:
                        self._queue.put_nowait(item)
        except ProtocolError as e:
            logger.error(f"Native messaging stream unusable: {e}")
            if self.on_error:
                self.on_error(e)
        finally:
            self.disconnect()
            self._drop_pending()
            self._queue.put_nowait(None)

    async def wait_idle(self) -> None:
        """Wait for the in-flight handler (if any) to finish after run() returns."""
        if self._worker is not None:
            await self._worker

    async def _report_parse_error(self, error: ParseError) -> None:
        logger.warning(f"Native message parse error: {error}")
        if self.on_error:
            self.on_error(error)
        await self.send_error(None, PARSE_ERROR_CODE, error.message)

    def _drop_pending(self) -> None:
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        if dropped:
            logger.info(f"Discarded {dropped} unprocessed native messages after disconnect")

    async def _process(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            if not isinstance(message, dict):
                await self.send_error(None, PARSE_ERROR_CODE, "Message must be a JSON object")
                continue
            try:
                response = await self.handler(message)
            except Exception:
                logger.exception(f"Native message handler failed for {message.get('method')}")
                response = {
                    "id": message.get("id"),
                    "result": None,
                    "error": {"code": GENERAL_ERROR_CODE, "message": "Internal error"},
                }
            if response is not None:
                await self.send(response)

    async def send(self, message: dict) -> bool:
        """Write one framed message. Returns False if dropped (disconnected)."""
        if not self.connected or self.writer is None:
            logger.debug("Dropping native response: not connected")
            return False
        self.writer.write(encode_frame(message))
        try:
            await self.writer.drain()
        except (ConnectionError, BrokenPipeError) as e:
            logger.warning(f"Native messaging write failed: {e}")
            self.disconnect()
            return False
        return True

    async def send_response(self, request_id, result=None, error=None) -> bool:
        return await self.send({"id": request_id, "result": result, "error": error})

    async def send_error(self, request_id, code: int, message: str) -> bool:
        return await self.send_response(request_id, None, {"code": code, "message": message})
