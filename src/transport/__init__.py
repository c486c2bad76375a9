"""
Transport package - Wire protocols for the daemon.

Contains:
- Native messaging: length-prefixed JSON over stdin/stdout
- IPC: JSON messages over a Unix socket
"""

from .errors import ProtocolError, ParseError, ConnectionTimeout, ConnectionClosed, NotConnected
from .native import encode_frame, FrameDecoder, NativeMessagingChannel
from .ipc import IPCMessage, IPCMessageType, IPCStreamDecoder, IPCServer, IPCClient, IPCConnection

__all__ = [
    "ProtocolError",
    "ParseError",
    "ConnectionTimeout",
    "ConnectionClosed",
    "NotConnected",
    "encode_frame",
    "FrameDecoder",
    "NativeMessagingChannel",
    "IPCMessage",
    "IPCMessageType",
    "IPCStreamDecoder",
    "IPCServer",
    "IPCClient",
    "IPCConnection",
]
