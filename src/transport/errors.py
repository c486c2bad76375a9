"""
Transport errors.
"""

from typing import Optional


class ProtocolError(Exception):
    """Base class for framing and connection failures."""

    code = "protocol_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self)


class ParseError(ProtocolError):
    """Malformed message"""
    code = "parse_error"

    def __init__(self, message: str = "", objects: Optional[list] = None):
        super().__init__(message)
        # Complete messages decoded ahead of the malformed bytes
        self.objects = objects or []


class ConnectionTimeout(ProtocolError):
    """IPC request timeout"""
    code = "connection_timeout"


class ConnectionClosed(ProtocolError):
    """Connection closed"""
    code = "connection_closed"


class NotConnected(ProtocolError):
    """Not connected to daemon"""
    code = "not_connected"
