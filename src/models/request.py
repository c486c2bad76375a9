"""
Canonical request model.

Both transports normalize their messages into a ValidationRequest before
validation and dispatch.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from utils import now_ms

CLI_ORIGIN = "cli"
UNKNOWN_ORIGIN = "unknown"


@dataclass
class ValidationRequest:
    """A transport-independent request: {id, type, data, origin, timestamp}."""
    id: Any
    type: Optional[str]
    data: Any = field(default_factory=dict)
    origin: str = CLI_ORIGIN
    timestamp: int = field(default_factory=now_ms)

    @property
    def is_cli(self) -> bool:
        return self.origin == CLI_ORIGIN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "origin": self.origin,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_ipc(cls, message: dict) -> "ValidationRequest":
        """Build from an IPC message; IPC callers are always the local CLI."""
        return cls(
            id=message.get("id"),
            type=message.get("type"),
            data=message.get("data", {}),
            origin=CLI_ORIGIN,
            timestamp=message.get("timestamp") or now_ms(),
        )

    @classmethod
    def from_native(cls, message: dict) -> "ValidationRequest":
        """
        Build from a native-messaging request {id, method, params, origin}.

        Positional params are mapped onto named data fields so that the
        schema check can see them. The raw list stays under data.params.
        """
        method = message.get("method")
        if not isinstance(method, str):
            method = None
        params = message.get("params")
        if params is None:
            params = []

        data: dict = {"params": params}
        if isinstance(params, list):
            data.update(_map_params(method, params))

        return cls(
            id=message.get("id"),
            type=method,
            data=data,
            origin=_native_origin(message.get("origin")),
        )


def _native_origin(origin: Any) -> str:
    # Browser-supplied; never trusted as the local CLI
    if not isinstance(origin, str) or not origin or origin == CLI_ORIGIN:
        return UNKNOWN_ORIGIN
    return origin


def _map_params(method: Optional[str], params: list) -> dict:
    if method in ("eth_sendTransaction", "eth_signTransaction"):
        if params and isinstance(params[0], dict):
            mapped = {"transaction": params[0]}
            if params[0].get("from"):
                mapped["address"] = params[0]["from"]
            return mapped
        return {}

    if method == "personal_sign":
        # personal_sign(message, address)
        return {k: v for k, v in zip(("message", "address"), params)}

    if method == "eth_sign":
        # eth_sign(address, message)
        return {k: v for k, v in zip(("address", "message"), params)}

    return {}
