"""
Models package - Data models for the wallet daemon.

Contains:
- AccountRecord, WalletPayload, KeystoreFile: keystore data model
- ValidationRequest: canonical request passed through validation
- DaemonConfig: runtime settings
- EventChannel and the event enums
"""

from .wallet import AccountRecord, WalletPayload, KeystoreFile, KEYSTORE_VERSION
from .request import ValidationRequest, CLI_ORIGIN, UNKNOWN_ORIGIN
from .config import DaemonConfig, load_config
from .events import (
    Event,
    EventChannel,
    KeystoreEvent,
    DaemonEvent,
    SessionEvent,
)

__all__ = [
    "AccountRecord",
    "WalletPayload",
    "KeystoreFile",
    "KEYSTORE_VERSION",
    "ValidationRequest",
    "CLI_ORIGIN",
    "UNKNOWN_ORIGIN",
    "DaemonConfig",
    "load_config",
    "Event",
    "EventChannel",
    "KeystoreEvent",
    "DaemonEvent",
    "SessionEvent",
]
