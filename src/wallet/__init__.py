"""
Wallet package - Secure key management for the daemon.

Contains:
- Crypto: scrypt + AES-256-GCM envelopes, BIP-39/44 derivation
- Keystore: encrypted HD wallet with per-account metadata
- KeystoreWatcher: reloads the keystore on external file changes
- Errors: KeystoreError and its coded subclasses
"""

from .crypto import encrypt, decrypt, derive_key, wipe
from .errors import (
    KeystoreError,
    InvalidPassword,
    Corrupt,
    CryptoError,
    WeakPassword,
    InvalidSecret,
    NoKeystore,
    Locked,
    AccountNotFound,
    NoMnemonic,
    CannotHidePrimary,
)
from .keystore import Keystore
from .watcher import KeystoreWatcher

__all__ = [
    # Crypto
    "encrypt",
    "decrypt",
    "derive_key",
    "wipe",
    # Errors
    "KeystoreError",
    "InvalidPassword",
    "Corrupt",
    "CryptoError",
    "WeakPassword",
    "InvalidSecret",
    "NoKeystore",
    "Locked",
    "AccountNotFound",
    "NoMnemonic",
    "CannotHidePrimary",
    # Keystore
    "Keystore",
    "KeystoreWatcher",
]
