"""
Wallet models.

KeystoreFile is what lives on disk. WalletPayload and AccountRecord are the
decrypted view that only exists in memory while the keystore is unlocked.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

KEYSTORE_VERSION = "1.0.0"


def _wipe(buf: bytearray) -> None:
    if buf:
        buf[:] = bytes(len(buf))


@dataclass
class AccountRecord:
    """An account in the wallet (private key held in memory only)."""
    address: str                      # Checksummed 0x address
    derivation_path: Optional[str]    # None for imported raw keys
    private_key: bytearray = field(repr=False)
    index: int = 0
    visible: bool = True
    label: str = ""

    def __post_init__(self):
        if self.index == 0:
            self.visible = True

    @property
    def key(self) -> str:
        """Lookup key (lower-case address)."""
        return self.address.lower()

    def to_dict(self) -> dict:
        """Serialize for the encrypted payload (includes the private key)."""
        return {
            "address": self.address,
            "derivationPath": self.derivation_path,
            "privateKey": "0x" + bytes(self.private_key).hex(),
            "index": self.index,
            "visible": self.visible,
            "label": self.label,
        }

    def public_dict(self) -> dict:
        """Account metadata safe to hand to clients."""
        return {
            "address": self.address,
            "derivationPath": self.derivation_path,
            "index": self.index,
            "visible": self.visible,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AccountRecord":
        """Create from dictionary with input validation."""
        key_hex = data["privateKey"]
        if not isinstance(key_hex, str):
            raise ValueError("privateKey must be a hex string")
        if key_hex.startswith(("0x", "0X")):
            key_hex = key_hex[2:]

        index = data.get("index", 0)
        if not isinstance(index, int) or index < 0:
            raise ValueError(f"index must be a non-negative integer, got {index}")

        return cls(
            address=data["address"],
            derivation_path=data.get("derivationPath", data.get("path")),
            private_key=bytearray.fromhex(key_hex),
            index=index,
            visible=bool(data.get("visible", True)),
            label=data.get("label") or f"Account {index + 1}",
        )

    def copy(self) -> "AccountRecord":
        return AccountRecord(
            address=self.address,
            derivation_path=self.derivation_path,
            private_key=bytearray(self.private_key),
            index=self.index,
            visible=self.visible,
            label=self.label,
        )

    def wipe(self) -> None:
        _wipe(self.private_key)


@dataclass
class WalletPayload:
    """The decrypted wallet: optional mnemonic plus the account list."""
    mnemonic: Optional[str]
    next_account_index: int
    accounts: list[AccountRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "mnemonic": self.mnemonic,
            "nextAccountIndex": self.next_account_index,
            "accounts": [a.to_dict() for a in self.accounts],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WalletPayload":
        """Create from dictionary with input validation."""
        if not isinstance(data, dict):
            raise ValueError("Wallet payload must be an object")

        accounts = [AccountRecord.from_dict(a) for a in data.get("accounts", [])]
        if not accounts:
            raise ValueError("Wallet payload has no accounts")
        if not any(a.index == 0 for a in accounts):
            raise ValueError("Wallet payload has no primary account")

        next_index = data.get("nextAccountIndex")
        if not isinstance(next_index, int):
            next_index = max(a.index for a in accounts) + 1

        return cls(
            mnemonic=data.get("mnemonic"),
            next_account_index=next_index,
            accounts=accounts,
        )

    def find(self, address: str) -> Optional[AccountRecord]:
        """Find an account by address (case-insensitive)."""
        wanted = address.lower()
        for account in self.accounts:
            if account.key == wanted:
                return account
        return None

    def copy(self) -> "WalletPayload":
        return WalletPayload(
            mnemonic=self.mnemonic,
            next_account_index=self.next_account_index,
            accounts=[a.copy() for a in self.accounts],
        )

    def wipe(self) -> None:
        """Zero every private key and drop references to the secrets."""
        for account in self.accounts:
            account.wipe()
        self.accounts.clear()
        self.mnemonic = None


@dataclass
class KeystoreFile:
    """The on-disk keystore document. Never holds plaintext key material."""
    crypto: dict
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: str = KEYSTORE_VERSION

    def to_dict(self) -> dict:
        return {"version": self.version, "id": self.id, "crypto": self.crypto}

    @classmethod
    def from_dict(cls, data: dict) -> "KeystoreFile":
        if not isinstance(data, dict) or not isinstance(data.get("crypto"), dict):
            raise ValueError("Keystore file has no crypto section")
        return cls(
            crypto=data["crypto"],
            id=str(data.get("id", "")),
            version=str(data.get("version", KEYSTORE_VERSION)),
        )
