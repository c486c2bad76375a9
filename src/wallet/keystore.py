"""
Keystore - Encrypted-at-rest HD wallet with per-account metadata.

Structure:
- One JSON keystore file per wallet generation in the keystore directory
  (keystore-<UTC timestamp>.json); the newest file is authoritative
- The whole WalletPayload (mnemonic + accounts) is encrypted with one password
- Every mutation re-encrypts and rewrites the file with the supplied password

Usage:
    keystore = Keystore(keystore_dir)
    keystore.init()
    result = keystore.create_wallet("password123")
    keystore.lock()
    keystore.unlock("password123")
    signature = keystore.sign_message("hello", result["address"])

The scrypt-heavy operations have *_async variants that do the crypto and
file I/O on an executor thread and apply the in-memory changes on the event
loop thread.
"""

import asyncio
import functools
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from models.events import EventChannel, KeystoreEvent
from models.wallet import AccountRecord, KeystoreFile, WalletPayload
from .crypto import (
    address_from_key,
    decrypt,
    derivation_path,
    derive_private_key,
    encrypt,
    is_valid_mnemonic,
    is_valid_private_key,
    new_mnemonic,
    set_secure_permissions,
    wipe,
)
from .errors import (
    AccountNotFound,
    CannotHidePrimary,
    Corrupt,
    InvalidPassword,
    InvalidSecret,
    Locked,
    NoKeystore,
    NoMnemonic,
    WeakPassword,
)

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MIN_MNEMONIC_WORDS = 12
PRIVATE_KEY_PATTERN = re.compile(r"0x[0-9a-fA-F]{64}")


@dataclass
class _Prepared:
    """Result of the off-loop half of an operation, applied by _commit()."""
    payload: Optional[WalletPayload]
    result: Any = None
    file: Optional[KeystoreFile] = None
    path: Optional[Path] = None
    event: Optional[KeystoreEvent] = None


def _check_password(password: str) -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPassword()


def _open_payload(keystore_file: KeystoreFile, password: str) -> WalletPayload:
    """Decrypt and parse a keystore file. Raises InvalidPassword or Corrupt."""
    plaintext = decrypt(keystore_file.crypto, password)
    try:
        data = json.loads(plaintext.decode('utf-8'))
        return WalletPayload.from_dict(data)
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise Corrupt("Decrypted wallet data is malformed") from e
    finally:
        wipe(plaintext)


def _seal_payload(payload: WalletPayload, password: str,
                  keystore_id: Optional[str] = None) -> KeystoreFile:
    """Encrypt a payload into a KeystoreFile (new id unless one is given)."""
    plaintext = bytearray(json.dumps(payload.to_dict()).encode('utf-8'))
    try:
        envelope = encrypt(plaintext, password)
    finally:
        wipe(plaintext)
    if keystore_id:
        return KeystoreFile(crypto=envelope, id=keystore_id)
    return KeystoreFile(crypto=envelope)


def _write_file(keystore_file: KeystoreFile, filepath: Path) -> None:
    """Atomically write a keystore file with owner-only permissions."""
    filepath.parent.mkdir(parents=True, exist_ok=True)

    temp_path = filepath.with_suffix('.tmp')
    with open(temp_path, 'w') as f:
        json.dump(keystore_file.to_dict(), f, indent=2)

    temp_path.replace(filepath)
    set_secure_permissions(filepath)


def _new_account(mnemonic: str, index: int) -> AccountRecord:
    private_key = derive_private_key(mnemonic, index)
    return AccountRecord(
        address=address_from_key(private_key),
        derivation_path=derivation_path(index),
        private_key=private_key,
        index=index,
        visible=True,
        label=f"Account {index + 1}",
    )


def _prepare_transaction(tx: dict, account_address: str) -> dict:
    """Normalize a JSON-RPC style transaction for eth_account."""
    if not isinstance(tx, dict):
        raise ValueError("Transaction must be an object")

    prepared = {k: v for k, v in tx.items() if v is not None}
    sender = prepared.pop("from", None)
    if sender and str(sender).lower() != account_address.lower():
        raise ValueError("Transaction sender does not match the signing account")
    if "gasLimit" in prepared and "gas" not in prepared:
        prepared["gas"] = prepared.pop("gasLimit")
    prepared.pop("gasLimit", None)
    return prepared


def _encode_message(message):
    """Build an EIP-191 signable message from text, 0x-hex or bytes."""
    if isinstance(message, (bytes, bytearray)):
        return encode_defunct(primitive=bytes(message))
    if not isinstance(message, str):
        raise ValueError("Message must be a string")
    if message.startswith("0x") and re.fullmatch(r"0x([0-9a-fA-F]{2})*", message):
        return encode_defunct(hexstr=message)
    return encode_defunct(text=message)


class Keystore:
    """
    Encrypted keystore holding one wallet.

    Locked: only the encrypted KeystoreFile is in memory.
    Unlocked: the decrypted WalletPayload and an address -> account map.
    """

    def __init__(self, keystore_dir: str | Path, events: Optional[EventChannel] = None):
        self.keystore_dir = Path(keystore_dir)
        self.events = events or EventChannel("keystore")
        self.keystore_path: Optional[Path] = None
        self._file: Optional[KeystoreFile] = None
        self._payload: Optional[WalletPayload] = None
        self._accounts: dict[str, AccountRecord] = {}  # lower-case address -> account

    # ============================================
    # Loading
    # ============================================

    def init(self) -> None:
        """Create the keystore directory and load the newest keystore file."""
        self.keystore_dir.mkdir(parents=True, exist_ok=True)
        self.load()

    def keystore_files(self) -> list[Path]:
        """All keystore files on disk, oldest first."""
        if not self.keystore_dir.exists():
            return []
        files = [f for f in self.keystore_dir.glob("*.json") if f.is_file()]
        return sorted(files, key=lambda f: (f.stat().st_mtime_ns, f.name))

    def count_keystore_files(self) -> int:
        return len(self.keystore_files())

    def load(self) -> Optional[Path]:
        """
        (Re)read the newest keystore file into memory.

        Does not change the lock state.

        Raises:
            Corrupt: if the file is not a valid keystore document
            OSError: if the file cannot be read
        """
        files = self.keystore_files()
        if not files:
            self._file = None
            self.keystore_path = None
            return None

        path = files[-1]
        with open(path, 'r') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise Corrupt(f"Keystore file {path.name} is not valid JSON") from e

        try:
            self._file = KeystoreFile.from_dict(data)
        except ValueError as e:
            raise Corrupt(f"Keystore file {path.name} is malformed") from e

        self.keystore_path = path
        return path

    def reload(self) -> None:
        """
        Re-read the keystore directory after an external change.

        Emits LOADED for a newly created keystore and CHANGED otherwise. A
        removed keystore, or one replaced by a different wallet, locks.
        """
        had_keystore = self.has_keystore()
        old_id = self._file.id if self._file else None

        try:
            self.load()
        except (Corrupt, OSError) as e:
            logger.error(f"Keystore reload failed: {e}")
            self.events.emit(KeystoreEvent.ERROR, error=e)
            raise

        has_keystore = self.has_keystore()
        if not had_keystore and has_keystore:
            logger.info("New keystore detected and loaded")
            self.events.emit(KeystoreEvent.LOADED)
        elif had_keystore and not has_keystore:
            logger.info("Keystore removed")
            self.lock()
            self.events.emit(KeystoreEvent.CHANGED, removed=True)
        elif has_keystore:
            if self._file.id != old_id and not self.is_locked:
                logger.info("Keystore replaced by a different wallet, locking")
                self.lock()
            self.events.emit(KeystoreEvent.CHANGED, updated=True)

    def has_keystore(self) -> bool:
        return self._file is not None

    @property
    def is_locked(self) -> bool:
        return self._payload is None

    @property
    def has_mnemonic(self) -> bool:
        return self._payload is not None and self._payload.mnemonic is not None

    # ============================================
    # Commit (event loop side)
    # ============================================

    def _install(self, payload: WalletPayload) -> None:
        old = self._payload
        self._payload = payload
        self._accounts = {a.key: a for a in payload.accounts}
        if old is not None and old is not payload:
            old.wipe()

    def _commit(self, prepared: _Prepared):
        if prepared.file is not None:
            self._file = prepared.file
            self.keystore_path = prepared.path

        if prepared.payload is not None:
            if prepared.event == KeystoreEvent.CHANGED and self.is_locked:
                # Locked while the rewrite was in flight; stay locked
                prepared.payload.wipe()
            else:
                self._install(prepared.payload)

        if prepared.event == KeystoreEvent.UNLOCKED:
            self.events.emit(KeystoreEvent.UNLOCKED, accounts=self.get_accounts())
        elif prepared.event == KeystoreEvent.CHANGED:
            self.events.emit(KeystoreEvent.CHANGED, updated=True)
        return prepared.result

    async def _run_async(self, executor, prepare: Callable[..., _Prepared], *args):
        loop = asyncio.get_running_loop()
        prepared = await loop.run_in_executor(executor, functools.partial(prepare, *args))
        return self._commit(prepared)

    # ============================================
    # Create / Import
    # ============================================

    def _new_path(self) -> Path:
        now = datetime.now(timezone.utc)
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
        path = self.keystore_dir / f"keystore-{stamp}.json"
        counter = 1
        while path.exists():
            path = self.keystore_dir / f"keystore-{stamp}-{counter}.json"
            counter += 1
        return path

    def _prepare_new_wallet(self, payload: WalletPayload, password: str, result: dict) -> _Prepared:
        keystore_file = _seal_payload(payload, password)
        path = self._new_path()
        _write_file(keystore_file, path)
        logger.info(f"Keystore written: {path.name}")
        return _Prepared(payload=payload, result=result, file=keystore_file,
                         path=path, event=KeystoreEvent.UNLOCKED)

    def _prepare_create(self, password: str, word_count: int = 12) -> _Prepared:
        _check_password(password)
        mnemonic = new_mnemonic(word_count)
        account = _new_account(mnemonic, 0)
        payload = WalletPayload(mnemonic=mnemonic, next_account_index=1, accounts=[account])
        result = {"address": account.address, "mnemonic": mnemonic}
        return self._prepare_new_wallet(payload, password, result)

    def _prepare_import(self, secret: str, password: str) -> _Prepared:
        _check_password(password)
        if not isinstance(secret, str):
            raise InvalidSecret()

        secret = secret.strip()
        words = secret.split()
        if len(words) >= MIN_MNEMONIC_WORDS:
            mnemonic = " ".join(words)
            if not is_valid_mnemonic(mnemonic):
                raise InvalidSecret("Invalid mnemonic phrase")
            account = _new_account(mnemonic, 0)
            payload = WalletPayload(mnemonic=mnemonic, next_account_index=1, accounts=[account])
        elif PRIVATE_KEY_PATTERN.fullmatch(secret):
            private_key = bytearray.fromhex(secret[2:])
            if not is_valid_private_key(private_key):
                wipe(private_key)
                raise InvalidSecret("Invalid private key")
            account = AccountRecord(
                address=address_from_key(private_key),
                derivation_path=None,
                private_key=private_key,
                index=0,
                visible=True,
                label="Account 1",
            )
            payload = WalletPayload(mnemonic=None, next_account_index=1, accounts=[account])
        else:
            raise InvalidSecret()

        return self._prepare_new_wallet(payload, password, {"address": account.address})

    def create_wallet(self, password: str, word_count: int = 12) -> dict:
        """
        Create a new HD wallet, persist it and keep it unlocked.

        Returns {"address", "mnemonic"}; the mnemonic is only ever returned here.
        """
        return self._commit(self._prepare_create(password, word_count))

    def import_wallet(self, secret: str, password: str) -> dict:
        """
        Import a wallet from a mnemonic (12+ words) or a 0x-prefixed raw key.

        Returns {"address"}.
        """
        return self._commit(self._prepare_import(secret, password))

    async def create_wallet_async(self, password: str, word_count: int = 12, executor=None) -> dict:
        return await self._run_async(executor, self._prepare_create, password, word_count)

    async def import_wallet_async(self, secret: str, password: str, executor=None) -> dict:
        return await self._run_async(executor, self._prepare_import, secret, password)

    # ============================================
    # Lock / Unlock
    # ============================================

    @staticmethod
    def _prepare_unlock(keystore_file: KeystoreFile, password: str) -> _Prepared:
        try:
            payload = _open_payload(keystore_file, password)
        except InvalidPassword:
            return _Prepared(payload=None, result=False)
        return _Prepared(payload=payload, result=True, event=KeystoreEvent.UNLOCKED)

    def _unlock_file(self) -> KeystoreFile:
        if self._file is None:
            raise NoKeystore()
        return self._file

    def unlock(self, password: str) -> bool:
        """
        Decrypt the keystore.

        Returns False on a wrong password. Corrupt files and I/O errors raise.
        """
        return self._commit(self._prepare_unlock(self._unlock_file(), password))

    async def unlock_async(self, password: str, executor=None) -> bool:
        return await self._run_async(executor, self._prepare_unlock, self._unlock_file(), password)

    def lock(self) -> None:
        """Lock the keystore, zeroing all decrypted key material."""
        was_unlocked = self._payload is not None
        if self._payload is not None:
            self._payload.wipe()
        self._payload = None
        self._accounts = {}
        if was_unlocked:
            logger.info("Keystore locked")
            self.events.emit(KeystoreEvent.LOCKED)

    def delete_keystore(self) -> None:
        """Lock, then remove the authoritative keystore file (idempotent)."""
        self.lock()
        path = self.keystore_path
        had_keystore = self._file is not None
        if path is not None:
            path.unlink(missing_ok=True)
            logger.info(f"Keystore deleted: {path.name}")
        self.keystore_path = None
        self._file = None
        if had_keystore:
            self.events.emit(KeystoreEvent.CHANGED, removed=True)

    # ============================================
    # Accounts
    # ============================================

    def get_accounts(self, include_hidden: bool = False) -> list[str]:
        """Account addresses in wallet order; empty while locked."""
        if self._payload is None:
            return []
        return [a.address for a in self._payload.accounts if include_hidden or a.visible]

    def get_account_details(self, address: str) -> Optional[dict]:
        """Public metadata for one account (never the private key)."""
        account = self._accounts.get(str(address).lower())
        return account.public_dict() if account else None

    def get_all_account_details(self, include_hidden: bool = False) -> list[dict]:
        if self._payload is None:
            return []
        return [a.public_dict() for a in self._payload.accounts if include_hidden or a.visible]

    def _require_account(self, address: str) -> AccountRecord:
        if self._payload is None:
            raise Locked()
        account = self._accounts.get(str(address).lower())
        if account is None:
            raise AccountNotFound(f"Account {address} not found")
        return account

    # ============================================
    # Signing
    # ============================================

    def sign_transaction(self, tx: dict, address: str) -> str:
        """Sign a transaction dict and return the raw signed transaction as 0x-hex."""
        account = self._require_account(address)
        prepared = _prepare_transaction(tx, account.address)
        signed = Account.sign_transaction(prepared, bytes(account.private_key))
        return "0x" + bytes(signed.raw_transaction).hex()

    def sign_message(self, message, address: str) -> str:
        """EIP-191 personal-sign a message and return the 65-byte signature as 0x-hex."""
        account = self._require_account(address)
        signable = _encode_message(message)
        signed = Account.sign_message(signable, bytes(account.private_key))
        return "0x" + bytes(signed.signature).hex()

    # ============================================
    # Account management (rewrites the keystore file)
    # ============================================

    def _mutation_snapshot(self) -> tuple[KeystoreFile, Path, WalletPayload]:
        if self._payload is None:
            raise Locked()
        if self._file is None or self.keystore_path is None:
            raise NoKeystore()
        return self._file, self.keystore_path, self._payload.copy()

    @staticmethod
    def _prepare_mutation(keystore_file: KeystoreFile, path: Path, payload: WalletPayload,
                          password: str, mutate: Callable[[WalletPayload], Any]) -> _Prepared:
        # The supplied password must open the current file before anything is rewritten
        _open_payload(keystore_file, password).wipe()

        try:
            result = mutate(payload)
            new_file = _seal_payload(payload, password, keystore_file.id)
            _write_file(new_file, path)
        except BaseException:
            payload.wipe()
            raise
        return _Prepared(payload=payload, result=result, file=new_file,
                         path=path, event=KeystoreEvent.CHANGED)

    def _mutation_args(self, password: str, mutate: Callable[[WalletPayload], Any]) -> tuple:
        keystore_file, path, payload = self._mutation_snapshot()
        return keystore_file, path, payload, password, mutate

    def _mutate(self, password: str, mutate: Callable[[WalletPayload], Any]):
        return self._commit(self._prepare_mutation(*self._mutation_args(password, mutate)))

    async def _mutate_async(self, password: str, mutate: Callable[[WalletPayload], Any], executor):
        return await self._run_async(executor, self._prepare_mutation,
                                     *self._mutation_args(password, mutate))

    def _next_account_mutation(self) -> Callable[[WalletPayload], dict]:
        if self._payload is None:
            raise Locked()
        if self._payload.mnemonic is None:
            raise NoMnemonic()

        def mutate(payload: WalletPayload) -> dict:
            account = _new_account(payload.mnemonic, payload.next_account_index)
            payload.accounts.append(account)
            payload.next_account_index += 1
            logger.info(f"Derived account {account.index} at {account.derivation_path}")
            return account.public_dict()

        return mutate

    def _visibility_mutation(self, address: str, visible: bool) -> Callable[[WalletPayload], dict]:
        account = self._require_account(address)
        if account.index == 0 and not visible:
            raise CannotHidePrimary()

        def mutate(payload: WalletPayload) -> dict:
            record = payload.find(address)
            record.visible = visible
            return record.public_dict()

        return mutate

    def _label_mutation(self, address: str, label: str) -> Callable[[WalletPayload], dict]:
        self._require_account(address)
        label = str(label).strip()
        if not label:
            raise ValueError("Label must not be empty")

        def mutate(payload: WalletPayload) -> dict:
            record = payload.find(address)
            record.label = label
            return record.public_dict()

        return mutate

    def create_next_account(self, password: str) -> dict:
        """Derive the next HD account and persist. Raises NoMnemonic for raw-key wallets."""
        return self._mutate(password, self._next_account_mutation())

    def hide_account(self, address: str, password: str) -> dict:
        return self._mutate(password, self._visibility_mutation(address, False))

    def show_account(self, address: str, password: str) -> dict:
        return self._mutate(password, self._visibility_mutation(address, True))

    def set_account_label(self, address: str, label: str, password: str) -> dict:
        return self._mutate(password, self._label_mutation(address, label))

    async def create_next_account_async(self, password: str, executor=None) -> dict:
        return await self._mutate_async(password, self._next_account_mutation(), executor)

    async def hide_account_async(self, address: str, password: str, executor=None) -> dict:
        return await self._mutate_async(password, self._visibility_mutation(address, False), executor)

    async def show_account_async(self, address: str, password: str, executor=None) -> dict:
        return await self._mutate_async(password, self._visibility_mutation(address, True), executor)

    async def set_account_label_async(self, address: str, label: str, password: str,
                                      executor=None) -> dict:
        return await self._mutate_async(password, self._label_mutation(address, label), executor)

    # ============================================
    # Security: Memory Cleanup
    # ============================================

    def __del__(self):
        """Attempt to clear sensitive data on destruction."""
        if getattr(self, "_payload", None) is not None:
            self._payload.wipe()
