import asyncio
import json
from concurrent.futures import ThreadPoolExecutor

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from models.events import KeystoreEvent
from wallet.errors import (
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
from wallet.keystore import Keystore

from conftest import PASSWORD, TEST_ADDRESS_0, TEST_ADDRESS_1, TEST_MNEMONIC

RAW_KEY = "0x" + "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

TX = {
    "to": "0x3535353535353535353535353535353535353535",
    "value": 10 ** 15,
    "gas": 21000,
    "gasPrice": 20 * 10 ** 9,
    "nonce": 0,
    "chainId": 1,
}


def record_events(keystore):
    seen = []
    keystore.events.connect(lambda event: seen.append((event.kind, event.data)))
    return seen


def test_create_lock_unlock_cycle(keystore):
    result = keystore.create_wallet(PASSWORD)
    address = result["address"]

    assert len(result["mnemonic"].split()) == 12
    assert keystore.count_keystore_files() == 1
    assert not keystore.is_locked
    assert keystore.get_accounts() == [address]

    keystore.lock()
    assert keystore.is_locked
    assert keystore.get_accounts() == []

    assert keystore.unlock("wrong-password") is False
    assert keystore.is_locked

    assert keystore.unlock(PASSWORD) is True
    assert keystore.get_accounts() == [address]


def test_keystore_file_never_contains_plaintext(keystore):
    result = keystore.create_wallet(PASSWORD)
    text = keystore.keystore_path.read_text()
    data = json.loads(text)

    assert set(data) == {"version", "id", "crypto"}
    assert result["mnemonic"] not in text
    assert "privateKey" not in text
    assert keystore.keystore_path.stat().st_mode & 0o777 == 0o600


def test_create_rejects_weak_password(keystore):
    with pytest.raises(WeakPassword):
        keystore.create_wallet("short")
    assert keystore.count_keystore_files() == 0


def test_unlock_without_keystore(keystore):
    with pytest.raises(NoKeystore):
        keystore.unlock(PASSWORD)


def test_import_mnemonic_derives_primary_account(keystore):
    result = keystore.import_wallet(f"  {TEST_MNEMONIC}  ", PASSWORD)
    assert result == {"address": TEST_ADDRESS_0}
    assert keystore.has_mnemonic

    details = keystore.get_account_details(TEST_ADDRESS_0.lower())
    assert details["derivationPath"] == "m/44'/60'/0'/0/0"
    assert details["label"] == "Account 1"
    assert "privateKey" not in details


def test_import_raw_key_then_next_account_fails(keystore):
    result = keystore.import_wallet(RAW_KEY, PASSWORD)
    assert result["address"] == Account.from_key(RAW_KEY).address
    assert not keystore.has_mnemonic

    with pytest.raises(NoMnemonic):
        keystore.create_next_account(PASSWORD)


@pytest.mark.parametrize("secret", [
    "not a secret",
    "0x1234",
    "0x" + "00" * 32,
    ("abandon " * 12).strip(),
])
def test_import_rejects_invalid_secret(keystore, secret):
    with pytest.raises(InvalidSecret):
        keystore.import_wallet(secret, PASSWORD)
    assert keystore.count_keystore_files() == 0


def test_create_next_account_persists(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    account = keystore.create_next_account(PASSWORD)

    assert account["address"] == TEST_ADDRESS_1
    assert account["index"] == 1
    assert account["label"] == "Account 2"
    assert keystore.get_accounts() == [TEST_ADDRESS_0, TEST_ADDRESS_1]

    keystore.lock()
    keystore.unlock(PASSWORD)
    assert keystore.get_accounts() == [TEST_ADDRESS_0, TEST_ADDRESS_1]
    assert keystore.count_keystore_files() == 1


def test_hide_and_show_account(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    keystore.create_next_account(PASSWORD)

    with pytest.raises(CannotHidePrimary):
        keystore.hide_account(TEST_ADDRESS_0, PASSWORD)

    hidden = keystore.hide_account(TEST_ADDRESS_1, PASSWORD)
    assert hidden["visible"] is False
    assert keystore.get_accounts() == [TEST_ADDRESS_0]
    assert keystore.get_accounts(include_hidden=True) == [TEST_ADDRESS_0, TEST_ADDRESS_1]
    assert [a["address"] for a in keystore.get_all_account_details()] == [TEST_ADDRESS_0]

    keystore.show_account(TEST_ADDRESS_1, PASSWORD)
    assert keystore.get_accounts() == [TEST_ADDRESS_0, TEST_ADDRESS_1]


def test_set_account_label(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    details = keystore.set_account_label(TEST_ADDRESS_0, "  Savings ", PASSWORD)
    assert details["label"] == "Savings"

    with pytest.raises(ValueError):
        keystore.set_account_label(TEST_ADDRESS_0, "   ", PASSWORD)


def test_mutation_with_wrong_password_leaves_file_untouched(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    before = keystore.keystore_path.read_bytes()

    with pytest.raises(InvalidPassword):
        keystore.create_next_account("wrong-password")

    assert keystore.keystore_path.read_bytes() == before
    assert keystore.get_accounts() == [TEST_ADDRESS_0]


def test_mutations_require_unlocked_keystore(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    keystore.lock()

    with pytest.raises(Locked):
        keystore.create_next_account(PASSWORD)
    with pytest.raises(Locked):
        keystore.hide_account(TEST_ADDRESS_0, PASSWORD)


def test_unknown_account(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    with pytest.raises(AccountNotFound):
        keystore.sign_message("hi", "0x" + "11" * 20)
    assert keystore.get_account_details("0x" + "11" * 20) is None


def test_sign_message_recovers_to_signer(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    signature = keystore.sign_message("hello", TEST_ADDRESS_0.lower())

    assert len(bytes.fromhex(signature[2:])) == 65
    recovered = Account.recover_message(encode_defunct(text="hello"), signature=signature)
    assert recovered == TEST_ADDRESS_0


def test_sign_hex_message(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    signature = keystore.sign_message("0x68656c6c6f", TEST_ADDRESS_0)
    recovered = Account.recover_message(encode_defunct(text="hello"), signature=signature)
    assert recovered == TEST_ADDRESS_0


def test_sign_transaction(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    raw = keystore.sign_transaction({**TX, "from": TEST_ADDRESS_0.lower()}, TEST_ADDRESS_0)

    assert raw.startswith("0x")
    assert Account.recover_transaction(raw) == TEST_ADDRESS_0


def test_sign_transaction_sender_mismatch(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    with pytest.raises(ValueError):
        keystore.sign_transaction({**TX, "from": TEST_ADDRESS_1}, TEST_ADDRESS_0)


def test_signing_while_locked(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    keystore.lock()
    with pytest.raises(Locked):
        keystore.sign_transaction(TX, TEST_ADDRESS_0)


def test_delete_keystore_is_idempotent(keystore):
    keystore.create_wallet(PASSWORD)
    events = record_events(keystore)

    keystore.delete_keystore()
    keystore.delete_keystore()

    assert not keystore.has_keystore()
    assert keystore.count_keystore_files() == 0
    assert [kind for kind, _ in events] == [KeystoreEvent.LOCKED, KeystoreEvent.CHANGED]


def test_lock_emits_only_when_unlocked(keystore):
    keystore.create_wallet(PASSWORD)
    events = record_events(keystore)

    keystore.lock()
    keystore.lock()
    assert [kind for kind, _ in events] == [KeystoreEvent.LOCKED]


def test_unlock_emits_accounts(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)
    keystore.lock()
    events = record_events(keystore)

    keystore.unlock(PASSWORD)
    assert events == [(KeystoreEvent.UNLOCKED, {"accounts": [TEST_ADDRESS_0]})]


def test_newest_file_is_authoritative(keystore_dir):
    first = Keystore(keystore_dir)
    first.init()
    first.import_wallet(TEST_MNEMONIC, PASSWORD)
    second = first.import_wallet(RAW_KEY, PASSWORD)

    fresh = Keystore(keystore_dir)
    fresh.init()
    assert fresh.count_keystore_files() == 2
    assert fresh.unlock(PASSWORD)
    assert fresh.get_accounts() == [second["address"]]


def test_load_rejects_corrupt_file(keystore_dir):
    (keystore_dir / "keystore-broken.json").write_text("{not json")
    ks = Keystore(keystore_dir)
    with pytest.raises(Corrupt):
        ks.init()


def test_reload_detects_new_and_removed_keystore(keystore_dir):
    writer = Keystore(keystore_dir)
    writer.init()
    watcher = Keystore(keystore_dir)
    watcher.init()
    events = record_events(watcher)

    writer.create_wallet(PASSWORD)
    watcher.reload()
    assert watcher.has_keystore()
    assert events[-1][0] == KeystoreEvent.LOADED

    watcher.unlock(PASSWORD)
    writer.delete_keystore()
    watcher.reload()
    assert not watcher.has_keystore()
    assert watcher.is_locked
    assert events[-1] == (KeystoreEvent.CHANGED, {"removed": True})


def test_reload_locks_when_wallet_replaced(keystore_dir):
    writer = Keystore(keystore_dir)
    writer.init()
    writer.import_wallet(TEST_MNEMONIC, PASSWORD)

    watcher = Keystore(keystore_dir)
    watcher.init()
    watcher.unlock(PASSWORD)

    writer.import_wallet(RAW_KEY, PASSWORD)
    watcher.reload()
    assert watcher.is_locked


def test_reload_error_is_emitted_and_raised(keystore):
    keystore.create_wallet(PASSWORD)
    events = record_events(keystore)
    keystore.keystore_path.write_text("[]")

    with pytest.raises(Corrupt):
        keystore.reload()
    assert events[-1][0] == KeystoreEvent.ERROR


def test_async_operations_use_executor(keystore):
    async def scenario():
        with ThreadPoolExecutor(max_workers=1) as executor:
            await keystore.import_wallet_async(TEST_MNEMONIC, PASSWORD, executor)
            keystore.lock()
            assert await keystore.unlock_async("wrong-password", executor) is False
            assert await keystore.unlock_async(PASSWORD, executor) is True
            account = await keystore.create_next_account_async(PASSWORD, executor)
            await keystore.hide_account_async(account["address"], PASSWORD, executor)
            return account

    account = asyncio.run(scenario())
    assert account["address"] == TEST_ADDRESS_1
    assert keystore.get_accounts() == [TEST_ADDRESS_0]


def test_lock_during_mutation_stays_locked(keystore):
    keystore.import_wallet(TEST_MNEMONIC, PASSWORD)

    async def scenario():
        task = asyncio.ensure_future(keystore.create_next_account_async(PASSWORD))
        await asyncio.sleep(0)
        keystore.lock()
        return await task

    account = asyncio.run(scenario())
    assert account["index"] == 1
    assert keystore.is_locked

    keystore.unlock(PASSWORD)
    assert keystore.get_accounts() == [TEST_ADDRESS_0, TEST_ADDRESS_1]
