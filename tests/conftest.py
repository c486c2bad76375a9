import shutil
import tempfile
from pathlib import Path

import pytest

from models.config import DaemonConfig
from wallet.keystore import Keystore

PASSWORD = "password123"

# Hardhat / Foundry default development mnemonic
TEST_MNEMONIC = "test test test test test test test test test test test junk"
TEST_ADDRESS_0 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TEST_ADDRESS_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


class FakeApprovalGate:
    """Scripted ApprovalGate that records every prompt."""

    def __init__(self, password=PASSWORD, approve=True, allow_access=True):
        self.password = password
        self.approve = approve
        self.allow_access = allow_access
        self.calls = []

    def prompt_unlock(self):
        self.calls.append(("unlock",))
        return self.password

    def prompt_transaction_approval(self, tx):
        self.calls.append(("transaction", tx))
        return self.approve

    def prompt_message_signature(self, request):
        self.calls.append(("message", request))
        return self.approve

    def prompt_account_access(self, origin):
        self.calls.append(("access", origin))
        return self.allow_access


class FakeBroadcaster:
    def __init__(self):
        self.sent = []

    def complete_transaction(self, tx, sender):
        return {"chainId": 1, "nonce": 0, **tx}

    def send_raw_transaction(self, raw_tx):
        self.sent.append(raw_tx)
        return "0x" + "ab" * 32


@pytest.fixture
def keystore_dir(tmp_path) -> Path:
    path = tmp_path / "keystore"
    path.mkdir()
    return path


@pytest.fixture
def keystore(keystore_dir) -> Keystore:
    ks = Keystore(keystore_dir)
    ks.init()
    return ks


@pytest.fixture
def short_dir():
    # Unix socket paths are limited to ~100 bytes
    path = Path(tempfile.mkdtemp(prefix="dw"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def config(tmp_path, short_dir) -> DaemonConfig:
    return DaemonConfig(
        data_dir=str(tmp_path),
        keystore_dir=str(tmp_path / "keystore"),
        socket_path=str(short_dir / "d.sock"),
        log_retention_days=0,
        watch_mode="poll",
        watch_interval_s=60.0,
    )


@pytest.fixture
def gate() -> FakeApprovalGate:
    return FakeApprovalGate()
