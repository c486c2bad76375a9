import pytest

from models.request import ValidationRequest
from services.permissions import OriginPermissions
from services.state import DaemonState, DaemonStateManager
from services.validation import (
    DAEMON_NOT_READY,
    INVALID_REQUEST,
    NO_KEYSTORE,
    PERMISSION_DENIED,
    RATE_LIMITED,
    WALLET_LOCKED,
    RateLimiter,
    ValidationError,
    ValidationPipeline,
)

ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
SIGN_TX_DATA = {"transaction": {"to": ADDRESS, "value": 1}, "address": ADDRESS}


class StubKeystore:
    def __init__(self, present=True):
        self.present = present

    def has_keystore(self):
        return self.present


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_pipeline(state=DaemonState.UNLOCKED, keystore=True, permissions=None, clock=None):
    manager = DaemonStateManager()
    path = {
        DaemonState.STARTING: [],
        DaemonState.READY: [DaemonState.READY],
        DaemonState.LOCKED: [DaemonState.READY, DaemonState.LOCKED],
        DaemonState.UNLOCKED: [DaemonState.READY, DaemonState.LOCKED, DaemonState.UNLOCKED],
        DaemonState.ERROR: [DaemonState.ERROR],
    }[state]
    for step in path:
        assert manager.transition(step)
    limiter = RateLimiter(clock=clock) if clock else None
    return ValidationPipeline(manager, StubKeystore(keystore), permissions, limiter)


def rejection(pipeline, request) -> str:
    with pytest.raises(ValidationError) as excinfo:
        pipeline.validate(request)
    return excinfo.value.code


def test_valid_request_passes():
    pipeline = make_pipeline()
    pipeline.validate(ValidationRequest(id=1, type="sign_transaction", data=SIGN_TX_DATA))


@pytest.mark.parametrize("state", [DaemonState.STARTING, DaemonState.ERROR])
def test_daemon_not_ready(state):
    pipeline = make_pipeline(state)
    assert rejection(pipeline, ValidationRequest(id=1, type="get_accounts")) == DAEMON_NOT_READY


@pytest.mark.parametrize("request_type", ["get_status", "ping", "shutdown"])
def test_always_allowed_while_starting(request_type):
    pipeline = make_pipeline(DaemonState.STARTING, keystore=False)
    pipeline.validate(ValidationRequest(id=1, type=request_type))


@pytest.mark.parametrize("request_type", ["get_status", "ping", "shutdown"])
def test_error_state_rejects_everything(request_type):
    pipeline = make_pipeline(DaemonState.ERROR)
    assert rejection(pipeline, ValidationRequest(id=1, type=request_type)) == DAEMON_NOT_READY


def test_no_keystore():
    pipeline = make_pipeline(DaemonState.READY, keystore=False)
    request = ValidationRequest(id=1, type="unlock_keystore", data={"password": "x"})
    assert rejection(pipeline, request) == NO_KEYSTORE


def test_eth_methods_require_keystore():
    pipeline = make_pipeline(DaemonState.READY, keystore=False)
    request = ValidationRequest(id=1, type="eth_requestAccounts", origin="https://dapp.example")
    assert rejection(pipeline, request) == NO_KEYSTORE


def test_wallet_locked_before_schema():
    pipeline = make_pipeline(DaemonState.LOCKED)
    # Missing fields, but the lock check runs first
    request = ValidationRequest(id=1, type="sign_transaction", data={})
    assert rejection(pipeline, request) == WALLET_LOCKED


def test_missing_required_field():
    pipeline = make_pipeline()
    request = ValidationRequest(id=1, type="sign_message", data={"address": ADDRESS})
    with pytest.raises(ValidationError) as excinfo:
        pipeline.validate(request)
    assert excinfo.value.code == INVALID_REQUEST
    assert excinfo.value.context["field"] == "data.message"


def test_data_must_be_object():
    pipeline = make_pipeline()
    assert rejection(pipeline, ValidationRequest(id=1, type="ping", data=[1, 2])) == INVALID_REQUEST


def test_missing_type():
    pipeline = make_pipeline()
    assert rejection(pipeline, ValidationRequest(id=1, type=None)) == INVALID_REQUEST


def test_non_string_type_is_invalid_request():
    pipeline = make_pipeline()
    assert rejection(pipeline, ValidationRequest(id=1, type=5)) == INVALID_REQUEST


def test_sign_transaction_rate_limit_and_window():
    clock = FakeClock()
    pipeline = make_pipeline(clock=clock)

    for _ in range(10):
        pipeline.validate(ValidationRequest(id=1, type="sign_transaction", data=SIGN_TX_DATA))

    request = ValidationRequest(id=11, type="sign_transaction", data=SIGN_TX_DATA)
    with pytest.raises(ValidationError) as excinfo:
        pipeline.validate(request)
    assert excinfo.value.code == RATE_LIMITED
    assert excinfo.value.context == {"limit": 10, "current": 10}

    clock.now += 61
    pipeline.validate(request)


def test_rate_limit_keyed_by_origin_and_type():
    clock = FakeClock()
    limiter = RateLimiter({"ping": 1}, clock=clock)

    assert limiter.check("cli", "ping") == (True, 1)
    assert limiter.check("cli", "ping") == (False, 1)
    assert limiter.check("https://a.example", "ping") == (True, 1)
    assert limiter.check("cli", "get_status")[0] is True


def test_rate_limiter_prunes_expired_keys():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.check("cli", "ping")
    limiter.check("cli", "get_status")
    assert limiter.tracked_keys() == 2

    clock.now += 61
    limiter.check("cli", "ping")
    assert limiter.tracked_keys() == 1


def test_permission_denied_for_unknown_origin():
    permissions = OriginPermissions()
    pipeline = make_pipeline(permissions=permissions)
    request = ValidationRequest(id=1, type="eth_accounts", origin="https://dapp.example")
    assert rejection(pipeline, request) == PERMISSION_DENIED

    permissions.grant("https://dapp.example")
    pipeline.validate(request)


def test_connect_requests_skip_permission():
    pipeline = make_pipeline(permissions=OriginPermissions())
    pipeline.validate(ValidationRequest(id=1, type="eth_requestAccounts", origin="https://dapp.example"))


def test_cli_origin_skips_permission():
    pipeline = make_pipeline(permissions=OriginPermissions())
    pipeline.validate(ValidationRequest(id=1, type="get_accounts"))


def test_validation_does_not_change_state():
    pipeline = make_pipeline(DaemonState.LOCKED)
    before = pipeline.state_manager.get_status()
    with pytest.raises(ValidationError):
        pipeline.validate(ValidationRequest(id=1, type="get_accounts"))
    after = pipeline.state_manager.get_status()
    assert after["state"] == before["state"]
    assert after["errorCount"] == 0


def test_native_request_mapping():
    request = ValidationRequest.from_native({
        "id": 7,
        "method": "personal_sign",
        "params": ["0x68656c6c6f", ADDRESS],
        "origin": "https://dapp.example",
    })
    assert request.data["message"] == "0x68656c6c6f"
    assert request.data["address"] == ADDRESS
    assert request.origin == "https://dapp.example"

    eth_sign = ValidationRequest.from_native({"id": 8, "method": "eth_sign", "params": [ADDRESS, "0x00"]})
    assert eth_sign.data["address"] == ADDRESS
    assert eth_sign.origin == "unknown"


@pytest.mark.parametrize("claimed", ["cli", "", None, 42])
def test_native_origin_is_never_cli(claimed):
    request = ValidationRequest.from_native({"id": 1, "method": "eth_accounts", "origin": claimed})
    assert request.origin == "unknown"
    assert not request.is_cli

    pipeline = make_pipeline(permissions=OriginPermissions())
    assert rejection(pipeline, request) == PERMISSION_DENIED


def test_native_non_string_method_has_no_type():
    request = ValidationRequest.from_native({"id": 1, "method": 5, "params": ["x", ADDRESS]})
    assert request.type is None
    assert request.data == {"params": ["x", ADDRESS]}


def test_origin_permissions_persist(tmp_path):
    path = tmp_path / "permissions.json"
    permissions = OriginPermissions(path)
    permissions.grant("https://dapp.example")

    reloaded = OriginPermissions(path)
    assert reloaded.is_granted("https://dapp.example")
    assert reloaded.revoke("https://dapp.example")
    assert not OriginPermissions(path).is_granted("https://dapp.example")
