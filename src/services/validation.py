"""
Validation Pipeline - Admission checks run before any request is handled.

Checks run in a fixed order and stop at the first failure:
1. daemon state   2. keystore exists   3. wallet unlocked
4. origin permission   5. rate limit   6. request schema

No check changes daemon, session or keystore state; only the rate limiter
records the request.
"""

import logging
import time
from collections import defaultdict
from typing import Callable, Optional

from models.request import CLI_ORIGIN, ValidationRequest
from services.state import DaemonState, DaemonStateManager
from utils import get_nested_value

logger = logging.getLogger(__name__)


# ============================================
# Error codes
# ============================================

DAEMON_NOT_READY = "daemon_not_ready"
WALLET_LOCKED = "wallet_locked"
NO_KEYSTORE = "no_keystore"
PERMISSION_DENIED = "permission_denied"
INVALID_REQUEST = "invalid_request"
RATE_LIMITED = "rate_limited"


class ValidationError(Exception):
    """A request rejected by the validation pipeline."""

    def __init__(self, code: str, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ============================================
# Request classes
# ============================================

ALWAYS_ALLOWED = frozenset({"get_status", "ping", "shutdown"})

KEYSTORE_REQUIRED = frozenset({
    "unlock_keystore",
    "get_accounts",
    "sign_transaction",
    "sign_message",
    "personal_sign",
})

UNLOCK_REQUIRED = frozenset({
    "get_accounts",
    "sign_transaction",
    "sign_message",
    "eth_accounts",
    "eth_sendTransaction",
    "eth_signTransaction",
    "personal_sign",
    "eth_sign",
})

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "unlock_keystore": ("data.password",),
    "sign_transaction": ("data.transaction", "data.address"),
    "sign_message": ("data.message", "data.address"),
    "eth_sendTransaction": ("data.transaction",),
    "eth_signTransaction": ("data.transaction",),
    "personal_sign": ("data.message", "data.address"),
    "eth_sign": ("data.message", "data.address"),
    "create_account": ("data.password",),
    "hide_account": ("data.address", "data.password"),
    "show_account": ("data.address", "data.password"),
    "set_account_label": ("data.address", "data.label", "data.password"),
}

# Requests per rolling minute, per (origin, type)
RATE_LIMITS: dict[str, int] = {
    "sign_transaction": 10,
    "sign_message": 20,
    "unlock_keystore": 5,
    "get_status": 100,
    "get_accounts": 50,
}
DEFAULT_RATE_LIMIT = 30
RATE_WINDOW_SECONDS = 60.0


def requires_keystore(request_type: Optional[str]) -> bool:
    if not isinstance(request_type, str):
        return False
    return request_type in KEYSTORE_REQUIRED or request_type.startswith("eth_")


# ============================================
# Rate Limiter
# ============================================

class RateLimiter:
    """
    Sliding-window limiter keyed by (origin, type).

    Limits requests per key per rolling window. Keys whose window has fully
    expired are dropped.
    """

    def __init__(self, limits: Optional[dict[str, int]] = None,
                 default_limit: int = DEFAULT_RATE_LIMIT,
                 window: float = RATE_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.limits = dict(RATE_LIMITS if limits is None else limits)
        self.default_limit = default_limit
        self.window = window
        self._clock = clock
        self._request_times: dict[tuple[str, str], list[float]] = defaultdict(list)

    def limit_for(self, request_type: str) -> int:
        return self.limits.get(request_type, self.default_limit)

    def check(self, origin: str, request_type: str) -> tuple[bool, int]:
        """
        Record a request if it is within quota.

        Returns (allowed, count in window).
        """
        now = self._clock()
        self._prune(now)

        key = (origin or CLI_ORIGIN, request_type)
        times = self._request_times[key]
        limit = self.limit_for(request_type)
        if len(times) >= limit:
            return False, len(times)

        times.append(now)
        return True, len(times)

    def _prune(self, now: float) -> None:
        window_start = now - self.window
        for key in list(self._request_times):
            times = [t for t in self._request_times[key] if t > window_start]
            if times:
                self._request_times[key] = times
            else:
                del self._request_times[key]

    def tracked_keys(self) -> int:
        return len(self._request_times)

    def reset(self) -> None:
        """Reset all rate limiting state."""
        self._request_times.clear()


# ============================================
# Pipeline
# ============================================

class ValidationPipeline:
    """Runs the six admission checks against a ValidationRequest."""

    def __init__(self, state_manager: DaemonStateManager, keystore,
                 permissions=None, rate_limiter: Optional[RateLimiter] = None):
        self.state_manager = state_manager
        self.keystore = keystore
        self.permissions = permissions
        self.rate_limiter = rate_limiter or RateLimiter()

    def validate(self, request: ValidationRequest) -> None:
        """Raise ValidationError at the first failing check."""
        self._check_daemon_state(request)
        self._check_keystore(request)
        self._check_session(request)
        self._check_permission(request)
        self._check_rate_limit(request)
        self._check_schema(request)
        logger.debug(f"Request validation passed: {request.type}")

    def _check_daemon_state(self, request: ValidationRequest) -> None:
        state = self.state_manager.current_state
        if state == DaemonState.STARTING:
            if request.type in ALWAYS_ALLOWED:
                return
            raise ValidationError(DAEMON_NOT_READY, "Daemon is still starting up",
                                  {"currentState": state.value})
        if state == DaemonState.ERROR:
            raise ValidationError(DAEMON_NOT_READY, "Daemon is in error state",
                                  {"currentState": state.value})

    def _check_keystore(self, request: ValidationRequest) -> None:
        if requires_keystore(request.type) and not self.keystore.has_keystore():
            raise ValidationError(NO_KEYSTORE, "No wallet found. Create one first.",
                                  {"operation": request.type})

    def _check_session(self, request: ValidationRequest) -> None:
        if request.type not in UNLOCK_REQUIRED:
            return
        state = self.state_manager.current_state
        if state != DaemonState.UNLOCKED:
            raise ValidationError(WALLET_LOCKED, "Wallet is locked. Unlock first.",
                                  {"currentState": state.value, "operation": request.type})

    def _check_permission(self, request: ValidationRequest) -> None:
        if self.permissions is None or request.is_cli:
            return
        if not self.permissions.check_permission(request.origin, request.type):
            raise ValidationError(PERMISSION_DENIED,
                                  f"Origin {request.origin} not permitted for {request.type}",
                                  {"origin": request.origin, "operation": request.type})

    def _check_rate_limit(self, request: ValidationRequest) -> None:
        request_type = request.type or ""
        allowed, current = self.rate_limiter.check(request.origin, request_type)
        if not allowed:
            raise ValidationError(RATE_LIMITED, f"Rate limit exceeded for {request_type}",
                                  {"limit": self.rate_limiter.limit_for(request_type),
                                   "current": current})

    def _check_schema(self, request: ValidationRequest) -> None:
        if not request.type or not isinstance(request.type, str):
            raise ValidationError(INVALID_REQUEST, "Request type is required")
        if not isinstance(request.data, dict):
            raise ValidationError(INVALID_REQUEST, "Request data must be an object",
                                  {"requestType": request.type})

        payload = {"data": request.data}
        for field in REQUIRED_FIELDS.get(request.type, ()):
            if get_nested_value(payload, field) is None:
                raise ValidationError(INVALID_REQUEST, f"Missing required field: {field}",
                                      {"field": field, "requestType": request.type})
