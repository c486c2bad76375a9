"""
Session Manager - Unlock session tracking and auto-lock.

Auto-lock is off unless enabled in config. When on, unlocking or session
activity restarts the full timeout; when the last client disconnects a
shorter idle timeout takes over. Expiry publishes SessionEvent.AUTO_LOCK.
"""

import asyncio
import logging
from typing import Optional

from models.events import EventChannel, SessionEvent
from utils import now_ms

logger = logging.getLogger(__name__)

DEFAULT_AUTO_LOCK_TIMEOUT_MS = 15 * 60 * 1000
DEFAULT_IDLE_LOCK_TIMEOUT_MS = 60 * 1000


class SessionManager:
    """Tracks unlock state, connected clients and the auto-lock timer."""

    def __init__(self, auto_lock_enabled: bool = False,
                 auto_lock_timeout_ms: int = DEFAULT_AUTO_LOCK_TIMEOUT_MS,
                 idle_lock_timeout_ms: int = DEFAULT_IDLE_LOCK_TIMEOUT_MS,
                 events: Optional[EventChannel] = None):
        self.auto_lock_enabled = auto_lock_enabled
        self.auto_lock_timeout_ms = auto_lock_timeout_ms
        self.idle_lock_timeout_ms = idle_lock_timeout_ms
        self.events = events or EventChannel("session")

        self.is_unlocked = False
        self.accounts: list[str] = []
        self.active_sessions = 0
        self.unlock_timestamp: Optional[int] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_deadline: Optional[float] = None

    def unlock(self, accounts: list[str]) -> None:
        self.is_unlocked = True
        self.accounts = list(accounts)
        self.unlock_timestamp = now_ms()
        self._reset_timer(self.auto_lock_timeout_ms)
        logger.info(f"Session unlocked: {len(self.accounts)} accounts")
        self.events.emit(SessionEvent.UNLOCKED, accounts=list(self.accounts))

    def lock(self) -> None:
        was_unlocked = self.is_unlocked
        self.is_unlocked = False
        self.accounts = []
        self.unlock_timestamp = None
        self._clear_timer()
        if was_unlocked:
            logger.info("Session locked")
        self.events.emit(SessionEvent.LOCKED)

    def update_accounts(self, accounts: list[str]) -> None:
        """Refresh the visible account list after an account change."""
        if self.is_unlocked:
            self.accounts = list(accounts)

    def add_session(self) -> None:
        self.active_sessions += 1
        if self.is_unlocked:
            self._reset_timer(self.auto_lock_timeout_ms)
        self.events.emit(SessionEvent.SESSION_ADDED, active=self.active_sessions)

    def remove_session(self) -> None:
        if self.active_sessions > 0:
            self.active_sessions -= 1
        if self.active_sessions == 0 and self.is_unlocked:
            self._reset_timer(self.idle_lock_timeout_ms)
        self.events.emit(SessionEvent.SESSION_REMOVED, active=self.active_sessions)

    def touch(self) -> None:
        """Record activity, restarting the auto-lock timer."""
        if self.is_unlocked and self.active_sessions > 0:
            self._reset_timer(self.auto_lock_timeout_ms)

    def get_status(self) -> dict:
        return {
            "isUnlocked": self.is_unlocked,
            "accounts": list(self.accounts),
            "activeSessionCount": self.active_sessions,
            "unlockTimestamp": self.unlock_timestamp,
            "autoLockEnabled": self.auto_lock_enabled,
            "autoLockTimeoutMs": self.auto_lock_timeout_ms,
            "timeoutRemainingMs": self._remaining_ms(),
        }

    def destroy(self) -> None:
        self._clear_timer()
        self.events.clear()

    # ============================================
    # Timer
    # ============================================

    def _reset_timer(self, timeout_ms: int) -> None:
        self._clear_timer()
        if not self.auto_lock_enabled:
            return

        loop = asyncio.get_running_loop()
        delay = timeout_ms / 1000
        self._timer_deadline = loop.time() + delay
        self._timer = loop.call_later(delay, self._expire)

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_deadline = None

    def _remaining_ms(self) -> int:
        if self._timer is None or self._timer_deadline is None:
            return 0
        remaining = self._timer_deadline - asyncio.get_running_loop().time()
        return max(0, int(remaining * 1000))

    def _expire(self) -> None:
        self._timer = None
        self._timer_deadline = None
        if not self.is_unlocked:
            return
        logger.info("Auto-lock timeout reached")
        self.events.emit(SessionEvent.AUTO_LOCK)
        self.lock()
