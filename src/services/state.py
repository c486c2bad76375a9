"""
Daemon State - Lifecycle state machine with a circuit breaker.

STARTING -> READY -> LOCKED <-> UNLOCKED, with ERROR reachable from every
state. Faults are counted by handle_error(); reaching max_errors trips the
breaker, which pins the daemon in ERROR until reset_circuit_breaker().
"""

import logging
import time
from enum import Enum
from typing import Optional

from models.events import DaemonEvent, EventChannel

logger = logging.getLogger(__name__)

MAX_HISTORY = 10
DEFAULT_MAX_ERRORS = 5


class DaemonState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    ERROR = "error"


VALID_TRANSITIONS: dict[DaemonState, tuple[DaemonState, ...]] = {
    DaemonState.STARTING: (DaemonState.READY, DaemonState.ERROR),
    DaemonState.READY: (DaemonState.LOCKED, DaemonState.ERROR),
    DaemonState.LOCKED: (DaemonState.UNLOCKED, DaemonState.READY, DaemonState.ERROR),
    DaemonState.UNLOCKED: (DaemonState.LOCKED, DaemonState.READY, DaemonState.ERROR),
    DaemonState.ERROR: (DaemonState.STARTING, DaemonState.READY),
}

READY_STATES = (DaemonState.READY, DaemonState.LOCKED, DaemonState.UNLOCKED)


def _now_ms() -> int:
    return int(time.time() * 1000)


class DaemonStateManager:
    """Tracks the daemon lifecycle state and counts faults."""

    def __init__(self, max_errors: int = DEFAULT_MAX_ERRORS, events: Optional[EventChannel] = None):
        self.current_state = DaemonState.STARTING
        self.previous_state: Optional[DaemonState] = None
        self.metadata: dict = {}
        self.history: list[dict] = []
        self.error_count = 0
        self.max_errors = max_errors
        self.circuit_breaker_tripped = False
        self.started_at = _now_ms()
        self.events = events or EventChannel("daemon")

    def is_state(self, state: DaemonState) -> bool:
        return self.current_state == state

    @property
    def is_ready(self) -> bool:
        return self.current_state in READY_STATES

    def can_transition_to(self, new_state: DaemonState) -> bool:
        if self.circuit_breaker_tripped and self.current_state == DaemonState.ERROR:
            return False
        return new_state in VALID_TRANSITIONS.get(self.current_state, ())

    def transition(self, new_state: DaemonState, metadata: Optional[dict] = None) -> bool:
        """
        Move to new_state if the edge is legal.

        Returns False (state unchanged) for an illegal edge or while the
        circuit breaker holds the daemon in ERROR.
        """
        new_state = DaemonState(new_state)
        if not self.can_transition_to(new_state):
            reason = "circuit breaker tripped" if self.circuit_breaker_tripped else "invalid transition"
            logger.error(f"State transition refused ({reason}): "
                         f"{self.current_state.value} -> {new_state.value}")
            return False

        self._apply(new_state, metadata or {})
        return True

    def _apply(self, new_state: DaemonState, metadata: dict) -> None:
        timestamp = _now_ms()
        self.previous_state = self.current_state
        self.current_state = new_state
        self.metadata = {**metadata, "timestamp": timestamp}

        self.history.append({
            "from": self.previous_state.value,
            "to": new_state.value,
            "timestamp": timestamp,
            "metadata": metadata,
        })
        del self.history[:-MAX_HISTORY]

        if new_state != DaemonState.ERROR:
            self.error_count = 0

        logger.info(f"State: {self.previous_state.value} -> {new_state.value}")

        self.events.emit(DaemonEvent.STATE_CHANGED, from_state=self.previous_state,
                         to_state=new_state, metadata=self.metadata)
        if new_state == DaemonState.READY:
            self.events.emit(DaemonEvent.READY)
        elif new_state == DaemonState.UNLOCKED:
            self.events.emit(DaemonEvent.WALLET_UNLOCKED, **metadata)
        elif new_state == DaemonState.LOCKED:
            self.events.emit(DaemonEvent.WALLET_LOCKED, **metadata)

    def handle_error(self, error: BaseException, context: Optional[dict] = None) -> bool:
        """
        Record a fault. Returns True if this fault tripped the circuit breaker.

        The counter resets on any successful transition to a non-ERROR state,
        so only consecutive faults accumulate.
        """
        context = context or {}
        self.error_count += 1
        logger.error(f"Daemon error ({self.error_count}/{self.max_errors}): {error}")
        self.events.emit(DaemonEvent.ERROR, error=error, context=context)

        if self.error_count < self.max_errors or self.circuit_breaker_tripped:
            return False

        logger.critical("Circuit breaker tripped: too many errors, daemon needs restart")
        metadata = {
            "error": str(error),
            "context": context,
            "circuitBreakerTripped": True,
        }
        if self.current_state == DaemonState.ERROR:
            self.metadata = {**metadata, "timestamp": _now_ms()}
        else:
            self._apply(DaemonState.ERROR, metadata)
        self.circuit_breaker_tripped = True
        self.events.emit(DaemonEvent.CIRCUIT_BREAKER_TRIPPED, error=error, context=context)
        return True

    def reset_circuit_breaker(self) -> None:
        """Clear the breaker so the daemon can leave ERROR (external restart)."""
        if self.circuit_breaker_tripped:
            logger.info("Circuit breaker reset")
        self.circuit_breaker_tripped = False
        self.error_count = 0

    def get_status(self) -> dict:
        return {
            "state": self.current_state.value,
            "previousState": self.previous_state.value if self.previous_state else None,
            "metadata": _public_metadata(self.metadata),
            "errorCount": self.error_count,
            "circuitBreakerTripped": self.circuit_breaker_tripped,
            "history": [
                {**entry, "metadata": _public_metadata(entry["metadata"])}
                for entry in self.history
            ],
            "uptime": _now_ms() - self.started_at,
            "locked": self.current_state == DaemonState.LOCKED,
            "ready": self.is_ready,
        }


def _public_metadata(metadata: dict) -> dict:
    """JSON-safe copy of transition metadata."""
    return {k: (v if isinstance(v, (str, int, float, bool, list, dict, type(None))) else str(v))
            for k, v in metadata.items()}
