from models.events import DaemonEvent
from services.state import DaemonState, DaemonStateManager


def walk_to_unlocked(manager):
    assert manager.transition(DaemonState.READY)
    assert manager.transition(DaemonState.LOCKED)
    assert manager.transition(DaemonState.UNLOCKED)


def test_initial_state():
    manager = DaemonStateManager()
    status = manager.get_status()

    assert status["state"] == "starting"
    assert status["previousState"] is None
    assert status["ready"] is False
    assert status["errorCount"] == 0
    assert status["circuitBreakerTripped"] is False


def test_legal_walk():
    manager = DaemonStateManager()
    walk_to_unlocked(manager)

    assert manager.is_state(DaemonState.UNLOCKED)
    assert manager.previous_state == DaemonState.LOCKED
    assert manager.is_ready
    assert [h["to"] for h in manager.history] == ["ready", "locked", "unlocked"]


def test_illegal_transition_leaves_state_unchanged():
    manager = DaemonStateManager()

    assert manager.transition(DaemonState.UNLOCKED) is False
    assert manager.current_state == DaemonState.STARTING
    assert manager.history == []


def test_history_is_capped_at_ten():
    manager = DaemonStateManager()
    manager.transition(DaemonState.READY)
    for _ in range(8):
        manager.transition(DaemonState.LOCKED)
        manager.transition(DaemonState.UNLOCKED)
        manager.transition(DaemonState.READY)

    assert len(manager.history) == 10
    assert manager.history[-1]["to"] == "ready"


def test_transition_events():
    manager = DaemonStateManager()
    seen = []
    manager.events.connect(lambda event: seen.append(event.kind))

    manager.transition(DaemonState.READY)
    manager.transition(DaemonState.LOCKED)
    manager.transition(DaemonState.UNLOCKED, {"accounts": ["0xabc"]})

    assert seen == [
        DaemonEvent.STATE_CHANGED, DaemonEvent.READY,
        DaemonEvent.STATE_CHANGED, DaemonEvent.WALLET_LOCKED,
        DaemonEvent.STATE_CHANGED, DaemonEvent.WALLET_UNLOCKED,
    ]


def test_errors_below_threshold_do_not_transition():
    manager = DaemonStateManager(max_errors=3)
    walk_to_unlocked(manager)

    assert manager.handle_error(RuntimeError("one")) is False
    assert manager.handle_error(RuntimeError("two")) is False
    assert manager.current_state == DaemonState.UNLOCKED
    assert manager.error_count == 2


def test_successful_transition_resets_error_count():
    manager = DaemonStateManager(max_errors=3)
    walk_to_unlocked(manager)
    manager.handle_error(RuntimeError("one"))
    manager.handle_error(RuntimeError("two"))

    manager.transition(DaemonState.LOCKED)
    assert manager.error_count == 0


def test_circuit_breaker_trips_and_pins_error():
    manager = DaemonStateManager(max_errors=5)
    walk_to_unlocked(manager)
    tripped = []
    manager.events.connect(
        lambda event: event.kind == DaemonEvent.CIRCUIT_BREAKER_TRIPPED and tripped.append(event))

    results = [manager.handle_error(RuntimeError(f"fault {i}")) for i in range(5)]

    assert results == [False, False, False, False, True]
    assert len(tripped) == 1
    assert manager.current_state == DaemonState.ERROR
    assert manager.metadata["circuitBreakerTripped"] is True
    assert manager.get_status()["circuitBreakerTripped"] is True

    assert manager.transition(DaemonState.READY) is False
    assert manager.transition(DaemonState.STARTING) is False
    assert manager.current_state == DaemonState.ERROR

    assert manager.handle_error(RuntimeError("again")) is False
    assert len(tripped) == 1


def test_reset_circuit_breaker_allows_recovery():
    manager = DaemonStateManager(max_errors=1)
    manager.handle_error(RuntimeError("boom"))
    assert manager.current_state == DaemonState.ERROR

    manager.reset_circuit_breaker()
    assert manager.transition(DaemonState.STARTING)
    assert manager.transition(DaemonState.READY)
    assert manager.error_count == 0


def test_status_metadata_is_json_safe():
    manager = DaemonStateManager(max_errors=1)
    manager.handle_error(ValueError("bad"), {"operation": "unlock"})

    status = manager.get_status()
    assert status["metadata"]["error"] == "bad"
    assert status["metadata"]["context"] == {"operation": "unlock"}
    assert status["history"][-1]["to"] == "error"
