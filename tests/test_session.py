import asyncio

from models.events import SessionEvent
from services.session import SessionManager


def test_unlock_lock_status():
    session = SessionManager()
    session.unlock(["0xabc"])

    status = session.get_status()
    assert status["isUnlocked"] is True
    assert status["accounts"] == ["0xabc"]
    assert status["unlockTimestamp"] is not None
    assert status["autoLockEnabled"] is False
    assert status["timeoutRemainingMs"] == 0

    session.lock()
    status = session.get_status()
    assert status["isUnlocked"] is False
    assert status["accounts"] == []
    assert status["unlockTimestamp"] is None


def test_session_counting():
    session = SessionManager()
    session.add_session()
    session.add_session()
    session.remove_session()
    session.remove_session()
    session.remove_session()
    assert session.get_status()["activeSessionCount"] == 0


def test_update_accounts_only_while_unlocked():
    session = SessionManager()
    session.update_accounts(["0xabc"])
    assert session.accounts == []

    session.unlock(["0xabc"])
    session.update_accounts(["0xabc", "0xdef"])
    assert session.accounts == ["0xabc", "0xdef"]


def test_disabled_auto_lock_never_fires():
    async def scenario():
        session = SessionManager(auto_lock_enabled=False, auto_lock_timeout_ms=10)
        session.unlock(["0xabc"])
        await asyncio.sleep(0.05)
        return session.is_unlocked

    assert asyncio.run(scenario()) is True


def test_auto_lock_fires_after_timeout():
    async def scenario():
        session = SessionManager(auto_lock_enabled=True, auto_lock_timeout_ms=30)
        seen = []
        session.events.connect(lambda event: seen.append(event.kind))
        session.unlock(["0xabc"])
        assert 0 < session.get_status()["timeoutRemainingMs"] <= 30
        await asyncio.sleep(0.1)
        return session, seen

    session, seen = asyncio.run(scenario())
    assert session.is_unlocked is False
    assert seen == [SessionEvent.UNLOCKED, SessionEvent.AUTO_LOCK, SessionEvent.LOCKED]


def test_activity_restarts_timer():
    async def scenario():
        session = SessionManager(auto_lock_enabled=True, auto_lock_timeout_ms=80)
        session.add_session()
        session.unlock(["0xabc"])
        for _ in range(4):
            await asyncio.sleep(0.04)
            session.touch()
        still_unlocked = session.is_unlocked
        await asyncio.sleep(0.15)
        return still_unlocked, session.is_unlocked

    assert asyncio.run(scenario()) == (True, False)


def test_idle_timeout_after_last_session_leaves():
    async def scenario():
        session = SessionManager(auto_lock_enabled=True, auto_lock_timeout_ms=10_000,
                                 idle_lock_timeout_ms=20)
        session.add_session()
        session.unlock(["0xabc"])
        session.remove_session()
        await asyncio.sleep(0.08)
        return session.is_unlocked

    assert asyncio.run(scenario()) is False


def test_lock_cancels_timer():
    async def scenario():
        session = SessionManager(auto_lock_enabled=True, auto_lock_timeout_ms=20)
        seen = []
        session.events.connect(lambda event: seen.append(event.kind))
        session.unlock(["0xabc"])
        session.lock()
        await asyncio.sleep(0.05)
        return seen

    assert SessionEvent.AUTO_LOCK not in asyncio.run(scenario())
