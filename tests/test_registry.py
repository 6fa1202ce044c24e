import asyncio
from datetime import datetime

from relay_agent.agent.models import ModelRef
from relay_agent.agent.registry import SessionRegistry, StalenessPolicy
from relay_agent.agent.session import SessionHandle

SONNET = ModelRef("anthropic", "claude-sonnet-4-5")


class _Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _Session:
    def __init__(self):
        self.dispose_calls = 0

    def subscribe(self, callback):
        return lambda: None

    async def prompt(self, text: str) -> None:
        return None

    async def compact(self, instructions=None):
        return {}

    async def dispose(self) -> None:
        self.dispose_calls += 1


def _ts(*args: int) -> float:
    return datetime(*args).timestamp()


def test_manual_policy_never_stale():
    policy = StalenessPolicy("manual", clock=_Clock(_ts(2026, 6, 10, 12)))
    assert policy.is_stale(_ts(2020, 1, 1)) is False
    assert policy.is_stale(None) is False


def test_daily_policy_uses_most_recent_boundary():
    clock = _Clock(_ts(2026, 6, 10, 5, 0))
    policy = StalenessPolicy("daily", reset_at_hour=4, clock=clock)
    assert policy.last_reset_boundary() == _ts(2026, 6, 10, 4, 0)
    assert policy.is_stale(_ts(2026, 6, 10, 3, 30)) is True
    assert policy.is_stale(_ts(2026, 6, 10, 4, 30)) is False

    # before today's reset hour the boundary is yesterday's
    clock.now = _ts(2026, 6, 10, 3, 0)
    assert policy.last_reset_boundary() == _ts(2026, 6, 9, 4, 0)
    assert policy.is_stale(_ts(2026, 6, 9, 5, 0)) is False
    assert policy.is_stale(_ts(2026, 6, 9, 3, 0)) is True


def test_idle_policy():
    clock = _Clock(10_000.0)
    policy = StalenessPolicy("idle", idle_minutes=30, clock=clock)
    assert policy.is_stale(10_000.0 - 29 * 60) is False
    assert policy.is_stale(10_000.0 - 31 * 60) is True
    assert StalenessPolicy("bogus").mode == "manual"


def test_acquire_evicts_stale_handles():
    clock = _Clock(10_000.0)
    registry = SessionRegistry(StalenessPolicy("idle", idle_minutes=10, clock=clock), clock=clock)
    session = _Session()

    async def scenario() -> None:
        await registry.put("k", SessionHandle(session=session, model=SONNET))
        assert registry.last_active("k") == 10_000.0
        assert await registry.acquire("k") is not None

        clock.now += 11 * 60
        assert registry.evaluate("k") is True
        assert await registry.acquire("k") is None
        assert registry.get("k") is None
        assert registry.last_active("k") is None

    asyncio.run(scenario())
    assert session.dispose_calls == 1


def test_put_disposes_displaced_handle_once():
    registry = SessionRegistry()
    old, new = _Session(), _Session()

    async def scenario() -> None:
        old_handle = SessionHandle(session=old, model=SONNET)
        await registry.put("k", old_handle)
        await registry.put("k", old_handle)
        assert old.dispose_calls == 0

        await registry.put("k", SessionHandle(session=new, model=SONNET))
        await old_handle.dispose()

    asyncio.run(scenario())
    assert old.dispose_calls == 1
    assert new.dispose_calls == 0


def test_touch_evict_and_close():
    clock = _Clock(100.0)
    registry = SessionRegistry(clock=clock)
    sessions = [_Session(), _Session()]

    async def scenario() -> None:
        await registry.put("a", SessionHandle(session=sessions[0], model=SONNET))
        await registry.put("b", SessionHandle(session=sessions[1], model=SONNET))
        clock.now = 200.0
        registry.touch("a")
        registry.touch("missing")
        assert registry.last_active("a") == 200.0
        assert registry.last_active("missing") is None

        assert await registry.evict("a") is True
        assert await registry.evict("a") is False
        assert registry.keys() == ["b"]

        await registry.close()
        assert len(registry) == 0

    asyncio.run(scenario())
    assert [s.dispose_calls for s in sessions] == [1, 1]
