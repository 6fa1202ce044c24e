from relay_agent.pipeline.debounce import Debouncer
from relay_agent.pipeline.dedup import DedupCache
from relay_agent.utils.timers import VirtualScheduler


class _Clock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_dedup_window():
    clock = _Clock()
    cache = DedupCache(ttl_seconds=60, clock=clock)
    assert cache.seen("c1", "m1") is False
    assert cache.seen("c1", "m1") is True
    assert cache.seen("c2", "m1") is False

    clock.now = 61
    assert cache.seen("c1", "m1") is False
    assert cache.seen("c1", "m1") is True


def test_dedup_ignores_events_without_ids():
    cache = DedupCache()
    assert cache.seen(None, "m1") is False
    assert cache.seen(None, "m1") is False
    assert cache.seen("c1", None) is False
    assert len(cache) == 0


def test_dedup_sweeps_expired_entries():
    clock = _Clock()
    cache = DedupCache(ttl_seconds=10, clock=clock)
    for index in range(50):
        cache.seen("c", f"old-{index}")
    clock.now = 20
    assert cache.sweep() == 50
    assert len(cache) == 0


def test_debouncer_joins_bodies_after_quiet_window():
    scheduler = VirtualScheduler()
    flushed = []
    debouncer = Debouncer(scheduler, 3.0, lambda key, bodies, payloads: flushed.append((key, bodies, payloads)))

    debouncer.push("c1:alice", "first", 1)
    scheduler.advance(2.0)
    debouncer.push("c1:alice", "second", 2)
    scheduler.advance(2.0)
    assert flushed == []
    assert debouncer.pending("c1:alice") == 2

    scheduler.advance(1.0)
    assert flushed == [("c1:alice", ["first", "second"], [1, 2])]
    assert debouncer.pending("c1:alice") == 0


def test_rearming_never_double_flushes():
    scheduler = VirtualScheduler()
    flushed = []
    debouncer = Debouncer(scheduler, 1.0, lambda key, bodies, payloads: flushed.append(bodies))

    for index in range(5):
        debouncer.push("k", f"m{index}", index)
        scheduler.advance(0.5)
    scheduler.advance(10.0)

    assert flushed == [["m0", "m1", "m2", "m3", "m4"]]
    assert scheduler.pending == 0


def test_push_during_flush_starts_new_buffer():
    scheduler = VirtualScheduler()
    flushed = []

    def on_flush(key, bodies, payloads):
        flushed.append(bodies)
        if len(flushed) == 1:
            debouncer.push(key, "late", None)

    debouncer = Debouncer(scheduler, 1.0, on_flush)
    debouncer.push("k", "early", None)
    scheduler.advance(1.0)
    scheduler.advance(1.0)
    assert flushed == [["early"], ["late"]]


def test_keys_are_independent_and_cancel_all_drops():
    scheduler = VirtualScheduler()
    flushed = []
    debouncer = Debouncer(scheduler, 1.0, lambda key, bodies, payloads: flushed.append(key))

    debouncer.push("a", "x", "pa")
    scheduler.advance(0.5)
    debouncer.push("b", "y", "pb")
    scheduler.advance(0.5)
    assert flushed == ["a"]
    assert debouncer.pending("b") == 1

    assert debouncer.cancel_all() == ["pb"]
    scheduler.advance(5.0)
    assert flushed == ["a"]
    assert debouncer.keys() == []


def test_virtual_scheduler_orders_and_cancels():
    scheduler = VirtualScheduler(start=100.0)
    fired = []
    scheduler.call_later(2.0, lambda: fired.append("late"))
    early = scheduler.call_later(1.0, lambda: fired.append("early"))
    scheduler.call_later(1.5, lambda: fired.append("middle"))
    early.cancel()

    assert scheduler.advance(5.0) == 2
    assert fired == ["middle", "late"]
    assert scheduler.now() == 105.0
