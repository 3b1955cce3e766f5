import threading
import time

from volume_bot.orchestrators.cycle_scheduler import CycleScheduler


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_ticks_never_overlap():
    release = threading.Event()
    active = []
    overlaps = []

    def tick():
        if active:
            overlaps.append(True)
        active.append(1)
        release.wait(2)
        active.pop()

    sched = CycleScheduler("t", tick, interval=0.01)
    sched.start()
    assert wait_for(lambda: sched.in_flight)

    assert sched.run_once() is False
    assert sched.skipped == 1

    release.set()
    assert sched.cancel(timeout=2)
    assert overlaps == []


def test_cancel_waits_for_running_tick():
    started, finished = threading.Event(), threading.Event()

    def tick():
        started.set()
        time.sleep(0.2)
        finished.set()

    sched = CycleScheduler("t", tick, interval=10)
    sched.start()
    assert started.wait(2)

    assert sched.cancel(timeout=2) is True
    assert finished.is_set()
    assert sched.cancelled and not sched.running


def test_runs_repeatedly_until_cancelled():
    calls = []
    sched = CycleScheduler("t", lambda: calls.append(1), interval=0.01)
    sched.start()
    assert wait_for(lambda: len(calls) >= 3)
    sched.cancel()
    count = len(calls)
    time.sleep(0.05)
    assert len(calls) == count


def test_errors_reach_on_error_and_loop_continues():
    errors = []
    calls = []

    def tick():
        calls.append(1)
        raise RuntimeError("boom")

    sched = CycleScheduler("t", tick, interval=0.01, on_error=errors.append)
    sched.start()
    assert wait_for(lambda: len(calls) >= 2)
    sched.cancel()
    assert all(isinstance(e, RuntimeError) for e in errors)
    assert len(errors) >= 2


def test_cancel_from_inside_tick_does_not_deadlock():
    holder = {}

    def tick():
        holder["result"] = holder["sched"].cancel(timeout=1)

    sched = CycleScheduler("t", tick, interval=10)
    holder["sched"] = sched
    sched.start()
    assert wait_for(lambda: "result" in holder)
    assert holder["result"] is True
    assert wait_for(lambda: not sched.running)


def test_no_tick_after_cancel_before_start_delay():
    calls = []
    sched = CycleScheduler("t", lambda: calls.append(1), interval=0.05)
    sched.start(run_immediately=False)
    sched.cancel()
    time.sleep(0.1)
    assert calls == []


def test_jitter_stays_within_percentage():
    import random

    sched = CycleScheduler("t", lambda: None, interval=1.0, jitter_percent=20, rng=random.Random(3))
    delays = [sched._next_delay() for _ in range(50)]
    assert all(0.8 <= d <= 1.2 for d in delays)
