from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import List

import pytest

from bingo_hall.core.engine import EmissionStatus, GameCallerEngine, GameState
from bingo_hall.core.ranges import letter_for
from bingo_hall.core.sequence import is_permutation
from bingo_hall.errors import InvalidConfiguration, InvalidTransition, PersistenceError
from bingo_hall.rng import create_rng
from bingo_hall.store import (
    Broadcaster,
    CallRecord,
    GameRecord,
    InMemoryBroadcaster,
    InMemoryGameStore,
)


class FakeTicker:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    @property
    def active(self):
        return self.started and not self.cancelled

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        return self.callback()


class TickerFactory:
    def __init__(self):
        self.tickers: List[FakeTicker] = []

    def __call__(self, interval, callback):
        ticker = FakeTicker(interval, callback)
        self.tickers.append(ticker)
        return ticker

    @property
    def last(self) -> FakeTicker:
        return self.tickers[-1]


class FlakyStore(InMemoryGameStore):
    """Fails the first ``failures`` appends."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def append_call(self, game_id, call):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("store unavailable")
        return super().append_call(game_id, call)


class LostAckStore(InMemoryGameStore):
    """Stores the first call but reports a failure for it."""

    def __init__(self):
        super().__init__()
        self.dropped = False

    def append_call(self, game_id, call):
        stored = super().append_call(game_id, call)
        if not self.dropped:
            self.dropped = True
            raise OSError("connection reset")
        return stored


class BlockingStore(InMemoryGameStore):
    """Holds every append until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def append_call(self, game_id, call):
        self.entered.set()
        self.release.wait(5)
        return super().append_call(game_id, call)


class ExplodingStore(InMemoryGameStore):
    """Raises a driver error, not a store error, on the first ``failures`` appends."""

    def __init__(self, failures: int, error=RuntimeError):
        super().__init__()
        self.failures = failures
        self.error = error

    def append_call(self, game_id, call):
        if self.failures > 0:
            self.failures -= 1
            raise self.error("driver fault")
        return super().append_call(game_id, call)


class Abort(BaseException):
    pass


class BrokenBroadcaster(Broadcaster):
    def publish(self, game_id, event, payload):
        raise RuntimeError("channel closed")


def make_game(store, **kwargs):
    game = GameRecord(game_id="g1", selected_card_ids=[1, 2, 3], pattern_ids=["full-house"], **kwargs)
    store.save_game(game)
    return game


def make_engine(store=None, factory=None, **game_kwargs):
    store = store if store is not None else InMemoryGameStore()
    game = make_game(store, **game_kwargs)
    return GameCallerEngine(
        game,
        store,
        rng=create_rng("py_random", 42),
        ticker_factory=factory or TickerFactory(),
    ), store


def test_new_engine_holds_a_permutation():
    engine, _ = make_engine()
    assert engine.state is GameState.SETUP
    assert is_permutation(engine.call_sequence, 75)
    assert engine.call_index == 0


def test_start_persists_the_sequence():
    engine, store = make_engine()
    engine.start()
    stored = store.load_game("g1")
    assert stored.status == "active"
    assert tuple(stored.call_sequence) == engine.call_sequence


def test_manual_calls_follow_the_sequence_then_exhaust():
    engine, store = make_engine()
    engine.start()
    for i in range(75):
        emission = engine.call_next()
        assert emission.status is EmissionStatus.CALLED
        assert emission.call.call_order == i + 1
        assert emission.call.number == engine.call_sequence[i]
        assert emission.call.letter == letter_for(emission.call.number, 75)

    assert engine.exhausted
    assert not engine.can_call_next
    again = engine.call_next()
    assert again.status is EmissionStatus.EXHAUSTED
    assert engine.call_index == 75
    assert len(store.list_calls("g1")) == 75
    assert engine.called_numbers == engine.call_sequence


def test_no_calls_outside_active():
    engine, store = make_engine()
    assert engine.call_next().status is EmissionStatus.INACTIVE
    engine.start()
    engine.pause()
    assert engine.call_next().status is EmissionStatus.INACTIVE
    engine.resume()
    assert engine.call_next().called
    engine.end()
    assert engine.call_next().status is EmissionStatus.INACTIVE
    assert len(store.list_calls("g1")) == 1


@pytest.mark.parametrize(
    "actions, bad",
    [
        ([], "resume"),
        ([], "pause"),
        (["start"], "start"),
        (["start", "pause"], "pause"),
        (["start", "end"], "start"),
        (["start", "end"], "resume"),
        (["end"], "end"),
    ],
)
def test_invalid_transitions(actions, bad):
    engine, store = make_engine()
    for action in actions:
        getattr(engine, action)()
    status_before = store.load_game("g1").status
    with pytest.raises(InvalidTransition):
        getattr(engine, bad)()
    assert store.load_game("g1").status == status_before


def test_end_is_allowed_from_setup():
    engine, store = make_engine()
    engine.end()
    assert engine.state is GameState.ENDED
    assert store.load_game("g1").status == "ended"


def test_reshuffle_only_in_setup():
    engine, store = make_engine()
    first = engine.call_sequence
    second = engine.reshuffle()
    assert is_permutation(second, 75)
    assert engine.call_sequence == second
    assert tuple(store.load_game("g1").call_sequence) == second
    assert first != second

    engine.start()
    with pytest.raises(InvalidTransition):
        engine.reshuffle()
    engine.pause()
    with pytest.raises(InvalidTransition):
        engine.reshuffle()
    assert engine.call_sequence == second


def test_restart_clears_calls():
    engine, store = make_engine()
    engine.start()
    for _ in range(5):
        engine.call_next()
    engine.restart()

    assert engine.state is GameState.SETUP
    assert engine.call_index == 0
    assert engine.history == ()
    assert store.list_calls("g1") == []
    stored = store.load_game("g1")
    assert stored.status == "setup"
    assert stored.call_sequence == []

    engine.start()
    assert tuple(store.load_game("g1").call_sequence) == engine.call_sequence
    assert engine.call_next().call.call_order == 1


def test_restart_not_allowed_after_end():
    engine, _ = make_engine()
    engine.start()
    engine.end()
    with pytest.raises(InvalidTransition):
        engine.restart()


def test_reload_reuses_stored_sequence():
    engine, store = make_engine()
    engine.start()
    for _ in range(3):
        engine.call_next()

    reloaded = GameCallerEngine.load("g1", store, ticker_factory=TickerFactory())
    assert reloaded.call_sequence == engine.call_sequence
    assert reloaded.call_index == 3
    assert reloaded.state is GameState.ACTIVE
    assert reloaded.call_next().call.number == engine.call_sequence[3]


def test_reload_rejects_call_log_that_disagrees():
    engine, store = make_engine()
    engine.start()
    wrong = next(n for n in range(1, 76) if n != engine.call_sequence[0])
    store.append_call("g1", CallRecord(number=wrong, letter=letter_for(wrong, 75), call_order=1))
    with pytest.raises(InvalidConfiguration):
        GameCallerEngine.load("g1", store)


def test_automatic_mode_runs_on_the_ticker():
    factory = TickerFactory()
    engine, store = make_engine(factory=factory, caller_mode="automatic", auto_interval_seconds=2)
    assert factory.tickers == []

    engine.start()
    ticker = factory.last
    assert ticker.started and ticker.interval == 2
    assert engine.auto_calling
    assert ticker.fire().called
    assert ticker.fire().called

    engine.pause()
    assert ticker.cancelled
    assert not engine.auto_calling
    # a tick that was already due when pausing does nothing
    assert ticker.fire().status is EmissionStatus.INACTIVE

    engine.resume()
    assert len(factory.tickers) == 2
    assert factory.last.fire().called
    assert [c.call_order for c in store.list_calls("g1")] == [1, 2, 3]


def test_automatic_calling_stops_when_numbers_run_out():
    factory = TickerFactory()
    engine, _ = make_engine(factory=factory, caller_mode="automatic", number_range=5)
    engine.start()
    ticker = factory.last
    for _ in range(5):
        assert ticker.fire().called
    assert ticker.fire().status is EmissionStatus.EXHAUSTED
    assert ticker.cancelled
    assert not engine.auto_calling
    assert engine.state is GameState.ACTIVE


def test_reloaded_active_automatic_game_resumes_ticking():
    factory = TickerFactory()
    engine, store = make_engine(factory=factory, caller_mode="automatic")
    engine.start()
    engine.close()
    assert factory.last.cancelled

    reloaded = GameCallerEngine.load("g1", store, ticker_factory=factory)
    assert len(factory.tickers) == 2
    assert reloaded.auto_calling
    reloaded.close()


def test_write_retried_until_it_succeeds():
    store = FlakyStore(failures=2)
    engine, _ = make_engine(store=store)
    engine.start()
    emission = engine.call_next()
    assert emission.called
    assert store.attempts == 3
    assert engine.call_index == 1


def test_failed_write_rolls_back():
    store = FlakyStore(failures=10)
    engine, _ = make_engine(store=store)
    engine.start()
    emission = engine.call_next()
    assert emission.status is EmissionStatus.FAILED
    assert engine.call_index == 0
    assert engine.history == ()

    store.failures = 0
    retry = engine.call_next()
    assert retry.called
    assert retry.call.number == engine.call_sequence[0]
    assert retry.call.call_order == 1


def test_write_that_landed_despite_an_error_is_kept():
    store = LostAckStore()
    engine, _ = make_engine(store=store)
    engine.start()
    emission = engine.call_next()
    assert emission.called
    assert engine.call_index == 1
    assert len(store.list_calls("g1")) == 1
    assert engine.call_next().call.call_order == 2


def test_concurrent_attempt_is_skipped_not_queued():
    store = BlockingStore()
    engine, _ = make_engine(store=store)
    engine.start()
    results = []
    worker = threading.Thread(target=lambda: results.append(engine.call_next()))
    worker.start()
    assert store.entered.wait(5)

    assert engine.call_next().status is EmissionStatus.BUSY
    store.release.set()
    worker.join(5)

    assert results[0].called
    assert engine.call_index == 1
    assert len(store.list_calls("g1")) == 1


def test_write_finishing_after_end_is_not_applied():
    store = BlockingStore()
    broadcaster = InMemoryBroadcaster()
    events = []
    broadcaster.subscribe("g1", lambda event, payload: events.append(event))
    game = make_game(store)
    engine = GameCallerEngine(game, store, broadcaster=broadcaster)
    engine.start()

    results = []
    worker = threading.Thread(target=lambda: results.append(engine.call_next()))
    worker.start()
    assert store.entered.wait(5)
    engine.end()
    store.release.set()
    worker.join(5)

    assert results[0].status is EmissionStatus.DISCARDED
    assert "number_called" not in events
    assert events.count("game_status") == 2


def test_many_threads_never_skip_or_repeat_an_index():
    engine, store = make_engine()
    engine.start()
    barrier = threading.Barrier(8)

    def hammer():
        barrier.wait()
        for _ in range(30):
            engine.call_next()

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    calls = store.list_calls("g1")
    assert [c.call_order for c in calls] == list(range(1, len(calls) + 1))
    assert tuple(c.number for c in calls) == engine.call_sequence[: len(calls)]
    assert engine.call_index == len(calls)


def test_broadcast_failure_does_not_affect_state():
    store = InMemoryGameStore()
    game = make_game(store)
    engine = GameCallerEngine(game, store, broadcaster=BrokenBroadcaster())
    engine.start()
    assert engine.call_next().called
    assert engine.call_index == 1


def test_failed_transition_write_keeps_local_state():
    class ReadOnlyStore(InMemoryGameStore):
        def save_game(self, record):
            if record.status != "setup":
                raise PersistenceError("read only")
            super().save_game(record)

    store = ReadOnlyStore()
    engine, _ = make_engine(store=store)
    with pytest.raises(PersistenceError):
        engine.start()
    assert engine.state is GameState.SETUP


def test_resync_aligns_with_store():
    engine, store = make_engine()
    engine.start()
    engine.call_next()
    seq = engine.call_sequence
    # another host process appended the next call
    store.append_call("g1", CallRecord(number=seq[1], letter=letter_for(seq[1], 75), call_order=2))
    assert engine.resync() == 2
    assert engine.call_index == 2
    assert engine.call_next().call.number == seq[2]


def test_snapshot():
    engine, _ = make_engine()
    engine.start()
    engine.call_next()
    snap = engine.snapshot().to_dict()
    assert snap["state"] == "active"
    assert snap["call_index"] == 1
    assert snap["current_call"]["call_order"] == 1
    assert snap["exhausted"] is False


def test_unexpected_store_error_counts_as_a_failed_attempt():
    store = ExplodingStore(failures=1)
    engine, _ = make_engine(store=store)
    engine.start()
    assert engine.call_next().called
    assert engine.call_index == len(store.list_calls("g1")) == 1
    assert engine.call_next().call.call_order == 2


def test_unexpected_store_error_on_every_attempt_rolls_back():
    store = ExplodingStore(failures=10, error=KeyError)
    engine, _ = make_engine(store=store)
    engine.start()
    assert engine.call_next().status is EmissionStatus.FAILED
    assert engine.call_index == len(store.list_calls("g1")) == 0

    store.failures = 0
    statuses = [engine.call_next().status for _ in range(3)]
    assert statuses == [EmissionStatus.CALLED] * 3
    assert engine.call_index == len(store.list_calls("g1")) == 3


def test_escaping_interrupt_leaves_the_index_unchanged():
    store = ExplodingStore(failures=1, error=Abort)
    engine, _ = make_engine(store=store)
    engine.start()
    with pytest.raises(Abort):
        engine.call_next()
    assert engine.call_index == 0
    assert engine.history == ()
    assert engine.call_next().call.call_order == 1


def test_failed_restart_save_keeps_game_and_calls():
    class SetupReadOnlyStore(InMemoryGameStore):
        locked = False

        def save_game(self, record):
            if self.locked:
                raise PersistenceError("read only")
            super().save_game(record)

    store = SetupReadOnlyStore()
    engine, _ = make_engine(store=store)
    engine.start()
    engine.call_next()
    engine.call_next()
    store.locked = True

    with pytest.raises(PersistenceError):
        engine.restart()
    assert engine.state is GameState.ACTIVE
    assert engine.call_index == len(store.list_calls("g1")) == 2
    assert store.load_game("g1").status == "active"
    assert engine.call_next().call.call_order == 3


def test_failed_restart_clear_restores_the_game_record():
    class NoClearStore(InMemoryGameStore):
        def clear_calls(self, game_id):
            raise PersistenceError("clear failed")

    store = NoClearStore()
    engine, _ = make_engine(store=store)
    engine.start()
    engine.call_next()
    sequence = engine.call_sequence

    with pytest.raises(PersistenceError):
        engine.restart()
    stored = store.load_game("g1")
    assert stored.status == "active"
    assert tuple(stored.call_sequence) == sequence
    assert engine.state is GameState.ACTIVE
    assert engine.call_index == len(store.list_calls("g1")) == 1
    assert engine.call_next().called


def test_discarded_call_history_matches_store():
    class StampingStore(BlockingStore):
        def append_call(self, game_id, call):
            stamped = replace(call, called_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
            return super().append_call(game_id, stamped)

    store = StampingStore()
    game = make_game(store)
    engine = GameCallerEngine(game, store)
    engine.start()

    results = []
    worker = threading.Thread(target=lambda: results.append(engine.call_next()))
    worker.start()
    assert store.entered.wait(5)
    engine.end()
    store.release.set()
    worker.join(5)

    assert results[0].status is EmissionStatus.DISCARDED
    assert engine.history == tuple(store.list_calls("g1"))
