from __future__ import annotations

from bingo_hall.core.engine import GameCallerEngine
from bingo_hall.rng import create_rng
from bingo_hall.store import GameRecord, InMemoryBroadcaster, InMemoryGameStore
from bingo_hall.viewer import PlayerView


def _hall():
    store = InMemoryGameStore()
    broadcaster = InMemoryBroadcaster()
    game = GameRecord(game_id="g1", selected_card_ids=[1], pattern_ids=["full-house"])
    store.save_game(game)
    engine = GameCallerEngine(game, store, broadcaster=broadcaster, rng=create_rng("py_random", 1))
    return engine, store, broadcaster


def test_view_follows_broadcasts():
    engine, _, broadcaster = _hall()
    view = PlayerView("g1")
    view.attach(broadcaster)
    engine.start()
    for _ in range(5):
        engine.call_next()
    assert view.status == "active"
    assert tuple(view.called_numbers) == engine.called_numbers
    assert view.current_call == engine.current_call
    assert not view.has_gap


def test_duplicate_broadcast_is_ignored():
    engine, _, broadcaster = _hall()
    view = PlayerView("g1")
    view.attach(broadcaster)
    engine.start()
    call = engine.call_next().call
    view.on_event("number_called", call.to_dict())
    assert len(view.history) == 1


def test_sync_after_missed_broadcasts():
    engine, store, broadcaster = _hall()
    engine.start()
    for _ in range(3):
        engine.call_next()

    view = PlayerView("g1")
    unsubscribe = view.attach(broadcaster)
    engine.call_next()
    assert view.has_gap

    assert view.sync(store) == 4
    assert not view.has_gap
    assert tuple(view.called_numbers) == engine.called_numbers

    unsubscribe()
    engine.call_next()
    assert len(view.history) == 4
    view.sync(store)
    assert tuple(view.called_numbers) == engine.called_numbers


def test_polling_alone_matches_broadcast_view():
    engine, store, broadcaster = _hall()
    pushed = PlayerView("g1")
    pushed.attach(broadcaster)
    engine.start()
    for _ in range(10):
        engine.call_next()

    polled = PlayerView("g1")
    polled.sync(store)
    assert polled.history == pushed.history
    assert polled.status == pushed.status


def test_restart_clears_the_view():
    engine, _, broadcaster = _hall()
    view = PlayerView("g1")
    view.attach(broadcaster)
    engine.start()
    engine.call_next()
    engine.restart()
    assert view.history == ()
    assert view.status == "setup"
