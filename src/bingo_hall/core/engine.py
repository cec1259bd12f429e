"""Caller engine: the single owner of call progress for one game.

State machine::

    setup -> active <-> paused -> ended
      |                             ^
      +-----------------------------+

``ended`` is terminal. ``restart`` brings any other state back to ``setup``
with a fresh call sequence; ``reshuffle`` only works in ``setup``.

Every call goes through ``call_next()``, which takes a non-blocking in-flight
lock: a second attempt while one is still being persisted is dropped, never
queued. The index advances locally first, then the call is written to the
store (with retries). A write that still fails is rolled back; a write that
completes after the game ended is not applied. ``restart`` and ``reshuffle``
wait for an in-flight call to settle first.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import ExhaustedSequence, InvalidConfiguration, InvalidTransition, PersistenceError
from ..rng import RandomSource
from ..store import Broadcaster, CallRecord, GameRecord, GameStore, NullBroadcaster
from .ranges import letter_for
from .sequence import CallCursor, CallSequence, generate_call_sequence, restore_call_sequence
from .ticker import IntervalTicker

logger = logging.getLogger(__name__)


class GameState(Enum):
    SETUP = "setup"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


# {current_state: {action: next_state}}
TRANSITIONS: Dict[GameState, Dict[str, GameState]] = {
    GameState.SETUP: {"start": GameState.ACTIVE, "end": GameState.ENDED},
    GameState.ACTIVE: {"pause": GameState.PAUSED, "end": GameState.ENDED},
    GameState.PAUSED: {"resume": GameState.ACTIVE, "end": GameState.ENDED},
    GameState.ENDED: {},
}


class EmissionStatus(Enum):
    CALLED = "called"
    EXHAUSTED = "exhausted"
    BUSY = "busy"
    INACTIVE = "inactive"
    FAILED = "failed"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class Emission:
    status: EmissionStatus
    call: Optional[CallRecord] = None

    @property
    def called(self) -> bool:
        return self.status is EmissionStatus.CALLED


@dataclass(frozen=True)
class EngineSnapshot:
    game_id: str
    state: str
    caller_mode: str
    call_index: int
    sequence_length: int
    called_numbers: Tuple[int, ...]
    current_call: Optional[CallRecord]
    exhausted: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "game_id": self.game_id,
            "state": self.state,
            "caller_mode": self.caller_mode,
            "call_index": self.call_index,
            "sequence_length": self.sequence_length,
            "called_numbers": list(self.called_numbers),
            "current_call": self.current_call.to_dict() if self.current_call else None,
            "exhausted": self.exhausted,
        }


TickerFactory = Callable[[float, Callable[[], object]], Any]


def _check_history(history: Sequence[CallRecord], sequence: CallSequence) -> None:
    if len(history) > len(sequence):
        raise InvalidConfiguration("more calls recorded than numbers in the sequence")
    for i, call in enumerate(history):
        if call.call_order != i + 1 or call.number != sequence[i]:
            raise InvalidConfiguration(
                f"call #{call.call_order} ({call.number}) does not match the call sequence"
            )


class GameCallerEngine:
    """Drives the calls of one game and owns its call index."""

    def __init__(
        self,
        game: GameRecord,
        store: GameStore,
        *,
        broadcaster: Optional[Broadcaster] = None,
        rng: Optional[RandomSource] = None,
        ticker_factory: TickerFactory = IntervalTicker,
        max_write_attempts: int = 3,
        history: Sequence[CallRecord] = (),
    ):
        self._game = copy.deepcopy(game.validate())
        self._store = store
        self._broadcaster = broadcaster or NullBroadcaster()
        self._rng = rng
        self._ticker_factory = ticker_factory
        self._max_write_attempts = max(1, int(max_write_attempts))

        self._state_lock = threading.RLock()
        self._emit_lock = threading.Lock()
        self._ticker: Any = None

        if game.call_sequence:
            sequence = restore_call_sequence(game.call_sequence, game.number_range)
        elif history:
            raise InvalidConfiguration("calls recorded for a game without a call sequence")
        else:
            sequence = generate_call_sequence(game.number_range, rng)
        _check_history(history, sequence)

        self._state = GameState(game.status)
        self._cursor = CallCursor(sequence, len(history))
        self._history: List[CallRecord] = list(history)

        with self._state_lock:
            self._start_ticker_locked()

    @classmethod
    def load(cls, game_id: str, store: GameStore, **kwargs: Any) -> "GameCallerEngine":
        """Rebuild an engine from the persisted game and call log.

        The stored call sequence is reused as is so host and player views
        keep the same order after a reload.
        """
        game = store.load_game(game_id)
        history = store.list_calls(game_id)
        return cls(game, store, history=history, **kwargs)

    # -- read-only views -------------------------------------------------

    @property
    def game_id(self) -> str:
        return self._game.game_id

    @property
    def number_range(self) -> int:
        return self._game.number_range

    @property
    def caller_mode(self) -> str:
        return self._game.caller_mode

    @property
    def game(self) -> GameRecord:
        with self._state_lock:
            return copy.deepcopy(self._game)

    @property
    def state(self) -> GameState:
        return self._state

    @property
    def call_index(self) -> int:
        return self._cursor.index

    @property
    def call_sequence(self) -> CallSequence:
        return self._cursor.sequence

    @property
    def called_numbers(self) -> Tuple[int, ...]:
        with self._state_lock:
            return tuple(self._cursor.called())

    @property
    def history(self) -> Tuple[CallRecord, ...]:
        with self._state_lock:
            return tuple(self._history)

    @property
    def current_call(self) -> Optional[CallRecord]:
        with self._state_lock:
            return self._history[-1] if self._history else None

    @property
    def exhausted(self) -> bool:
        return self._cursor.exhausted

    @property
    def can_call_next(self) -> bool:
        with self._state_lock:
            return self._state is GameState.ACTIVE and not self._cursor.exhausted

    @property
    def auto_calling(self) -> bool:
        ticker = self._ticker
        return ticker is not None and ticker.active

    def snapshot(self) -> EngineSnapshot:
        with self._state_lock:
            return EngineSnapshot(
                game_id=self.game_id,
                state=self._state.value,
                caller_mode=self.caller_mode,
                call_index=self._cursor.index,
                sequence_length=len(self._cursor.sequence),
                called_numbers=tuple(self._cursor.called()),
                current_call=self._history[-1] if self._history else None,
                exhausted=self._cursor.exhausted,
            )

    # -- operator actions ------------------------------------------------

    def start(self) -> None:
        self._transition("start", persist_sequence=True)

    def pause(self) -> None:
        self._transition("pause")

    def resume(self) -> None:
        self._transition("resume")

    def end(self) -> None:
        self._transition("end")

    def reshuffle(self) -> CallSequence:
        """Replace the call sequence; only allowed before the game starts."""
        with self._emit_lock, self._state_lock:
            if self._state is not GameState.SETUP:
                raise InvalidTransition("reshuffle", self._state.value)
            sequence = generate_call_sequence(self.number_range, self._rng)
            self._save(call_sequence=list(sequence))
            self._cursor = CallCursor(sequence)
            self._history = []
            logger.info("Game %s: call sequence reshuffled", self.game_id)
        self._publish("sequence_reshuffled", {"status": GameState.SETUP.value})
        return sequence

    def restart(self) -> CallSequence:
        """Back to setup with no calls and a new sequence.

        Waits for an in-flight call to settle so no stale call lands in the
        cleared log.
        """
        with self._emit_lock, self._state_lock:
            if self._state is GameState.ENDED:
                raise InvalidTransition("restart", self._state.value)
            sequence = generate_call_sequence(self.number_range, self._rng)
            previous = self._game
            # the new order is only persisted on start, as for a fresh game
            self._save(status=GameState.SETUP.value, call_sequence=[])
            try:
                self._store.clear_calls(self.game_id)
            except BaseException:
                self._restore_record(previous)
                raise
            self._state = GameState.SETUP
            self._cursor = CallCursor(sequence)
            self._history = []
            ticker = self._detach_ticker()
            logger.info("Game %s restarted", self.game_id)
        if ticker is not None:
            ticker.cancel()
        self._publish("game_status", {"status": GameState.SETUP.value, "restarted": True})
        return sequence

    def close(self) -> None:
        """Stop automatic calling without changing the game state."""
        with self._state_lock:
            ticker = self._detach_ticker()
        if ticker is not None:
            ticker.cancel()

    def call_next(self) -> Emission:
        """Emit the next call, once per index.

        Returns an ``Emission`` whose status says what happened; the only
        status that produced a persisted call is ``CALLED``.
        """
        if not self._emit_lock.acquire(blocking=False):
            logger.debug("Game %s: call already in flight, skipped", self.game_id)
            return Emission(EmissionStatus.BUSY)
        try:
            return self._emit()
        finally:
            self._emit_lock.release()

    def resync(self) -> int:
        """Align the local call history with the persisted call log."""
        with self._emit_lock:
            persisted = self._store.list_calls(self.game_id)
            with self._state_lock:
                _check_history(persisted, self._cursor.sequence)
                if len(persisted) != len(self._history):
                    logger.warning(
                        "Game %s: resync moved call index %d -> %d",
                        self.game_id, self._cursor.index, len(persisted),
                    )
                self._history = list(persisted)
                self._cursor.index = len(persisted)
                return len(persisted)

    # -- internals -------------------------------------------------------

    def _transition(self, action: str, *, persist_sequence: bool = False) -> None:
        with self._state_lock:
            target = TRANSITIONS[self._state].get(action)
            if target is None:
                raise InvalidTransition(action, self._state.value)
            changes: Dict[str, Any] = {"status": target.value}
            if persist_sequence:
                changes["call_sequence"] = list(self._cursor.sequence)
            # persist first; local state only moves once the write succeeded
            self._save(**changes)
            previous, self._state = self._state, target
            logger.info("Game %s: %s -> %s", self.game_id, previous.value, target.value)
            ticker = None
            if target is GameState.ACTIVE:
                self._start_ticker_locked()
            else:
                ticker = self._detach_ticker()
        if ticker is not None:
            ticker.cancel()
        self._publish("game_status", {"status": target.value})

    def _save(self, **changes: Any) -> None:
        record = replace(self._game, **changes)
        self._store.save_game(record)
        self._game = record

    def _restore_record(self, record: GameRecord) -> None:
        self._game = record
        try:
            self._store.save_game(record)
        except Exception:
            logger.exception(
                "Game %s: could not restore the game record after a failed restart", self.game_id
            )

    def _rollback(self, call: CallRecord) -> None:
        if self._history and self._history[-1] is call:
            self._history.pop()
            self._cursor.rewind()

    def _start_ticker_locked(self) -> None:
        if (
            self.caller_mode != "automatic"
            or self._ticker is not None
            or self._state is not GameState.ACTIVE
            or self._cursor.exhausted
        ):
            return
        ticker = self._ticker_factory(self._game.auto_interval_seconds, self.call_next)
        self._ticker = ticker
        ticker.start()
        logger.debug(
            "Game %s: automatic calling every %ss", self.game_id, self._game.auto_interval_seconds
        )

    def _detach_ticker(self) -> Any:
        ticker, self._ticker = self._ticker, None
        return ticker

    def _emit(self) -> Emission:
        ticker = None
        with self._state_lock:
            if self._state is not GameState.ACTIVE:
                return Emission(EmissionStatus.INACTIVE)
            try:
                index, number = self._cursor.advance()
            except ExhaustedSequence as exc:
                ticker = self._detach_ticker()
                logger.info("Game %s: %s", self.game_id, exc)
                call = None
            else:
                call = CallRecord(
                    number=number,
                    letter=letter_for(number, self.number_range),
                    call_order=index + 1,
                )
                self._history.append(call)
        if call is None:
            if ticker is not None:
                ticker.cancel()
            return Emission(EmissionStatus.EXHAUSTED)

        try:
            stored = self._write_call(call)
        except BaseException:
            with self._state_lock:
                self._rollback(call)
            raise

        with self._state_lock:
            if stored is None:
                self._rollback(call)
                logger.error(
                    "Game %s: call #%d (%s%d) rolled back, store did not confirm it",
                    self.game_id, call.call_order, call.letter, call.number,
                )
                return Emission(EmissionStatus.FAILED, call)
            self._history[call.call_order - 1] = stored
            if self._state is GameState.ENDED:
                logger.info(
                    "Game %s: call #%d persisted after the game ended, not applied",
                    self.game_id, call.call_order,
                )
                return Emission(EmissionStatus.DISCARDED, stored)

        logger.info("Game %s: call #%d %s%d", self.game_id, stored.call_order, stored.letter, stored.number)
        self._publish("number_called", stored.to_dict())
        return Emission(EmissionStatus.CALLED, stored)

    def _write_call(self, call: CallRecord) -> Optional[CallRecord]:
        for attempt in range(1, self._max_write_attempts + 1):
            try:
                return self._store.append_call(self.game_id, call)
            except Exception as exc:
                logger.warning(
                    "Game %s: storing call #%d failed (attempt %d/%d): %s",
                    self.game_id, call.call_order, attempt, self._max_write_attempts, exc,
                    exc_info=not isinstance(exc, (PersistenceError, OSError)),
                )
        return self._confirmed(call)

    def _confirmed(self, call: CallRecord) -> Optional[CallRecord]:
        # A write may have landed even though the store reported an error.
        try:
            persisted = self._store.list_calls(self.game_id)
        except Exception:
            logger.warning("Game %s: call log unreadable", self.game_id, exc_info=True)
            return None
        if len(persisted) >= call.call_order:
            candidate = persisted[call.call_order - 1]
            if candidate.number == call.number:
                return candidate
        return None

    def _publish(self, event: str, payload: Mapping[str, Any]) -> None:
        try:
            self._broadcaster.publish(self.game_id, event, payload)
        except Exception:
            logger.warning(
                "Game %s: broadcast of %s failed; viewers will resync", self.game_id, event,
                exc_info=True,
            )
