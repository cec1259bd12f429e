"""Read-only player view of a game.

Fed by broadcast events when they arrive, and by polling the call log
otherwise. Both paths key calls by ``call_order``, so a call seen twice is
kept once and a sync after missed broadcasts ends in the same state.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .store import CallRecord, GameStore, InMemoryBroadcaster

logger = logging.getLogger(__name__)


class PlayerView:
    def __init__(self, game_id: str, number_range: int = 75, status: str = "setup"):
        self.game_id = game_id
        self.number_range = number_range
        self._lock = threading.Lock()
        self._status = status
        self._calls: Dict[int, CallRecord] = {}

    @property
    def status(self) -> str:
        return self._status

    @property
    def history(self) -> Tuple[CallRecord, ...]:
        with self._lock:
            return tuple(self._calls[k] for k in sorted(self._calls))

    @property
    def called_numbers(self) -> List[int]:
        return [c.number for c in self.history]

    @property
    def current_call(self) -> Optional[CallRecord]:
        history = self.history
        return history[-1] if history else None

    @property
    def has_gap(self) -> bool:
        """True when a broadcast was missed and a sync is due."""
        with self._lock:
            return bool(self._calls) and max(self._calls) != len(self._calls)

    def attach(self, broadcaster: InMemoryBroadcaster) -> Callable[[], None]:
        return broadcaster.subscribe(self.game_id, self.on_event)

    def on_event(self, event: str, payload: Mapping[str, Any]) -> None:
        if event == "number_called":
            call = CallRecord.from_dict(payload)
            with self._lock:
                if call.call_order in self._calls:
                    logger.debug("Game %s: duplicate call #%d ignored", self.game_id, call.call_order)
                    return
                self._calls[call.call_order] = call
        elif event == "game_status":
            with self._lock:
                self._status = str(payload.get("status", self._status))
                if payload.get("restarted"):
                    self._calls.clear()
        elif event == "sequence_reshuffled":
            with self._lock:
                self._calls.clear()
        else:
            logger.debug("Game %s: ignoring event %s", self.game_id, event)

    def sync(self, store: GameStore) -> int:
        """Rebuild the view from the persisted game; returns the call count."""
        game = store.load_game(self.game_id)
        calls = store.list_calls(self.game_id)
        with self._lock:
            self.number_range = game.number_range
            self._status = game.status
            self._calls = {c.call_order: c for c in calls}
        return len(calls)
