"""Game, call and claim records plus the stores that persist them.

The hall runs against a hosted database; the core only needs the small
``GameStore`` surface below. ``InMemoryGameStore`` backs tests and the
``play`` command, ``JsonGameStore`` keeps one JSON document per game for the
CLI.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .core.ranges import partition_range
from .errors import InvalidConfiguration, PersistenceError
from .serialize import read_json, write_json

logger = logging.getLogger(__name__)

GAME_STATUSES = ("setup", "active", "paused", "ended")
CALLER_MODES = ("manual", "automatic")
CLAIM_RESULTS = ("pending", "valid", "invalid")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GameRecord:
    game_id: str
    number_range: int = 75
    selected_card_ids: List[int] = field(default_factory=list)
    pattern_ids: List[str] = field(default_factory=list)
    caller_mode: str = "manual"
    auto_interval_seconds: float = 3
    call_sequence: List[int] = field(default_factory=list)
    status: str = "setup"

    def validate(self) -> "GameRecord":
        partition_range(self.number_range)
        if self.caller_mode not in CALLER_MODES:
            raise InvalidConfiguration(f"Unknown caller mode: {self.caller_mode}")
        if self.status not in GAME_STATUSES:
            raise InvalidConfiguration(f"Unknown game status: {self.status}")
        if self.auto_interval_seconds <= 0:
            raise InvalidConfiguration("auto interval must be positive")
        bad = [c for c in self.selected_card_ids if not isinstance(c, int) or c < 1]
        if bad:
            raise InvalidConfiguration(f"card ids must be positive integers: {bad}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GameRecord":
        return cls(
            game_id=str(data["game_id"]),
            number_range=int(data.get("number_range", 75)),
            selected_card_ids=[int(x) for x in data.get("selected_card_ids", [])],
            pattern_ids=[str(x) for x in data.get("pattern_ids", [])],
            caller_mode=str(data.get("caller_mode", "manual")),
            auto_interval_seconds=float(data.get("auto_interval_seconds", 3)),
            call_sequence=[int(x) for x in data.get("call_sequence", [])],
            status=str(data.get("status", "setup")),
        )


@dataclass(frozen=True)
class CallRecord:
    number: int
    letter: str
    call_order: int
    called_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "letter": self.letter,
            "call_order": self.call_order,
            "called_at": self.called_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CallRecord":
        return cls(
            number=int(data["number"]),
            letter=str(data["letter"]),
            call_order=int(data["call_order"]),
            called_at=datetime.fromisoformat(str(data["called_at"])),
        )


@dataclass(frozen=True)
class ClaimRecord:
    card_id: int
    pattern_id: str
    marked_numbers: List[int]
    validation_result: str = "pending"
    claimed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.validation_result not in CLAIM_RESULTS:
            raise InvalidConfiguration(f"Unknown claim result: {self.validation_result}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_id": self.card_id,
            "pattern_id": self.pattern_id,
            "marked_numbers": list(self.marked_numbers),
            "validation_result": self.validation_result,
            "claimed_at": self.claimed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClaimRecord":
        return cls(
            card_id=int(data["card_id"]),
            pattern_id=str(data["pattern_id"]),
            marked_numbers=[int(x) for x in data.get("marked_numbers", [])],
            validation_result=str(data.get("validation_result", "pending")),
            claimed_at=datetime.fromisoformat(str(data["claimed_at"])),
        )


class GameStore:
    """Persistence surface used by the caller engine and the claim desk."""

    def load_game(self, game_id: str) -> GameRecord:
        raise NotImplementedError

    def save_game(self, record: GameRecord) -> None:
        raise NotImplementedError

    def append_call(self, game_id: str, call: CallRecord) -> CallRecord:
        """Persist one call and return the stored row.

        ``call.call_order`` must be exactly one past the last stored call.
        """
        raise NotImplementedError

    def list_calls(self, game_id: str) -> List[CallRecord]:
        raise NotImplementedError

    def clear_calls(self, game_id: str) -> None:
        raise NotImplementedError

    def add_claim(self, game_id: str, claim: ClaimRecord) -> ClaimRecord:
        raise NotImplementedError

    def list_claims(self, game_id: str, card_id: Optional[int] = None) -> List[ClaimRecord]:
        raise NotImplementedError


def _check_call_order(calls: List[CallRecord], call: CallRecord) -> None:
    expected = len(calls) + 1
    if call.call_order != expected:
        raise PersistenceError(
            f"call_order {call.call_order} rejected; next expected is {expected}"
        )


class InMemoryGameStore(GameStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._games: Dict[str, GameRecord] = {}
        self._calls: Dict[str, List[CallRecord]] = {}
        self._claims: Dict[str, List[ClaimRecord]] = {}

    def _require(self, game_id: str) -> None:
        if game_id not in self._games:
            raise PersistenceError(f"Unknown game: {game_id}")

    def load_game(self, game_id: str) -> GameRecord:
        with self._lock:
            self._require(game_id)
            return copy.deepcopy(self._games[game_id])

    def save_game(self, record: GameRecord) -> None:
        with self._lock:
            self._games[record.game_id] = copy.deepcopy(record)
            self._calls.setdefault(record.game_id, [])
            self._claims.setdefault(record.game_id, [])

    def append_call(self, game_id: str, call: CallRecord) -> CallRecord:
        with self._lock:
            self._require(game_id)
            calls = self._calls[game_id]
            _check_call_order(calls, call)
            calls.append(call)
            return call

    def list_calls(self, game_id: str) -> List[CallRecord]:
        with self._lock:
            self._require(game_id)
            return list(self._calls[game_id])

    def clear_calls(self, game_id: str) -> None:
        with self._lock:
            self._require(game_id)
            self._calls[game_id] = []

    def add_claim(self, game_id: str, claim: ClaimRecord) -> ClaimRecord:
        with self._lock:
            self._require(game_id)
            self._claims[game_id].append(claim)
            return claim

    def list_claims(self, game_id: str, card_id: Optional[int] = None) -> List[ClaimRecord]:
        with self._lock:
            self._require(game_id)
            return [c for c in self._claims[game_id] if card_id is None or c.card_id == card_id]


class JsonGameStore(GameStore):
    """One ``<game_id>.json`` document per game under ``root``."""

    def __init__(self, root: Path, *, mkdirs: bool = True):
        self.root = Path(root)
        self._mkdirs = mkdirs
        self._lock = threading.Lock()

    def _path(self, game_id: str) -> Path:
        if not game_id or any(ch in game_id for ch in "/\\") or game_id.startswith("."):
            raise InvalidConfiguration(f"Invalid game id: {game_id!r}")
        return self.root / f"{game_id}.json"

    def _read(self, game_id: str) -> Dict[str, Any]:
        path = self._path(game_id)
        if not path.exists():
            raise PersistenceError(f"Unknown game: {game_id}")
        try:
            data = read_json(path)
        except ValueError as exc:
            raise PersistenceError(f"Corrupted game file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Corrupted game file {path}")
        return data

    def _write(self, game_id: str, data: Dict[str, Any]) -> None:
        try:
            write_json(self._path(game_id), data, mkdirs=self._mkdirs, overwrite=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot write game {game_id}: {exc}") from exc
        logger.debug("Wrote game %s to %s", game_id, self.root)

    def _update(self, game_id: str, mutate: Callable[[Dict[str, Any]], Any]) -> Any:
        with self._lock:
            data = self._read(game_id)
            result = mutate(data)
            self._write(game_id, data)
            return result

    def load_game(self, game_id: str) -> GameRecord:
        with self._lock:
            return GameRecord.from_dict(self._read(game_id)["game"])

    def save_game(self, record: GameRecord) -> None:
        with self._lock:
            try:
                data = self._read(record.game_id)
            except PersistenceError:
                data = {"calls": [], "claims": []}
            data["game"] = record.to_dict()
            self._write(record.game_id, data)

    def append_call(self, game_id: str, call: CallRecord) -> CallRecord:
        def mutate(data: Dict[str, Any]) -> CallRecord:
            calls = [CallRecord.from_dict(c) for c in data.get("calls", [])]
            _check_call_order(calls, call)
            data.setdefault("calls", []).append(call.to_dict())
            return call

        return self._update(game_id, mutate)

    def list_calls(self, game_id: str) -> List[CallRecord]:
        with self._lock:
            return [CallRecord.from_dict(c) for c in self._read(game_id).get("calls", [])]

    def clear_calls(self, game_id: str) -> None:
        self._update(game_id, lambda data: data.__setitem__("calls", []))

    def add_claim(self, game_id: str, claim: ClaimRecord) -> ClaimRecord:
        def mutate(data: Dict[str, Any]) -> ClaimRecord:
            data.setdefault("claims", []).append(claim.to_dict())
            return claim

        return self._update(game_id, mutate)

    def list_claims(self, game_id: str, card_id: Optional[int] = None) -> List[ClaimRecord]:
        with self._lock:
            claims = [ClaimRecord.from_dict(c) for c in self._read(game_id).get("claims", [])]
        return [c for c in claims if card_id is None or c.card_id == card_id]


class Broadcaster:
    """Best-effort push of game events to listening player views."""

    def publish(self, game_id: str, event: str, payload: Mapping[str, Any]) -> None:
        raise NotImplementedError


class NullBroadcaster(Broadcaster):
    def publish(self, game_id: str, event: str, payload: Mapping[str, Any]) -> None:
        return None


class InMemoryBroadcaster(Broadcaster):
    """Fan events out to subscriber callbacks registered per game."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Callable[[str, Mapping[str, Any]], None]]] = {}

    def subscribe(
        self, game_id: str, callback: Callable[[str, Mapping[str, Any]], None]
    ) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(game_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(game_id, [])
                if callback in subs:
                    subs.remove(callback)

        return unsubscribe

    def publish(self, game_id: str, event: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            subs = list(self._subscribers.get(game_id, []))
        for callback in subs:
            callback(event, payload)
