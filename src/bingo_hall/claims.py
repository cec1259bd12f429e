"""Cashier-side claim checks.

A player calls out a card number; the desk looks the card up, refuses cards
that already have a claim on record, and otherwise evaluates the card against
the game's patterns. A win is recorded as a ``valid`` claim. A card the
cashier rejects is locked with an ``invalid`` claim and stays locked for the
rest of the game.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from .core.cards import CardGrid, card_numbers, generate_card
from .core.evaluator import Evaluation, first_win
from .core.patterns import Pattern, PatternCatalog
from .errors import InvalidConfiguration
from .store import ClaimRecord, GameRecord, GameStore

logger = logging.getLogger(__name__)


class ClaimOutcome(Enum):
    NOT_FOUND = "not_found"
    LOCKED = "locked"
    ALREADY_CLAIMED = "already_claimed"
    WON = "won"
    NO_WIN = "no_win"


@dataclass(frozen=True)
class ClaimCheck:
    outcome: ClaimOutcome
    card_id: int
    grid: Optional[CardGrid] = None
    evaluation: Optional[Evaluation] = None
    claim: Optional[ClaimRecord] = None
    remaining: int = 0

    @property
    def message(self) -> str:
        if self.outcome is ClaimOutcome.NOT_FOUND:
            return f"Card {self.card_id} is not part of this game."
        if self.outcome is ClaimOutcome.LOCKED:
            return f"Card {self.card_id} is locked for the rest of this game."
        if self.outcome is ClaimOutcome.ALREADY_CLAIMED:
            return f"Card {self.card_id} already has a claim registered."
        if self.outcome is ClaimOutcome.WON:
            name = self.evaluation.pattern_name if self.evaluation else "a pattern"
            return f"Card {self.card_id} wins with {name}!"
        return f"No winning pattern on card {self.card_id}; {self.remaining} numbers left to call."


class ClaimDesk:
    def __init__(
        self,
        game: GameRecord,
        store: GameStore,
        catalog: Optional[PatternCatalog] = None,
        *,
        card_layout: str = "modulo",
        seed: int = 0,
        rng_engine: str = "py_random",
    ):
        self.game = game
        self.store = store
        self.catalog = catalog or PatternCatalog()
        self.patterns: List[Pattern] = self.catalog.resolve(game.pattern_ids)
        if not self.patterns:
            raise InvalidConfiguration(f"game {game.game_id} has no winning patterns selected")
        self._layout = card_layout
        self._seed = seed
        self._rng_engine = rng_engine

    def card(self, card_id: int) -> Optional[CardGrid]:
        """Grid of ``card_id`` if the card was sold for this game."""
        if card_id not in self.game.selected_card_ids:
            return None
        return generate_card(
            card_id,
            self.game.number_range,
            layout=self._layout,
            seed=self._seed,
            rng_engine=self._rng_engine,
        )

    def latest_claim(self, card_id: int) -> Optional[ClaimRecord]:
        claims = self.store.list_claims(self.game.game_id, card_id)
        return claims[-1] if claims else None

    def check_card(self, card_id: int, called: Iterable[int], *, record: bool = True) -> ClaimCheck:
        called_set = frozenset(called)
        grid = self.card(card_id)
        if grid is None:
            logger.info("Game %s: card %s not found", self.game.game_id, card_id)
            return ClaimCheck(ClaimOutcome.NOT_FOUND, card_id)

        existing = self.latest_claim(card_id)
        if existing is not None:
            outcome = (
                ClaimOutcome.LOCKED
                if existing.validation_result == "invalid"
                else ClaimOutcome.ALREADY_CLAIMED
            )
            logger.info("Game %s: card %s refused (%s)", self.game.game_id, card_id, outcome.value)
            return ClaimCheck(outcome, card_id, grid=grid, claim=existing)

        win = first_win(grid, called_set, self.patterns)
        if win is None:
            remaining = self.game.number_range - len(called_set)
            return ClaimCheck(ClaimOutcome.NO_WIN, card_id, grid=grid, remaining=remaining)

        claim = None
        if record:
            claim = self.store.add_claim(
                self.game.game_id,
                ClaimRecord(
                    card_id=card_id,
                    pattern_id=win.pattern_id,
                    marked_numbers=self._marked(grid, called_set),
                    validation_result="valid",
                ),
            )
        logger.info(
            "Game %s: card %s wins with %s", self.game.game_id, card_id, win.pattern_name
        )
        return ClaimCheck(ClaimOutcome.WON, card_id, grid=grid, evaluation=win, claim=claim)

    def lock_card(self, card_id: int, called: Iterable[int] = ()) -> ClaimRecord:
        grid = self.card(card_id)
        if grid is None:
            raise InvalidConfiguration(f"Card {card_id} is not part of game {self.game.game_id}")
        # a locked card has no winning pattern; the first game pattern is a placeholder
        claim = self.store.add_claim(
            self.game.game_id,
            ClaimRecord(
                card_id=card_id,
                pattern_id=self.patterns[0].id,
                marked_numbers=self._marked(grid, frozenset(called)),
                validation_result="invalid",
            ),
        )
        logger.warning("Game %s: card %s locked", self.game.game_id, card_id)
        return claim

    @staticmethod
    def _marked(grid: CardGrid, called: frozenset) -> List[int]:
        return [x for x in card_numbers(grid) if x in called]
