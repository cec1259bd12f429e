from __future__ import annotations

import json
import logging
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer

from .claims import ClaimDesk, ClaimOutcome
from .config import resolve_parameters
from .core.cards import generate_cards
from .core.engine import GameCallerEngine, GameState
from .core.evaluator import evaluate_patterns
from .core.patterns import PatternCatalog
from .core.ranges import letter_for
from .core.sequence import generate_call_sequence
from .errors import BingoHallError, InvalidConfiguration
from .logging_setup import setup_logging
from .rng import create_rng
from .serialize import build_run_meta, emit_cards_json, emit_report_json
from .store import GameRecord, InMemoryBroadcaster, InMemoryGameStore, JsonGameStore
from .verify import audit_call_sequences, audit_cards
from .version import __version__
from .viewer import PlayerView

app = typer.Typer(help="Bingo hall CLI: cards, call orders, games and claims")

logger = logging.getLogger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit(0)


@app.callback()
def common_options(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        help="Show application version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config file (YAML/JSON)"),
    store_dir: Optional[str] = typer.Option(None, "--store-dir", help="Directory holding game files"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Log file path"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG|INFO|WARNING|ERROR"),
    colors: Optional[str] = typer.Option(None, "--colors", help="auto|always|never"),
) -> None:
    ctx.obj = {
        "config": config,
        "overrides": {
            "store_dir": store_dir,
            "log_file": log_file,
            "log_level": log_level,
            "colors": colors,
        },
    }


def _settings(ctx: typer.Context, **overrides: Any) -> Dict[str, Any]:
    """Resolve settings for one command and configure logging from them."""
    obj = ctx.obj or {}
    cli_overrides = dict(obj.get("overrides", {}))
    cli_overrides.update(overrides)
    try:
        resolved, params_hash, _ = resolve_parameters(
            config_path_str=obj.get("config"), cli_overrides=cli_overrides
        )
    except (BingoHallError, ValueError, FileNotFoundError) as exc:
        typer.secho(f"Error: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(2) from exc
    setup_logging(
        level=str(resolved.get("log_level", "INFO")),
        log_file=resolved.get("log_file"),
        json_format=(str(resolved.get("log_format", "text")) == "json"),
        colors=str(resolved.get("colors", "auto")),
    )
    resolved["params_hash"] = params_hash
    return resolved


@contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except BingoHallError as exc:
        logger.debug("command failed", exc_info=True)
        typer.secho(f"Error: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(1) from exc


def _parse_ids(text: str) -> List[int]:
    """Parse card ids like ``1-10,15,20-22``."""
    ids: List[int] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                lo, hi = (int(x) for x in part.split("-", 1))
                if hi < lo:
                    raise InvalidConfiguration(f"empty card id range: {part}")
                ids.extend(range(lo, hi + 1))
            else:
                ids.append(int(part))
        except ValueError as exc:
            raise InvalidConfiguration(f"bad card id list: {text!r}") from exc
    if not ids:
        raise InvalidConfiguration("no card ids given")
    return sorted(set(ids))


def _parse_numbers(text: str) -> List[int]:
    try:
        return [int(x) for x in text.replace(" ", ",").split(",") if x.strip()]
    except ValueError as exc:
        raise InvalidConfiguration(f"bad number list: {text!r}") from exc


def _seed(resolved: Dict[str, Any]) -> Optional[int]:
    return resolved.get("seed", {}).get("value")


def _rng_engine(resolved: Dict[str, Any]) -> str:
    return str(resolved.get("seed", {}).get("engine", "py_random"))


def _catalog(resolved: Dict[str, Any]) -> PatternCatalog:
    catalog = PatternCatalog()
    patterns_file = resolved.get("patterns_file")
    if patterns_file:
        loaded = catalog.load_file(Path(patterns_file))
        logger.info("Loaded %d pattern(s) from %s", len(loaded), patterns_file)
    return catalog


def _store(resolved: Dict[str, Any]) -> JsonGameStore:
    return JsonGameStore(Path(resolved["store_dir"]))


def _desk(resolved: Dict[str, Any], game: GameRecord, store: Any) -> ClaimDesk:
    return ClaimDesk(
        game,
        store,
        _catalog(resolved),
        card_layout=str(resolved["card_layout"]),
        seed=_seed(resolved) or 0,
        rng_engine=_rng_engine(resolved),
    )


@contextmanager
def _engine(resolved: Dict[str, Any], game_id: str) -> Iterator[GameCallerEngine]:
    store = _store(resolved)
    engine = GameCallerEngine.load(
        game_id,
        store,
        rng=create_rng(_rng_engine(resolved), _seed(resolved)),
        max_write_attempts=int(resolved["max_write_attempts"]),
    )
    try:
        yield engine
    finally:
        engine.close()


def _echo_call(call: Any) -> None:
    typer.echo(f"#{call.call_order}: {call.letter}{call.number}")


def _echo_status(engine: GameCallerEngine) -> None:
    snap = engine.snapshot()
    typer.echo(f"Game: {snap.game_id}")
    typer.echo(f"Status: {snap.state}")
    typer.echo(f"Caller mode: {snap.caller_mode}")
    typer.echo(f"Calls: {snap.call_index}/{snap.sequence_length}")
    if snap.current_call is not None:
        typer.echo(f"Current call: {snap.current_call.letter}{snap.current_call.number}")
    if snap.exhausted:
        typer.echo("All numbers have been called.")


@app.command()
def cards(
    ctx: typer.Context,
    ids: str = typer.Option("1-100", "--ids", help="Card ids, e.g. 1-50,75"),
    number_range: Optional[int] = typer.Option(None, "--number-range", help="Highest number N"),
    layout: Optional[str] = typer.Option(None, "--layout", help="modulo|shuffled"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for the shuffled layout"),
    out_cards: Optional[str] = typer.Option(None, "--out-cards", help="cards.json output path"),
    out_report: Optional[str] = typer.Option(None, "--out-report", help="report.json output path"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Resolve params and exit"),
    force: bool = typer.Option(False, "--force", help="Overwrite outputs if they exist"),
    no_mkdirs: bool = typer.Option(False, "--no-mkdirs", help="Do not create parent directories"),
) -> None:
    """Generate card grids and write cards.json plus an audit report."""
    resolved = _settings(
        ctx,
        number_range=number_range,
        card_layout=layout,
        out_cards=out_cards,
        out_report=out_report,
        **({"seed.value": seed} if seed is not None else {}),
    )
    if dry_run:
        typer.echo(f"Params hash: {resolved['params_hash']}")
        raise typer.Exit(0)

    with _handle_errors():
        card_ids = _parse_ids(ids)
        n = int(resolved["number_range"])
        seed_value = _seed(resolved) or 0
        start_time = time.time()
        grids = generate_cards(
            card_ids,
            n,
            layout=str(resolved["card_layout"]),
            seed=seed_value,
            rng_engine=_rng_engine(resolved),
        )
        report = audit_cards(grids, n)
        elapsed = time.time() - start_time

        run_meta = build_run_meta(
            app_version=__version__,
            params_hash=resolved["params_hash"],
            number_range=n,
            card_layout=str(resolved["card_layout"]),
            seed=seed_value,
            rng_engine=_rng_engine(resolved),
        )
        out_cards_path = Path(resolved.get("out_cards") or "cards.json")
        out_report_path = Path(resolved.get("out_report") or "report.json")
        try:
            emit_cards_json(
                out_cards_path, cards=grids, run_meta=run_meta, mkdirs=not no_mkdirs, overwrite=force
            )
            emit_report_json(
                out_report_path, report=report, mkdirs=not no_mkdirs, overwrite=force
            )
        except FileExistsError as exc:
            typer.secho(f"Error: {exc}", err=True, fg=typer.colors.RED)
            raise typer.Exit(1) from exc

    dupes = report["column_duplicates"]
    typer.echo(f"Generated {len(grids)} cards for 1..{n} in {elapsed:.2f}s")
    if dupes:
        typer.echo(f"{len(dupes)} card(s) repeat a number within a column")
    typer.echo(f"Output files: {out_cards_path}, {out_report_path}")


@app.command()
def sequence(
    ctx: typer.Context,
    number_range: Optional[int] = typer.Option(None, "--number-range", help="Highest number N"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for a reproducible order"),
) -> None:
    """Print a shuffled call order."""
    resolved = _settings(
        ctx, number_range=number_range, **({"seed.value": seed} if seed is not None else {})
    )
    with _handle_errors():
        n = int(resolved["number_range"])
        order = generate_call_sequence(n, create_rng(_rng_engine(resolved), _seed(resolved)))
        typer.echo(" ".join(f"{letter_for(x, n)}{x}" for x in order))


@app.command()
def patterns(ctx: typer.Context) -> None:
    """List the pattern catalog."""
    resolved = _settings(ctx)
    with _handle_errors():
        for pattern in _catalog(resolved):
            marker = "*" if pattern.is_default else " "
            typer.echo(f"{marker} {pattern.id:<16} {pattern.name:<16} {pattern.description}")


@app.command()
def check(
    ctx: typer.Context,
    card: int = typer.Option(..., "--card", help="Card id"),
    called: str = typer.Option(..., "--called", help="Called numbers, comma separated"),
    pattern: Optional[List[str]] = typer.Option(None, "--pattern", help="Pattern id or name (repeatable)"),
    number_range: Optional[int] = typer.Option(None, "--number-range", help="Highest number N"),
) -> None:
    """Evaluate one card against called numbers."""
    resolved = _settings(ctx, number_range=number_range)
    with _handle_errors():
        catalog = _catalog(resolved)
        selected = catalog.resolve(pattern) if pattern else list(catalog)
        grid = generate_cards(
            [card],
            int(resolved["number_range"]),
            layout=str(resolved["card_layout"]),
            seed=_seed(resolved) or 0,
            rng_engine=_rng_engine(resolved),
        )[card]
        for row in grid:
            typer.echo(" ".join(f"{x:>3}" if x else "  *" for x in row))
        won_any = False
        for result in evaluate_patterns(grid, _parse_numbers(called), selected):
            won_any = won_any or result.won
            verdict = "WIN" if result.won else "no"
            typer.echo(f"{result.pattern_name}: {verdict}")
    raise typer.Exit(0 if won_any else 1)


@app.command("new-game")
def new_game(
    ctx: typer.Context,
    game_id: str = typer.Argument(..., help="Game id"),
    cards_sold: str = typer.Option(..., "--cards", help="Card ids in play, e.g. 1-20"),
    pattern: Optional[List[str]] = typer.Option(None, "--pattern", help="Pattern id or name (repeatable)"),
    number_range: Optional[int] = typer.Option(None, "--number-range", help="Highest number N"),
    mode: Optional[str] = typer.Option(None, "--mode", help="manual|automatic"),
    interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between automatic calls"),
) -> None:
    """Create a game in setup state."""
    resolved = _settings(
        ctx, number_range=number_range, caller_mode=mode, auto_interval_seconds=interval
    )
    with _handle_errors():
        catalog = _catalog(resolved)
        selected = catalog.resolve(pattern) if pattern else [p for p in catalog if p.is_default]
        record = GameRecord(
            game_id=game_id,
            number_range=int(resolved["number_range"]),
            selected_card_ids=_parse_ids(cards_sold),
            pattern_ids=[p.id for p in selected],
            caller_mode=str(resolved["caller_mode"]),
            auto_interval_seconds=float(resolved["auto_interval_seconds"]),
        ).validate()
        _store(resolved).save_game(record)
    typer.echo(
        f"Game {game_id}: {len(record.selected_card_ids)} cards, "
        f"patterns {', '.join(record.pattern_ids)}"
    )


@app.command()
def start(
    ctx: typer.Context,
    game_id: str = typer.Argument(..., help="Game id"),
    follow: bool = typer.Option(
        False, "--follow", help="Keep calling automatically until the numbers run out"
    ),
) -> None:
    """Start a game; the call order is fixed at this point."""
    resolved = _settings(ctx)
    with _handle_errors(), _engine(resolved, game_id) as engine:
        engine.start()
        typer.echo(f"Game {game_id} started")
        if follow and engine.caller_mode == "automatic":
            seen = 0
            try:
                while engine.auto_calling:
                    time.sleep(0.2)
                    for call in engine.history[seen:]:
                        _echo_call(call)
                    seen = len(engine.history)
            except KeyboardInterrupt:
                engine.pause()
                typer.echo(f"Game {game_id} paused")
            for call in engine.history[seen:]:
                _echo_call(call)


@app.command()
def call(
    ctx: typer.Context,
    game_id: str = typer.Argument(..., help="Game id"),
    count: int = typer.Option(1, "--count", min=1, help="Numbers to call"),
) -> None:
    """Call the next number(s) of an active game."""
    resolved = _settings(ctx)
    with _handle_errors(), _engine(resolved, game_id) as engine:
        for _ in range(count):
            emission = engine.call_next()
            if emission.called and emission.call is not None:
                _echo_call(emission.call)
                continue
            typer.echo(f"No call: {emission.status.value}")
            if engine.state is not GameState.ACTIVE or engine.exhausted:
                break


def _operator_action(ctx: typer.Context, game_id: str, action: str) -> None:
    resolved = _settings(ctx)
    with _handle_errors(), _engine(resolved, game_id) as engine:
        getattr(engine, action)()
        typer.echo(f"Game {game_id}: {engine.state.value}")


@app.command()
def pause(ctx: typer.Context, game_id: str = typer.Argument(..., help="Game id")) -> None:
    """Pause an active game."""
    _operator_action(ctx, game_id, "pause")


@app.command()
def resume(ctx: typer.Context, game_id: str = typer.Argument(..., help="Game id")) -> None:
    """Resume a paused game."""
    _operator_action(ctx, game_id, "resume")


@app.command()
def end(ctx: typer.Context, game_id: str = typer.Argument(..., help="Game id")) -> None:
    """End a game for good."""
    _operator_action(ctx, game_id, "end")


@app.command()
def restart(ctx: typer.Context, game_id: str = typer.Argument(..., help="Game id")) -> None:
    """Clear all calls and return to setup."""
    _operator_action(ctx, game_id, "restart")


@app.command()
def reshuffle(ctx: typer.Context, game_id: str = typer.Argument(..., help="Game id")) -> None:
    """Draw a new call order before the game starts."""
    _operator_action(ctx, game_id, "reshuffle")


@app.command()
def status(
    ctx: typer.Context,
    game_id: str = typer.Argument(..., help="Game id"),
    as_json: bool = typer.Option(False, "--json", help="Print the snapshot as JSON"),
) -> None:
    """Show where a game stands."""
    resolved = _settings(ctx)
    with _handle_errors(), _engine(resolved, game_id) as engine:
        if as_json:
            typer.echo(json.dumps(engine.snapshot().to_dict(), sort_keys=True))
        else:
            _echo_status(engine)


@app.command()
def claim(
    ctx: typer.Context,
    game_id: str = typer.Argument(..., help="Game id"),
    card: int = typer.Argument(..., help="Card id"),
    lock: bool = typer.Option(False, "--lock", help="Reject the card for the rest of the game"),
) -> None:
    """Check a player's claim for a card."""
    resolved = _settings(ctx)
    with _handle_errors():
        store = _store(resolved)
        game = store.load_game(game_id)
        called = [c.number for c in store.list_calls(game_id)]
        desk = _desk(resolved, game, store)
        if lock:
            desk.lock_card(card, called)
            typer.echo(f"Card {card} locked")
            return
        result = desk.check_card(card, called)
    typer.echo(result.message)
    if result.outcome is not ClaimOutcome.WON:
        raise typer.Exit(1)


@app.command()
def play(
    ctx: typer.Context,
    cards_sold: str = typer.Option("1-20", "--cards", help="Card ids in play"),
    pattern: Optional[List[str]] = typer.Option(None, "--pattern", help="Pattern id or name (repeatable)"),
    number_range: Optional[int] = typer.Option(None, "--number-range", help="Highest number N"),
    interval: float = typer.Option(0.05, "--interval", help="Seconds between calls"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for a reproducible game"),
) -> None:
    """Run an automatic game in memory until a card wins."""
    resolved = _settings(
        ctx, number_range=number_range, **({"seed.value": seed} if seed is not None else {})
    )
    with _handle_errors():
        catalog = _catalog(resolved)
        selected = catalog.resolve(pattern) if pattern else [catalog.get("full-house")]
        store = InMemoryGameStore()
        game = GameRecord(
            game_id="play",
            number_range=int(resolved["number_range"]),
            selected_card_ids=_parse_ids(cards_sold),
            pattern_ids=[p.id for p in selected],
            caller_mode="automatic",
            auto_interval_seconds=interval,
        ).validate()
        store.save_game(game)
        desk = _desk(resolved, game, store)
        broadcaster = InMemoryBroadcaster()
        view = PlayerView(game.game_id, game.number_range)
        view.attach(broadcaster)

        winners: List[Any] = []
        done = threading.Event()

        def on_call(event: str, payload: Any) -> None:
            if event != "number_called" or done.is_set():
                return
            called = view.called_numbers
            for card_id in game.selected_card_ids:
                result = desk.check_card(card_id, called)
                if result.outcome is ClaimOutcome.WON:
                    winners.append(result)
            if winners or len(called) >= game.number_range:
                done.set()

        broadcaster.subscribe(game.game_id, on_call)
        engine = GameCallerEngine(
            game,
            store,
            broadcaster=broadcaster,
            rng=create_rng(_rng_engine(resolved), _seed(resolved)),
        )
        try:
            engine.start()
            while not done.wait(0.1):
                if not engine.auto_calling:
                    break
            engine.end()
        finally:
            engine.close()

    typer.echo(f"Called {len(view.called_numbers)} numbers")
    for result in winners:
        typer.echo(result.message)
    if not winners:
        typer.echo("No winner")


@app.command("audit-shuffle")
def audit_shuffle(
    ctx: typer.Context,
    number_range: Optional[int] = typer.Option(None, "--number-range", help="Highest number N"),
    trials: int = typer.Option(1000, "--trials", min=1, help="Shuffles to draw"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for a reproducible audit"),
) -> None:
    """Check that call orders are uniform permutations."""
    resolved = _settings(
        ctx, number_range=number_range, **({"seed.value": seed} if seed is not None else {})
    )
    with _handle_errors():
        report = audit_call_sequences(
            int(resolved["number_range"]),
            trials,
            create_rng(_rng_engine(resolved), _seed(resolved)),
        )
    typer.echo(json.dumps(report, indent=2, sort_keys=True))
    first_call = report["first_call"]
    if not report["ok_permutations"] or not first_call.get("passed", True):  # type: ignore[union-attr]
        raise typer.Exit(1)


def main(_argv: list[str] | None = None) -> int:
    try:
        app(standalone_mode=True)
        return 0
    except SystemExit as e:
        return int(e.code) if e.code is not None else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
