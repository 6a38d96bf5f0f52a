#!/usr/bin/env python3
"""blunder-miner command line.

Commands:
  mine      Mine puzzles from PGN / PGN.zst files into a puzzle JSON file
  watch     Watch a games directory and mine new files as they appear
  validate  Check puzzle files for legal positions and solution lines
  analyze   Print a move-by-move review of one game

Usage:
    blunder-miner mine games/*.pgn --user alice --out puzzles.json
    blunder-miner mine archive.pgn.zst --user alice --set puzzleMode=punishBlunder
    blunder-miner watch data/games --user alice --out puzzles.json
    blunder-miner validate puzzles.json
    blunder-miner analyze game.pgn --user alice
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import json
import logging
import signal
import sys
import time
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from blunder_miner.classification import classification_symbol
from blunder_miner.config import resolve_options
from blunder_miner.engine import StockfishEngine, find_stockfish
from blunder_miner.errors import BlunderMinerError, EngineUnavailable
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.export import load_puzzle_file, validate_file, write_puzzle_file
from blunder_miner.extract import ExtractionSession, ExtractResult
from blunder_miner.games import GAME_SUFFIXES, Manifest, game_files, load_games
from blunder_miner.models import Game
from blunder_miner.motif_detector import primary_motif
from blunder_miner.progress import RichProgressSink
from blunder_miner.rules import pv_to_san

logger = logging.getLogger("blunder_miner")

_PROVIDERS = ("lichess", "chesscom", "pgn")


def _setup_logging(verbose: bool, console: Console) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _raw_options(args: argparse.Namespace) -> dict:
    """Options from --options FILE overlaid with --set key=value pairs."""
    raw: dict = {}
    if args.options:
        with open(args.options, encoding="utf-8") as f:
            raw.update(json.load(f))
    for pair in args.set or []:
        key, sep, value = pair.partition("=")
        if not sep:
            raise BlunderMinerError(f"--set expects key=value, got {pair!r}")
        raw[key.strip()] = value
    return raw


def _engine_factory(args: argparse.Namespace):
    path = args.stockfish or find_stockfish()
    uci_options = {}
    if args.threads:
        uci_options["Threads"] = args.threads
    if args.hash:
        uci_options["Hash"] = args.hash
    return functools.partial(StockfishEngine, path, uci_options)


def _collect_games(paths: list[str]) -> list[Game]:
    games: list[Game] = []
    for raw in paths:
        path = Path(raw)
        files = game_files(path) if path.is_dir() else [path]
        for file in files:
            loaded = load_games(file)
            logger.info("Loaded %d game(s) from %s", len(loaded), file.name)
            games.extend(loaded)
    return games


async def _run_extraction(
    games: list[Game],
    args: argparse.Namespace,
    options,
    existing,
    console: Console,
) -> ExtractResult:
    selected = args.game or [g.id for g in games]
    usernames = {provider: args.user for provider in _PROVIDERS}
    async with EvaluationClient(_engine_factory(args)) as client:
        session = ExtractionSession(client, options)
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, session.cancel)
        except (NotImplementedError, RuntimeError):
            pass  # no signal handlers on this platform; Ctrl-C aborts instead
        with RichProgressSink(console) as sink:
            result = await session.run(games, selected, usernames, sink, existing)
        logger.debug("Evaluation stats: %s", client.stats)
    return result


def _print_summary(console: Console, result: ExtractResult, total: int) -> None:
    table = Table(title="Puzzles")
    table.add_column("Game")
    table.add_column("Ply", justify="right")
    table.add_column("Mode")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Solution")
    table.add_column("Motif")
    for puzzle in result.puzzles[-20:]:
        table.add_row(
            puzzle.source_game_id, str(puzzle.source_ply), puzzle.mode,
            puzzle.type, puzzle.severity,
            pv_to_san(puzzle.fen, puzzle.best_line, 4),
            primary_motif(puzzle.fen, puzzle.best_move) or "",
        )
    console.print(table)
    status = "[yellow]cancelled[/yellow]" if result.cancelled else "[green]done[/green]"
    console.print(
        f"{status}: {total} puzzle(s) stored, "
        f"{len(result.failed_games)} failed, {len(result.skipped_games)} skipped"
    )


def cmd_mine(args: argparse.Namespace, console: Console) -> int:
    options = resolve_options(_raw_options(args))
    games = _collect_games(args.paths)
    if not games:
        console.print("[red]No games found.[/red]")
        return 1

    out = Path(args.out)
    existing = load_puzzle_file(out)
    result = asyncio.run(_run_extraction(games, args, options, existing, console))
    write_puzzle_file(out, result.puzzles)
    _print_summary(console, result, len(result.puzzles))
    return 130 if result.cancelled else 0


def _mine_new_files(args: argparse.Namespace, manifest: Manifest, options, console: Console) -> None:
    files = manifest.unprocessed(args.games_dir)
    if not files:
        return
    logger.info("Mining %d new file(s)", len(files))
    games = [game for file in files for game in load_games(file)]
    out = Path(args.out)
    result = asyncio.run(_run_extraction(games, args, options, load_puzzle_file(out), console))
    write_puzzle_file(out, result.puzzles)
    if not result.cancelled:
        manifest.mark(files)
        manifest.save()
    _print_summary(console, result, len(result.puzzles))


def cmd_watch(args: argparse.Namespace, console: Console) -> int:
    """Mine new game files in a directory as they appear."""
    from watchdog.events import FileSystemEventHandler
    from watchdog.observers import Observer

    options = resolve_options(_raw_options(args))
    games_dir = Path(args.games_dir)
    games_dir.mkdir(parents=True, exist_ok=True)
    manifest = Manifest(args.manifest or Path(args.out).with_name("manifest.json"))
    changed = True

    class _Handler(FileSystemEventHandler):
        def on_created(self, event):
            nonlocal changed
            if str(event.src_path).endswith(GAME_SUFFIXES):
                changed = True

        on_modified = on_created

    observer = Observer()
    observer.schedule(_Handler(), str(games_dir), recursive=False)
    observer.start()
    console.print(f"Watching [bold]{games_dir}[/bold] for new games (Ctrl-C to stop)")

    try:
        while True:
            if changed:
                changed = False
                _mine_new_files(args, manifest, options, console)
            time.sleep(args.interval)
    except KeyboardInterrupt:
        pass
    finally:
        observer.stop()
        observer.join()
    return 0


def cmd_validate(args: argparse.Namespace, console: Console) -> int:
    total_errors = 0
    for raw in args.files:
        errors = validate_file(raw)
        total_errors += len(errors)
        if errors:
            console.print(f"[red]{raw}: {len(errors)} error(s)[/red]")
            for error in errors:
                console.print(f"  {error}")
        else:
            console.print(f"[green]{raw}: OK[/green]")
    return 1 if total_errors else 0


def cmd_analyze(args: argparse.Namespace, console: Console) -> int:
    raw = _raw_options(args)
    raw["return_full_analysis"] = True
    options = resolve_options(raw)
    games = load_games(args.pgn)
    if args.game:
        games = [g for g in games if g.id in args.game]
    if not games:
        console.print("[red]No matching game.[/red]")
        return 1
    game = games[0]
    args.game = [game.id]

    result = asyncio.run(_run_extraction([game], args, options, None, console))
    analysis = (result.analysis_by_game or {}).get(game.id)
    if analysis is None:
        console.print(f"[red]Game {game.id} could not be analysed.[/red]")
        return 1

    table = Table(title=f"{game.white.name} vs {game.black.name}")
    table.add_column("Ply", justify="right")
    table.add_column("Move")
    table.add_column("Class")
    table.add_column("Loss", justify="right")
    table.add_column("Best")
    table.add_column("Puzzle")
    for move in analysis.moves:
        table.add_row(
            str(move.ply),
            f"{move.san}{classification_symbol(move.classification)}",
            move.classification,
            str(move.cp_loss),
            move.best_move_san or "",
            move.puzzle_id or "",
        )
    console.print(table)
    console.print(f"White accuracy: {analysis.white_accuracy}  Black accuracy: {analysis.black_accuracy}")
    return 0


def _add_engine_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--user", required=True, help="Your username in the games (case-insensitive)")
    parser.add_argument("--game", action="append", help="Only these game ids (repeatable)")
    parser.add_argument("--options", help="JSON file of extraction options")
    parser.add_argument("--set", action="append", metavar="KEY=VALUE", help="Override one option (repeatable)")
    parser.add_argument("--stockfish", help="Path to the Stockfish binary (default: auto-detect)")
    parser.add_argument("--threads", type=int, default=None, help="Stockfish Threads option")
    parser.add_argument("--hash", type=int, default=None, help="Stockfish Hash option in MB")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blunder-miner", description="Mine training puzzles from your games")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    mine = sub.add_parser("mine", help="Mine puzzles from game files")
    mine.add_argument("paths", nargs="+", help="PGN / PGN.zst files or directories")
    mine.add_argument("--out", default="puzzles.json", help="Puzzle file to merge into (default: puzzles.json)")
    _add_engine_args(mine)

    watch = sub.add_parser("watch", help="Mine new game files as they appear")
    watch.add_argument("games_dir", help="Directory to watch")
    watch.add_argument("--out", default="puzzles.json", help="Puzzle file to merge into (default: puzzles.json)")
    watch.add_argument("--manifest", help="Manifest path (default: manifest.json next to --out)")
    watch.add_argument("--interval", type=float, default=1.0, help="Polling interval in seconds (default: 1.0)")
    _add_engine_args(watch)

    validate = sub.add_parser("validate", help="Validate puzzle files")
    validate.add_argument("files", nargs="+")

    analyze = sub.add_parser("analyze", help="Move-by-move review of one game")
    analyze.add_argument("pgn", help="PGN / PGN.zst file")
    _add_engine_args(analyze)

    return parser


_COMMANDS = {
    "mine": cmd_mine,
    "watch": cmd_watch,
    "validate": cmd_validate,
    "analyze": cmd_analyze,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console()
    _setup_logging(args.verbose, console)
    try:
        return _COMMANDS[args.command](args, console)
    except EngineUnavailable as exc:
        console.print(f"[red]Engine unavailable:[/red] {exc}")
        return 2
    except (BlunderMinerError, OSError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
