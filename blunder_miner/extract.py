"""Extraction entry point: games in, puzzles (and optional analysis) out.

Each selected game goes through

    evaluating -> classifying -> detecting -> [confirming] -> building

and the results of all completed games are aggregated at the end.
Cancelling the session cancels every pending evaluation; the game in
flight contributes nothing, games already completed keep their puzzles.

Usage:
    async with EvaluationClient(StockfishEngine) as client:
        result = await extract(games, {"g1"}, client, {"lichess": "alice"})
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from blunder_miner.aggregate import annotate_analysis, cap_per_game, merge, replace_games
from blunder_miner.builder import build
from blunder_miner.classification import build_game_analysis
from blunder_miner.config import ExtractOptions, resolve_options
from blunder_miner.detector import GameContext, detect
from blunder_miner.errors import EvaluationCancelled, EvaluationError, IllegalPositionOrMove
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.models import Game, GameAnalysis, ProgressEvent, Puzzle
from blunder_miner.openings import OpeningBook
from blunder_miner.ply_evaluator import evaluate_game
from blunder_miner.progress import ProgressReporter
from blunder_miner.rules import MoveRules, parse_pgn_moves

logger = logging.getLogger(__name__)


class ExtractionState(str, enum.Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    CLASSIFYING = "classifying"
    DETECTING = "detecting"
    CONFIRMING = "confirming"
    BUILDING = "building"
    AGGREGATING = "aggregating"
    DONE = "done"
    CANCELLED = "cancelled"


_FINISHED = (ExtractionState.IDLE, ExtractionState.DONE, ExtractionState.CANCELLED)


@dataclass
class ExtractResult:
    puzzles: list[Puzzle]
    analysis_by_game: dict[str, GameAnalysis] | None = None
    cancelled: bool = False
    failed_games: list[str] = field(default_factory=list)
    skipped_games: list[str] = field(default_factory=list)


def _normalize_username(name: str | None) -> str:
    return (name or "").strip().lower()


def user_color_for_game(game: Game, username_by_provider: Mapping[str, str] | None) -> str | None:
    """Which side the user played, matched case-insensitively by provider."""
    target = _normalize_username((username_by_provider or {}).get(game.provider))
    if not target:
        return None
    if _normalize_username(game.white.name) == target:
        return "w"
    if _normalize_username(game.black.name) == target:
        return "b"
    return None


class ExtractionSession:
    """One extraction run over a shared evaluation client."""

    def __init__(
        self,
        client: EvaluationClient,
        options: ExtractOptions | Mapping | None = None,
        *,
        opening_book: OpeningBook | None = None,
        rules: MoveRules | None = None,
    ) -> None:
        self.client = client
        self.options = resolve_options(options)
        self.opening_book = opening_book or OpeningBook()
        self.rules = rules or MoveRules()
        self.state = ExtractionState.IDLE
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop the run; safe to call from a progress callback or another task."""
        self._cancelled = True
        self.client.cancel_all()
        if self.state not in _FINISHED:
            self.state = ExtractionState.CANCELLED

    def _check_cancelled(self, game_id: str) -> None:
        if self._cancelled:
            raise EvaluationCancelled(f"extraction cancelled during game {game_id}")

    def _tracking(self, reporter: ProgressReporter):
        """Progress callback that also follows the confirming phase."""

        def callback(event: ProgressEvent) -> None:
            if event.phase == "confirming" and not self._cancelled:
                self.state = ExtractionState.CONFIRMING
            reporter.emit(event)

        return callback

    async def _process_game(
        self,
        game: Game,
        user_color: str,
        game_index: int,
        game_count: int,
        reporter: ProgressReporter,
    ) -> tuple[list[Puzzle], GameAnalysis | None]:
        opts = self.options
        start_fen, moves, headers = parse_pgn_moves(game.pgn)

        self.state = ExtractionState.EVALUATING
        ply_evals = await evaluate_game(
            moves,
            start_fen,
            opts.search_budget_ms,
            self.client,
            on_progress=reporter,
            game_index=game_index,
            game_count=game_count,
            game_id=game.id,
            opening_skip_plies=opts.opening_skip_plies,
            skip_trivial_endgames=opts.skip_trivial_endgames,
            min_non_king_pieces=opts.min_non_king_pieces,
            rules=self.rules,
            is_cancelled=lambda: self._cancelled,
        )
        self._check_cancelled(game.id)

        analysis = None
        if opts.return_full_analysis:
            self.state = ExtractionState.CLASSIFYING
            analysis = build_game_analysis(
                game.id, ply_evals,
                book_plies=opts.opening_skip_plies,
                thresholds=opts.classification_thresholds,
            )

        self.state = ExtractionState.DETECTING
        context = GameContext(
            game_id=game.id,
            user_color=user_color,
            ply_count=len(moves),
            moves=moves,
            start_fen=start_fen,
        )
        candidates = await detect(
            ply_evals,
            context,
            opts,
            self.client,
            on_progress=self._tracking(reporter),
            game_index=game_index,
            game_count=game_count,
        )
        self._check_cancelled(game.id)

        self.state = ExtractionState.BUILDING
        opening = self.opening_book.lookup(headers, moves)
        puzzles: list[Puzzle] = []
        for candidate in candidates:
            reporter.ply(game.id, game_index, game_count, candidate.source_ply, len(moves), "building")
            puzzle = await build(candidate, opts, self.client, game=game, opening=opening)
            self._check_cancelled(game.id)
            if puzzle is not None:
                puzzles.append(puzzle)

        if analysis is not None:
            annotate_analysis(analysis, candidates, puzzles)
        return puzzles, analysis

    async def run(
        self,
        games: Iterable[Game],
        selected_game_ids: Iterable[str],
        username_by_provider: Mapping[str, str] | None,
        on_progress=None,
        existing: list[Puzzle] | None = None,
    ) -> ExtractResult:
        """Extract puzzles from the selected games.

        Args:
            existing: Previously stored puzzles. Puzzles of games that
                complete in this run replace their old ones; everything
                else is kept.

        Returns:
            ExtractResult. analysis_by_game is None unless
            return_full_analysis is set.
        """
        reporter = ProgressReporter.wrap(on_progress)
        wanted = set(selected_game_ids)
        selected = [game for game in games if game.id in wanted]

        new_puzzles: list[Puzzle] = []
        analysis_by_game: dict[str, GameAnalysis] = {}
        completed: list[str] = []
        result = ExtractResult(puzzles=[])

        for index, game in enumerate(selected):
            if self._cancelled:
                break
            user_color = user_color_for_game(game, username_by_provider)
            if user_color is None:
                logger.warning("Skipping game %s: no configured username played in it", game.id)
                result.skipped_games.append(game.id)
                continue
            try:
                puzzles, analysis = await self._process_game(
                    game, user_color, index, len(selected), reporter
                )
            except EvaluationCancelled:
                self._cancelled = True
                logger.info("Extraction cancelled during game %s", game.id)
                break
            except (IllegalPositionOrMove, EvaluationError) as exc:
                logger.warning("Skipping game %s: %s", game.id, exc)
                result.failed_games.append(game.id)
                continue

            new_puzzles = merge(new_puzzles, cap_per_game(puzzles, self.options.max_puzzles_per_game))
            completed.append(game.id)
            if analysis is not None:
                analysis_by_game[game.id] = analysis
            logger.info("Game %s: %d puzzle(s)", game.id, len(puzzles))

        if not self._cancelled:
            self.state = ExtractionState.AGGREGATING
        if existing is not None:
            result.puzzles = replace_games(existing, new_puzzles, completed)
        else:
            result.puzzles = new_puzzles
        result.analysis_by_game = analysis_by_game if self.options.return_full_analysis else None
        result.cancelled = self._cancelled
        self.state = ExtractionState.CANCELLED if self._cancelled else ExtractionState.DONE
        return result


async def extract(
    games: Iterable[Game],
    selected_game_ids: Iterable[str],
    engine_client: EvaluationClient,
    username_by_provider: Mapping[str, str] | None,
    on_progress=None,
    options: ExtractOptions | Mapping | None = None,
    *,
    existing: list[Puzzle] | None = None,
    opening_book: OpeningBook | None = None,
) -> ExtractResult:
    """Run one extraction session; see ExtractionSession.run."""
    session = ExtractionSession(engine_client, options, opening_book=opening_book)
    return await session.run(games, selected_game_ids, username_by_provider, on_progress, existing)
