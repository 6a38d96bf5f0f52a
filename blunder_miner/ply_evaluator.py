"""Walk one game ply by ply and collect (before, after) evaluations.

Ply i's post-move position is ply i+1's pre-move position, so the second
request for it is served from the evaluation client's cache.
"""

from __future__ import annotations

import logging
from typing import Callable

import chess

from blunder_miner.errors import EvaluationCancelled, EvaluationError, IllegalPositionOrMove
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.models import EvaluationResult, PlyEvaluation
from blunder_miner.progress import ProgressReporter
from blunder_miner.rules import MoveRules, non_king_piece_count, side_to_move

logger = logging.getLogger(__name__)


async def _evaluate_or_none(
    client: EvaluationClient, fen: str, budget_ms: int, ply: int
) -> EvaluationResult | None:
    """Evaluate fen; a failed evaluation yields None, cancellation propagates."""
    try:
        return await client.evaluate(fen, budget_ms)
    except (EvaluationError, IllegalPositionOrMove) as exc:
        logger.info("Ply %d: evaluation failed, ply excluded (%s)", ply, exc)
        return None


async def evaluate_game(
    moves: list[str],
    start_fen: str | None,
    budget_ms: int,
    client: EvaluationClient,
    *,
    on_progress=None,
    game_index: int = 0,
    game_count: int = 1,
    game_id: str = "",
    opening_skip_plies: int = 0,
    skip_trivial_endgames: bool = False,
    min_non_king_pieces: int = 0,
    rules: MoveRules | None = None,
    is_cancelled: Callable[[], bool] | None = None,
) -> list[PlyEvaluation]:
    """Evaluate every ply of a game.

    Args:
        moves: Moves of the game in UCI.
        start_fen: Starting position; None for the standard start.
        budget_ms: Search budget per position.
        client: Shared evaluation client.
        on_progress: ProgressReporter or plain callback, told after each ply.
        opening_skip_plies: Plies before this index are marked skipped and
            never evaluated.
        skip_trivial_endgames: Skip plies whose starting position has fewer
            than min_non_king_pieces non-king pieces.
        is_cancelled: Polled before each ply; when it returns True the
            game is abandoned with EvaluationCancelled.

    Returns:
        One PlyEvaluation per ply in order. If a move cannot be replayed,
        the list stops before it.

    Raises:
        EvaluationCancelled: The run was cancelled mid-game. Nothing
            evaluated so far for this game is returned.
    """
    rules = rules or MoveRules()
    reporter = ProgressReporter.wrap(on_progress)
    ply_count = len(moves)
    plies: list[PlyEvaluation] = []
    fen = start_fen or chess.STARTING_FEN

    for index, move in enumerate(moves):
        if is_cancelled is not None and is_cancelled():
            raise EvaluationCancelled(f"game {game_id} cancelled at ply {index}")

        try:
            fen_after, san = rules.apply_move(fen, move)
        except IllegalPositionOrMove as exc:
            logger.warning(
                "Game %s: cannot replay ply %d (%s); %d later plies dropped",
                game_id, index, exc, ply_count - index,
            )
            break

        entry = PlyEvaluation(
            ply=index,
            fen_before=fen,
            fen_after=fen_after,
            move_uci=move,
            san=san,
            mover=side_to_move(fen),
            is_terminal=not rules.legal_moves(fen_after),
        )

        trivial = skip_trivial_endgames and non_king_piece_count(fen) < min_non_king_pieces
        if index < opening_skip_plies or trivial:
            entry.skipped = True
        else:
            entry.eval_before = await _evaluate_or_none(client, fen, budget_ms, index)
            if not entry.is_terminal:
                entry.eval_after = await _evaluate_or_none(client, fen_after, budget_ms, index)

        plies.append(entry)
        reporter.ply(game_id, game_index, game_count, index + 1, ply_count, "evaluating")
        fen = fen_after

    return plies
