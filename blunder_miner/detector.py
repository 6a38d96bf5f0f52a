"""Puzzle candidate detection over a game's ply evaluations.

Two modes look at opposite sides of the board:

  avoidBlunder   the user's own move lost evaluation; the puzzle is the
                 position before that move.
  punishBlunder  the opponent's move lost evaluation and the user did not
                 find the refutation; the puzzle is the position right
                 after the opponent's move.

find_candidates() is a pure pass over already evaluated plies. detect()
adds the optional deeper confirmation pass, ranking and the per-game cap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from blunder_miner.config import ExtractOptions
from blunder_miner.errors import EvaluationError, IllegalPositionOrMove
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.models import EvaluationResult, PlyEvaluation, PuzzleCandidate, Score
from blunder_miner.progress import ProgressReporter
from blunder_miner.rules import non_king_piece_count, pv_contains_tactic

logger = logging.getLogger(__name__)


@dataclass
class GameContext:
    """What the detector needs to know about the game besides evaluations."""

    game_id: str
    user_color: str  # "w" or "b"
    ply_count: int
    moves: list[str] = field(default_factory=list)
    start_fen: str | None = None

    def move_at(self, ply: int) -> str | None:
        return self.moves[ply] if 0 <= ply < len(self.moves) else None


# ---------------------------------------------------------------------------
# Type decisions
# ---------------------------------------------------------------------------


def _mate_vanished(before: Score, after_for_mover: Score) -> bool:
    return before.is_winning_mate and not after_for_mover.is_winning_mate


def _swing(before: Score, after: Score) -> int:
    """Evaluation lost by the mover; after is from the opponent's side."""
    return before.to_cp() - after.negated().to_cp()


def avoid_type(entry: PlyEvaluation, options: ExtractOptions) -> str | None:
    """Puzzle type for the user's own move, or None if it is not a candidate.

    Precedence: a forced mate that vanished, then a plain blunder, then a
    missed win from a winning position, then a missed tactic.
    """
    before = entry.eval_before.score
    after_for_mover = entry.eval_after.score.negated()
    swing = entry.swing_cp

    if _mate_vanished(before, after_for_mover):
        return "missedWin"
    if swing >= options.blunder_swing_cp:
        return "blunder"
    if before.to_cp() >= options.winning_threshold_cp and swing >= options.missed_win_swing_cp:
        return "missedWin"
    if swing >= options.missed_tactic_swing_cp and pv_contains_tactic(
        entry.fen_before, entry.eval_before.pv, options.tactical_lookahead_plies
    ):
        return "missedTactic"
    return None


def punish_type(swing: int, options: ExtractOptions) -> str | None:
    if swing < options.missed_tactic_swing_cp:
        return None
    return "blunder" if swing >= options.blunder_swing_cp else "missedTactic"


def still_qualifies(candidate_type: str, before: Score, after: Score, options: ExtractOptions) -> bool:
    """Does a re-measured (before, after) pair still clear the type's threshold?"""
    swing = _swing(before, after)
    if candidate_type == "blunder":
        return swing >= options.blunder_swing_cp
    if candidate_type == "missedWin":
        return _mate_vanished(before, after.negated()) or swing >= options.missed_win_swing_cp
    return swing >= options.missed_tactic_swing_cp


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def in_eval_band(score: Score, options: ExtractOptions) -> bool:
    """Starting evaluation (solver's view) inside the configured band.

    Forced mates are always in band; a missed mate is the clearest
    puzzle there is.
    """
    if score.is_mate:
        return True
    cp = score.to_cp()
    if options.eval_band_min_cp is not None and cp < options.eval_band_min_cp:
        return False
    if options.eval_band_max_cp is not None and cp > options.eval_band_max_cp:
        return False
    return True


def passes_filters(fen: str, evaluation: EvaluationResult, options: ExtractOptions) -> bool:
    """Pre-acceptance filters on the puzzle's starting position."""
    score = evaluation.score
    if score is None or not evaluation.best_move:
        return False
    if not in_eval_band(score, options):
        return False
    if options.skip_trivial_endgames and non_king_piece_count(fen) < options.min_non_king_pieces:
        return False
    # A mate in one has a one-move line and is still a fine puzzle.
    if len(evaluation.pv) < options.min_pv_moves and not score.is_winning_mate:
        return False
    if options.require_tactical and not pv_contains_tactic(
        fen, evaluation.pv, options.tactical_lookahead_plies
    ):
        return False
    return True


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def _avoid_candidate(entry: PlyEvaluation, context: GameContext, options: ExtractOptions) -> PuzzleCandidate | None:
    puzzle_type = avoid_type(entry, options)
    if puzzle_type is None:
        return None
    if not passes_filters(entry.fen_before, entry.eval_before, options):
        return None
    return PuzzleCandidate(
        source_game_id=context.game_id,
        source_ply=entry.ply,
        trigger_ply=entry.ply,
        fen=entry.fen_before,
        swing_cp=entry.swing_cp,
        type=puzzle_type,
        mode="avoidBlunder",
        evaluation=entry.eval_before,
        followup=entry.eval_after,
        fen_after=entry.fen_after,
    )


def _punish_candidate(entry: PlyEvaluation, context: GameContext, options: ExtractOptions) -> PuzzleCandidate | None:
    puzzle_type = punish_type(entry.swing_cp, options)
    if puzzle_type is None:
        return None
    refutation = entry.eval_after
    reply = context.move_at(entry.ply + 1)
    # The game ended on the blunder, or the user found the refutation over the board.
    if reply is None or reply == refutation.best_move:
        return None
    if not passes_filters(entry.fen_after, refutation, options):
        return None
    return PuzzleCandidate(
        source_game_id=context.game_id,
        source_ply=entry.ply + 1,
        trigger_ply=entry.ply,
        fen=entry.fen_after,
        swing_cp=entry.swing_cp,
        type=puzzle_type,
        mode="punishBlunder",
        evaluation=refutation,
        followup=None,
        fen_after=entry.fen_after,
    )


def find_candidates(
    ply_evals: list[PlyEvaluation],
    context: GameContext,
    options: ExtractOptions,
) -> list[PuzzleCandidate]:
    """Scan plies in order and return every candidate that passes the filters.

    Plies without a usable evaluation pair are ignored, as are plies where
    the engine's top move was played. After a candidate is accepted, the
    next cooldown_plies_after_puzzle plies are not considered. The result is in ply order, unranked and uncapped.
    """
    candidates: list[PuzzleCandidate] = []
    cooldown_until = -1

    for entry in ply_evals:
        if entry.ply < options.opening_skip_plies or entry.ply <= cooldown_until:
            continue
        if not entry.has_swing:
            continue
        # Playing the engine's top move is never a mistake.
        if entry.move_uci == entry.eval_before.best_move:
            continue

        candidate = None
        if entry.mover == context.user_color:
            if options.wants_avoid:
                candidate = _avoid_candidate(entry, context, options)
        elif options.wants_punish:
            candidate = _punish_candidate(entry, context, options)

        if candidate is not None:
            candidates.append(candidate)
            cooldown_until = entry.ply + options.cooldown_plies_after_puzzle

    return candidates


def rank(candidates: list[PuzzleCandidate], limit: int | None) -> list[PuzzleCandidate]:
    """Largest swing first, earlier ply breaking ties; keep at most limit."""
    ranked = sorted(candidates, key=lambda c: (-c.swing_cp, c.source_ply))
    return ranked if limit is None else ranked[:limit]


async def confirm(
    candidate: PuzzleCandidate,
    trigger: PlyEvaluation,
    options: ExtractOptions,
    client: EvaluationClient,
) -> PuzzleCandidate | None:
    """Re-measure the triggering move at the confirmation budget.

    Both sides of the swing are re-evaluated. The candidate survives if
    the new swing still clears its type's threshold and the engine still
    prefers the same first move at the puzzle position. The survivor
    carries the deeper evaluations.

    Raises:
        EvaluationCancelled: The run was cancelled.
    """
    budget = options.confirm_movetime_ms
    try:
        before = await client.evaluate(trigger.fen_before, budget)
        after = await client.evaluate(trigger.fen_after, budget)
    except (EvaluationError, IllegalPositionOrMove) as exc:
        logger.info("Ply %d: confirmation failed, candidate dropped (%s)", candidate.source_ply, exc)
        return None
    if before.score is None or after.score is None:
        return None

    if not still_qualifies(candidate.type, before.score, after.score, options):
        logger.debug(
            "Ply %d: %s not confirmed (swing now %d)",
            candidate.source_ply, candidate.type, _swing(before.score, after.score),
        )
        return None

    start = before if candidate.mode == "avoidBlunder" else after
    if start.best_move != candidate.evaluation.best_move:
        logger.debug(
            "Ply %d: best move changed from %s to %s on confirmation",
            candidate.source_ply, candidate.evaluation.best_move, start.best_move,
        )
        return None

    return replace(
        candidate,
        swing_cp=_swing(before.score, after.score),
        evaluation=start,
        followup=after if candidate.mode == "avoidBlunder" else None,
    )


async def detect(
    ply_evals: list[PlyEvaluation],
    context: GameContext,
    options: ExtractOptions,
    client: EvaluationClient | None = None,
    *,
    on_progress=None,
    game_index: int = 0,
    game_count: int = 1,
) -> list[PuzzleCandidate]:
    """Candidates for one game, confirmed when enabled, ranked and capped.

    Confirmation runs only when confirm_movetime_ms exceeds the search
    budget and a client is given.
    """
    candidates = find_candidates(ply_evals, context, options)
    if options.max_puzzles_per_game == 0 or not candidates:
        return []

    if options.confirmation_enabled and client is not None:
        reporter = ProgressReporter.wrap(on_progress)
        by_ply = {entry.ply: entry for entry in ply_evals}
        confirmed: list[PuzzleCandidate] = []
        for candidate in candidates:
            reporter.ply(
                context.game_id, game_index, game_count,
                candidate.source_ply, context.ply_count, "confirming",
            )
            result = await confirm(candidate, by_ply[candidate.trigger_ply], options, client)
            if result is not None:
                confirmed.append(result)
        candidates = confirmed

    return rank(candidates, options.max_puzzles_per_game)
