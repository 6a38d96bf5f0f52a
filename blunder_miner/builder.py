"""Turn an accepted candidate into a full Puzzle record.

A multi-line evaluation at the puzzle position gives the best move, the
solution line and the alternative first moves that are just as good.
Tags, severity and the label are derived from that evaluation and from
the candidate's own swing.
"""

from __future__ import annotations

import hashlib
import logging

from blunder_miner.config import ExtractOptions
from blunder_miner.detector import passes_filters
from blunder_miner.errors import EvaluationError, IllegalPositionOrMove
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.models import EvaluationResult, Game, OpeningInfo, Puzzle, PuzzleCandidate, Score
from blunder_miner.motif_detector import line_motifs
from blunder_miner.rules import apply_uci_plies, game_phase, material_by_color, side_to_move

logger = logging.getLogger(__name__)

_MATE_THREAT_MAX_MOVES = 5
_HANGING_PIECE_PLIES = 4
_HANGING_PIECE_POINTS = 3

_LABELS = {
    ("avoidBlunder", "blunder"): "Find the best move (avoid the blunder)",
    ("avoidBlunder", "missedWin"): "Find the winning continuation",
    ("avoidBlunder", "missedTactic"): "Find the tactic you missed",
    ("punishBlunder", "blunder"): "Punish the blunder!",
    ("punishBlunder", "missedTactic"): "Punish the mistake!",
}

_ID_PREFIX = {"avoidBlunder": "avoid", "punishBlunder": "punish"}


def puzzle_id(game_id: str, ply: int, mode: str, fen: str) -> str:
    """Stable id: the same game, ply, mode and position give the same id."""
    digest = hashlib.sha1(f"{game_id}|{ply}|{mode}|{fen}".encode("utf-8")).hexdigest()
    return f"puz-{_ID_PREFIX.get(mode, mode)}-{digest[:12]}"


def severity_for(score: Score | None, swing_cp: int) -> str:
    if score is not None and score.is_winning_mate:
        return "mate"
    if swing_cp >= 400:
        return "big"
    if swing_cp >= 200:
        return "medium"
    return "small"


def label_for(mode: str, puzzle_type: str) -> str:
    return _LABELS.get((mode, puzzle_type), "Find the best move")


def loses_material(fen: str, line: tuple[str, ...] | list[str], loser: str) -> bool:
    """Does loser drop at least three points of material along line?"""
    end_fen, applied = apply_uci_plies(fen, line, _HANGING_PIECE_PLIES)
    if applied == 0:
        return False
    before = material_by_color(fen)[loser]
    after = material_by_color(end_fen)[loser]
    return before - after >= _HANGING_PIECE_POINTS


def accepted_first_moves(lines: list[EvaluationResult], tolerance_cp: int) -> list[str]:
    """First moves of every line within tolerance of the top line, best first."""
    top = lines[0]
    accepted = [top.best_move]
    for line in lines[1:]:
        if not line.best_move or line.score is None or line.best_move in accepted:
            continue
        if top.cp - line.cp <= tolerance_cp:
            accepted.append(line.best_move)
    return accepted


def _tags(candidate: PuzzleCandidate, best_line: list[str], score: Score) -> list[str]:
    tags = {candidate.mode, game_phase(candidate.fen, candidate.source_ply)}
    tags.update(line_motifs(candidate.fen, best_line, max_plies=_HANGING_PIECE_PLIES))

    if score.is_winning_mate and score.value <= _MATE_THREAT_MAX_MOVES:
        tags.add("mateThreat")

    solver = side_to_move(candidate.fen)
    if candidate.mode == "avoidBlunder":
        # The refutation of the move actually played costs the solver material.
        if candidate.fen_after and candidate.followup is not None:
            if loses_material(candidate.fen_after, candidate.followup.pv, solver):
                tags.add("hangingPiece")
    else:
        opponent = "b" if solver == "w" else "w"
        if loses_material(candidate.fen, best_line, opponent):
            tags.add("hangingPiece")
    return sorted(tags)


async def _lines_at(candidate: PuzzleCandidate, options: ExtractOptions, client: EvaluationClient) -> list[EvaluationResult]:
    budget = options.confirm_movetime_ms if options.confirmation_enabled else options.search_budget_ms
    try:
        lines = await client.evaluate_multi_line(candidate.fen, budget, options.multi_pv_lines)
    except (EvaluationError, IllegalPositionOrMove) as exc:
        logger.info(
            "Ply %d: multi-line evaluation failed, using the detection line (%s)",
            candidate.source_ply, exc,
        )
        return [candidate.evaluation]
    lines = [line for line in lines if line.score is not None and line.best_move]
    return lines or [candidate.evaluation]


async def build(
    candidate: PuzzleCandidate,
    options: ExtractOptions,
    client: EvaluationClient,
    *,
    game: Game | None = None,
    opening: OpeningInfo | None = None,
) -> Puzzle | None:
    """Build the puzzle for candidate.

    Returns:
        The Puzzle, or None when the solution line fails the puzzle
        filters, or when uniqueness_margin_cp is set and the second-best
        line comes within that margin of the best.

    Raises:
        EvaluationCancelled: The run was cancelled.
    """
    lines = await _lines_at(candidate, options, client)
    if lines[0].best_move != candidate.evaluation.best_move:
        # The puzzle position was accepted for the detection line's best move.
        logger.debug(
            "Ply %d: multi-line search prefers %s over %s, using the detection line",
            candidate.source_ply, lines[0].best_move, candidate.evaluation.best_move,
        )
        lines = [candidate.evaluation]
    top = lines[0]
    if not passes_filters(candidate.fen, top, options):
        logger.debug("Ply %d: solution line fails the puzzle filters", candidate.source_ply)
        return None

    if options.uniqueness_margin_cp is not None and len(lines) > 1:
        gap = top.cp - lines[1].cp
        if gap < options.uniqueness_margin_cp:
            logger.debug(
                "Ply %d: best move not unique (gap %d < %d)",
                candidate.source_ply, gap, options.uniqueness_margin_cp,
            )
            return None

    _, playable = apply_uci_plies(candidate.fen, top.pv, options.best_line_max_plies)
    best_line = list(top.pv[:playable]) or [top.best_move]

    return Puzzle(
        id=puzzle_id(candidate.source_game_id, candidate.source_ply, candidate.mode, candidate.fen),
        fen=candidate.fen,
        best_move=top.best_move,
        best_line=best_line,
        accepted_moves=accepted_first_moves(lines, options.accepted_move_tolerance_cp),
        score=top.score,
        source_game_id=candidate.source_game_id,
        source_ply=candidate.source_ply,
        type=candidate.type,
        mode=candidate.mode,
        severity=severity_for(top.score, candidate.swing_cp),
        tags=_tags(candidate, best_line, top.score),
        opening=opening or OpeningInfo(),
        label=label_for(candidate.mode, candidate.type),
        side_to_move=side_to_move(candidate.fen),
        provider=game.provider if game else None,
        played_at=game.played_at if game else None,
    )
