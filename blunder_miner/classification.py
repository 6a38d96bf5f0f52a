"""Move quality labels, centipawn loss and per-side accuracy.

Labels follow the familiar game-review bands. All scores are compared on
the mate-aware centipawn scale of Score.to_cp(), so throwing away a
forced mate always shows up as a large loss.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable

from blunder_miner.models import AnalyzedMove, GameAnalysis, PlyEvaluation, Score
from blunder_miner.rules import is_material_sacrifice, uci_to_san

logger = logging.getLogger(__name__)

# Bands in ascending severity; "brilliant" is an overlay on "best".
BANDS = ("book", "best", "great", "excellent", "good", "inaccuracy", "mistake", "blunder")
LABELS = ("brilliant",) + BANDS

_SEVERITY = {label: index for index, label in enumerate(BANDS)}
_SEVERITY["brilliant"] = _SEVERITY["best"]

_SYMBOLS = {
    "brilliant": "!!",
    "great": "!",
    "inaccuracy": "?!",
    "mistake": "?",
    "blunder": "??",
}

# Losses above this are treated as this when averaging for accuracy.
_ACCURACY_LOSS_CAP = 1000


@dataclass(frozen=True)
class ClassificationThresholds:
    """Upper bounds (inclusive, centipawns) of each band."""

    great: int = 10
    excellent: int = 25
    good: int = 50
    inaccuracy: int = 100
    mistake: int = 200
    brilliant_min_eval_cp: int = 150
    lost_position_cp: int = -300
    lost_position_leniency_cp: int = 150


DEFAULT_THRESHOLDS = ClassificationThresholds()


def classification_symbol(label: str) -> str:
    return _SYMBOLS.get(label, "")


def severity(label: str) -> int:
    return _SEVERITY[label]


def _band(loss: int, t: ClassificationThresholds) -> str:
    if loss <= t.great:
        return "great"
    if loss <= t.excellent:
        return "excellent"
    if loss <= t.good:
        return "good"
    if loss <= t.inaccuracy:
        return "inaccuracy"
    if loss <= t.mistake:
        return "mistake"
    return "blunder"


def classify(
    eval_before: Score,
    eval_after: Score | None,
    san: str,
    is_engine_top_move: bool,
    *,
    is_book: bool = False,
    is_sacrifice: bool = False,
    thresholds: ClassificationThresholds | None = None,
) -> tuple[str, int]:
    """Label a move and compute its centipawn loss.

    Args:
        eval_before: Score before the move, mover to move.
        eval_after: Score after the move, opponent to move. May be None
            only when the move delivers mate.
        san: The move in SAN.
        is_engine_top_move: The move equals the engine's best move.
        is_book: The move is opening theory.
        is_sacrifice: The move leaves material en prise.

    Returns:
        Tuple of (label, cp_loss). cp_loss is never negative and is zero
        only for book, best and brilliant.
    """
    t = thresholds or DEFAULT_THRESHOLDS
    if is_book:
        return "book", 0
    if san.endswith("#"):
        return "best", 0
    if eval_after is None:
        raise ValueError(f"{san}: a non-mating move needs an evaluation after it")

    before = eval_before.to_cp()
    after_for_mover = eval_after.negated()
    after = after_for_mover.to_cp()
    loss = 0 if is_engine_top_move else max(0, before - after)

    if loss == 0:
        if is_engine_top_move and is_sacrifice and after >= t.brilliant_min_eval_cp:
            return "brilliant", 0
        return "best", 0

    label = _band(loss, t)
    if before < t.lost_position_cp and loss <= t.lost_position_leniency_cp:
        if severity(label) > severity("inaccuracy"):
            label = "inaccuracy"
    # Letting a forced mate slip is never a small error.
    if eval_before.is_winning_mate and not after_for_mover.is_winning_mate:
        if severity(label) < severity("mistake"):
            label = "mistake"
    return label, loss


def calculate_accuracy(cp_losses: Iterable[int]) -> float | None:
    """Accuracy percentage from a side's centipawn losses.

    103.1668 * exp(-0.04354 * avg) - 3.1669, clamped to 0..100 and
    rounded to one decimal. Returns None when there are no moves.
    """
    losses = [min(max(0, loss), _ACCURACY_LOSS_CAP) for loss in cp_losses]
    if not losses:
        return None
    average = sum(losses) / len(losses)
    accuracy = 103.1668 * math.exp(-0.04354 * average) - 3.1669
    return round(max(0.0, min(100.0, accuracy)), 1)


def analyze_ply(
    entry: PlyEvaluation,
    *,
    is_book: bool = False,
    thresholds: ClassificationThresholds | None = None,
) -> AnalyzedMove | None:
    """Classify one evaluated ply; None when it cannot be classified."""
    if is_book:
        return AnalyzedMove(
            ply=entry.ply, san=entry.san, uci=entry.move_uci,
            classification="book", cp_loss=0,
        )
    if entry.skipped or entry.eval_before is None or entry.eval_before.score is None:
        return None

    before = entry.eval_before
    if entry.is_terminal:
        # Stalemate is a dead draw for both sides.
        after_score = None if entry.san.endswith("#") else Score.cp(0)
    elif entry.eval_after is None or entry.eval_after.score is None:
        return None
    else:
        after_score = entry.eval_after.score

    top_move = bool(before.best_move) and before.best_move == entry.move_uci
    sacrifice = top_move and is_material_sacrifice(entry.fen_before, entry.move_uci)
    label, loss = classify(
        before.score, after_score, entry.san, top_move,
        is_sacrifice=sacrifice, thresholds=thresholds,
    )
    return AnalyzedMove(
        ply=entry.ply,
        san=entry.san,
        uci=entry.move_uci,
        classification=label,
        cp_loss=loss,
        eval_before=before.score,
        eval_after=after_score,
        best_move_uci=before.best_move or None,
        best_move_san=uci_to_san(entry.fen_before, before.best_move) if before.best_move else None,
    )


def build_game_analysis(
    game_id: str,
    ply_evals: list[PlyEvaluation],
    *,
    book_plies: int = 0,
    thresholds: ClassificationThresholds | None = None,
) -> GameAnalysis:
    """Classify every usable ply of a game and compute both accuracies.

    Plies before book_plies are labelled "book". Other plies without a
    usable evaluation pair are left out. Book moves do not count towards
    accuracy.
    """
    moves: list[AnalyzedMove] = []
    losses: dict[str, list[int]] = {"w": [], "b": []}
    for entry in ply_evals:
        analyzed = analyze_ply(entry, is_book=entry.ply < book_plies, thresholds=thresholds)
        if analyzed is None:
            logger.debug("Game %s: ply %d has no usable evaluation", game_id, entry.ply)
            continue
        moves.append(analyzed)
        if analyzed.classification != "book":
            losses[entry.mover].append(analyzed.cp_loss)

    return GameAnalysis(
        game_id=game_id,
        moves=moves,
        white_accuracy=calculate_accuracy(losses["w"]),
        black_accuracy=calculate_accuracy(losses["b"]),
    )
