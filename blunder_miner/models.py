"""Shared data models for the puzzle mining pipeline.

Score and EvaluationResult are the contract between the evaluation
client and everything downstream; Puzzle is the durable artifact the
pipeline exports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

# Fixed scale mate scores are mapped onto before differencing.
MATE_SCORE_CP = 100_000

PUZZLE_TYPES = ("blunder", "missedWin", "missedTactic")
PUZZLE_MODES = ("avoidBlunder", "punishBlunder")


@dataclass(frozen=True)
class Score:
    """Engine score from the side to move's point of view.

    kind is "cp" (centipawns) or "mate" (moves to mate; positive means
    the side to move mates, zero or negative means it gets mated).
    """

    kind: str
    value: int

    @classmethod
    def cp(cls, value: int) -> Score:
        return cls("cp", int(value))

    @classmethod
    def mate(cls, value: int) -> Score:
        return cls("mate", int(value))

    @property
    def is_mate(self) -> bool:
        return self.kind == "mate"

    @property
    def is_winning_mate(self) -> bool:
        return self.kind == "mate" and self.value > 0

    def to_cp(self) -> int:
        """Map the score onto a single centipawn scale.

        Mate in n becomes MATE_SCORE_CP - n, mated in n becomes
        -(MATE_SCORE_CP + n), so shorter mates always compare as larger.
        """
        if self.kind == "cp":
            return self.value
        if self.value > 0:
            return MATE_SCORE_CP - self.value
        return -(MATE_SCORE_CP + self.value)

    def negated(self) -> Score:
        """Return the same score from the other side's point of view."""
        if self.kind == "cp":
            return Score("cp", -self.value)
        if self.value == 0:
            # Already mated; for the other side the mate has been given.
            return Score("cp", MATE_SCORE_CP)
        # Mate in n for one side is mated in n for the other.
        return Score("mate", -self.value)

    def to_dict(self) -> dict:
        return {"type": self.kind, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict | None) -> Score | None:
        if not data:
            return None
        kind = data.get("type", data.get("kind"))
        if kind not in ("cp", "mate"):
            return None
        return cls(kind, int(data.get("value", 0)))


@dataclass(frozen=True)
class EvaluationResult:
    """One scored engine line for a position."""

    fen: str
    score: Score | None
    depth: int | None = None
    pv: tuple[str, ...] = ()
    best_move: str = ""
    multipv: int = 1
    time_ms: int | None = None

    @property
    def cp(self) -> int | None:
        return None if self.score is None else self.score.to_cp()


@dataclass
class PlyEvaluation:
    """Evaluation pair for one ply of a game.

    eval_before is from the mover's point of view (the mover is to move
    at fen_before); eval_after is from the opponent's point of view.
    """

    ply: int
    fen_before: str
    fen_after: str
    move_uci: str
    san: str
    mover: str  # "w" or "b"
    eval_before: EvaluationResult | None = None
    eval_after: EvaluationResult | None = None
    is_terminal: bool = False
    skipped: bool = False

    @property
    def has_swing(self) -> bool:
        """True when both sides of the pair are usable for swing math."""
        return (
            not self.skipped
            and not self.is_terminal
            and self.eval_before is not None
            and self.eval_after is not None
            and self.eval_before.score is not None
            and self.eval_after.score is not None
        )

    @property
    def swing_cp(self) -> int | None:
        """Evaluation lost by the mover, positive when the move was worse."""
        if not self.has_swing:
            return None
        before = self.eval_before.score.to_cp()
        after = self.eval_after.score.negated().to_cp()
        return before - after


@dataclass
class AnalyzedMove:
    """Classification of a single move in a game."""

    ply: int
    san: str
    uci: str
    classification: str
    cp_loss: int
    eval_before: Score | None = None
    eval_after: Score | None = None
    best_move_uci: str | None = None
    best_move_san: str | None = None
    has_puzzle: bool = False
    puzzle_id: str | None = None
    puzzle_mode: str | None = None


@dataclass
class GameAnalysis:
    """Move-by-move analysis of one game."""

    game_id: str
    moves: list[AnalyzedMove] = field(default_factory=list)
    white_accuracy: float | None = None
    black_accuracy: float | None = None
    analyzed_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def move_at(self, ply: int) -> AnalyzedMove | None:
        for move in self.moves:
            if move.ply == ply:
                return move
        return None


@dataclass
class OpeningInfo:
    code: str | None = None
    name: str | None = None
    variation: str | None = None
    source: str = "unknown"

    def to_dict(self) -> dict:
        return {"code": self.code, "name": self.name, "variation": self.variation}


@dataclass
class PuzzleCandidate:
    """A flagged ply, consumed immediately by the puzzle builder."""

    source_game_id: str
    source_ply: int
    trigger_ply: int
    fen: str
    swing_cp: int
    type: str
    mode: str
    evaluation: EvaluationResult
    followup: EvaluationResult | None = None
    fen_after: str | None = None


@dataclass
class Puzzle:
    """Durable puzzle record."""

    id: str
    fen: str
    best_move: str
    best_line: list[str]
    accepted_moves: list[str]
    score: Score | None
    source_game_id: str
    source_ply: int
    type: str
    mode: str
    severity: str
    tags: list[str] = field(default_factory=list)
    opening: OpeningInfo = field(default_factory=OpeningInfo)
    label: str = ""
    side_to_move: str = "w"
    provider: str | None = None
    played_at: str | None = None

    @property
    def dedup_key(self) -> tuple[str, int, str]:
        return (self.source_game_id, self.source_ply, self.fen)


@dataclass
class Player:
    name: str
    rating: int | None = None


@dataclass
class Game:
    """A finished game as handed to the extractor."""

    id: str
    pgn: str
    white: Player
    black: Player
    provider: str = "pgn"
    played_at: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class ProgressEvent:
    game_id: str
    game_index: int
    game_count: int
    ply: int
    ply_count: int
    phase: str = "evaluating"
