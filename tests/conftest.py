"""Shared test fixtures with dual-mode support (scripted vs real Stockfish).

Usage:
    pytest tests/                  # Fast, scripted engine (no Stockfish)
    pytest tests/ --e2e            # Also run tests against real Stockfish

Fixtures:
    fake_engine        - A FakeEngine with an empty script (default lines only).
    client_for         - Builds an EvaluationClient around a FakeEngine.
    enable_validation  - Sets BLUNDER_MINER_VALIDATE=1 for schema validation.

Helpers (import from conftest):
    FakeEngine         - Scripted EvaluationEngine keyed by FEN.
    line()             - Shorthand for an EvaluationResult.
    fens_for()         - FENs before each ply of a UCI move list.
    SCHOLAR_MOVES      - 1.e4 e5 2.Qh5 Nc6 3.Bc4 Nf6?? 4.Qxf7#
"""

from __future__ import annotations

import asyncio
import os

import chess
import pytest

from blunder_miner.engine import EvaluationEngine
from blunder_miner.errors import EvaluationError
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.models import EvaluationResult, Score

SCHOLAR_MOVES = ["e2e4", "e7e5", "d1h5", "b8c6", "f1c4", "g8f6", "h5f7"]

SCHOLAR_PGN = """[Event "Casual game"]
[Site "https://lichess.org/abcd1234"]
[Date "2024.03.01"]
[White "alice"]
[Black "bob"]
[Result "1-0"]

1. e4 e5 2. Qh5 Nc6 3. Bc4 Nf6 4. Qxf7# 1-0
"""


# ---------------------------------------------------------------------------
# CLI option and marker registration
# ---------------------------------------------------------------------------


def pytest_addoption(parser):
    """Register --e2e CLI flag for real Stockfish tests."""
    parser.addoption(
        "--e2e",
        action="store_true",
        default=False,
        help="Run with real Stockfish engine (no fakes).",
    )


def pytest_configure(config):
    """Register the e2e marker."""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end (requires real Stockfish)"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--e2e"):
        return
    skip = pytest.mark.skip(reason="needs --e2e and a real Stockfish")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Scripted engine
# ---------------------------------------------------------------------------


def line(fen: str, score: Score, pv: list[str], multipv: int = 1) -> EvaluationResult:
    """EvaluationResult with best_move taken from the pv."""
    return EvaluationResult(
        fen=fen,
        score=score,
        depth=12,
        pv=tuple(pv),
        best_move=pv[0] if pv else "",
        multipv=multipv,
    )


def legal_line(fen: str, plies: int) -> list[str]:
    """A legal line from fen: always the first legal move python-chess yields."""
    board = chess.Board(fen)
    moves = []
    for _ in range(plies):
        legal = list(board.legal_moves)
        if not legal:
            break
        moves.append(legal[0].uci())
        board.push(legal[0])
    return moves


def fens_for(moves: list[str], start_fen: str | None = None) -> list[str]:
    """fens[i] is the position before moves[i]; fens[-1] is the final position."""
    board = chess.Board(start_fen or chess.STARTING_FEN)
    fens = [board.fen()]
    for uci in moves:
        board.push_uci(uci)
        fens.append(board.fen())
    return fens


class FakeEngine(EvaluationEngine):
    """Scripted engine.

    script maps a FEN, or a (FEN, budget_ms) pair for budget-specific
    answers, to a list of EvaluationResults (best first) or to an
    exception instance to raise. Unscripted positions score 0 with a
    short legal line.
    """

    def __init__(self, script: dict | None = None, delay: float = 0.0) -> None:
        self.script = dict(script or {})
        self.delay = delay
        self.calls: list[tuple[str, int, int]] = []
        self.closed = False
        self.active = 0
        self.max_active = 0

    async def analyse(self, fen: str, budget_ms: int, lines: int = 1) -> list[EvaluationResult]:
        self.calls.append((fen, budget_ms, lines))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            entry = self.script.get((fen, budget_ms), self.script.get(fen))
            if isinstance(entry, Exception):
                raise entry
            if entry is None:
                pv = legal_line(fen, 2)
                if not pv:
                    raise EvaluationError(f"no legal moves to analyse in {fen}")
                entry = [line(fen, Score.cp(0), pv)]
            return list(entry)[:lines]
        finally:
            self.active -= 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_engine():
    return FakeEngine()


@pytest.fixture()
def client_for():
    """Factory: client_for(engine) -> EvaluationClient using that engine."""

    def _make(engine: FakeEngine) -> EvaluationClient:
        return EvaluationClient(lambda: engine)

    return _make


# ---------------------------------------------------------------------------
# Schema validation fixture
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def enable_validation():
    """Set BLUNDER_MINER_VALIDATE=1 for the test session.

    Restores the original env var value after the test.
    """
    original = os.environ.get("BLUNDER_MINER_VALIDATE")
    os.environ["BLUNDER_MINER_VALIDATE"] = "1"
    yield
    if original is None:
        os.environ.pop("BLUNDER_MINER_VALIDATE", None)
    else:
        os.environ["BLUNDER_MINER_VALIDATE"] = original
