"""Stockfish evaluation engine over the python-chess asyncio UCI API.

The engine is a black box to the rest of the pipeline: give it a
position and a time budget, get back ranked, scored lines. Everything
about queueing, caching and cancellation lives in eval_client.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import shutil
from pathlib import Path

import chess
import chess.engine

from blunder_miner.errors import EngineUnavailable, EvaluationError
from blunder_miner.models import EvaluationResult, Score
from blunder_miner.rules import board_from_fen

logger = logging.getLogger(__name__)

# Stockfish search paths in priority order
_STOCKFISH_PATHS = [
    "/opt/homebrew/bin/stockfish",
    "/usr/local/bin/stockfish",
    "/usr/bin/stockfish",
    "/usr/games/stockfish",
]

STOCKFISH_ENV_VAR = "STOCKFISH_PATH"


def find_stockfish() -> str:
    """Auto-detect the Stockfish binary.

    Checks $STOCKFISH_PATH, then known install paths, then PATH.

    Returns:
        Path to the Stockfish binary.

    Raises:
        EngineUnavailable: If Stockfish is not found anywhere.
    """
    env_path = os.environ.get(STOCKFISH_ENV_VAR)
    if env_path:
        if Path(env_path).is_file():
            return env_path
        logger.warning("%s=%s does not exist, searching elsewhere", STOCKFISH_ENV_VAR, env_path)

    for path_str in _STOCKFISH_PATHS:
        if Path(path_str).is_file():
            return path_str

    which_result = shutil.which("stockfish")
    if which_result is not None:
        return which_result

    raise EngineUnavailable(
        f"Stockfish not found. Install it or set {STOCKFISH_ENV_VAR}."
    )


def score_from_pov(pov: chess.engine.PovScore | None) -> Score | None:
    """Convert a python-chess score to a Score for the side to move."""
    if pov is None:
        return None
    relative = pov.relative
    if relative.is_mate():
        return Score.mate(relative.mate())
    cp = relative.score()
    return None if cp is None else Score.cp(cp)


def result_from_info(fen: str, info: dict, rank: int = 1) -> EvaluationResult:
    """Build an EvaluationResult from one python-chess InfoDict."""
    pv = tuple(move.uci() for move in info.get("pv", []))
    elapsed = info.get("time")
    return EvaluationResult(
        fen=fen,
        score=score_from_pov(info.get("score")),
        depth=info.get("depth"),
        pv=pv,
        best_move=pv[0] if pv else "",
        multipv=info.get("multipv", rank),
        time_ms=None if elapsed is None else int(elapsed * 1000),
    )


class EvaluationEngine(abc.ABC):
    """An engine that scores positions one request at a time."""

    @abc.abstractmethod
    async def analyse(self, fen: str, budget_ms: int, lines: int = 1) -> list[EvaluationResult]:
        """Return up to `lines` ranked results for fen, best first."""

    async def close(self) -> None:
        """Release the engine; the default has nothing to release."""


class StockfishEngine(EvaluationEngine):
    """Stockfish subprocess speaking UCI through python-chess."""

    def __init__(self, stockfish_path: str | None = None, options: dict | None = None) -> None:
        """Remember where Stockfish lives; the process starts lazily.

        Args:
            stockfish_path: Explicit path to the Stockfish binary. If
                None, find_stockfish() locates it on first use.
            options: UCI options (e.g. {"Threads": 2, "Hash": 64}).
        """
        self._stockfish_path = stockfish_path
        self._options = dict(options or {})
        self._transport: asyncio.SubprocessTransport | None = None
        self._protocol: chess.engine.UciProtocol | None = None

    async def _ensure_engine(self) -> chess.engine.UciProtocol:
        """Start the Stockfish process if it is not running."""
        if self._protocol is not None:
            return self._protocol
        path = self._stockfish_path or find_stockfish()
        try:
            self._transport, self._protocol = await chess.engine.popen_uci(path)
            if self._options:
                await self._protocol.configure(self._options)
        except (chess.engine.EngineError, chess.engine.EngineTerminatedError, OSError) as exc:
            self._transport = self._protocol = None
            raise EngineUnavailable(f"could not start {path}: {exc}") from exc
        logger.debug("Started Stockfish at %s", path)
        return self._protocol

    async def analyse(self, fen: str, budget_ms: int, lines: int = 1) -> list[EvaluationResult]:
        board = board_from_fen(fen)
        if board.is_game_over():
            raise EvaluationError(f"no legal moves to analyse in {fen}")

        protocol = await self._ensure_engine()
        limit = chess.engine.Limit(time=max(1, budget_ms) / 1000.0)
        try:
            # Leaving the block stops the search, including on cancellation.
            with await protocol.analysis(board, limit, multipv=max(1, lines)) as analysis:
                await analysis.wait()
                infos = analysis.multipv
        except (chess.engine.EngineTerminatedError, chess.engine.EngineError) as exc:
            await self._discard()
            raise EngineUnavailable(f"Stockfish failed on {fen}: {exc}") from exc

        results = [result_from_info(fen, info, rank) for rank, info in enumerate(infos, 1)]
        if not results or results[0].score is None:
            raise EvaluationError(f"engine returned no analysis for {fen}")
        return results

    async def _discard(self) -> None:
        if self._transport is not None:
            self._transport.close()
        self._transport = self._protocol = None

    async def close(self) -> None:
        """Quit the Stockfish process."""
        if self._protocol is None:
            return
        try:
            await self._protocol.quit()
        except chess.engine.EngineTerminatedError:
            pass
        finally:
            await self._discard()
