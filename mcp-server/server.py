"""MCP server for blunder-miner.

Exposes puzzle mining over a shared Stockfish evaluation client via
FastMCP. Games are passed in as PGN text; puzzles can optionally be
merged into a puzzle JSON file on disk.
"""

from __future__ import annotations

import io
import logging
import sys
from pathlib import Path

# Add project root and mcp-server dir to path for imports
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_MCP_SERVER_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(_PROJECT_ROOT))
sys.path.insert(0, str(_MCP_SERVER_DIR))

from mcp.server.fastmcp import FastMCP

from blunder_miner.config import resolve_options
from blunder_miner.engine import StockfishEngine
from blunder_miner.errors import BlunderMinerError
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.export import (
    analysis_to_dict,
    load_puzzle_file,
    puzzle_to_dict,
    read_puzzle_dicts,
    validate_file,
    write_puzzle_file,
)
from blunder_miner.extract import ExtractionSession
from blunder_miner.games import iter_games

from response_schemas import (  # noqa: E402
    minify_analysis,
    minify_extract_result,
)

logger = logging.getLogger("blunder_miner.mcp")

mcp = FastMCP("blunder-miner")

# Shared evaluation client, created on first use. Tests replace
# _engine_factory before the first tool call.
_engine_factory = StockfishEngine
_client: EvaluationClient | None = None

# Session currently running, if any; cancel_extraction stops it.
_session: ExtractionSession | None = None

_PROVIDERS = ("lichess", "chesscom", "pgn")


def _get_client() -> EvaluationClient:
    global _client
    if _client is None:
        _client = EvaluationClient(_engine_factory)
    return _client


def _parse_games(pgn: str, source: str = "mcp") -> list:
    games = list(iter_games(io.StringIO(pgn), source))
    if not games:
        raise BlunderMinerError("no games found in PGN text")
    return games


async def _run_session(games: list, username: str, options: dict | None, existing=None):
    global _session
    session = ExtractionSession(_get_client(), options)
    _session = session
    try:
        return await session.run(
            games,
            [g.id for g in games],
            {provider: username for provider in _PROVIDERS},
            existing=existing,
        )
    finally:
        if _session is session:
            _session = None


@mcp.tool()
async def extract_puzzles(
    pgn: str,
    username: str,
    options: dict | None = None,
    out_path: str | None = None,
) -> dict:
    """Mine training puzzles from one or more games.

    Args:
        pgn: PGN text holding one or more games.
        username: The user's name as it appears in the White/Black headers.
        options: Extraction options (camelCase or snake_case keys), e.g.
            {"puzzleMode": "both", "maxPuzzlesPerGame": 3}.
        out_path: Optional puzzle JSON file. Puzzles are merged into it;
            puzzles of re-mined games are replaced.

    Returns:
        Dict with puzzle_count, puzzles, failed_games, cancelled.
    """
    try:
        resolved = resolve_options(options)
        games = _parse_games(pgn)
        existing = load_puzzle_file(out_path) if out_path else None
        result = await _run_session(games, username, resolved, existing)
    except BlunderMinerError as e:
        return {"error": str(e)}

    if out_path:
        write_puzzle_file(out_path, result.puzzles)
        logger.info("Wrote %d puzzle(s) to %s", len(result.puzzles), out_path)

    return minify_extract_result(
        [puzzle_to_dict(p) for p in result.puzzles],
        result.failed_games + result.skipped_games,
        result.cancelled,
    )


@mcp.tool()
async def analyze_game(
    pgn: str,
    username: str,
    game_id: str | None = None,
    options: dict | None = None,
) -> dict:
    """Move-by-move review of one game with accuracy and puzzle markers.

    Args:
        pgn: PGN text; the first game is used unless game_id is given.
        username: The user's name as it appears in the game headers.
        game_id: Optional id of the game to analyse.
        options: Extraction options, as for extract_puzzles.

    Returns:
        Dict with game_id, accuracies, an annotated move_list and key_moves.
    """
    try:
        raw = dict(options or {})
        raw["returnFullAnalysis"] = True
        resolved = resolve_options(raw)
        games = _parse_games(pgn)
        if game_id is not None:
            games = [g for g in games if g.id == game_id]
            if not games:
                return {"error": f"Game not found: {game_id}"}
        game = games[0]
        result = await _run_session([game], username, resolved)
    except BlunderMinerError as e:
        return {"error": str(e)}

    if result.cancelled:
        return {"error": "Analysis cancelled"}
    analysis = (result.analysis_by_game or {}).get(game.id)
    if analysis is None:
        if game.id in result.skipped_games:
            return {"error": f"{username} did not play in game {game.id}"}
        return {"error": f"Game {game.id} could not be analysed"}
    return minify_analysis(analysis_to_dict(analysis))


@mcp.tool()
def validate_puzzles(path: str) -> dict:
    """Check a puzzle file for legal positions and solution lines.

    Args:
        path: Puzzle JSON file.

    Returns:
        Dict with file, puzzle_count and errors (empty when valid).
    """
    try:
        count = len(read_puzzle_dicts(path))
    except BlunderMinerError as e:
        return {"error": str(e)}
    return {"file": path, "puzzle_count": count, "errors": validate_file(path)}


@mcp.tool()
def cancel_extraction() -> dict:
    """Cancel the extraction in progress, if any.

    Returns:
        Dict with cancelled: True when a running extraction was stopped.
    """
    if _session is None:
        return {"cancelled": False}
    _session.cancel()
    return {"cancelled": True}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    mcp.run()
