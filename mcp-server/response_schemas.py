"""Response schemas and minification for MCP tool responses.

Minifies MCP tool return values to reduce LLM context token waste.
Puzzle files written by the tools are NOT affected; they always carry
the full exported schema. Only MCP return values are trimmed.

Analysis move lists are rendered as PGN move strings
(1.e4 e5 2.Nf3 ...), which are natural for the LLM agent to read.
"""

from __future__ import annotations

import os

from blunder_miner.classification import classification_symbol

# Best lines are truncated to this many plies in responses.
_MAX_LINE_PLIES = 5


# ---------------------------------------------------------------------------
# Minification functions
# ---------------------------------------------------------------------------


def minify_puzzle(puzzle: dict) -> dict:
    """Minify an exported puzzle dict for MCP response.

    Keeps the fields needed to present the puzzle, truncates bestLine,
    flattens opening to a single string and drops provider metadata.

    Args:
        puzzle: Puzzle dict as produced by export.puzzle_to_dict.

    Returns:
        Minified dict.
    """
    result = {}

    for key in (
        "id", "fen", "bestMove", "acceptedMoves", "sourceGameId",
        "sourcePly", "type", "mode", "severity", "tags", "label",
    ):
        if key in puzzle:
            result[key] = puzzle[key]

    best_line = puzzle.get("bestLine", [])
    result["bestLine"] = best_line[:_MAX_LINE_PLIES] if isinstance(best_line, list) else best_line

    score = puzzle.get("score")
    result["score"] = _score_string(score)

    opening = puzzle.get("opening") or {}
    name = opening.get("name")
    if name and opening.get("variation"):
        name = f"{name}: {opening['variation']}"
    result["opening"] = f"{opening['code']} {name}" if opening.get("code") and name else name

    # Removed fields: provider, playedAt, sideToMove

    return result


def minify_analysis(analysis: dict) -> dict:
    """Minify a game analysis dict for MCP response.

    Replaces the per-move records with a PGN string annotated with
    classification symbols, plus the list of plies worth talking about
    (inaccuracies and worse, and moves that produced a puzzle).

    Args:
        analysis: Dict as produced by export.analysis_to_dict.

    Returns:
        Minified dict.
    """
    moves = analysis.get("moves", [])
    result = {
        "game_id": analysis.get("gameId"),
        "white_accuracy": analysis.get("whiteAccuracy"),
        "black_accuracy": analysis.get("blackAccuracy"),
        "move_list": _moves_to_pgn_string([m["san"] + classification_symbol(m["classification"]) for m in moves]),
    }

    key_moves = []
    for m in moves:
        if m["classification"] in ("inaccuracy", "mistake", "blunder") or m.get("hasPuzzle"):
            entry = {
                "ply": m["ply"],
                "san": m["san"],
                "classification": m["classification"],
                "cp_loss": m["cpLoss"],
                "best": m.get("bestMoveSan"),
            }
            # Only include puzzle_id when set
            if m.get("puzzleId"):
                entry["puzzle_id"] = m["puzzleId"]
            key_moves.append(entry)
    result["key_moves"] = key_moves

    return result


def minify_extract_result(puzzles: list[dict], failed_games: list[str], cancelled: bool) -> dict:
    """Minify an extraction result for MCP response."""
    return {
        "puzzle_count": len(puzzles),
        "puzzles": [minify_puzzle(p) for p in puzzles],
        "failed_games": list(failed_games),
        "cancelled": cancelled,
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _score_string(score: dict | None) -> str | None:
    """{"type": "cp", "value": 120} -> '+1.20'; mate -> '#3' / '#-2'."""
    if not score:
        return None
    if score.get("type") == "mate":
        return f"#{score.get('value')}"
    return f"{score.get('value', 0) / 100:+.2f}"


def _moves_to_pgn_string(moves: list[str]) -> str:
    """Convert a list of SAN moves to a PGN move string.

    E.g., ['e4', 'e5', 'Nf3', 'Nc6'] -> '1.e4 e5 2.Nf3 Nc6'

    Args:
        moves: List of SAN move strings.

    Returns:
        PGN-formatted move string.
    """
    if not moves:
        return ""

    parts = []
    for i, move in enumerate(moves):
        if i % 2 == 0:
            # White's move, prepend move number
            move_num = i // 2 + 1
            parts.append(f"{move_num}.{move}")
        else:
            # Black's move
            parts.append(move)

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Validation schemas (dict-based)
# ---------------------------------------------------------------------------

PUZZLE_SCHEMA = {
    "id": str,
    "fen": str,
    "bestMove": str,
    "bestLine": list,
    "acceptedMoves": list,
    "score": (str, type(None)),
    "sourceGameId": str,
    "sourcePly": int,
    "type": str,
    "mode": str,
    "severity": str,
    "tags": list,
    "opening": (str, type(None)),
    "label": str,
}

EXTRACT_RESULT_SCHEMA = {
    "puzzle_count": int,
    "puzzles": list,
    "failed_games": list,
    "cancelled": bool,
}

ANALYSIS_SCHEMA = {
    "game_id": str,
    "white_accuracy": (int, float, type(None)),
    "black_accuracy": (int, float, type(None)),
    "move_list": str,
    "key_moves": list,
}

VALIDATION_SCHEMA = {
    "file": str,
    "puzzle_count": int,
    "errors": list,
}

ERROR_SCHEMA = {
    "error": str,
}


def validate_response(response: dict, schema: dict) -> list[str]:
    """Validate a response dict against a schema.

    Only runs when BLUNDER_MINER_VALIDATE=1 env var is set.

    Args:
        response: Response dict to validate.
        schema: Dict mapping key names to expected types (or tuple of types).

    Returns:
        List of validation error strings (empty = valid).
    """
    if os.environ.get("BLUNDER_MINER_VALIDATE") != "1":
        return []

    errors = []

    if not isinstance(response, dict):
        errors.append(f"Response is not a dict: {type(response).__name__}")
        return errors

    for key, expected_types in schema.items():
        if key not in response:
            errors.append(f"Missing key: {key}")
            continue

        value = response[key]
        if isinstance(expected_types, tuple):
            if not isinstance(value, expected_types):
                type_names = ", ".join(t.__name__ for t in expected_types)
                errors.append(
                    f"Key '{key}': expected ({type_names}), "
                    f"got {type(value).__name__}"
                )
        else:
            if not isinstance(value, expected_types):
                errors.append(
                    f"Key '{key}': expected {expected_types.__name__}, "
                    f"got {type(value).__name__}"
                )

    return errors
