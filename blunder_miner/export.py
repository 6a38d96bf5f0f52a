"""Puzzle JSON files: the exported schema, legacy migration and validation.

Puzzles are stored as a JSON list in camelCase:

    {"id", "fen", "bestMove", "bestLine", "acceptedMoves", "score",
     "sourceGameId", "sourcePly", "type", "mode", "severity", "tags",
     "opening": {"code", "name", "variation"}, "label", ...}

Older files kept opening data as prefixed tags ("eco:B20",
"opening:Sicilian Defense", "openingVar:Najdorf Variation") and used
bestMoveUci / bestLineUci. Those are migrated when a file is read and
never written again.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import chess

from blunder_miner.errors import BlunderMinerError
from blunder_miner.models import PUZZLE_MODES, PUZZLE_TYPES, GameAnalysis, OpeningInfo, Puzzle, Score

REQUIRED_FIELDS = ["id", "fen", "bestMove", "bestLine", "acceptedMoves", "sourceGameId", "sourcePly", "type", "mode"]

SEVERITIES = ("small", "medium", "big", "mate")

_LEGACY_OPENING_TAGS = {"eco:": "code", "opening:": "name", "openingVar:": "variation"}


def puzzle_to_dict(puzzle: Puzzle) -> dict:
    return {
        "id": puzzle.id,
        "fen": puzzle.fen,
        "bestMove": puzzle.best_move,
        "bestLine": list(puzzle.best_line),
        "acceptedMoves": list(puzzle.accepted_moves),
        "score": puzzle.score.to_dict() if puzzle.score else None,
        "sourceGameId": puzzle.source_game_id,
        "sourcePly": puzzle.source_ply,
        "type": puzzle.type,
        "mode": puzzle.mode,
        "severity": puzzle.severity,
        "tags": list(puzzle.tags),
        "opening": puzzle.opening.to_dict(),
        "label": puzzle.label,
        "sideToMove": puzzle.side_to_move,
        "provider": puzzle.provider,
        "playedAt": puzzle.played_at,
    }


def migrate_legacy_tags(data: dict) -> dict:
    """Move prefix-encoded opening tags into the opening object.

    Values already present in data["opening"] win over tag values. The
    input is not modified.
    """
    migrated = dict(data)
    opening = dict(migrated.get("opening") or {})
    tags: list[str] = []
    for tag in migrated.get("tags") or []:
        for prefix, key in _LEGACY_OPENING_TAGS.items():
            if tag.startswith(prefix):
                if not opening.get(key):
                    opening[key] = tag[len(prefix):] or None
                break
        else:
            tags.append(tag)
    migrated["tags"] = tags
    migrated["opening"] = {key: opening.get(key) for key in ("code", "name", "variation")}

    if "bestMove" not in migrated and "bestMoveUci" in migrated:
        migrated["bestMove"] = migrated.pop("bestMoveUci")
    if "bestLine" not in migrated and "bestLineUci" in migrated:
        migrated["bestLine"] = migrated.pop("bestLineUci")
    if "acceptedMoves" not in migrated and migrated.get("bestMove"):
        migrated["acceptedMoves"] = [migrated["bestMove"]]
    return migrated


def puzzle_from_dict(data: dict) -> Puzzle:
    """Build a Puzzle from an exported dict, migrating legacy fields first."""
    data = migrate_legacy_tags(data)
    opening = data["opening"]
    return Puzzle(
        id=data["id"],
        fen=data["fen"],
        best_move=data["bestMove"],
        best_line=list(data.get("bestLine") or []),
        accepted_moves=list(data.get("acceptedMoves") or []),
        score=Score.from_dict(data.get("score")),
        source_game_id=data["sourceGameId"],
        source_ply=int(data["sourcePly"]),
        type=data["type"],
        mode=data.get("mode", "avoidBlunder"),
        severity=data.get("severity", "small"),
        tags=sorted(set(data["tags"])),
        opening=OpeningInfo(
            code=opening.get("code"),
            name=opening.get("name"),
            variation=opening.get("variation"),
            source="pgn" if any(opening.values()) else "unknown",
        ),
        label=data.get("label", ""),
        side_to_move=data.get("sideToMove") or ("b" if " b " in data["fen"] else "w"),
        provider=data.get("provider"),
        played_at=data.get("playedAt"),
    )


def analysis_to_dict(analysis: GameAnalysis) -> dict:
    return {
        "gameId": analysis.game_id,
        "whiteAccuracy": analysis.white_accuracy,
        "blackAccuracy": analysis.black_accuracy,
        "analyzedAt": analysis.analyzed_at,
        "moves": [
            {
                "ply": m.ply,
                "san": m.san,
                "uci": m.uci,
                "classification": m.classification,
                "cpLoss": m.cp_loss,
                "evalBefore": m.eval_before.to_dict() if m.eval_before else None,
                "evalAfter": m.eval_after.to_dict() if m.eval_after else None,
                "bestMoveUci": m.best_move_uci,
                "bestMoveSan": m.best_move_san,
                "hasPuzzle": m.has_puzzle,
                "puzzleId": m.puzzle_id,
                "puzzleMode": m.puzzle_mode,
            }
            for m in analysis.moves
        ],
    }


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def write_puzzle_file(filepath: Path | str, puzzles: list[Puzzle]) -> None:
    """Write puzzles to JSON file atomically."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    tmp = filepath.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump([puzzle_to_dict(p) for p in puzzles], f, indent=2, ensure_ascii=False)
    os.replace(str(tmp), str(filepath))


def read_puzzle_dicts(filepath: Path | str) -> list[dict]:
    """Raw puzzle dicts from a file; a missing file is an empty list.

    Raises:
        BlunderMinerError: If the file exists but is not a JSON list.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        return []
    try:
        with open(filepath, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        raise BlunderMinerError(f"cannot read {filepath}: {exc}") from exc
    if not isinstance(data, list):
        raise BlunderMinerError(f"{filepath}: expected a JSON list of puzzles")
    return data


def load_puzzle_file(filepath: Path | str) -> list[Puzzle]:
    """Puzzles from a file written by write_puzzle_file.

    Raises:
        BlunderMinerError: If the file is unreadable or a record is malformed.
    """
    puzzles = []
    for i, item in enumerate(read_puzzle_dicts(filepath)):
        try:
            puzzles.append(puzzle_from_dict(item))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise BlunderMinerError(f"{filepath}[{i}]: malformed puzzle record ({exc!r})") from exc
    return puzzles


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_puzzle(puzzle: dict, filename: str, index: int) -> list[str]:
    """Validate a single exported puzzle. Returns list of error messages."""
    errors = []
    prefix = f"{filename}[{index}]"

    for field in REQUIRED_FIELDS:
        if field not in puzzle:
            errors.append(f"{prefix}: missing field '{field}'")
    if errors:
        return errors

    if puzzle["type"] not in PUZZLE_TYPES:
        errors.append(f"{prefix}: unknown type '{puzzle['type']}'")
    if puzzle["mode"] not in PUZZLE_MODES:
        errors.append(f"{prefix}: unknown mode '{puzzle['mode']}'")
    if puzzle.get("severity", "small") not in SEVERITIES:
        errors.append(f"{prefix}: unknown severity '{puzzle['severity']}'")
    if any(t.startswith(tuple(_LEGACY_OPENING_TAGS)) for t in puzzle.get("tags") or []):
        errors.append(f"{prefix}: opening encoded in tags; re-export to migrate")

    fen = puzzle["fen"]
    try:
        board = chess.Board(fen)
    except ValueError as e:
        errors.append(f"{prefix}: invalid FEN '{fen}': {e}")
        return errors

    best_move = puzzle["bestMove"]
    best_line = puzzle["bestLine"]
    accepted = puzzle["acceptedMoves"]
    if best_move not in accepted:
        errors.append(f"{prefix}: bestMove '{best_move}' missing from acceptedMoves")
    if best_line and best_line[0] != best_move:
        errors.append(f"{prefix}: bestLine does not start with bestMove")

    for move_uci in accepted:
        try:
            move = chess.Move.from_uci(move_uci)
        except ValueError:
            errors.append(f"{prefix}: invalid UCI accepted move '{move_uci}'")
            continue
        if move not in board.legal_moves:
            errors.append(f"{prefix}: illegal accepted move '{move_uci}' (FEN: {fen})")

    # Solution line must be legal in sequence and never stalemate.
    for i, move_uci in enumerate(best_line):
        try:
            move = chess.Move.from_uci(move_uci)
        except ValueError:
            errors.append(f"{prefix}: invalid UCI move '{move_uci}' at step {i}")
            break
        if move not in board.legal_moves:
            errors.append(
                f"{prefix}: illegal move '{move_uci}' at step {i} "
                f"(FEN: {board.fen()})"
            )
            break
        board.push(move)
        if board.is_stalemate():
            errors.append(f"{prefix}: stalemate occurs at step {i} in solution line")
            break

    return errors


def validate_file(filepath: Path | str) -> list[str]:
    """Validate every puzzle in a file (legacy fields are migrated first)."""
    filepath = Path(filepath)
    try:
        items = read_puzzle_dicts(filepath)
    except BlunderMinerError as exc:
        return [str(exc)]
    errors: list[str] = []
    for index, item in enumerate(items):
        errors.extend(validate_puzzle(migrate_legacy_tags(item), filepath.name, index))
    return errors
