"""Merging puzzle sets and linking puzzles back to game analysis."""

from __future__ import annotations

from collections import Counter
from typing import Iterable

from blunder_miner.models import GameAnalysis, Puzzle, PuzzleCandidate


def merge(existing: Iterable[Puzzle], new: Iterable[Puzzle]) -> list[Puzzle]:
    """Concatenate, dropping later puzzles whose dedup key was already seen.

    The key is (source_game_id, source_ply, fen). Order is preserved, so
    merge(a, a) == merge(a, []) for any list a.
    """
    seen: set[tuple[str, int, str]] = set()
    merged: list[Puzzle] = []
    for puzzle in [*existing, *new]:
        if puzzle.dedup_key in seen:
            continue
        seen.add(puzzle.dedup_key)
        merged.append(puzzle)
    return merged


def remove_games(puzzles: Iterable[Puzzle], game_ids: Iterable[str]) -> list[Puzzle]:
    drop = set(game_ids)
    return [p for p in puzzles if p.source_game_id not in drop]


def replace_games(existing: Iterable[Puzzle], new: Iterable[Puzzle], game_ids: Iterable[str]) -> list[Puzzle]:
    """Re-analysis: forget the old puzzles of game_ids, then merge in new ones.

    Puzzles of other games are untouched.
    """
    return merge(remove_games(existing, game_ids), new)


def cap_per_game(puzzles: Iterable[Puzzle], limit: int | None) -> list[Puzzle]:
    """Keep at most limit puzzles per source game, in order."""
    if limit is None:
        return list(puzzles)
    counts: Counter[str] = Counter()
    kept: list[Puzzle] = []
    for puzzle in puzzles:
        if counts[puzzle.source_game_id] >= limit:
            continue
        counts[puzzle.source_game_id] += 1
        kept.append(puzzle)
    return kept


def annotate_analysis(
    analysis: GameAnalysis,
    candidates: Iterable[PuzzleCandidate],
    puzzles: Iterable[Puzzle],
) -> GameAnalysis:
    """Mark the move that triggered each puzzle.

    A candidate points at its triggering ply; its puzzle is found by the
    dedup key. Moves without a puzzle are reset, so annotating twice is
    harmless.
    """
    by_key = {p.dedup_key: p for p in puzzles if p.source_game_id == analysis.game_id}
    for move in analysis.moves:
        move.has_puzzle = False
        move.puzzle_id = None
        move.puzzle_mode = None

    for candidate in candidates:
        if candidate.source_game_id != analysis.game_id:
            continue
        puzzle = by_key.get((candidate.source_game_id, candidate.source_ply, candidate.fen))
        move = analysis.move_at(candidate.trigger_ply)
        if puzzle is None or move is None:
            continue
        move.has_puzzle = True
        move.puzzle_id = puzzle.id
        move.puzzle_mode = puzzle.mode
    return analysis
