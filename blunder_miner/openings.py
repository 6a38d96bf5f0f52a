"""Opening names for puzzles.

Lookup order: the game's own PGN headers (ECO, Opening, Variation), then
the deepest match of the game's first moves in a UCI move trie. The trie
is built from a small built-in book, or loaded from a JSON file of the
same shape:

    {"e2e4": {"_eco": "B00", "_name": "King's Pawn Game",
              "c7c5": {"_eco": "B20", "_name": "Sicilian Defense"}}}

Usage:
    book = OpeningBook()
    info = book.lookup(headers, ["e2e4", "c7c5"])
"""

from __future__ import annotations

import json
import logging
import os

from blunder_miner.models import OpeningInfo

logger = logging.getLogger(__name__)

# Only the first moves of a game are looked up.
MAX_BOOK_PLIES = 16

_BUILTIN_BOOK: list[tuple[str, str, str]] = [
    ("B00", "King's Pawn Game", "e2e4"),
    ("C20", "King's Pawn Game: Open Game", "e2e4 e7e5"),
    ("C23", "Bishop's Opening", "e2e4 e7e5 f1c4"),
    ("C30", "King's Gambit", "e2e4 e7e5 f2f4"),
    ("C40", "King's Knight Opening", "e2e4 e7e5 g1f3"),
    ("C41", "Philidor Defense", "e2e4 e7e5 g1f3 d7d6"),
    ("C42", "Petrov's Defense", "e2e4 e7e5 g1f3 g8f6"),
    ("C44", "Scotch Game", "e2e4 e7e5 g1f3 b8c6 d2d4"),
    ("C47", "Four Knights Game", "e2e4 e7e5 g1f3 b8c6 b1c3 g8f6"),
    ("C50", "Italian Game", "e2e4 e7e5 g1f3 b8c6 f1c4"),
    ("C50", "Italian Game: Giuoco Piano", "e2e4 e7e5 g1f3 b8c6 f1c4 f8c5"),
    ("C55", "Italian Game: Two Knights Defense", "e2e4 e7e5 g1f3 b8c6 f1c4 g8f6"),
    ("C60", "Ruy Lopez", "e2e4 e7e5 g1f3 b8c6 f1b5"),
    ("C65", "Ruy Lopez: Berlin Defense", "e2e4 e7e5 g1f3 b8c6 f1b5 g8f6"),
    ("C70", "Ruy Lopez: Morphy Defense", "e2e4 e7e5 g1f3 b8c6 f1b5 a7a6"),
    ("B20", "Sicilian Defense", "e2e4 c7c5"),
    ("B90", "Sicilian Defense: Najdorf Variation",
     "e2e4 c7c5 g1f3 d7d6 d2d4 c5d4 f3d4 g8f6 b1c3 a7a6"),
    ("C00", "French Defense", "e2e4 e7e6"),
    ("B10", "Caro-Kann Defense", "e2e4 c7c6"),
    ("B01", "Scandinavian Defense", "e2e4 d7d5"),
    ("B02", "Alekhine Defense", "e2e4 g8f6"),
    ("B07", "Pirc Defense", "e2e4 d7d6 d2d4 g8f6"),
    ("A40", "Queen's Pawn Game", "d2d4"),
    ("D00", "Queen's Pawn Game: Closed", "d2d4 d7d5"),
    ("D02", "London System", "d2d4 d7d5 g1f3 g8f6 c1f4"),
    ("D06", "Queen's Gambit", "d2d4 d7d5 c2c4"),
    ("D10", "Slav Defense", "d2d4 d7d5 c2c4 c7c6"),
    ("D20", "Queen's Gambit Accepted", "d2d4 d7d5 c2c4 d5c4"),
    ("D30", "Queen's Gambit Declined", "d2d4 d7d5 c2c4 e7e6"),
    ("A45", "Indian Defense", "d2d4 g8f6"),
    ("E20", "Nimzo-Indian Defense", "d2d4 g8f6 c2c4 e7e6 b1c3 f8b4"),
    ("E60", "King's Indian Defense", "d2d4 g8f6 c2c4 g7g6"),
    ("A80", "Dutch Defense", "d2d4 f7f5"),
    ("A10", "English Opening", "c2c4"),
    ("A04", "Zukertort Opening", "g1f3"),
]


def split_opening_name(full_name: str | None) -> tuple[str | None, str | None]:
    """Split "Family: Variation" into its two halves."""
    if not full_name:
        return None, None
    if ":" not in full_name:
        return full_name.strip(), None
    family, variation = full_name.split(":", 1)
    return family.strip(), variation.strip() or None


def build_trie(entries: list[tuple[str, str, str]]) -> dict:
    """Build a UCI move trie from (eco, name, space-separated UCI moves)."""
    trie: dict = {}
    for eco, name, moves in entries:
        node = trie
        for move in moves.split():
            node = node.setdefault(move, {})
        node["_eco"] = eco
        node["_name"] = name
    return trie


def _header(headers: dict, key: str) -> str | None:
    value = (headers.get(key) or "").strip()
    return None if value in ("", "?") else value


class OpeningBook:
    """Opening identification from PGN headers or a move trie."""

    def __init__(self, entries: list[tuple[str, str, str]] | None = None, trie_path: str | None = None):
        if trie_path is not None:
            self._trie = self._load_trie(trie_path)
        else:
            self._trie = build_trie(entries if entries is not None else _BUILTIN_BOOK)

    @staticmethod
    def _load_trie(path: str) -> dict:
        """Load a trie JSON file. Returns an empty trie if unavailable."""
        if not os.path.exists(path):
            logger.warning("Opening trie %s not found; openings will be unknown", path)
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Could not read opening trie %s: %s", path, exc)
            return {}

    def identify(self, uci_moves: list[str]) -> OpeningInfo | None:
        """Deepest named trie node along the first moves, or None."""
        node = self._trie
        best: OpeningInfo | None = None
        for move in uci_moves[:MAX_BOOK_PLIES]:
            if move not in node:
                break
            node = node[move]
            if "_eco" in node and "_name" in node:
                name, variation = split_opening_name(node["_name"])
                best = OpeningInfo(code=node["_eco"], name=name, variation=variation, source="book")
        return best

    def lookup(self, headers: dict | None, uci_moves: list[str]) -> OpeningInfo:
        """Opening for a game; PGN headers win over the trie."""
        headers = headers or {}
        eco = _header(headers, "ECO")
        full_name = _header(headers, "Opening")
        if eco or full_name:
            name, variation = split_opening_name(full_name)
            variation = _header(headers, "Variation") or variation
            return OpeningInfo(code=eco, name=name, variation=variation, source="pgn")

        return self.identify(uci_moves) or OpeningInfo()
