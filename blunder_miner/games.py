"""Loading finished games from PGN files and zstd-compressed PGN archives.

Also keeps a manifest of processed files so repeated runs over a games
directory only mine new files.

Usage:
    games = load_games(Path("data/games/lichess_alice_2024-01.pgn.zst"))
"""

from __future__ import annotations

import io
import json
import logging
import os
from pathlib import Path
from typing import Iterator, TextIO

import chess.pgn
import zstandard

from blunder_miner.models import Game, Player

logger = logging.getLogger(__name__)

GAME_SUFFIXES = (".pgn", ".pgn.zst")


def _provider_for(site: str) -> str:
    site = site.lower()
    if "lichess.org" in site:
        return "lichess"
    if "chess.com" in site:
        return "chesscom"
    return "pgn"


def _game_id(headers: chess.pgn.Headers, source: str, index: int) -> str:
    """Stable id: GameId header, then the last part of a Site URL, then file+index."""
    explicit = headers.get("GameId", "").strip()
    if explicit:
        return explicit
    site = headers.get("Site", "").strip()
    if site.startswith("http"):
        tail = site.rstrip("/").rsplit("/", 1)[-1]
        if tail:
            return tail
    return f"{source}-{index}"


def _played_at(headers: chess.pgn.Headers) -> str | None:
    date = headers.get("UTCDate") or headers.get("Date") or ""
    if not date or "?" in date:
        return None
    played = date.replace(".", "-")
    time = headers.get("UTCTime", "")
    if time and "?" not in time:
        played = f"{played}T{time}Z"
    return played


def _rating(value: str | None) -> int | None:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def game_from_pgn(game: chess.pgn.Game, source: str, index: int) -> Game:
    headers = game.headers
    exporter = chess.pgn.StringExporter(headers=True, variations=False, comments=False)
    site = headers.get("Site", "")
    return Game(
        id=_game_id(headers, source, index),
        pgn=game.accept(exporter),
        white=Player(headers.get("White", "?"), _rating(headers.get("WhiteElo"))),
        black=Player(headers.get("Black", "?"), _rating(headers.get("BlackElo"))),
        provider=_provider_for(site),
        played_at=_played_at(headers),
        url=site if site.startswith("http") else None,
    )


def iter_games(handle: TextIO, source: str = "pgn") -> Iterator[Game]:
    """Yield every game in a PGN text stream."""
    index = 0
    while True:
        game = chess.pgn.read_game(handle)
        if game is None:
            return
        if game.errors:
            logger.warning("%s game %d: %s", source, index, game.errors[0])
        yield game_from_pgn(game, source, index)
        index += 1


def _source_name(path: Path) -> str:
    name = path.name
    for suffix in GAME_SUFFIXES[::-1]:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return path.stem


def load_games(path: Path | str) -> list[Game]:
    """Read all games from a .pgn file or a .pgn.zst archive."""
    path = Path(path)
    source = _source_name(path)
    if path.name.endswith(".zst"):
        with open(path, "rb") as f:
            dctx = zstandard.ZstdDecompressor()
            reader = dctx.stream_reader(f)
            text = io.TextIOWrapper(reader, encoding="utf-8")
            return list(iter_games(text, source))
    with open(path, encoding="utf-8") as f:
        return list(iter_games(f, source))


def game_files(games_dir: Path | str) -> list[Path]:
    games_dir = Path(games_dir)
    if not games_dir.exists():
        return []
    return sorted(p for p in games_dir.iterdir() if p.name.endswith(GAME_SUFFIXES))


class Manifest:
    """Names of game files already mined, stored next to the puzzles."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.processed_files: set[str] = set()
        if self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as f:
                    self.processed_files = set(json.load(f).get("processed_files", []))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Ignoring unreadable manifest %s: %s", self.path, exc)

    def unprocessed(self, games_dir: Path | str) -> list[Path]:
        return [p for p in game_files(games_dir) if p.name not in self.processed_files]

    def mark(self, files: list[Path]) -> None:
        self.processed_files.update(p.name for p in files)

    def save(self) -> None:
        """Save the manifest atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"processed_files": sorted(self.processed_files)}, f, indent=2, ensure_ascii=False)
        os.replace(str(tmp), str(self.path))
