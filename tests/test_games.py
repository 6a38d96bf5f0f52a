"""Tests for loading games from PGN and zstd archives."""

from __future__ import annotations

import io

import zstandard

from conftest import SCHOLAR_PGN

from blunder_miner.games import Manifest, game_files, iter_games, load_games

SECOND_PGN = """[Event "Live Chess"]
[Site "Chess.com"]
[White "carol"]
[Black "Alice"]
[WhiteElo "1500"]
[BlackElo "not rated"]
[Result "0-1"]

1. f3 e5 2. g4 Qh4# 0-1
"""


def test_game_fields_from_headers():
    (game,) = iter_games(io.StringIO(SCHOLAR_PGN))
    assert game.id == "abcd1234"
    assert game.provider == "lichess"
    assert game.played_at == "2024-03-01"
    assert game.url == "https://lichess.org/abcd1234"
    assert (game.white.name, game.black.name) == ("alice", "bob")
    assert "Qxf7#" in game.pgn


def test_fallback_id_and_provider():
    games = list(iter_games(io.StringIO(SCHOLAR_PGN + "\n" + SECOND_PGN), source="mixed"))
    assert [g.id for g in games] == ["abcd1234", "mixed-1"]
    assert games[1].provider == "chesscom"
    assert games[1].url is None
    assert games[1].white.rating == 1500
    assert games[1].black.rating is None


def test_game_id_header_wins():
    pgn = SCHOLAR_PGN.replace('[Site', '[GameId "custom-7"]\n[Site')
    (game,) = iter_games(io.StringIO(pgn))
    assert game.id == "custom-7"


def test_load_plain_and_compressed(tmp_path):
    plain = tmp_path / "alice_2024-03.pgn"
    plain.write_text(SCHOLAR_PGN + "\n" + SECOND_PGN, encoding="utf-8")
    packed = tmp_path / "alice_2024-04.pgn.zst"
    packed.write_bytes(zstandard.ZstdCompressor().compress(SECOND_PGN.encode("utf-8")))

    assert [g.id for g in load_games(plain)] == ["abcd1234", "alice_2024-03-1"]
    (game,) = load_games(packed)
    assert game.id == "alice_2024-04-0"
    assert game.black.name == "Alice"


def test_game_files_filters_suffixes(tmp_path):
    for name in ("b.pgn", "a.pgn.zst", "notes.txt", "c.json"):
        (tmp_path / name).write_text("", encoding="utf-8")
    assert [p.name for p in game_files(tmp_path)] == ["a.pgn.zst", "b.pgn"]
    assert game_files(tmp_path / "missing") == []


class TestManifest:

    def test_unprocessed_and_save(self, tmp_path):
        games_dir = tmp_path / "games"
        games_dir.mkdir()
        for name in ("one.pgn", "two.pgn"):
            (games_dir / name).write_text(SECOND_PGN, encoding="utf-8")
        manifest_path = tmp_path / "puzzles" / "manifest.json"

        manifest = Manifest(manifest_path)
        assert [p.name for p in manifest.unprocessed(games_dir)] == ["one.pgn", "two.pgn"]
        manifest.mark([games_dir / "one.pgn"])
        manifest.save()

        reloaded = Manifest(manifest_path)
        assert reloaded.processed_files == {"one.pgn"}
        assert [p.name for p in reloaded.unprocessed(games_dir)] == ["two.pgn"]

    def test_unreadable_manifest_starts_empty(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text("{broken", encoding="utf-8")
        assert Manifest(path).processed_files == set()
