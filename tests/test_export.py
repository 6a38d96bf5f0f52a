"""Tests for the puzzle file format, legacy migration and validation."""

from __future__ import annotations

import json

import pytest

from conftest import SCHOLAR_MOVES, fens_for

from blunder_miner.errors import BlunderMinerError
from blunder_miner.export import (
    load_puzzle_file,
    migrate_legacy_tags,
    puzzle_from_dict,
    puzzle_to_dict,
    read_puzzle_dicts,
    validate_file,
    validate_puzzle,
    write_puzzle_file,
)
from blunder_miner.models import OpeningInfo, Puzzle, Score

FEN = fens_for(SCHOLAR_MOVES)[5]


def _puzzle(**overrides):
    fields = dict(
        id="puz-avoid-0123456789ab",
        fen=FEN,
        best_move="g7g6",
        best_line=["g7g6", "h5f3", "g8f6"],
        accepted_moves=["g7g6", "d8e7"],
        score=Score.cp(40),
        source_game_id="abcd1234",
        source_ply=5,
        type="blunder",
        mode="avoidBlunder",
        severity="big",
        tags=["avoidBlunder", "opening"],
        opening=OpeningInfo(code="C20", name="King's Pawn Game", variation=None, source="pgn"),
        label="Find the best move (avoid the blunder)",
        side_to_move="b",
        provider="lichess",
        played_at="2024-03-01",
    )
    fields.update(overrides)
    return Puzzle(**fields)


class TestSchema:

    def test_camel_case_keys(self):
        data = puzzle_to_dict(_puzzle())
        assert data["bestMove"] == "g7g6"
        assert data["sourceGameId"] == "abcd1234"
        assert data["score"] == {"type": "cp", "value": 40}
        assert data["opening"] == {"code": "C20", "name": "King's Pawn Game", "variation": None}
        assert "best_move" not in data

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "out" / "puzzles.json"
        puzzles = [_puzzle(), _puzzle(id="puz-punish-ba9876543210", score=Score.mate(2), mode="punishBlunder")]
        write_puzzle_file(path, puzzles)
        assert load_puzzle_file(path) == puzzles
        assert not path.with_suffix(".tmp").exists()


class TestLegacyMigration:

    LEGACY = {
        "id": "old-1",
        "fen": FEN,
        "bestMoveUci": "g7g6",
        "bestLineUci": ["g7g6", "h5f3"],
        "sourceGameId": "g1",
        "sourcePly": 5,
        "type": "blunder",
        "mode": "avoidBlunder",
        "tags": ["opening", "eco:C20", "opening:King's Pawn Game", "openingVar:Open Game"],
    }

    def test_opening_tags_moved(self):
        migrated = migrate_legacy_tags(self.LEGACY)
        assert migrated["tags"] == ["opening"]
        assert migrated["opening"] == {"code": "C20", "name": "King's Pawn Game", "variation": "Open Game"}
        assert migrated["bestMove"] == "g7g6"
        assert migrated["bestLine"] == ["g7g6", "h5f3"]
        assert migrated["acceptedMoves"] == ["g7g6"]

    def test_input_untouched(self):
        before = json.dumps(self.LEGACY, sort_keys=True)
        migrate_legacy_tags(self.LEGACY)
        assert json.dumps(self.LEGACY, sort_keys=True) == before

    def test_existing_opening_wins(self):
        data = dict(self.LEGACY, opening={"code": "C50", "name": None, "variation": None})
        migrated = migrate_legacy_tags(data)
        assert migrated["opening"]["code"] == "C50"
        assert migrated["opening"]["name"] == "King's Pawn Game"

    def test_legacy_puzzle_loads(self):
        puzzle = puzzle_from_dict(self.LEGACY)
        assert puzzle.best_move == "g7g6"
        assert puzzle.opening.code == "C20"
        assert puzzle.side_to_move == "b"
        assert puzzle.severity == "small"


class TestValidation:

    def test_clean_puzzle(self):
        assert validate_puzzle(puzzle_to_dict(_puzzle()), "p.json", 0) == []

    def test_missing_fields(self):
        errors = validate_puzzle({"id": "x"}, "p.json", 3)
        assert "p.json[3]: missing field 'fen'" in errors

    def test_best_move_not_accepted(self):
        data = puzzle_to_dict(_puzzle(accepted_moves=["d8e7"]))
        assert any("missing from acceptedMoves" in e for e in validate_puzzle(data, "p.json", 0))

    def test_illegal_line(self):
        data = puzzle_to_dict(_puzzle(best_line=["g7g6", "h5h8"]))
        assert any("illegal move 'h5h8' at step 1" in e for e in validate_puzzle(data, "p.json", 0))

    def test_illegal_accepted_move(self):
        data = puzzle_to_dict(_puzzle(accepted_moves=["g7g6", "e8e6"]))
        assert any("illegal accepted move 'e8e6'" in e for e in validate_puzzle(data, "p.json", 0))

    def test_unknown_enums(self):
        data = puzzle_to_dict(_puzzle(type="oops", mode="avoid", severity="huge"))
        assert len(validate_puzzle(data, "p.json", 0)) == 3

    def test_bad_fen(self):
        data = puzzle_to_dict(_puzzle(fen="not a fen"))
        assert any("invalid FEN" in e for e in validate_puzzle(data, "p.json", 0))

    def test_stalemating_line(self):
        fen = "k7/8/8/8/8/8/1Q6/7K w - - 0 1"
        data = puzzle_to_dict(_puzzle(fen=fen, best_move="b2b6", best_line=["b2b6"], accepted_moves=["b2b6"]))
        assert any("stalemate occurs at step 0" in e for e in validate_puzzle(data, "p.json", 0))

    def test_validate_file(self, tmp_path):
        path = tmp_path / "puzzles.json"
        good = puzzle_to_dict(_puzzle())
        bad = dict(good, bestLine=["e2e4"])
        path.write_text(json.dumps([good, bad]), encoding="utf-8")
        errors = validate_file(path)
        assert len(errors) >= 1
        assert all(e.startswith("puzzles.json[1]") for e in errors)


class TestCorruptFiles:

    def test_missing_file_is_empty(self, tmp_path):
        assert read_puzzle_dicts(tmp_path / "nope.json") == []

    def test_bad_json_raises(self, tmp_path):
        path = tmp_path / "puzzles.json"
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(BlunderMinerError):
            load_puzzle_file(path)

    def test_malformed_record_names_its_index(self, tmp_path):
        path = tmp_path / "puzzles.json"
        good = puzzle_to_dict(_puzzle())
        path.write_text(json.dumps([good, {"id": "x", "fen": FEN}]), encoding="utf-8")
        with pytest.raises(BlunderMinerError, match=r"puzzles\.json\[1\]"):
            load_puzzle_file(path)

    def test_non_object_record_raises(self, tmp_path):
        path = tmp_path / "puzzles.json"
        path.write_text('["not a puzzle"]', encoding="utf-8")
        with pytest.raises(BlunderMinerError, match=r"\[0\]"):
            load_puzzle_file(path)

    def test_not_a_list_raises(self, tmp_path):
        path = tmp_path / "puzzles.json"
        path.write_text('{"puzzles": []}', encoding="utf-8")
        with pytest.raises(BlunderMinerError):
            read_puzzle_dicts(path)

    def test_validate_reports_unreadable_file(self, tmp_path):
        path = tmp_path / "puzzles.json"
        path.write_text("[{", encoding="utf-8")
        errors = validate_file(path)
        assert len(errors) == 1
        assert "cannot read" in errors[0]
