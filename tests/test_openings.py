"""Tests for opening identification.

Covers:
- Trie-based identification (deepest match, out-of-book, empty)
- PGN headers taking precedence over the trie
- Loading a trie from JSON, with graceful degradation
"""

from __future__ import annotations

import json

from blunder_miner.openings import MAX_BOOK_PLIES, OpeningBook, build_trie, split_opening_name

ITALIAN = ["e2e4", "e7e5", "g1f3", "b8c6", "f1c4"]


class TestIdentify:

    def test_deepest_match_wins(self):
        info = OpeningBook().identify(ITALIAN + ["f8c5", "c2c3"])
        assert info.code == "C50"
        assert info.name == "Italian Game"
        assert info.variation == "Giuoco Piano"
        assert info.source == "book"

    def test_stops_at_first_unknown_move(self):
        info = OpeningBook().identify(["e2e4", "e7e5", "a2a3", "g8f6"])
        assert info.code == "C20"
        assert info.variation == "Open Game"

    def test_out_of_book(self):
        assert OpeningBook().identify(["h2h4"]) is None

    def test_empty_move_list(self):
        assert OpeningBook().identify([]) is None

    def test_only_first_plies_considered(self):
        moves = " ".join(["g1f3", "g8f6", "f3g1", "f6g8"] * 5)
        book = OpeningBook(entries=[("A04", "Zukertort Opening", "g1f3"), ("X99", "Shuffle", moves)])
        assert book.identify(moves.split()).code == "A04"
        assert len(moves.split()) > MAX_BOOK_PLIES


class TestLookup:

    def test_headers_win(self):
        headers = {"ECO": "C57", "Opening": "Italian Game: Two Knights Defense", "Variation": "Fried Liver Attack"}
        info = OpeningBook().lookup(headers, ITALIAN)
        assert (info.code, info.name, info.variation) == ("C57", "Italian Game", "Fried Liver Attack")
        assert info.source == "pgn"

    def test_placeholder_headers_ignored(self):
        info = OpeningBook().lookup({"ECO": "?", "Opening": ""}, ITALIAN)
        assert info.code == "C50"
        assert info.source == "book"

    def test_unknown(self):
        info = OpeningBook().lookup(None, ["h2h4"])
        assert info.code is None
        assert info.source == "unknown"


class TestTrieFile:

    def test_loads_json_trie(self, tmp_path):
        path = tmp_path / "trie.json"
        path.write_text(json.dumps(build_trie([("B20", "Sicilian Defense", "e2e4 c7c5")])), encoding="utf-8")
        book = OpeningBook(trie_path=str(path))
        assert book.identify(["e2e4", "c7c5"]).code == "B20"
        # Entries not in the file are unknown.
        assert book.identify(["d2d4"]) is None

    def test_missing_file_degrades(self, tmp_path):
        book = OpeningBook(trie_path=str(tmp_path / "nope.json"))
        assert book.lookup({}, ITALIAN).source == "unknown"

    def test_corrupt_file_degrades(self, tmp_path):
        path = tmp_path / "trie.json"
        path.write_text("{", encoding="utf-8")
        assert OpeningBook(trie_path=str(path)).identify(ITALIAN) is None


def test_split_opening_name():
    assert split_opening_name("Sicilian Defense: Najdorf Variation") == ("Sicilian Defense", "Najdorf Variation")
    assert split_opening_name("Sicilian Defense") == ("Sicilian Defense", None)
    assert split_opening_name(None) == (None, None)
