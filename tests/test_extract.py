"""End-to-end extraction runs against a scripted engine."""

from __future__ import annotations

import asyncio
import io
from dataclasses import replace

from conftest import FakeEngine, SCHOLAR_MOVES, SCHOLAR_PGN, fens_for, line

from blunder_miner.classification import ClassificationThresholds
from blunder_miner.config import ExtractOptions
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.extract import ExtractionSession, ExtractionState, extract, user_color_for_game
from blunder_miner.games import iter_games
from blunder_miner.models import Game, Player, Score

FENS = fens_for(SCHOLAR_MOVES)
GAME = next(iter_games(io.StringIO(SCHOLAR_PGN)))
OPTIONS = ExtractOptions(opening_skip_plies=0, require_tactical=False)
BOB = {"lichess": "bob"}


def _script():
    # 3...Nf6 walks into mate; 3...g6 holds.
    return {
        FENS[5]: [line(FENS[5], Score.cp(-30), ["g7g6", "h5f3", "g8f6", "f3f6"])],
        FENS[6]: [line(FENS[6], Score.mate(1), ["h5f7"])],
    }


def _extract(games, usernames=BOB, options=OPTIONS, engine=None, **kwargs):
    engine = engine or FakeEngine(_script())
    client = EvaluationClient(lambda: engine)

    async def run():
        try:
            return await extract(games, [g.id for g in games], client, usernames, options=options, **kwargs)
        finally:
            await client.shutdown()

    return asyncio.run(run())


def test_blunder_becomes_avoid_puzzle():
    result = _extract([GAME])

    assert not result.cancelled
    assert result.failed_games == []
    (puzzle,) = result.puzzles
    assert puzzle.mode == "avoidBlunder"
    assert puzzle.type == "blunder"
    assert (puzzle.source_game_id, puzzle.source_ply) == ("abcd1234", 5)
    assert puzzle.fen == FENS[5]
    assert puzzle.best_move == "g7g6"
    assert puzzle.best_line == ["g7g6", "h5f3", "g8f6", "f3f6"]
    assert puzzle.provider == "lichess"
    assert puzzle.opening.code == "C20"
    assert result.analysis_by_game is None


def test_winner_gets_no_puzzles():
    # White's only bad move would be Black's to punish; White never erred.
    result = _extract([GAME], usernames={"lichess": "alice"})
    assert result.puzzles == []


def test_username_match_ignores_case():
    assert user_color_for_game(GAME, {"lichess": "  BOB "}) == "b"
    assert user_color_for_game(GAME, {"lichess": "Alice"}) == "w"
    assert user_color_for_game(GAME, {"chesscom": "bob"}) is None


def test_games_without_the_user_are_skipped():
    result = _extract([GAME], usernames={"lichess": "carol"})
    assert result.puzzles == []
    assert result.skipped_games == ["abcd1234"]


def test_unselected_games_ignored():
    engine = FakeEngine(_script())
    client = EvaluationClient(lambda: engine)

    async def run():
        result = await extract([GAME], [], client, BOB, options=OPTIONS)
        await client.shutdown()
        return result

    assert asyncio.run(run()).puzzles == []
    assert engine.calls == []


def test_unreadable_game_reported_and_others_continue():
    broken = Game(
        id="broken", pgn='[SetUp "1"]\n[FEN "not a position"]\n[White "bob"]\n[Black "x"]\n\n*\n',
        white=Player("bob"), black=Player("x"), provider="lichess",
    )
    result = _extract([broken, GAME])
    assert result.failed_games == ["broken"]
    assert [p.source_game_id for p in result.puzzles] == ["abcd1234"]


def test_full_analysis_links_puzzle():
    result = _extract([GAME], options=replace(OPTIONS, return_full_analysis=True))
    analysis = result.analysis_by_game["abcd1234"]
    blunder = analysis.move_at(5)
    assert blunder.classification == "blunder"
    assert blunder.has_puzzle
    assert blunder.puzzle_id == result.puzzles[0].id
    assert [m.ply for m in analysis.moves if m.has_puzzle] == [5]


def test_custom_classification_thresholds():
    lenient = ClassificationThresholds(mistake=1_000_000)
    options = replace(OPTIONS, return_full_analysis=True, classification_thresholds=lenient)
    analysis = _extract([GAME], options=options).analysis_by_game["abcd1234"]
    assert analysis.move_at(5).classification == "mistake"


def test_existing_puzzles_of_reanalysed_games_replaced():
    first = _extract([GAME]).puzzles
    stale = replace(first[0], source_ply=1, id="stale")
    other = replace(first[0], source_game_id="zzz", id="other")
    result = _extract([GAME], existing=[stale, other])
    assert [p.id for p in result.puzzles] == ["other", first[0].id]


def test_repeat_runs_are_identical():
    a = _extract([GAME]).puzzles
    b = _extract([GAME]).puzzles
    assert [(p.id, p.best_line, p.accepted_moves) for p in a] == [(p.id, p.best_line, p.accepted_moves) for p in b]


def test_progress_reaches_every_phase():
    events = []
    _extract([GAME], on_progress=events.append)
    phases = [e.phase for e in events]
    assert phases[0] == "evaluating"
    assert "building" in phases
    assert all(e.game_id == "abcd1234" and e.game_count == 1 for e in events)


def test_cancel_from_progress_callback():
    engine = FakeEngine(_script())
    client = EvaluationClient(lambda: engine)
    session = ExtractionSession(client, OPTIONS)

    def on_progress(event):
        if event.ply >= 2:
            session.cancel()

    async def run():
        result = await session.run([GAME], [GAME.id], BOB, on_progress)
        await client.shutdown()
        return result

    result = asyncio.run(run())
    assert result.cancelled
    assert result.puzzles == []
    assert session.state == ExtractionState.CANCELLED
    assert len(engine.calls) < len(SCHOLAR_MOVES)



def test_cancel_keeps_only_completed_games():
    second = replace(GAME, id="game2")
    engine = FakeEngine(_script())
    client = EvaluationClient(lambda: engine)
    session = ExtractionSession(client, OPTIONS)
    existing = [replace(p, id="old-" + p.id, source_game_id="game2") for p in _extract([GAME]).puzzles]

    def on_progress(event):
        if event.game_index == 1:
            session.cancel()

    async def run():
        result = await session.run([GAME, second], [GAME.id, second.id], BOB, on_progress, existing=existing)
        await client.shutdown()
        return result

    result = asyncio.run(run())
    assert result.cancelled
    # The interrupted game keeps its stored puzzles; only the finished game is replaced.
    assert sorted(p.source_game_id for p in result.puzzles) == ["abcd1234", "game2"]
    assert [p.id for p in result.puzzles if p.source_game_id == "game2"] == [existing[0].id]
    (mined,) = [p for p in result.puzzles if p.source_game_id == "abcd1234"]
    assert mined.source_ply == 5

def test_session_done_state():
    engine = FakeEngine(_script())
    client = EvaluationClient(lambda: engine)
    session = ExtractionSession(client, {"openingSkipPlies": 0, "requireTactical": "false"})

    async def run():
        result = await session.run([GAME], [GAME.id], BOB)
        await client.shutdown()
        return result

    assert len(asyncio.run(run()).puzzles) == 1
    assert session.state == ExtractionState.DONE
