"""Tests for the evaluation client: cache, serialization, cancellation, recovery."""

from __future__ import annotations

import asyncio

import chess
import pytest

from conftest import FakeEngine, SCHOLAR_MOVES, fens_for, line

from blunder_miner.errors import EngineUnavailable, EvaluationCancelled, EvaluationError
from blunder_miner.eval_client import EvaluationClient
from blunder_miner.models import Score

START = chess.STARTING_FEN


class TestCache:

    def test_second_request_served_from_cache(self, client_for):
        engine = FakeEngine()
        client = client_for(engine)

        async def run():
            first = await client.evaluate(START, 200)
            second = await client.evaluate(START, 200)
            await client.shutdown()
            return first, second

        first, second = asyncio.run(run())
        assert first == second
        assert len(engine.calls) == 1
        assert client.stats.cache_hits == 1

    def test_budget_is_part_of_the_key(self, client_for):
        engine = FakeEngine()
        client = client_for(engine)

        async def run():
            await client.evaluate(START, 200)
            await client.evaluate(START, 1000)
            await client.evaluate_multi_line(START, 200, 3)
            await client.shutdown()

        asyncio.run(run())
        assert [(budget, lines) for _, budget, lines in engine.calls] == [(200, 1), (1000, 1), (200, 3)]

    def test_multi_line_returns_ranked_lines(self, client_for):
        lines = [
            line(START, Score.cp(30), ["e2e4", "e7e5"], 1),
            line(START, Score.cp(25), ["d2d4", "d7d5"], 2),
            line(START, Score.cp(10), ["g1f3", "g8f6"], 3),
        ]
        client = client_for(FakeEngine({START: lines}))

        async def run():
            result = await client.evaluate_multi_line(START, 200, 2)
            await client.shutdown()
            return result

        result = asyncio.run(run())
        assert [r.best_move for r in result] == ["e2e4", "d2d4"]

    def test_shutdown_clears_cache(self, client_for):
        client = client_for(FakeEngine())

        async def run():
            await client.evaluate(START, 200)
            assert client.cache_size == 1
            await client.shutdown()

        asyncio.run(run())
        assert client.cache_size == 0


class TestSerialization:

    def test_engine_sees_one_request_at_a_time(self, client_for):
        engine = FakeEngine(delay=0.01)
        client = client_for(engine)
        fens = fens_for(SCHOLAR_MOVES)[:5]

        async def run():
            results = await asyncio.gather(*(client.evaluate(f, 100) for f in fens))
            await client.shutdown()
            return results

        results = asyncio.run(run())
        assert [r.fen for r in results] == fens
        assert engine.max_active == 1
        assert [fen for fen, _, _ in engine.calls] == fens

    def test_identical_concurrent_requests_coalesce(self, client_for):
        engine = FakeEngine(delay=0.01)
        client = client_for(engine)

        async def run():
            results = await asyncio.gather(*(client.evaluate(START, 100) for _ in range(4)))
            await client.shutdown()
            return results

        results = asyncio.run(run())
        assert len({r for r in results}) == 1
        assert len(engine.calls) == 1


class TestCancellation:

    def test_cancel_all_resolves_pending_as_cancelled(self, client_for):
        engine = FakeEngine(delay=0.05)
        client = client_for(engine)
        fens = fens_for(SCHOLAR_MOVES)[:3]

        async def run():
            tasks = [asyncio.ensure_future(client.evaluate(f, 100)) for f in fens]
            await asyncio.sleep(0.01)
            assert client.pending_count == 3
            client.cancel_all()
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
            assert client.pending_count == 0
            await client.shutdown()
            return outcomes

        outcomes = asyncio.run(run())
        assert all(isinstance(o, EvaluationCancelled) for o in outcomes)
        # The in-flight request was interrupted; queued ones never reached the engine.
        assert len(engine.calls) == 1

    def test_cancel_all_is_idempotent(self, client_for):
        client = client_for(FakeEngine())

        async def run():
            client.cancel_all()
            client.cancel_all()
            result = await client.evaluate(START, 100)
            await client.shutdown()
            return result

        assert asyncio.run(run()).best_move

    def test_client_usable_after_cancel(self, client_for):
        engine = FakeEngine(delay=0.02)
        client = client_for(engine)

        async def run():
            task = asyncio.ensure_future(client.evaluate(START, 100))
            await asyncio.sleep(0.005)
            client.cancel_all()
            with pytest.raises(EvaluationCancelled):
                await task
            result = await client.evaluate(START, 100)
            await client.shutdown()
            return result

        assert asyncio.run(run()).fen == START

    def test_cancelled_results_are_not_cached(self, client_for):
        engine = FakeEngine(delay=0.02)
        client = client_for(engine)

        async def run():
            task = asyncio.ensure_future(client.evaluate(START, 100))
            await asyncio.sleep(0.005)
            client.cancel_all()
            await asyncio.gather(task, return_exceptions=True)
            return client.cache_size

        assert asyncio.run(run()) == 0


class TestFailures:

    def test_evaluation_error_is_reported_and_not_cached(self, client_for):
        engine = FakeEngine({START: EvaluationError("no analysis")})
        client = client_for(engine)

        async def run():
            with pytest.raises(EvaluationError):
                await client.evaluate(START, 100)
            await client.shutdown()

        asyncio.run(run())
        assert client.stats.failures == 1
        assert client.cache_size == 0

    def test_engine_crash_restarts_engine(self):
        crashing = FakeEngine({START: RuntimeError("broken pipe")})
        healthy = FakeEngine()
        engines = [crashing, healthy]
        client = EvaluationClient(lambda: engines.pop(0))

        async def run():
            with pytest.raises(EngineUnavailable):
                await client.evaluate(START, 100)
            result = await client.evaluate(START, 100)
            await client.shutdown()
            return result

        result = asyncio.run(run())
        assert result.fen == START
        assert crashing.closed
        assert healthy.calls == [(START, 100, 1)]

    def test_factory_failure_surfaces_as_unavailable(self):
        def factory():
            raise EngineUnavailable("Stockfish not found")

        client = EvaluationClient(factory)

        async def run():
            with pytest.raises(EngineUnavailable):
                await client.evaluate(START, 100)
            await client.shutdown()

        asyncio.run(run())

    def test_factory_os_error_surfaces_as_unavailable(self):
        healthy = FakeEngine()
        attempts = []

        def factory():
            attempts.append(1)
            if len(attempts) == 1:
                raise FileNotFoundError("/usr/games/stockfish")
            return healthy

        client = EvaluationClient(factory)

        async def run():
            with pytest.raises(EngineUnavailable, match="cannot start engine"):
                await asyncio.wait_for(client.evaluate(START, 100), timeout=5)
            result = await asyncio.wait_for(client.evaluate(START, 100), timeout=5)
            await client.shutdown()
            return result

        assert asyncio.run(run()).fen == START
        assert len(attempts) == 2

    def test_no_moves_position_fails(self, client_for):
        mated = fens_for(SCHOLAR_MOVES)[-1]
        client = client_for(FakeEngine())

        async def run():
            with pytest.raises(EvaluationError):
                await client.evaluate(mated, 100)
            await client.shutdown()

        asyncio.run(run())


@pytest.mark.e2e
def test_stockfish_evaluates_start_position():
    async def run():
        async with EvaluationClient() as client:
            return await client.evaluate_multi_line(START, 100, 2)

    lines = asyncio.run(run())
    assert 1 <= len(lines) <= 2
    assert lines[0].best_move
    assert lines[0].score is not None
