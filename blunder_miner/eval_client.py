"""Serialized, cached access to a single evaluation engine.

Every caller goes through one asyncio.Queue drained by one worker task,
so the engine only ever sees one request at a time. Requests live in a
results table keyed by request id until they resolve; cancel_all()
walks that table and resolves everything still open with
EvaluationCancelled.

Usage:
    async with EvaluationClient(StockfishEngine) as client:
        result = await client.evaluate(fen, 200)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from blunder_miner.engine import EvaluationEngine, StockfishEngine
from blunder_miner.errors import (
    EngineUnavailable,
    EvaluationCancelled,
    EvaluationError,
    IllegalPositionOrMove,
)
from blunder_miner.models import EvaluationResult

logger = logging.getLogger(__name__)

CacheKey = tuple[str, int, int]


@dataclass
class ClientStats:
    requests: int = 0
    cache_hits: int = 0
    engine_calls: int = 0
    cancelled: int = 0
    failures: int = 0


@dataclass
class _Request:
    id: str
    key: CacheKey
    future: asyncio.Future = field(repr=False)

    @property
    def fen(self) -> str:
        return self.key[0]

    @property
    def budget_ms(self) -> int:
        return self.key[1]

    @property
    def lines(self) -> int:
        return self.key[2]


def _consume_exception(future: asyncio.Future) -> None:
    # Keeps asyncio from warning about futures nobody awaited any more.
    if not future.cancelled():
        future.exception()


class EvaluationClient:
    """Queue, cache and cancellation in front of an EvaluationEngine."""

    def __init__(self, engine_factory: Callable[[], EvaluationEngine] | None = None) -> None:
        """Create a client; the engine is built on the first request.

        Args:
            engine_factory: Zero-argument callable returning a fresh
                EvaluationEngine. Called again after an engine failure.
                Defaults to StockfishEngine.
        """
        self._engine_factory = engine_factory or StockfishEngine
        self._engine: EvaluationEngine | None = None
        self._cache: dict[CacheKey, tuple[EvaluationResult, ...]] = {}
        self._results: dict[str, _Request] = {}
        self._by_key: dict[CacheKey, str] = {}
        self._queue: asyncio.Queue[_Request] | None = None
        self._worker: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._current: asyncio.Future | None = None
        self.stats = ClientStats()

    async def __aenter__(self) -> EvaluationClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # ── Public API ──────────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        """Requests queued or in flight."""
        return len(self._results)

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def evaluate(self, fen: str, budget_ms: int) -> EvaluationResult:
        """Best line for fen at the given search budget.

        Raises:
            EvaluationCancelled: If cancel_all() discarded the request.
            EvaluationError: If the engine failed on this request.
        """
        results = await self._submit(fen, budget_ms, 1)
        return results[0]

    async def evaluate_multi_line(self, fen: str, budget_ms: int, line_count: int) -> list[EvaluationResult]:
        """Up to line_count ranked lines for fen, best first."""
        return list(await self._submit(fen, budget_ms, max(1, line_count)))

    def cancel_all(self) -> None:
        """Resolve every queued and in-flight request as cancelled.

        Safe to call repeatedly; the client stays usable afterwards.
        """
        open_requests = [r for r in self._results.values() if not r.future.done()]
        for request in open_requests:
            request.future.set_exception(EvaluationCancelled(f"request {request.id} cancelled"))
        self.stats.cancelled += len(open_requests)
        self._results.clear()
        self._by_key.clear()

        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
        if self._current is not None and not self._current.done():
            self._current.cancel()
        if open_requests:
            logger.debug("Cancelled %d evaluation request(s)", len(open_requests))

    async def shutdown(self) -> None:
        """Cancel everything, stop the worker, close the engine, drop the cache."""
        self.cancel_all()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        self._loop = None
        await self._drop_engine()
        self._cache.clear()

    # ── Internals ───────────────────────────────────────────────────

    def _ensure_worker(self) -> asyncio.Queue[_Request]:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # A new event loop: state from the old one cannot be awaited.
            self._results.clear()
            self._by_key.clear()
            self._queue = None
            self._worker = None
            self._loop = loop
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run())
        return self._queue

    async def _submit(self, fen: str, budget_ms: int, lines: int) -> tuple[EvaluationResult, ...]:
        key: CacheKey = (fen, int(budget_ms), int(lines))
        self.stats.requests += 1

        cached = self._cache.get(key)
        if cached is not None:
            self.stats.cache_hits += 1
            return cached

        queue = self._ensure_worker()
        request_id = self._by_key.get(key)
        if request_id is not None and request_id in self._results:
            request = self._results[request_id]
        else:
            future = self._loop.create_future()
            future.add_done_callback(_consume_exception)
            request = _Request(id=uuid.uuid4().hex, key=key, future=future)
            self._results[request.id] = request
            self._by_key[key] = request.id
            queue.put_nowait(request)

        # Shielded so one impatient caller cannot cancel a shared request.
        return await asyncio.shield(request.future)

    def _forget(self, request: _Request) -> None:
        self._results.pop(request.id, None)
        if self._by_key.get(request.key) == request.id:
            del self._by_key[request.key]

    async def _get_engine(self) -> EvaluationEngine:
        if self._engine is None:
            self._engine = self._engine_factory()
        return self._engine

    async def _drop_engine(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            await engine.close()
        except Exception as exc:  # engine is already broken; closing is best effort
            logger.debug("Ignoring error while closing engine: %s", exc)

    async def _run(self) -> None:
        """Single consumer: one engine call at a time, in queue order."""
        assert self._queue is not None
        queue = self._queue
        while True:
            request = await queue.get()
            if request.future.done():
                self._forget(request)
                continue

            try:
                engine = await self._get_engine()
            except EvaluationError as exc:
                self._fail(request, exc)
                continue
            except Exception as exc:
                self._fail(request, EngineUnavailable(f"cannot start engine: {exc!r}"))
                continue

            self.stats.engine_calls += 1
            call = asyncio.ensure_future(
                engine.analyse(request.fen, request.budget_ms, request.lines)
            )
            self._current = call
            try:
                await asyncio.wait({call})
            finally:
                self._current = None

            if call.cancelled():
                if not request.future.done():
                    request.future.set_exception(EvaluationCancelled(f"request {request.id} cancelled"))
                    self.stats.cancelled += 1
                self._forget(request)
                continue

            exc = call.exception()
            if exc is not None:
                if not isinstance(exc, (EvaluationError, IllegalPositionOrMove)):
                    exc = EngineUnavailable(f"engine crashed: {exc!r}")
                if isinstance(exc, EngineUnavailable):
                    logger.warning("Evaluation engine failed (%s); it will be restarted", exc)
                    await self._drop_engine()
                self._fail(request, exc)
                continue

            results = tuple(call.result())
            if not results:
                self._fail(request, EvaluationError(f"engine returned no lines for {request.fen}"))
                continue
            if not request.future.done():
                self._cache[request.key] = results
                request.future.set_result(results)
            self._forget(request)

    def _fail(self, request: _Request, exc: Exception) -> None:
        self.stats.failures += 1
        if not request.future.done():
            request.future.set_exception(exc)
        self._forget(request)
