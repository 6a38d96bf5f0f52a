"""Exception taxonomy for the mining pipeline."""

from __future__ import annotations


class BlunderMinerError(Exception):
    """Base class for all pipeline errors."""


class EvaluationError(BlunderMinerError):
    """An evaluation request failed."""


class EngineUnavailable(EvaluationError):
    """The engine process crashed, exited, or could not be started.

    The evaluation client drops the engine and starts a fresh one on
    the next request.
    """


class EvaluationCancelled(BlunderMinerError):
    """The request was discarded by cancel_all() or shutdown().

    Deliberately not an EvaluationError: a cancelled request is an
    expected outcome, not a failure.
    """


class IllegalPositionOrMove(BlunderMinerError, ValueError):
    """Malformed FEN, PGN, or a move that is illegal in its position."""


class ConfigurationError(BlunderMinerError, ValueError):
    """An option value that cannot be coerced to its declared type."""
