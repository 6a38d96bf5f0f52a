"""Extraction options and their coercion from loosely typed input.

Options usually arrive from a settings form or a JSON file, where every
value may be a string. resolve_options() never aborts a batch over a
bad value: anything it cannot coerce falls back to the default and is
logged.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

from blunder_miner.classification import ClassificationThresholds
from blunder_miner.errors import ConfigurationError

logger = logging.getLogger(__name__)

PUZZLE_MODE_CHOICES = ("avoidBlunder", "punishBlunder", "both")


@dataclass(frozen=True)
class ExtractOptions:
    """Tunable thresholds for puzzle extraction (centipawns unless noted)."""

    search_budget_ms: int = 200
    puzzle_mode: str = "both"
    max_puzzles_per_game: int | None = 5
    blunder_swing_cp: int = 250
    missed_win_swing_cp: int = 150
    missed_tactic_swing_cp: int = 180
    winning_threshold_cp: int = 200
    eval_band_min_cp: int | None = -300
    eval_band_max_cp: int | None = 600
    require_tactical: bool = True
    tactical_lookahead_plies: int = 4
    opening_skip_plies: int = 8
    min_pv_moves: int = 2
    skip_trivial_endgames: bool = True
    min_non_king_pieces: int = 4
    cooldown_plies_after_puzzle: int = 1
    confirm_movetime_ms: int | None = None
    uniqueness_margin_cp: int | None = None
    multi_pv_lines: int = 3
    accepted_move_tolerance_cp: int = 30
    best_line_max_plies: int = 12
    return_full_analysis: bool = False
    classification_thresholds: ClassificationThresholds | None = None

    @property
    def wants_avoid(self) -> bool:
        return self.puzzle_mode in ("avoidBlunder", "both")

    @property
    def wants_punish(self) -> bool:
        return self.puzzle_mode in ("punishBlunder", "both")

    @property
    def confirmation_enabled(self) -> bool:
        return (
            self.confirm_movetime_ms is not None
            and self.confirm_movetime_ms > self.search_budget_ms
        )


DEFAULT_OPTIONS = ExtractOptions()

# Options whose value may be None ("disabled" / "unbounded").
_NULLABLE = {
    "max_puzzles_per_game",
    "eval_band_min_cp",
    "eval_band_max_cp",
    "confirm_movetime_ms",
    "uniqueness_margin_cp",
    "classification_thresholds",
}

# Strings that mean "no value" for the options above.
_NULL_WORDS = {"none", "null", "unbounded", "unlimited", "disabled"}

# Lower bounds; values below are treated as invalid.
_MINIMUMS = {
    "search_budget_ms": 1,
    "max_puzzles_per_game": 0,
    "blunder_swing_cp": 0,
    "missed_win_swing_cp": 0,
    "missed_tactic_swing_cp": 0,
    "tactical_lookahead_plies": 1,
    "opening_skip_plies": 0,
    "min_pv_moves": 0,
    "min_non_king_pieces": 0,
    "cooldown_plies_after_puzzle": 0,
    "confirm_movetime_ms": 0,
    "uniqueness_margin_cp": 0,
    "multi_pv_lines": 1,
    "accepted_move_tolerance_cp": 0,
    "best_line_max_plies": 1,
}

_MAXIMUMS = {"multi_pv_lines": 5}

# Names used by older preference payloads.
_ALIASES = {
    "movetime_ms": "search_budget_ms",
    "engine_move_time_ms": "search_budget_ms",
    "return_analysis": "return_full_analysis",
}

_FIELD_TYPES = {f.name: f.type for f in fields(ExtractOptions)}


def _snake_case(key: str) -> str:
    key = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key.strip())
    key = key.replace("-", "_").lower()
    return _ALIASES.get(key, key)


def coerce_int(value: Any) -> int:
    """Coerce ints, integral floats and numeric strings; raise otherwise."""
    if isinstance(value, bool):
        raise ConfigurationError(f"expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ConfigurationError(f"expected a finite number, got {value!r}")
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(float(text)) if "." in text else int(text)
        except ValueError:
            raise ConfigurationError(f"expected an integer, got {value!r}") from None
    raise ConfigurationError(f"expected an integer, got {value!r}")


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1", "yes", "on"):
            return True
        if text in ("false", "0", "no", "off"):
            return False
    raise ConfigurationError(f"expected a boolean, got {value!r}")


def coerce_thresholds(value: Any) -> ClassificationThresholds:
    """Thresholds from an instance or a partial mapping of band bounds.

    Keys may be snake_case or camelCase; missing bands keep their
    defaults. The five band bounds must not decrease from great to mistake.
    """
    if isinstance(value, ClassificationThresholds):
        return value
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"expected a mapping of thresholds, got {value!r}")
    known = {f.name for f in fields(ClassificationThresholds)}
    updates = {}
    for key, raw in value.items():
        name = _snake_case(str(key))
        if name not in known:
            raise ConfigurationError(f"unknown classification threshold {key!r}")
        updates[name] = coerce_int(raw)
    thresholds = ClassificationThresholds(**updates)
    bounds = [thresholds.great, thresholds.excellent, thresholds.good, thresholds.inaccuracy, thresholds.mistake]
    if bounds[0] < 0 or bounds != sorted(bounds):
        raise ConfigurationError(f"classification bands must be ascending and non-negative, got {bounds}")
    return thresholds


def _coerce_field(name: str, value: Any) -> Any:
    """Coerce one option value; raises ConfigurationError when invalid."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if name in _NULLABLE:
            return None
        raise ConfigurationError(f"{name} cannot be empty")
    if name in _NULLABLE and isinstance(value, str) and value.strip().lower() in _NULL_WORDS:
        return None

    if name == "classification_thresholds":
        return coerce_thresholds(value)

    if name == "puzzle_mode":
        if value not in PUZZLE_MODE_CHOICES:
            raise ConfigurationError(f"unknown puzzle mode {value!r}")
        return value

    if "bool" in _FIELD_TYPES[name]:
        return coerce_bool(value)

    number = coerce_int(value)
    if name == "confirm_movetime_ms" and number == 0:
        return None
    if name in _MINIMUMS and number < _MINIMUMS[name]:
        raise ConfigurationError(f"{name} must be >= {_MINIMUMS[name]}, got {number}")
    if name in _MAXIMUMS:
        number = min(number, _MAXIMUMS[name])
    return number


def resolve_options(raw: ExtractOptions | Mapping[str, Any] | None = None) -> ExtractOptions:
    """Build ExtractOptions from None, an instance, or a loose mapping.

    Mapping keys may be snake_case or camelCase. Invalid values fall
    back to their defaults with a warning; unknown keys are ignored.
    """
    if raw is None:
        return DEFAULT_OPTIONS
    if isinstance(raw, ExtractOptions):
        return raw

    updates: dict[str, Any] = {}
    for key, value in raw.items():
        name = _snake_case(str(key))
        if name not in _FIELD_TYPES:
            logger.debug("Ignoring unknown option %r", key)
            continue
        try:
            updates[name] = _coerce_field(name, value)
        except ConfigurationError as exc:
            default = getattr(DEFAULT_OPTIONS, name)
            logger.warning("Option %s: %s; using default %r", key, exc, default)

    options = replace(DEFAULT_OPTIONS, **updates)
    if options.missed_tactic_swing_cp > options.blunder_swing_cp:
        logger.warning(
            "missed_tactic_swing_cp (%d) is above blunder_swing_cp (%d); "
            "missed tactics will never be reported",
            options.missed_tactic_swing_cp,
            options.blunder_swing_cp,
        )
    return options
