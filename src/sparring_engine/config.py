"""
Configuration and environment loading for the sparring engine.

- Loads settings.yml (YAML) from repo root if present; falls back to environment variables.
- Exposes SETTINGS with process-wide knobs (engine path, protocol timeouts, delay bounds).
- EngineConfig: the per-opponent strength configuration, treated as an immutable snapshot.
"""
from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from typing import Any, Callable

import chess.engine
import yaml
from dotenv import load_dotenv

from .skill_model import rating_to_skill_level

load_dotenv()


def _repo_root() -> str:
    # this file: src/sparring_engine/config.py → repo root is two levels up
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))


def _load_yaml(path: str) -> dict:
    if not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data if isinstance(data, dict) else {}


_cfg = _load_yaml(os.path.join(_repo_root(), "settings.yml"))


def _get(name: str, default: Any, cast: Callable[[Any], Any] | None = None) -> Any:
    if name in _cfg:
        val = _cfg[name]
        return cast(val) if cast else val
    env = os.environ.get(name)
    if env is not None:
        return cast(env) if cast else env
    return default


@dataclass(frozen=True)
class Settings:
    # Engine binary (None → auto-detect 'stockfish' on PATH)
    stockfish_path: str | None

    # Protocol timeouts
    handshake_timeout_s: float
    ready_timeout_s: float
    search_timeout_s: float

    # Strength / timing model
    rating_ceiling: int
    delay_base_ms: int
    delay_max_ms: int
    hint_depth: int

    log_level: str


SETTINGS = Settings(
    stockfish_path=_get("SPARRING_STOCKFISH_PATH", _get("STOCKFISH_PATH", None)),
    handshake_timeout_s=float(_get("SPARRING_HANDSHAKE_TIMEOUT_S", 10.0, cast=float)),
    ready_timeout_s=float(_get("SPARRING_READY_TIMEOUT_S", 10.0, cast=float)),
    search_timeout_s=float(_get("SPARRING_SEARCH_TIMEOUT_S", 30.0, cast=float)),
    rating_ceiling=int(_get("SPARRING_RATING_CEILING", 2500, cast=int)),
    delay_base_ms=int(_get("SPARRING_DELAY_BASE_MS", 500, cast=int)),
    delay_max_ms=int(_get("SPARRING_DELAY_MAX_MS", 3000, cast=int)),
    hint_depth=int(_get("SPARRING_HINT_DEPTH", 15, cast=int)),
    log_level=str(_get("SPARRING_LOG_LEVEL", "INFO")),
)


@dataclass(frozen=True)
class SearchBudget:
    """Exactly one limit per search: movetime, nodes, or (for hints) depth."""

    movetime_ms: int | None = None
    nodes: int | None = None
    depth: int | None = None

    def __post_init__(self):
        given = [v for v in (self.movetime_ms, self.nodes, self.depth) if v is not None]
        if len(given) != 1:
            raise ValueError("SearchBudget needs exactly one of movetime_ms, nodes, depth")
        if given[0] <= 0:
            raise ValueError("Search budget must be positive")

    def limit(self) -> chess.engine.Limit:
        if self.movetime_ms is not None:
            return chess.engine.Limit(time=self.movetime_ms / 1000)
        if self.nodes is not None:
            return chess.engine.Limit(nodes=self.nodes)
        return chess.engine.Limit(depth=self.depth)


@dataclass(frozen=True)
class EngineConfig:
    strength_rating: int = 1500
    search_skill_level: int = rating_to_skill_level(1500)
    contempt: int = 0
    move_overhead_ms: int = 100
    node_budget: int = 1_000_000
    time_budget_ms: int = 1000
    accuracy: float = 85.0

    def __post_init__(self):
        if self.strength_rating < 0:
            raise ValueError(f"strength_rating must be >= 0 (got {self.strength_rating})")
        if not 0 <= self.search_skill_level <= 20:
            raise ValueError(f"search_skill_level must be within 0..20 (got {self.search_skill_level})")
        if not 0 <= self.accuracy <= 100:
            raise ValueError(f"accuracy must be within 0..100 (got {self.accuracy})")
        if self.move_overhead_ms < 0 or self.node_budget < 0 or self.time_budget_ms < 0:
            raise ValueError("move overhead and budgets must be >= 0")
        if self.time_budget_ms <= 0 and self.node_budget <= 0:
            raise ValueError("Either time_budget_ms or node_budget must be positive")

    @classmethod
    def for_rating(cls, rating: int, **overrides) -> "EngineConfig":
        """Config whose skill level follows the rating unless explicitly overridden."""
        overrides.setdefault("search_skill_level", rating_to_skill_level(rating))
        return cls(strength_rating=rating, **overrides)

    def merged(self, **changes) -> "EngineConfig":
        """Return a validated copy with `changes` applied.

        A rating change without an explicit skill level re-derives the skill level.
        """
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown EngineConfig fields: {', '.join(unknown)}")
        if "strength_rating" in changes and "search_skill_level" not in changes:
            changes["search_skill_level"] = rating_to_skill_level(changes["strength_rating"])
        return dataclasses.replace(self, **changes)

    def search_budget(self) -> SearchBudget:
        if self.time_budget_ms > 0:
            return SearchBudget(movetime_ms=self.time_budget_ms)
        return SearchBudget(nodes=self.node_budget)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def preset_for_rating(rating: int) -> EngineConfig:
    """Rating-appropriate thinking time and accuracy for a quick setup."""
    if rating < 1000:
        time_ms, accuracy = 500, 65.0
    elif rating < 1500:
        time_ms, accuracy = 1000, 75.0
    elif rating < 2000:
        time_ms, accuracy = 1500, 85.0
    else:
        time_ms, accuracy = 2000, 92.0
    return EngineConfig.for_rating(rating, time_budget_ms=time_ms, accuracy=accuracy)
