"""
Skill model: strength rating → engine skill level, and human-like move degradation.

- rating_to_skill_level(): fixed step table, monotonic, bounded to 0..20.
- should_substitute(): one uniform draw against accuracy × rating factor.
- choose_substitute(): pick a non-best legal move; stronger ratings only pick among
  the first few moves of the list (small mistakes), weak ratings pick from all of them.

The random source is always passed in so callers can seed it.
"""
from __future__ import annotations

import bisect
import random
from enum import Enum
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .config import EngineConfig

RATING_CEILING = 2500

# Upper bounds (exclusive) of each rating band and the skill level it maps to.
_BAND_EDGES = [800, 1000, 1200, 1400, 1600, 1800, 2000, 2200, 2400]
_BAND_LEVELS = [0, 2, 4, 6, 8, 10, 12, 15, 18, 20]

# Fractions of the rating ceiling separating mistake tiers.
SMALL_MISTAKE_RATIO = 0.6
MODERATE_MISTAKE_RATIO = 0.3


class MistakeTier(str, Enum):
    SMALL = "small"
    MODERATE = "moderate"
    LARGE = "large"

    @property
    def pool_size(self) -> int | None:
        return {MistakeTier.SMALL: 3, MistakeTier.MODERATE: 5}.get(self)


def rating_to_skill_level(rating: float) -> int:
    return _BAND_LEVELS[bisect.bisect_right(_BAND_EDGES, rating)]


def rating_factor(rating: float, rating_ceiling: float = RATING_CEILING) -> float:
    """Rating as a fraction of the ceiling, clamped to [0, 1]."""
    if rating_ceiling <= 0:
        return 1.0
    return max(0.0, min(rating / rating_ceiling, 1.0))


def best_move_probability(cfg: "EngineConfig", rating_ceiling: float = RATING_CEILING) -> float:
    if cfg.accuracy >= 100:
        return 1.0
    return (cfg.accuracy / 100) * rating_factor(cfg.strength_rating, rating_ceiling)


def should_substitute(cfg: "EngineConfig", rng: random.Random, rating_ceiling: float = RATING_CEILING) -> bool:
    """True when the engine's best move should be replaced by a weaker one.

    accuracy == 100 always keeps the best move and consumes no random draw.
    """
    if cfg.accuracy >= 100:
        return False
    return rng.random() > best_move_probability(cfg, rating_ceiling)


def mistake_tier(rating: float, rating_ceiling: float = RATING_CEILING) -> MistakeTier:
    ratio = rating / rating_ceiling if rating_ceiling > 0 else 1.0
    if ratio > SMALL_MISTAKE_RATIO:
        return MistakeTier.SMALL
    if ratio > MODERATE_MISTAKE_RATIO:
        return MistakeTier.MODERATE
    return MistakeTier.LARGE


def choose_substitute(best_move: str, legal_moves: Sequence[str], rng: random.Random,
                      rating: float, rating_ceiling: float = RATING_CEILING) -> str:
    """Pick a legal move other than `best_move`; falls back to `best_move` if none exists.

    The ordering of `legal_moves` stands in for the engine's ranking: the pool is
    the leading slice whose size depends on the mistake tier.
    """
    alternatives = [m for m in legal_moves if m != best_move]
    if not alternatives:
        return best_move
    size = mistake_tier(rating, rating_ceiling).pool_size
    pool = alternatives[:size] if size else alternatives
    return pool[rng.randrange(len(pool))]


def describe_rating(rating: float) -> str:
    if rating < 800:
        return "Beginner"
    if rating < 1200:
        return "Novice"
    if rating < 1600:
        return "Intermediate"
    if rating < 2000:
        return "Advanced"
    if rating < 2400:
        return "Expert"
    return "Master"


def describe_accuracy(accuracy: float) -> str:
    if accuracy < 70:
        return "Very human-like (many mistakes)"
    if accuracy < 80:
        return "Human-like (some mistakes)"
    if accuracy < 90:
        return "Strong human (few mistakes)"
    if accuracy < 95:
        return "Near perfect (rare mistakes)"
    return "Perfect play (no mistakes)"
