"""Human-like thinking time before an engine move is revealed."""
from __future__ import annotations

import asyncio
import random

from .skill_model import RATING_CEILING, rating_factor


def compute_delay(rating: float, rng: random.Random, rating_ceiling: float = RATING_CEILING,
                  base_ms: float = 500, max_ms: float = 3000) -> float:
    """Delay in ms within [base_ms, max_ms]; stronger ratings lean toward base_ms."""
    elo_factor = 1 - rating_factor(rating, rating_ceiling)
    random_factor = rng.uniform(0.5, 1.0)
    return base_ms + (max_ms - base_ms) * elo_factor * random_factor


async def think(delay_ms: float) -> None:
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000)
