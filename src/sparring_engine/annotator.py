"""
Move annotator: evaluation deltas → quality labels and log entries.

- classify(): seven tiers from the signed evaluation change across a move.
- classify_absolute(): coarse four-way confidence from a single evaluation (hints, engine moves).
- LogEntry: one annotated move as consumed by the presentation layer.

Mate scores are folded into centipawns (±MATE_SCORE minus distance) before any threshold.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Union

import chess.engine

MATE_SCORE = 10_000

Evaluation = Union[int, float, chess.engine.Score]


class Classification(str, Enum):
    BRILLIANT = "brilliant"
    EXCELLENT = "excellent"
    GOOD = "good"
    MOVE = "move"
    INACCURACY = "inaccuracy"
    MISTAKE = "mistake"
    BLUNDER = "blunder"

    @property
    def explanation(self) -> str:
        return _EXPLANATIONS[self]

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]


_EXPLANATIONS = {
    Classification.BRILLIANT: "Brilliant! This move significantly improves the position.",
    Classification.EXCELLENT: "Excellent move that clearly improves the position.",
    Classification.GOOD: "Good move; the position gets a little better.",
    Classification.MOVE: "Reasonable move that keeps the balance.",
    Classification.INACCURACY: "Inaccuracy: a better move was available.",
    Classification.MISTAKE: "Mistake: this gives away a noticeable advantage.",
    Classification.BLUNDER: "Blunder: this loses significant material or position.",
}

_SYMBOLS = {
    Classification.BRILLIANT: "!!",
    Classification.EXCELLENT: "!",
    Classification.GOOD: "",
    Classification.MOVE: "",
    Classification.INACCURACY: "?!",
    Classification.MISTAKE: "?",
    Classification.BLUNDER: "??",
}

# (exclusive lower bound on delta, tier), checked in descending order
_DELTA_TIERS = [
    (200, Classification.BRILLIANT),
    (100, Classification.EXCELLENT),
    (0, Classification.GOOD),
    (-50, Classification.MOVE),
    (-100, Classification.INACCURACY),
    (-200, Classification.MISTAKE),
]


class Confidence(str, Enum):
    BEST = "best"
    GOOD = "good"
    QUESTIONABLE = "questionable"
    BLUNDER = "blunder"


def to_centipawns(evaluation: Evaluation) -> int:
    """Normalize a centipawn value or a python-chess score to plain centipawns."""
    if isinstance(evaluation, chess.engine.Score):
        return int(evaluation.score(mate_score=MATE_SCORE))
    return int(evaluation)


def classify(evaluation_before: Evaluation, evaluation_after: Evaluation,
             is_mover_to_optimize: bool = True) -> Classification:
    """Label a move from the evaluation before and after it.

    Both evaluations share one point of view. is_mover_to_optimize says whether the
    mover wants that evaluation to go up (True) or down (False).
    """
    before = to_centipawns(evaluation_before)
    after = to_centipawns(evaluation_after)
    delta = (after - before) if is_mover_to_optimize else (before - after)
    for bound, tier in _DELTA_TIERS:
        if delta > bound:
            return tier
    return Classification.BLUNDER


def classify_absolute(evaluation: Evaluation, search_depth: int = 0) -> Confidence:
    """Coarse confidence from one side-to-move evaluation, with no baseline.

    Bucketing uses the signed evaluation, not its magnitude: a side facing -600 is
    losing, so it lands in BLUNDER rather than BEST. search_depth is carried for
    callers that report it alongside.
    """
    cp = to_centipawns(evaluation)
    if cp > 500:
        return Confidence.BEST
    if cp > 200:
        return Confidence.GOOD
    if cp > -100:
        return Confidence.QUESTIONABLE
    return Confidence.BLUNDER


def explain_score(evaluation: Evaluation) -> str:
    cp = to_centipawns(evaluation)
    if cp > 300:
        return "Excellent move!"
    if cp > 100:
        return "Good move"
    if cp > -50:
        return "Reasonable move"
    if cp > -200:
        return "Questionable move"
    return "This might not be the best"


def format_evaluation(centipawns: Optional[int]) -> str:
    if centipawns is None:
        return ""
    if abs(centipawns) > 1000:
        return "+M" if centipawns > 0 else "-M"
    return f"{centipawns / 100:+.1f}"


@dataclass(frozen=True)
class LogEntry:
    move_number: int
    side: str  # "white" | "black"
    move: str  # UCI
    san: str
    classification: Classification
    evaluation: Optional[int] = None  # centipawns, white point of view
    explanation: str = ""
    engine_suggestion: Optional[str] = None
    was_deliberate: bool = False
    by_engine: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=datetime.now)

    def label(self) -> str:
        dots = "..." if self.side == "black" else "."
        return f"{self.move_number}{dots} {self.san}{self.classification.symbol}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "move_number": self.move_number,
            "side": self.side,
            "move": self.move,
            "san": self.san,
            "classification": self.classification.value,
            "symbol": self.classification.symbol,
            "evaluation": self.evaluation,
            "evaluation_text": format_evaluation(self.evaluation),
            "explanation": self.explanation,
            "engine_suggestion": self.engine_suggestion,
            "was_deliberate": self.was_deliberate,
            "by_engine": self.by_engine,
        }


def annotate_move(move_number: int, side: str, move: str, san: str,
                  evaluation_before: Evaluation, evaluation_after: Evaluation,
                  engine_suggestion: Optional[str] = None, was_deliberate: bool = False,
                  by_engine: bool = False) -> LogEntry:
    """Build a log entry for a move; evaluations are from white's point of view."""
    tier = classify(evaluation_before, evaluation_after, is_mover_to_optimize=(side == "white"))
    return LogEntry(
        move_number=move_number,
        side=side,
        move=move,
        san=san,
        classification=tier,
        evaluation=to_centipawns(evaluation_after),
        explanation=tier.explanation,
        engine_suggestion=engine_suggestion if engine_suggestion != move else None,
        was_deliberate=was_deliberate,
        by_engine=by_engine,
    )


def log_stats(entries: Iterable[LogEntry]) -> dict:
    """Tier counts plus the share of good-or-better moves (percent, rounded)."""
    counts = {c.value: 0 for c in Classification}
    total = 0
    for e in entries:
        counts[e.classification.value] += 1
        total += 1
    good = counts["brilliant"] + counts["excellent"] + counts["good"]
    return {
        "total": total,
        "counts": counts,
        "accuracy_pct": round(good / total * 100) if total else 0,
    }
