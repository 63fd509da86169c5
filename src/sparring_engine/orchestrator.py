"""
EngineOrchestrator: the sparring partner's public contract.

- Owns one ProtocolSession and walks the lifecycle
  uninitialized → initializing → ready ⇄ searching, and ready → shutting_down → terminated.
- request_move(): engine search → skill-model substitution → annotation → thinking delay.
- request_candidates(): ranked multi-PV lines for hints.
- update_config(): snapshot-merge; mid-search changes take effect on the next request.
- cancel_current(): abandon the in-flight request; its caller gets Cancelled.

At most one request is outstanding; a second one fails fast with RequestInFlight.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

import chess.engine

from .annotator import Confidence, classify_absolute, explain_score, to_centipawns
from .config import SETTINGS, EngineConfig, SearchBudget
from .errors import Cancelled, EngineTimeout, EngineUnavailable, NoLegalMove, RequestInFlight
from .protocol import BestMove, ProgressEvent, ProtocolSession
from .rules import PositionLike, board_from_position
from .skill_model import choose_substitute, should_substitute
from .timing import compute_delay, think

log = logging.getLogger("orchestrator")


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SEARCHING = "searching"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class CandidateMove:
    move: str
    evaluation: chess.engine.Score  # relative to the side to move
    search_depth: int
    variation_rank: int = 1

    @property
    def centipawns(self) -> int:
        return to_centipawns(self.evaluation)

    @property
    def confidence(self) -> Confidence:
        return classify_absolute(self.evaluation, self.search_depth)

    def to_dict(self) -> dict:
        return {
            "move": self.move,
            "centipawns": self.centipawns,
            "mate": self.evaluation.mate(),
            "depth": self.search_depth,
            "rank": self.variation_rank,
            "confidence": self.confidence.value,
            "explanation": explain_score(self.evaluation),
        }


@dataclass(frozen=True)
class ResolvedMove:
    move: str
    evaluation: CandidateMove  # the engine's own best line
    was_deliberately_suboptimal: bool
    confidence: Confidence
    explanation: str
    delay_ms: float = 0.0

    @property
    def best_move(self) -> str:
        return self.evaluation.move

    def to_dict(self) -> dict:
        return {
            "move": self.move,
            "best_move": self.best_move,
            "was_deliberately_suboptimal": self.was_deliberately_suboptimal,
            "evaluation": self.evaluation.to_dict(),
            "confidence": self.confidence.value,
            "explanation": self.explanation,
            "delay_ms": round(self.delay_ms),
        }


class EngineOrchestrator:
    def __init__(self, session: ProtocolSession, config: EngineConfig | None = None,
                 rng: random.Random | None = None, rating_ceiling: int | None = None,
                 delay_base_ms: float | None = None, delay_max_ms: float | None = None,
                 hint_depth: int | None = None):
        self._session = session
        self._config = config or EngineConfig()
        self._rng = rng or random.Random()
        self.rating_ceiling = rating_ceiling if rating_ceiling is not None else SETTINGS.rating_ceiling
        self.delay_base_ms = delay_base_ms if delay_base_ms is not None else SETTINGS.delay_base_ms
        self.delay_max_ms = delay_max_ms if delay_max_ms is not None else SETTINGS.delay_max_ms
        self.hint_depth = hint_depth if hint_depth is not None else SETTINGS.hint_depth
        self._state = EngineState.UNINITIALIZED
        self._work: asyncio.Task | None = None
        self._cancelled_work: asyncio.Task | None = None
        self._config_dirty = False

    @classmethod
    def for_engine(cls, engine_path: str | None = None, **kwargs) -> "EngineOrchestrator":
        """Orchestrator over a local Stockfish process (path resolved like ProtocolSession.for_engine)."""
        return cls(ProtocolSession.for_engine(engine_path), **kwargs)

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def __aenter__(self) -> "EngineOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.dispose()

    # ---------------- Lifecycle -----------------
    async def initialize(self) -> None:
        if self._state in (EngineState.SHUTTING_DOWN, EngineState.TERMINATED):
            raise EngineUnavailable("Engine orchestrator has been disposed")
        if self._state != EngineState.UNINITIALIZED:
            return
        self._state = EngineState.INITIALIZING
        cfg = self._config
        try:
            await self._session.initialize()
            await self._session.apply_config(cfg)
        except (EngineUnavailable, EngineTimeout) as e:
            if self._state != EngineState.INITIALIZING:
                raise EngineUnavailable("Engine orchestrator was disposed during initialization") from e
            self._state = EngineState.UNINITIALIZED
            await self._session.shutdown()
            raise EngineUnavailable(f"Engine could not be initialized: {e}") from e
        if self._state != EngineState.INITIALIZING:
            raise EngineUnavailable("Engine orchestrator was disposed during initialization")
        # an update_config() that landed mid-handshake is applied before the next search
        if self._config is cfg:
            self._config_dirty = False
        self._state = EngineState.READY
        log.info("Engine ready (rating=%d skill=%d accuracy=%.0f)", self._config.strength_rating,
                 self._config.search_skill_level, self._config.accuracy)

    async def dispose(self) -> None:
        if self._state == EngineState.TERMINATED:
            return
        self._state = EngineState.SHUTTING_DOWN
        work, self._work = self._work, None
        if work is not None and not work.done():
            self._cancelled_work = work
            work.cancel()
        await self._session.shutdown()
        self._state = EngineState.TERMINATED

    # ---------------- Requests -----------------
    async def request_move(self, position: PositionLike, legal_moves: Optional[Iterable[str]] = None):
        """Choose the sparring partner's move for `position`.

        legal_moves (UCI) defaults to the board's legal moves; its order is the pool order
        used for deliberate mistakes.
        """
        self._check_ready()
        board = board_from_position(position)
        legal = list(legal_moves) if legal_moves is not None else [m.uci() for m in board.legal_moves]
        if not legal:
            raise NoLegalMove("No legal moves in this position")
        return await self._run(self._play(board.fen(), legal))

    async def request_candidates(self, position: PositionLike, count: int = 3,
                                 depth: int | None = None) -> list[CandidateMove]:
        """Top `count` engine lines, ordered by rank. Ranks the engine never reported are absent."""
        self._check_ready()
        if count < 1:
            raise ValueError("count must be >= 1")
        board = board_from_position(position)
        if not any(board.legal_moves):
            return []
        return await self._run(self._analyse(board.fen(), count, depth or self.hint_depth))

    async def update_config(self, **changes) -> EngineConfig:
        if self._state in (EngineState.SHUTTING_DOWN, EngineState.TERMINATED):
            raise EngineUnavailable("Engine orchestrator has been disposed")
        self._config = self._config.merged(**changes)
        self._config_dirty = True
        log.info("Config updated: %s", changes)
        if self._state == EngineState.READY:
            await self._run(self._sync_config())
        return self._config

    def cancel_current(self) -> bool:
        """Abandon the in-flight request. Returns False when nothing was searching."""
        if self._state != EngineState.SEARCHING or self._work is None:
            return False
        work, self._work = self._work, None
        self._cancelled_work = work
        self._session.cancel()
        work.cancel()
        self._state = EngineState.READY
        log.info("Cancelled current request")
        return True

    # ---------------- Internals -----------------
    def _check_ready(self) -> None:
        if self._state == EngineState.SEARCHING:
            raise RequestInFlight("A request is already in flight; wait for it or cancel it")
        if self._state != EngineState.READY:
            raise EngineUnavailable(f"Engine is not ready (state={self._state.value})")

    async def _run(self, coro):
        self._state = EngineState.SEARCHING
        work = asyncio.ensure_future(coro)
        self._work = work
        try:
            return await work
        except asyncio.CancelledError:
            if self._cancelled_work is work:
                raise Cancelled("Request was cancelled") from None
            raise
        except EngineUnavailable:
            if self._work is work:
                self._state = EngineState.UNINITIALIZED
            raise
        finally:
            if self._work is work:
                self._work = None
                if self._state == EngineState.SEARCHING:
                    self._state = EngineState.READY

    async def _sync_config(self) -> None:
        if self._config_dirty:
            await self._session.apply_config(self._config)
            self._config_dirty = False

    async def _play(self, fen: str, legal: list[str]) -> ResolvedMove:
        await self._sync_config()
        cfg = self._config
        principal: ProgressEvent | None = None
        terminal: BestMove | None = None
        async with contextlib.aclosing(self._session.search(fen, cfg.search_budget())) as events:
            async for event in events:
                if isinstance(event, BestMove):
                    terminal = event
                elif event.multipv == 1:
                    principal = event

        best = terminal.move
        played = best
        if should_substitute(cfg, self._rng, self.rating_ceiling):
            played = choose_substitute(best, legal, self._rng, cfg.strength_rating, self.rating_ceiling)
        evaluation = CandidateMove(
            move=best,
            evaluation=principal.score if principal else chess.engine.Cp(0),
            search_depth=principal.depth if principal else 0,
        )
        delay_ms = compute_delay(cfg.strength_rating, self._rng, self.rating_ceiling,
                                 self.delay_base_ms, self.delay_max_ms)
        resolved = ResolvedMove(
            move=played,
            evaluation=evaluation,
            was_deliberately_suboptimal=played != best,
            confidence=classify_absolute(evaluation.evaluation, evaluation.search_depth),
            explanation=explain_score(evaluation.evaluation),
            delay_ms=delay_ms,
        )
        log.info("Engine move %s (best %s, deliberate=%s, eval=%s, depth=%d, delay=%.0fms)", played, best,
                 resolved.was_deliberately_suboptimal, evaluation.evaluation, evaluation.search_depth, delay_ms)
        await think(delay_ms)
        return resolved

    async def _analyse(self, fen: str, count: int, depth: int) -> list[CandidateMove]:
        await self._sync_config()
        latest: dict[int, ProgressEvent] = {}
        search = self._session.search(fen, SearchBudget(depth=depth), multipv=count)
        async with contextlib.aclosing(search) as events:
            async for event in events:
                if isinstance(event, ProgressEvent) and 1 <= event.multipv <= count:
                    latest[event.multipv] = event
        return [
            CandidateMove(move=e.move, evaluation=e.score, search_depth=e.depth, variation_rank=rank)
            for rank, e in sorted(latest.items())
        ]
