"""
Protocol session with a UCI search engine (Stockfish or compatible), on top of chess.engine.

- resolve_engine_path(): explicit path → settings/env → 'stockfish' on PATH.
- ProtocolSession: launch plus handshake (chess.engine.popen_uci), option application with an
  'isready' barrier (configure + ping), searches exposed as async generators of ProgressEvents
  closed by exactly one BestMove, cancel and shutdown.

python-chess owns the wire format and queues engine commands, so a search that was cancelled or
timed out is finished by the engine before the next one starts. This layer adds the deadlines,
the search ids that keep a cancelled search's answer from ever reaching a caller, and the mapping
of chess.engine failures onto the sparring error kinds.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import os
import shutil
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple, Union

import chess
import chess.engine

from .config import SETTINGS, EngineConfig, SearchBudget
from .errors import Cancelled, EngineTimeout, EngineUnavailable, NoLegalMove, RequestInFlight

log = logging.getLogger("protocol")

Launcher = Callable[[], Awaitable[Tuple[asyncio.SubprocessTransport, chess.engine.UciProtocol]]]


@dataclass(frozen=True)
class ProgressEvent:
    depth: int
    score: chess.engine.Score  # relative to the side to move
    pv: tuple[str, ...]
    multipv: int = 1
    nodes: Optional[int] = None

    @property
    def move(self) -> str:
        return self.pv[0]


@dataclass(frozen=True)
class BestMove:
    move: str
    ponder: Optional[str] = None


SearchEvent = Union[ProgressEvent, BestMove]


def resolve_engine_path(engine_path: str | None = None) -> str:
    """Resolve the engine binary.

    Precedence:
      1. explicit parameter
      2. SPARRING_STOCKFISH_PATH / STOCKFISH_PATH env / settings
      3. auto-detect via shutil.which('stockfish')
    Raises EngineUnavailable with guidance if not found.
    """
    candidate = engine_path or SETTINGS.stockfish_path or "stockfish"
    resolved = shutil.which(candidate) or (candidate if os.path.isfile(candidate) else None)
    if not resolved:
        resolved = shutil.which("stockfish")
    if not resolved:
        raise EngineUnavailable(
            f"Stockfish engine not found (candidate='{candidate}'). Install it (e.g. 'brew install stockfish' "
            "or 'apt install stockfish'), or set SPARRING_STOCKFISH_PATH to the binary path."
        )
    return resolved


@dataclass
class _Search:
    id: int
    analysis: Optional[chess.engine.AnalysisResult] = None
    cancelled: bool = False
    last_depth: int = 0


class ProtocolSession:
    """One long-lived conversation with the engine. Not reentrant: one search at a time.

    `launch` starts the engine and completes the uci/uciok handshake, returning the
    (transport, UciProtocol) pair; for_engine() uses chess.engine.popen_uci.
    """

    def __init__(self, launch: Launcher, handshake_timeout_s: float | None = None,
                 ready_timeout_s: float | None = None, search_timeout_s: float | None = None):
        self._launch = launch
        self.handshake_timeout_s = handshake_timeout_s if handshake_timeout_s is not None else SETTINGS.handshake_timeout_s
        self.ready_timeout_s = ready_timeout_s if ready_timeout_s is not None else SETTINGS.ready_timeout_s
        self.search_timeout_s = search_timeout_s if search_timeout_s is not None else SETTINGS.search_timeout_s
        self.ready = False
        self._transport: asyncio.SubprocessTransport | None = None
        self._engine: chess.engine.UciProtocol | None = None
        self._launching: asyncio.Future | None = None
        self._active: _Search | None = None
        self._next_id = 0

    @classmethod
    def for_engine(cls, engine_path: str | None = None, **timeouts) -> "ProtocolSession":
        return cls(functools.partial(chess.engine.popen_uci, resolve_engine_path(engine_path)), **timeouts)

    @property
    def search_in_progress(self) -> bool:
        return self._active is not None

    @property
    def engine_name(self) -> str | None:
        return self._engine.id.get("name") if self._engine is not None else None

    # ---------------- Lifecycle -----------------
    async def initialize(self) -> None:
        """Start the engine, complete the handshake, then pass one isready barrier."""
        if self.ready:
            return
        self._close()
        launch = asyncio.ensure_future(self._launch())
        self._launching = launch
        try:
            await asyncio.wait({launch}, timeout=self.handshake_timeout_s)
            if not launch.done():
                launch.cancel()
                await asyncio.wait({launch})
                raise EngineUnavailable(
                    f"Engine did not acknowledge the handshake within {self.handshake_timeout_s:.1f}s")
        finally:
            self._launching = None
            if not launch.done():
                launch.cancel()
        if launch.cancelled():
            raise EngineUnavailable("Engine launch was aborted by shutdown")
        try:
            self._transport, self._engine = launch.result()
        except (OSError, chess.engine.EngineError) as e:
            raise EngineUnavailable(f"Failed launching engine: {e}") from e
        try:
            await self._ping()
        except (EngineTimeout, EngineUnavailable) as e:
            self._close()
            raise EngineUnavailable(f"Engine handshake failed: {e}") from e
        self.ready = True
        log.info("Engine handshake complete (%s)", self.engine_name or "unnamed engine")

    async def shutdown(self) -> None:
        """Send 'quit' and release the process. Safe to call repeatedly, also mid-launch."""
        if self._launching is not None:
            self._launching.cancel()
        engine, transport = self._engine, self._transport
        if engine is None:
            return
        self.cancel()
        self.ready = False
        self._engine = self._transport = None
        try:
            await asyncio.wait_for(engine.quit(), self.ready_timeout_s)
        except asyncio.TimeoutError:
            log.warning("Engine did not exit after 'quit'; closing it")
        except chess.engine.EngineError as e:
            log.debug("Engine already gone at shutdown: %s", e)
        transport.close()
        log.info("Engine session shut down")

    def _close(self) -> None:
        self.ready = False
        transport, self._transport, self._engine = self._transport, None, None
        if transport is not None:
            transport.close()

    # ---------------- Commands -----------------
    async def apply_config(self, cfg: EngineConfig) -> None:
        """Set skill level, contempt and move overhead (in that order), then wait for readyok.

        Options the engine does not advertise are skipped; python-chess only sends values
        that differ from what the engine already has.
        """
        if not self.ready:
            raise EngineUnavailable("Engine session is not initialized")
        if self._active is not None:
            raise RequestInFlight("Cannot reconfigure the engine while a search is running")
        options = {}
        for name, value in (
            ("Skill Level", cfg.search_skill_level),
            ("Contempt", cfg.contempt),
            ("Move Overhead", cfg.move_overhead_ms),
        ):
            if name in self._engine.options:
                options[name] = value
            else:
                log.debug("Engine has no '%s' option; skipped", name)
        try:
            await self._engine.configure(options)
        except chess.engine.EngineError as e:
            raise self._failure(e) from e
        await self._ping()

    async def search(self, fen: str, budget: SearchBudget, multipv: int = 1) -> AsyncIterator[SearchEvent]:
        """Run one search, yielding ProgressEvents in non-decreasing depth and then one BestMove.

        Raises NoLegalMove, EngineTimeout, Cancelled or EngineUnavailable instead of a BestMove.
        Closing the generator early stops the search and discards its answer.
        """
        if not self.ready:
            raise EngineUnavailable("Engine session is not initialized")
        if self._active is not None:
            raise RequestInFlight("A search is already running on this session")
        self._next_id += 1
        current = _Search(self._next_id)
        self._active = current
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.search_timeout_s
        try:
            board = chess.Board(fen)
            try:
                current.analysis = await asyncio.wait_for(
                    self._engine.analysis(board, budget.limit(), multipv=multipv), self.search_timeout_s)
            except asyncio.TimeoutError:
                raise self._timeout(current) from None
            with current.analysis as analysis:
                while not current.cancelled:
                    try:
                        info = await asyncio.wait_for(analysis.get(), max(deadline - loop.time(), 0))
                    except chess.engine.AnalysisComplete:
                        break
                    except asyncio.TimeoutError:
                        raise self._timeout(current) from None
                    event = None if current.cancelled else _progress_event(current, info)
                    if event is not None:
                        yield event
                if current.cancelled:
                    raise Cancelled(f"Search {current.id} was cancelled")
                best = await analysis.wait()
            if current.cancelled:
                log.debug("Discarding bestmove %s for cancelled search %d", best.move, current.id)
                raise Cancelled(f"Search {current.id} was cancelled")
            if best.move is None:
                raise NoLegalMove("Engine reports no legal move in this position")
            yield BestMove(best.move.uci(), best.ponder.uci() if best.ponder else None)
        except chess.engine.EngineError as e:
            raise self._failure(e) from e
        finally:
            if self._active is current:
                self._active = None

    def cancel(self) -> bool:
        """Stop the running search; its eventual answer is dropped. Returns False if idle."""
        current = self._active
        if current is None:
            return False
        self._active = None
        current.cancelled = True
        if current.analysis is not None:
            current.analysis.stop()
        log.debug("Cancelled search %d", current.id)
        return True

    def _timeout(self, current: _Search) -> Exception:
        if current.cancelled:
            return Cancelled(f"Search {current.id} was cancelled")
        log.warning("Search %d produced no bestmove within %.1fs", current.id, self.search_timeout_s)
        return EngineTimeout(f"Engine produced no move within {self.search_timeout_s:.1f}s")

    async def _ping(self) -> None:
        try:
            await asyncio.wait_for(self._engine.ping(), self.ready_timeout_s)
        except asyncio.TimeoutError:
            raise EngineTimeout(f"Engine did not answer 'isready' within {self.ready_timeout_s:.1f}s") from None
        except chess.engine.EngineError as e:
            raise self._failure(e) from e

    def _failure(self, exc: chess.engine.EngineError) -> EngineUnavailable:
        if isinstance(exc, chess.engine.EngineTerminatedError):
            log.error("Engine process ended: %s", exc)
        else:
            log.error("Engine protocol error: %s", exc)
        self._close()
        return EngineUnavailable(f"Engine failed: {exc}")


def _progress_event(current: _Search, info: chess.engine.InfoDict) -> Optional[ProgressEvent]:
    depth, score, pv = info.get("depth"), info.get("score"), info.get("pv")
    if depth is None or score is None or not pv or depth < current.last_depth:
        return None
    current.last_depth = depth
    return ProgressEvent(
        depth=depth,
        score=score.relative,
        pv=tuple(m.uci() for m in pv),
        multipv=info.get("multipv", 1),
        nodes=info.get("nodes"),
    )
