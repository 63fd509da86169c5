"""
TrainingGame: one human vs. sparring-partner game on a single board.

- Plays engine turns through EngineOrchestrator and applies them via the Referee.
- Annotates every ply with the delta classifier (white point of view before/after the move),
  keeping the move log that the presentation layer displays and exports.
- Hints (top engine lines plus arrow descriptors), undo back to the human's turn,
  loading positions from FEN or PGN, and a status snapshot for the API.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

import chess

from .annotator import MATE_SCORE, Classification, LogEntry, annotate_move, log_stats
from .errors import EngineTimeout, InvalidMoveText
from .orchestrator import CandidateMove, EngineOrchestrator, ResolvedMove
from .rules import Referee, side_name

log = logging.getLogger("training")

ARROW_COLORS = ("green", "yellow", "red")


@dataclass(frozen=True)
class HintArrow:
    from_square: str
    to_square: str
    color: str
    opacity: float

    def to_dict(self) -> dict:
        return {"from": self.from_square, "to": self.to_square, "color": self.color, "opacity": self.opacity}


def hint_arrows(candidates: list[CandidateMove]) -> list[HintArrow]:
    """Green/yellow/red arrows for the first three ranks, fading with rank."""
    arrows = []
    for c in candidates:
        if c.variation_rank > len(ARROW_COLORS):
            continue
        mv = chess.Move.from_uci(c.move)
        arrows.append(HintArrow(
            from_square=chess.square_name(mv.from_square),
            to_square=chess.square_name(mv.to_square),
            color=ARROW_COLORS[c.variation_rank - 1],
            opacity=round(0.9 - 0.2 * (c.variation_rank - 1), 2),
        ))
    return arrows


@dataclass
class TrainingConfig:
    human_color: str = "white"
    annotate_engine_moves: bool = True
    analysis_depth: int = 12
    hint_count: int = 3


class TrainingGame:
    def __init__(self, engine: EngineOrchestrator, cfg: TrainingConfig | None = None,
                 starting_fen: str | None = None):
        self.engine = engine
        self.cfg = cfg or TrainingConfig()
        if self.cfg.human_color not in ("white", "black"):
            raise ValueError(f"human_color must be 'white' or 'black' (got {self.cfg.human_color!r})")
        self.ref = Referee(starting_fen)
        self.log_entries: list[LogEntry] = []
        self._loaded_plies = len(self.ref.board.move_stack)
        self._baseline: tuple[int, Optional[str]] | None = None  # (white-POV cp, best move) of current position
        self._set_headers()

    @property
    def human_color(self) -> str:
        return self.cfg.human_color

    @property
    def engine_color(self) -> str:
        return "black" if self.cfg.human_color == "white" else "white"

    def is_over(self) -> bool:
        return self.ref.is_game_over()

    def human_to_move(self) -> bool:
        return not self.is_over() and self.ref.turn == self.human_color

    def engine_to_move(self) -> bool:
        return not self.is_over() and self.ref.turn == self.engine_color

    def _set_headers(self) -> None:
        engine_label = f"Sparring partner ({self.engine.config.strength_rating})"
        white, black = ("Human", engine_label) if self.human_color == "white" else (engine_label, "Human")
        self.ref.set_headers(white=white, black=black)

    # ---------------- Turns -----------------
    async def start(self) -> Optional[tuple[ResolvedMove, LogEntry]]:
        """Let the engine open if it has the move."""
        if self.engine_to_move():
            return await self.engine_turn()
        return None

    async def play_human(self, move_text: str) -> LogEntry:
        if self.is_over():
            raise InvalidMoveText("The game is already over")
        if not self.human_to_move():
            raise InvalidMoveText("It is not the human's turn")
        mv = self.ref.parse_move(move_text)
        before_cp, best = await self._evaluate()
        return await self._push_and_log(mv, before_cp, best, by_engine=False)

    async def engine_turn(self) -> Optional[tuple[ResolvedMove, LogEntry]]:
        if not self.engine_to_move():
            return None
        resolved = await self.engine.request_move(self.ref.board, self.ref.legal_moves())
        if self._baseline is None:
            self._baseline = (self._white_pov(resolved.evaluation.centipawns), resolved.best_move)
        before_cp, best = self._baseline
        mv = self.ref.parse_move(resolved.move)
        if not self.cfg.annotate_engine_moves:
            entry = self._push_unannotated(mv, resolved)
        else:
            entry = await self._push_and_log(mv, before_cp, best, by_engine=True,
                                             was_deliberate=resolved.was_deliberately_suboptimal)
        return resolved, entry

    async def hints(self, count: int | None = None) -> list[CandidateMove]:
        if self.is_over():
            return []
        return await self.engine.request_candidates(self.ref.board, count=count or self.cfg.hint_count)

    def undo(self) -> int:
        """Take back plies until the human is to move again. Returns the number of plies undone."""
        self.engine.cancel_current()
        undone = 0
        while self.ref.board.move_stack:
            self.ref.undo_move()
            undone += 1
            if self.ref.turn == self.human_color:
                break
        if undone:
            plies = len(self.ref.board.move_stack)
            self._loaded_plies = min(self._loaded_plies, plies)
            # log entries cover only the plies played after the last load
            del self.log_entries[plies - self._loaded_plies:]
            self._baseline = None
        return undone

    # ---------------- Positions -----------------
    def load_fen(self, fen: str) -> None:
        ref = Referee(fen)
        self._reset(ref)

    def load_pgn(self, pgn_text: str) -> None:
        ref = Referee.from_pgn(pgn_text)
        self._reset(ref)

    def _reset(self, ref: Referee) -> None:
        self.engine.cancel_current()
        self.ref = ref
        self.log_entries = []
        self._loaded_plies = len(ref.board.move_stack)
        self._baseline = None
        self._set_headers()

    # ---------------- Annotation -----------------
    def _white_pov(self, side_to_move_cp: int) -> int:
        return side_to_move_cp if self.ref.board.turn == chess.WHITE else -side_to_move_cp

    async def _evaluate(self) -> tuple[int, Optional[str]]:
        """White-POV centipawns and the engine's best move for the current position."""
        if self._baseline is not None:
            return self._baseline
        board = self.ref.board
        if board.is_checkmate():
            result = (-MATE_SCORE if board.turn == chess.WHITE else MATE_SCORE, None)
        elif self.ref.is_game_over():
            result = (0, None)
        else:
            candidates = await self.engine.request_candidates(board, count=1, depth=self.cfg.analysis_depth)
            if candidates:
                result = (self._white_pov(candidates[0].centipawns), candidates[0].move)
            else:
                result = (0, None)
        self._baseline = result
        return result

    async def _push_and_log(self, mv: chess.Move, before_cp: int, best: Optional[str], by_engine: bool,
                            was_deliberate: bool = False) -> LogEntry:
        board = self.ref.board
        mover = side_name(board.turn)
        move_number = board.fullmove_number
        san = board.san(mv)
        board.push(mv)
        self._baseline = None
        try:
            after_cp, _ = await self._evaluate()
        except EngineTimeout:
            log.warning("Analysis timed out after %s; logging it without a classification", san)
            entry = LogEntry(move_number=move_number, side=mover, move=mv.uci(), san=san,
                             classification=Classification.MOVE, engine_suggestion=best,
                             was_deliberate=was_deliberate, by_engine=by_engine)
        else:
            entry = annotate_move(move_number, mover, mv.uci(), san, before_cp, after_cp,
                                  engine_suggestion=best, was_deliberate=was_deliberate, by_engine=by_engine)
        self.log_entries.append(entry)
        log.info("%s %s: %s (%s)", "Engine" if by_engine else "Human", entry.label(),
                 entry.classification.value, entry.explanation)
        return entry

    def _push_unannotated(self, mv: chess.Move, resolved: ResolvedMove) -> LogEntry:
        board = self.ref.board
        entry = LogEntry(
            move_number=board.fullmove_number,
            side=side_name(board.turn),
            move=mv.uci(),
            san=board.san(mv),
            classification=Classification.MOVE,
            evaluation=self._white_pov(resolved.evaluation.centipawns),
            explanation=resolved.explanation,
            engine_suggestion=resolved.best_move if resolved.was_deliberately_suboptimal else None,
            was_deliberate=resolved.was_deliberately_suboptimal,
            by_engine=True,
        )
        board.push(mv)
        self._baseline = None
        self.log_entries.append(entry)
        return entry

    # ---------------- Reporting -----------------
    def stats(self, side: str | None = None) -> dict:
        entries = [e for e in self.log_entries if side is None or e.side == side]
        return log_stats(entries)

    def status(self) -> dict:
        return {
            "fen": self.ref.fen(),
            "side_to_move": self.ref.turn,
            "human_color": self.human_color,
            "is_check": self.ref.is_check(),
            "game_over": self.is_over(),
            "result": self.ref.status(),
            "termination_reason": self.ref.termination_reason(),
            "engine_state": self.engine.state.value,
            "config": self.engine.config.to_dict(),
        }

    def export_log(self, path: str) -> str:
        data = {
            "pgn": self.ref.pgn(),
            "status": self.status(),
            "stats": self.stats(),
            "human_stats": self.stats(self.human_color),
            "entries": [e.to_dict() for e in self.log_entries],
        }
        dir_path = os.path.dirname(path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        log.info("Wrote training log to %s", path)
        return path
