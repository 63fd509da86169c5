"""
Referee: the rules authority for a training game, around a python-chess Board.

- Parses positions (FEN) and move lists (PGN), raising InvalidPosition / InvalidMoveText.
- Applies moves given as UCI or SAN, undoes them, and reports game-over conditions.
- Exports FEN and PGN with headers.
"""
from __future__ import annotations

import datetime
import io
from typing import Optional, Union

import chess
import chess.pgn

from .errors import InvalidMoveText, InvalidPosition

PositionLike = Union[str, chess.Board]


def board_from_position(position: PositionLike) -> chess.Board:
    """Copy a Board or parse a FEN string."""
    if isinstance(position, chess.Board):
        return position.copy()
    try:
        board = chess.Board(position.strip())
    except (ValueError, AttributeError) as e:
        raise InvalidPosition(f"Invalid FEN '{position}': {e}") from e
    if not board.is_valid():
        raise InvalidPosition(f"Illegal position in FEN '{position}': {board.status()!r}")
    return board


def side_name(color: chess.Color) -> str:
    return "white" if color == chess.WHITE else "black"


class Referee:
    """Plain chess referee around python-chess Board and PGN export."""

    def __init__(self, starting_fen: str | None = None):
        self.board = board_from_position(starting_fen) if starting_fen else chess.Board()
        self._headers: dict[str, str] = {}

    @classmethod
    def from_pgn(cls, pgn_text: str) -> "Referee":
        game = chess.pgn.read_game(io.StringIO(pgn_text or ""))
        if game is None:
            raise InvalidMoveText("No game found in PGN text")
        if game.errors:
            raise InvalidMoveText(f"Invalid PGN: {game.errors[0]}")
        ref = cls()
        ref.board = game.board()
        for mv in game.mainline_moves():
            ref.board.push(mv)
        ref._headers = {k: v for k, v in game.headers.items() if k != "Result"}
        return ref

    # ---------------- Header Management -----------------
    def set_headers(self, event: str = "Sparring Session", site: str = "?", date: Optional[str] = None,
                    white: str = "?", black: str = "?") -> None:
        date = date or datetime.date.today().strftime("%Y.%m.%d")
        self._headers.update({"Event": event, "Site": site, "Date": date, "White": white, "Black": black})

    # ---------------- Move Application -----------------
    def legal_moves(self) -> list[str]:
        return [mv.uci() for mv in self.board.legal_moves]

    def parse_move(self, text: str) -> chess.Move:
        """Parse a UCI or SAN move that must be legal in the current position."""
        raw = (text or "").strip()
        if not raw:
            raise InvalidMoveText("Empty move")
        try:
            mv = chess.Move.from_uci(raw)
        except ValueError:
            mv = None
        if mv is None or mv not in self.board.legal_moves:
            try:
                mv = self.board.parse_san(raw)
            except ValueError as e:
                raise InvalidMoveText(f"Illegal or unparseable move '{raw}'") from e
            if mv not in self.board.legal_moves:
                raise InvalidMoveText(f"Illegal move '{raw}'")
        return mv

    def make_move(self, text: str) -> tuple[chess.Move, str]:
        mv = self.parse_move(text)
        san = self.board.san(mv)
        self.board.push(mv)
        return mv, san

    def undo_move(self) -> Optional[chess.Move]:
        if not self.board.move_stack:
            return None
        return self.board.pop()

    # ---------------- Status -----------------
    @property
    def turn(self) -> str:
        return side_name(self.board.turn)

    def fen(self) -> str:
        return self.board.fen()

    def is_game_over(self) -> bool:
        return self.board.is_game_over(claim_draw=True)

    def is_check(self) -> bool:
        return self.board.is_check()

    def is_checkmate(self) -> bool:
        return self.board.is_checkmate()

    def is_stalemate(self) -> bool:
        return self.board.is_stalemate()

    def is_threefold_repetition(self) -> bool:
        return self.board.can_claim_threefold_repetition()

    def is_insufficient_material(self) -> bool:
        return self.board.is_insufficient_material()

    def termination_reason(self) -> Optional[str]:
        if self.board.is_checkmate():
            return "checkmate"
        if self.board.is_stalemate():
            return "stalemate"
        if self.board.is_insufficient_material():
            return "insufficient_material"
        if self.board.is_seventyfive_moves():
            return "seventyfive_move_rule"
        if self.board.is_fivefold_repetition():
            return "fivefold_repetition"
        if self.board.can_claim_fifty_moves():
            return "fifty_move_rule"
        if self.board.can_claim_threefold_repetition():
            return "threefold_repetition"
        return None

    def status(self) -> str:
        if self.is_game_over():
            return self.board.result(claim_draw=True)
        return "*"

    def pgn(self) -> str:
        game = chess.pgn.Game.from_board(self.board)
        for k, v in self._headers.items():
            game.headers[k] = v
        game.headers["Result"] = self.status()
        exporter = chess.pgn.StringExporter(headers=True, variations=False, comments=False)
        return game.accept(exporter)
