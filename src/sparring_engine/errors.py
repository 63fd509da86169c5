"""
Failure kinds surfaced by the sparring engine.

Callers react differently per kind (retry on timeout, disable input when the
engine is unavailable), so nothing is raised as a bare Exception.
"""
from __future__ import annotations


class SparringError(Exception):
    """Root of every error raised by this package."""


class EngineUnavailable(SparringError):
    """The search engine failed to start, never acknowledged, or has gone away."""


class EngineTimeout(SparringError):
    """No terminal response arrived within the configured ceiling. Safe to retry."""


class RequestInFlight(SparringError):
    """A search is already outstanding on this session."""


class NoLegalMove(SparringError):
    """The position has no legal move (mate or stalemate)."""


class Cancelled(SparringError):
    """The request was abandoned through an explicit cancel. Not a failure."""


class InvalidPosition(SparringError, ValueError):
    """A position encoding (FEN) could not be parsed."""


class InvalidMoveText(SparringError, ValueError):
    """A move or move list (UCI/SAN/PGN) could not be parsed or is illegal."""
