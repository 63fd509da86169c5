"""
Minimal Flask API that wires the sparring engine into a board UI.

Endpoints:
- POST   /api/games                  -> start a training game (engine opens if the human plays black)
- GET    /api/games/<id>             -> status snapshot (FEN, side to move, result, config)
- POST   /api/games/<id>/move        -> submit a human move; returns its annotation and the engine reply
- GET    /api/games/<id>/hints       -> top engine lines plus arrow descriptors (?count=3)
- POST   /api/games/<id>/config      -> update engine strength settings (partial)
- POST   /api/games/<id>/undo        -> take back to the human's turn
- POST   /api/games/<id>/load        -> load a position from {"fen": ...} or {"pgn": ...}
- GET    /api/games/<id>/log         -> move log with stats and PGN
- DELETE /api/games/<id>             -> end the game and stop its engine

Each game owns one engine process. Engine coroutines run on a single background event loop;
Flask handlers block on them with run_coroutine_threadsafe.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Dict, Optional

from flask import Flask, jsonify, request

from sparring_engine.config import SETTINGS, EngineConfig, preset_for_rating
from sparring_engine.errors import (
    Cancelled,
    EngineTimeout,
    EngineUnavailable,
    InvalidMoveText,
    InvalidPosition,
    NoLegalMove,
    RequestInFlight,
)
from sparring_engine.orchestrator import EngineOrchestrator
from sparring_engine.skill_model import describe_accuracy, describe_rating
from sparring_engine.training import TrainingConfig, TrainingGame, hint_arrows

logging.basicConfig(level=getattr(logging, SETTINGS.log_level.upper(), logging.INFO),
                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")
log = logging.getLogger("server")

app = Flask(__name__)
games_lock = threading.Lock()
GAMES: Dict[str, dict] = {}
GAME_TTL_S = 3600  # drop inactive games after an hour

_loop = asyncio.new_event_loop()
_loop_thread: Optional[threading.Thread] = None
_loop_lock = threading.Lock()

# Replaced in tests to avoid spawning a real engine.
orchestrator_factory = EngineOrchestrator.for_engine


def _run(coro, timeout: float | None = None):
    """Run a coroutine on the engine loop and wait for its result."""
    global _loop_thread
    with _loop_lock:
        if _loop_thread is None:
            _loop_thread = threading.Thread(target=_loop.run_forever, name="engine-loop", daemon=True)
            _loop_thread.start()
    return asyncio.run_coroutine_threadsafe(coro, _loop).result(timeout)


def _error(kind: str, message: str, status: int, **extra):
    payload = {"error": kind, "message": message}
    payload.update(extra)
    return jsonify(payload), status


@app.errorhandler(InvalidMoveText)
@app.errorhandler(InvalidPosition)
def _bad_input(exc):
    return _error(type(exc).__name__, str(exc), 400)


@app.errorhandler(ValueError)
def _bad_value(exc):
    return _error("InvalidRequest", str(exc), 400)


@app.errorhandler(RequestInFlight)
def _in_flight(exc):
    return _error("RequestInFlight", str(exc), 409)


@app.errorhandler(Cancelled)
def _cancelled(exc):
    return _error("Cancelled", str(exc), 409)


@app.errorhandler(EngineTimeout)
def _timeout(exc):
    return _error("EngineTimeout", str(exc), 504, retryable=True)


@app.errorhandler(EngineUnavailable)
def _unavailable(exc):
    return _error("EngineUnavailable", str(exc), 503, retryable=False)


def _cleanup_stale_games(max_age_s: int = GAME_TTL_S):
    now = time.time()
    with games_lock:
        expired = [gid for gid, sess in GAMES.items() if now - sess.get("updated_at", now) > max_age_s]
        stale = [GAMES.pop(gid) for gid in expired]
    for sess in stale:
        log.info("Dropping inactive game %s", sess["id"])
        _run(sess["game"].engine.dispose())


def _get_session(game_id: str) -> Optional[dict]:
    _cleanup_stale_games()
    with games_lock:
        session = GAMES.get(game_id)
    if session:
        session["updated_at"] = time.time()
    return session


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _engine_config_from_payload(data: dict) -> EngineConfig:
    changes = data.get("config") or {}
    if not isinstance(changes, dict):
        raise ValueError("config must be a JSON object")
    try:
        if data.get("preset_rating") is not None:
            base = preset_for_rating(int(data["preset_rating"]))
            return base.merged(**changes) if changes else base
        return EngineConfig().merged(**changes) if changes else EngineConfig()
    except TypeError as e:
        raise ValueError(f"Invalid config value: {e}") from e


def _engine_reply(result) -> Optional[dict]:
    if result is None:
        return None
    resolved, entry = result
    return {"move": resolved.to_dict(), "log_entry": entry.to_dict()}


def _serialize(session: dict, **extra) -> dict:
    game: TrainingGame = session["game"]
    cfg = game.engine.config
    payload = {
        "game_id": session["id"],
        "status": game.status(),
        "rating_label": describe_rating(cfg.strength_rating),
        "accuracy_label": describe_accuracy(cfg.accuracy),
    }
    payload.update(extra)
    return payload


async def _start_game(game: TrainingGame):
    await game.engine.initialize()
    return await game.start()


async def _human_then_engine(game: TrainingGame, move: str):
    entry = await game.play_human(move)
    reply = None
    try:
        reply = await game.engine_turn()
    except NoLegalMove:
        log.info("Engine has no legal reply; game over")
    return entry, reply


async def _undo(game: TrainingGame):
    undone = game.undo()
    return undone, await game.start()


async def _load(game: TrainingGame, fen: Optional[str] = None, pgn: Optional[str] = None):
    if pgn:
        game.load_pgn(pgn)
    else:
        game.load_fen(fen)
    return await game.start()


async def _hints(game: TrainingGame, count: int):
    candidates = await game.hints(count)
    return candidates, hint_arrows(candidates)


@app.route("/api/games", methods=["POST"])
def create_game():
    _cleanup_stale_games()
    data = _json_body()
    human_color = "black" if str(data.get("human_plays", "white")).lower() == "black" else "white"
    engine_cfg = _engine_config_from_payload(data)
    tcfg = TrainingConfig(human_color=human_color,
                          annotate_engine_moves=bool(data.get("annotate_engine_moves", True)))
    orchestrator = orchestrator_factory(config=engine_cfg)
    game = TrainingGame(orchestrator, tcfg, starting_fen=data.get("fen"))
    try:
        opening = _run(_start_game(game))
    except Exception:
        _run(orchestrator.dispose())
        raise
    game_id = data.get("game_id") or f"game_{int(time.time())}_{uuid.uuid4().hex[:6]}"
    session = {"id": game_id, "game": game, "lock": threading.Lock(),
               "created_at": time.time(), "updated_at": time.time()}
    with games_lock:
        GAMES[game_id] = session
    log.info("Started game %s (human=%s rating=%d)", game_id, human_color, engine_cfg.strength_rating)
    return jsonify(_serialize(session, engine_move=_engine_reply(opening)))


@app.route("/api/games/<game_id>", methods=["GET"])
def game_status(game_id: str):
    session = _get_session(game_id)
    if not session:
        return _error("NotFound", "no such game", 404)
    return jsonify(_serialize(session))


@app.route("/api/games/<game_id>/move", methods=["POST"])
def game_move(game_id: str):
    session = _get_session(game_id)
    if not session:
        return _error("NotFound", "no such game", 404)
    data = _json_body()
    move = data.get("move")
    if not move:
        return _error("InvalidRequest", "move is required", 400)
    with session["lock"]:
        entry, reply = _run(_human_then_engine(session["game"], str(move)))
        return jsonify(_serialize(session, human_entry=entry.to_dict(), engine_move=_engine_reply(reply)))


@app.route("/api/games/<game_id>/hints", methods=["GET"])
def game_hints(game_id: str):
    session = _get_session(game_id)
    if not session:
        return _error("NotFound", "no such game", 404)
    count = request.args.get("count", default=3, type=int)
    with session["lock"]:
        candidates, arrows = _run(_hints(session["game"], count))
    return jsonify({"candidates": [c.to_dict() for c in candidates], "arrows": [a.to_dict() for a in arrows]})


@app.route("/api/games/<game_id>/config", methods=["POST"])
def game_config(game_id: str):
    session = _get_session(game_id)
    if not session:
        return _error("NotFound", "no such game", 404)
    changes = _json_body()
    try:
        cfg = _run(session["game"].engine.update_config(**changes))
    except TypeError as e:
        return _error("InvalidRequest", f"Invalid config value: {e}", 400)
    return jsonify({"config": cfg.to_dict(), "rating_label": describe_rating(cfg.strength_rating),
                    "accuracy_label": describe_accuracy(cfg.accuracy)})


@app.route("/api/games/<game_id>/undo", methods=["POST"])
def game_undo(game_id: str):
    session = _get_session(game_id)
    if not session:
        return _error("NotFound", "no such game", 404)
    with session["lock"]:
        undone, reply = _run(_undo(session["game"]))
        return jsonify(_serialize(session, undone=undone, engine_move=_engine_reply(reply)))


@app.route("/api/games/<game_id>/load", methods=["POST"])
def game_load(game_id: str):
    session = _get_session(game_id)
    if not session:
        return _error("NotFound", "no such game", 404)
    data = _json_body()
    game: TrainingGame = session["game"]
    if not data.get("pgn") and not data.get("fen"):
        return _error("InvalidRequest", "fen or pgn is required", 400)
    with session["lock"]:
        reply = _run(_load(game, fen=data.get("fen"), pgn=data.get("pgn")))
        return jsonify(_serialize(session, engine_move=_engine_reply(reply)))


@app.route("/api/games/<game_id>/log", methods=["GET"])
def game_log(game_id: str):
    session = _get_session(game_id)
    if not session:
        return _error("NotFound", "no such game", 404)
    game: TrainingGame = session["game"]
    return jsonify({
        "entries": [e.to_dict() for e in game.log_entries],
        "stats": game.stats(),
        "human_stats": game.stats(game.human_color),
        "pgn": game.ref.pgn(),
    })


@app.route("/api/games/<game_id>", methods=["DELETE"])
def game_delete(game_id: str):
    with games_lock:
        session = GAMES.pop(game_id, None)
    if not session:
        return _error("NotFound", "no such game", 404)
    _run(session["game"].engine.dispose())
    return jsonify({"game_id": game_id, "deleted": True})


@app.after_request
def add_cors_headers(response):
    response.headers["Access-Control-Allow-Origin"] = request.headers.get("Origin", "*")
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    response.headers["Cache-Control"] = "no-store, max-age=0"
    return response


@app.route("/api/<path:path>", methods=["OPTIONS"])
def cors_preflight(path: str):
    resp = app.make_response(("", 204))
    resp.headers["Access-Control-Allow-Origin"] = request.headers.get("Origin", "*")
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    return resp


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8000, debug=False)
