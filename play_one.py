import argparse
import asyncio
import json
import logging

from sparring_engine.annotator import format_evaluation
from sparring_engine.config import SETTINGS, EngineConfig, preset_for_rating
from sparring_engine.errors import Cancelled, EngineTimeout, InvalidMoveText, InvalidPosition, NoLegalMove
from sparring_engine.orchestrator import EngineOrchestrator
from sparring_engine.skill_model import describe_accuracy, describe_rating
from sparring_engine.training import TrainingConfig, TrainingGame, hint_arrows

HELP = "Commands: <move> (SAN or UCI), hint, undo, fen <FEN>, pgn, stats, help, quit"


def load_json_config(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logging.getLogger("play_one").error("Failed to read config %s: %s", path, e)
        return {}


def _print_entry(entry) -> None:
    line = f"  {entry.label():<14} {entry.classification.value:<11} {format_evaluation(entry.evaluation):>5}  {entry.explanation}"
    if entry.engine_suggestion:
        line += f" (engine preferred {entry.engine_suggestion})"
    if entry.was_deliberate:
        line += " [human-like move]"
    print(line)


async def _engine_reply(game: TrainingGame) -> None:
    try:
        result = await game.engine_turn()
    except EngineTimeout as e:
        print(f"Engine timed out ({e}); type 'retry' to ask again.")
        return
    except NoLegalMove:
        return
    if result:
        _print_entry(result[1])


async def play(game: TrainingGame) -> None:
    await game.engine.initialize()
    cfg = game.engine.config
    print(f"Sparring partner: {cfg.strength_rating} ({describe_rating(cfg.strength_rating)}), "
          f"accuracy {cfg.accuracy:.0f}% ({describe_accuracy(cfg.accuracy)})")
    print(HELP)
    await _engine_reply(game)
    while not game.is_over():
        print()
        print(game.ref.board)
        raw = (await asyncio.to_thread(input, f"[{game.ref.turn}] > ")).strip()
        if not raw:
            continue
        cmd, _, arg = raw.partition(" ")
        try:
            if cmd == "quit":
                break
            elif cmd == "help":
                print(HELP)
            elif cmd == "hint":
                candidates = await game.hints()
                for c, arrow in zip(candidates, hint_arrows(candidates)):
                    print(f"  #{c.variation_rank} {c.move} {format_evaluation(c.centipawns)} depth {c.search_depth} ({arrow.color})")
            elif cmd == "undo":
                print(f"  undid {game.undo()} plies")
                await _engine_reply(game)
            elif cmd == "retry":
                await _engine_reply(game)
            elif cmd == "fen" and arg:
                game.load_fen(arg)
                await _engine_reply(game)
            elif cmd == "pgn":
                print(game.ref.pgn())
            elif cmd == "stats":
                print(json.dumps(game.stats(game.human_color), indent=2))
            else:
                _print_entry(await game.play_human(raw))
                await _engine_reply(game)
        except (InvalidMoveText, InvalidPosition) as e:
            print(f"  {e}")
        except Cancelled:
            print("  request cancelled")
    status = game.status()
    print(f"Result: {status['result']} ({status['termination_reason'] or 'unfinished'})")


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Play a training game against the sparring engine.")
    ap.add_argument("--config", default=None, help="Optional JSON config file to load defaults from.")
    ap.add_argument("--rating", type=int, default=None, help="Engine strength rating (e.g. 1200)")
    ap.add_argument("--preset", action="store_true", help="Derive thinking time and accuracy from --rating")
    ap.add_argument("--accuracy", type=float, default=None, help="0-100; 100 always plays the engine's best move")
    ap.add_argument("--movetime", type=int, default=None, help="Engine time budget per move in ms (0 → use --nodes)")
    ap.add_argument("--nodes", type=int, default=None, help="Engine node budget per move")
    ap.add_argument("--human-color", choices=["white", "black"], default=None)
    ap.add_argument("--fen", default=None, help="Starting position")
    ap.add_argument("--engine-path", default=None, help="Engine binary (defaults to settings/env, then PATH)")
    ap.add_argument("--no-engine-annotations", action="store_true", help="Skip analysis of engine moves")
    ap.add_argument("--log-out", default=None, help="Optional path to write the annotated move log (JSON)")
    ap.add_argument("--log-level", default=None, help="Python logging level (e.g., INFO, DEBUG)")

    args = ap.parse_args()
    cfg_dict = load_json_config(args.config) if args.config else {}

    def pick(*keys, default=None):
        for k in keys:
            v = getattr(args, k, None)
            if v is not None:
                return v
            if k in cfg_dict and cfg_dict[k] is not None:
                return cfg_dict[k]
        return default

    log_level = pick("log_level", default=SETTINGS.log_level).upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.WARNING), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    rating = int(pick("rating", default=1500))
    engine_cfg = preset_for_rating(rating) if (args.preset or cfg_dict.get("preset")) else EngineConfig.for_rating(rating)
    changes = {}
    if pick("accuracy") is not None:
        changes["accuracy"] = float(pick("accuracy"))
    if pick("movetime") is not None:
        changes["time_budget_ms"] = int(pick("movetime"))
    if pick("nodes") is not None:
        changes["node_budget"] = int(pick("nodes"))
    if changes:
        engine_cfg = engine_cfg.merged(**changes)

    tcfg = TrainingConfig(human_color=pick("human_color", default="white"),
                          annotate_engine_moves=not args.no_engine_annotations)
    orchestrator = EngineOrchestrator.for_engine(pick("engine_path"), config=engine_cfg)
    game = TrainingGame(orchestrator, tcfg, starting_fen=pick("fen"))

    async def main():
        try:
            await play(game)
        finally:
            await orchestrator.dispose()

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    if args.log_out:
        game.export_log(args.log_out)
