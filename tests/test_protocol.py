import asyncio
import contextlib
import unittest

import chess
import chess.engine

from fake_oracle import OPTIONS, FakeOracle, settle, until
from sparring_engine.config import EngineConfig, SearchBudget
from sparring_engine.errors import Cancelled, EngineTimeout, EngineUnavailable, NoLegalMove, RequestInFlight
from sparring_engine.protocol import BestMove, ProgressEvent, ProtocolSession

FEN = chess.STARTING_FEN
AFTER_E4 = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


async def collect(session, budget=None, fen=FEN, **kwargs):
    events = []
    search = session.search(fen, budget or SearchBudget(movetime_ms=100), **kwargs)
    async with contextlib.aclosing(search) as gen:
        async for event in gen:
            events.append(event)
    return events


class ProtocolSessionTests(unittest.IsolatedAsyncioTestCase):
    async def _session(self, fake, **timeouts):
        timeouts.setdefault("handshake_timeout_s", 1.0)
        timeouts.setdefault("ready_timeout_s", 1.0)
        timeouts.setdefault("search_timeout_s", 1.0)
        session = ProtocolSession(fake.popen_uci, **timeouts)
        await session.initialize()
        self.addAsyncCleanup(session.shutdown)
        return session

    async def test_handshake_then_ready_barrier(self):
        fake = FakeOracle()
        session = await self._session(fake)
        self.assertTrue(session.ready)
        self.assertEqual(session.engine_name, "FakeFish")
        self.assertEqual(fake.sent, ["uci", "isready"])

    async def test_initialize_twice_is_a_no_op(self):
        fake = FakeOracle()
        session = await self._session(fake)
        await session.initialize()
        self.assertEqual(fake.started, 1)

    async def test_missing_handshake_is_unavailable(self):
        fake = FakeOracle(handshake=False)
        session = ProtocolSession(fake.popen_uci, handshake_timeout_s=0.05)
        with self.assertRaises(EngineUnavailable):
            await session.initialize()
        self.assertFalse(session.ready)
        self.assertTrue(fake.closed)

    async def test_missing_ready_is_unavailable(self):
        fake = FakeOracle(answer_ready=False)
        session = ProtocolSession(fake.popen_uci, handshake_timeout_s=1.0, ready_timeout_s=0.05)
        with self.assertRaises(EngineUnavailable):
            await session.initialize()
        self.assertFalse(session.ready)
        self.assertTrue(fake.closed)

    async def test_launch_failure_is_unavailable(self):
        session = ProtocolSession(FakeOracle(fail_start=True).popen_uci)
        with self.assertRaises(EngineUnavailable):
            await session.initialize()

    async def test_shutdown_aborts_a_stalled_launch(self):
        fake = FakeOracle(handshake=False)
        session = ProtocolSession(fake.popen_uci, handshake_timeout_s=5.0)
        init = asyncio.ensure_future(session.initialize())
        await until(lambda: fake.sent == ["uci"])
        await session.shutdown()
        with self.assertRaises(EngineUnavailable):
            await asyncio.wait_for(init, 1.0)
        self.assertTrue(fake.closed)
        self.assertFalse(session.ready)

    async def test_apply_config_sends_options_in_order(self):
        fake = FakeOracle()
        session = await self._session(fake)
        await session.apply_config(EngineConfig(strength_rating=1500, search_skill_level=8, contempt=-10,
                                                move_overhead_ms=50))
        self.assertEqual(fake.sent[2:], [
            "setoption name Skill Level value 8",
            "setoption name Contempt value -10",
            "setoption name Move Overhead value 50",
            "isready",
        ])

    async def test_unchanged_options_are_not_resent(self):
        fake = FakeOracle()
        session = await self._session(fake)
        cfg = EngineConfig(search_skill_level=8, contempt=-10, move_overhead_ms=50)
        await session.apply_config(cfg)
        await session.apply_config(cfg.merged(move_overhead_ms=80))
        self.assertEqual(fake.sent[-2:], ["setoption name Move Overhead value 80", "isready"])

    async def test_options_the_engine_lacks_are_skipped(self):
        fake = FakeOracle(options=OPTIONS[:1])
        session = await self._session(fake)
        await session.apply_config(EngineConfig(search_skill_level=3))
        self.assertEqual(fake.commands("setoption"), ["setoption name Skill Level value 3"])

    async def test_search_yields_progress_then_one_terminal(self):
        fake = FakeOracle()
        session = await self._session(fake)
        events = await collect(session)
        self.assertEqual([type(e) for e in events], [ProgressEvent, ProgressEvent, BestMove])
        self.assertEqual(events[-1], BestMove("e2e4"))
        self.assertEqual(events[1].score, chess.engine.Cp(35))
        self.assertEqual(events[1].pv, ("e2e4", "e7e5"))
        self.assertEqual(events[1].nodes, 80)
        self.assertEqual(fake.sent[-2:], ["position startpos", "go movetime 100"])
        self.assertFalse(session.search_in_progress)

    async def test_scores_are_relative_to_the_side_to_move(self):
        fake = FakeOracle(bestmove="e7e5 ponder g1f3", infos=["info depth 5 score mate -3 pv e7e5 g1f3"])
        session = await self._session(fake)
        events = await collect(session, fen=AFTER_E4)
        self.assertEqual(events[0].score, chess.engine.Mate(-3))
        self.assertEqual(events[-1], BestMove("e7e5", "g1f3"))
        self.assertIn(f"position fen {AFTER_E4}", fake.sent)

    async def test_node_and_depth_budgets(self):
        fake = FakeOracle()
        session = await self._session(fake)
        await collect(session, SearchBudget(nodes=5000))
        await collect(session, SearchBudget(depth=9))
        self.assertEqual(fake.commands("go"), ["go nodes 5000", "go depth 9"])

    async def test_progress_depth_never_decreases(self):
        fake = FakeOracle(infos=[
            "info depth 3 score cp 10 pv e2e4",
            "info depth 2 score cp 15 pv d2d4",
            "info string hello",
            "info depth 4 currmove e2e4 currmovenumber 1",
            "info depth 4 score cp 12 pv e2e4",
        ])
        session = await self._session(fake)
        events = await collect(session)
        self.assertEqual([e.depth for e in events if isinstance(e, ProgressEvent)], [3, 4])

    async def test_no_legal_move_terminal(self):
        fake = FakeOracle(bestmove="(none)", infos=["info depth 0 score mate 0"])
        session = await self._session(fake)
        with self.assertRaises(NoLegalMove):
            await collect(session)
        self.assertFalse(session.search_in_progress)
        self.assertTrue(session.ready)

    async def test_multipv_option_sent_only_on_change(self):
        fake = FakeOracle()
        session = await self._session(fake)
        await collect(session, multipv=3)
        await collect(session, multipv=3)
        await collect(session)
        self.assertEqual(fake.commands("setoption name MultiPV"), [
            "setoption name MultiPV value 3",
            "setoption name MultiPV value 1",
        ])

    async def test_second_search_while_one_runs(self):
        fake = FakeOracle(hold_search=True)
        session = await self._session(fake)
        first = asyncio.ensure_future(collect(session))
        await until(lambda: fake.pending_searches == 1)
        with self.assertRaises(RequestInFlight):
            await collect(session)
        with self.assertRaises(RequestInFlight):
            await session.apply_config(EngineConfig())
        fake.release()
        events = await first
        self.assertEqual(events[-1], BestMove("e2e4"))

    async def test_timeout_then_stale_terminal_is_discarded(self):
        fake = FakeOracle(hold_search=True, release_on_stop=False)
        session = await self._session(fake, search_timeout_s=0.05)
        with self.assertRaises(EngineTimeout):
            await collect(session)
        self.assertEqual(fake.sent[-1], "stop")
        self.assertFalse(session.search_in_progress)

        fake.release("a2a3")  # the late answer to the timed-out search
        fake.hold_search = False
        fake.bestmove = "d2d4"
        events = await collect(session)
        self.assertEqual(events[-1].move, "d2d4")

    async def test_cancel_surfaces_cancelled_and_drops_late_terminal(self):
        fake = FakeOracle(hold_search=True)
        session = await self._session(fake)
        task = asyncio.ensure_future(collect(session))
        await until(lambda: fake.pending_searches == 1)
        self.assertTrue(session.search_in_progress)
        self.assertTrue(session.cancel())
        with self.assertRaises(Cancelled):
            await task
        self.assertIn("stop", fake.sent)
        self.assertFalse(session.cancel())

        fake.hold_search = False
        fake.bestmove = "g1f3"
        events = await collect(session)
        self.assertEqual(events[-1].move, "g1f3")

    async def test_cancel_before_the_engine_starts_searching(self):
        fake = FakeOracle(hold_search=True)
        session = await self._session(fake)
        task = asyncio.ensure_future(collect(session))
        await asyncio.sleep(0)
        self.assertTrue(session.cancel())
        with self.assertRaises(Cancelled):
            await asyncio.wait_for(task, 1.0)

    async def test_engine_exit_mid_search(self):
        fake = FakeOracle(hold_search=True)
        session = await self._session(fake)
        task = asyncio.ensure_future(collect(session))
        await until(lambda: fake.pending_searches == 1)
        fake.exit(1)
        with self.assertRaises(EngineUnavailable):
            await task
        self.assertFalse(session.ready)

    async def test_engine_exit_while_idle(self):
        fake = FakeOracle()
        session = await self._session(fake)
        fake.exit(1)
        await settle()
        with self.assertRaises(EngineUnavailable):
            await collect(session)
        self.assertFalse(session.ready)

        await session.initialize()
        self.assertEqual(fake.started, 2)
        self.assertEqual((await collect(session))[-1].move, "e2e4")

    async def test_search_before_initialize(self):
        session = ProtocolSession(FakeOracle().popen_uci)
        with self.assertRaises(EngineUnavailable):
            await collect(session)

    async def test_shutdown_is_idempotent(self):
        fake = FakeOracle()
        session = await self._session(fake)
        await session.shutdown()
        await session.shutdown()
        self.assertEqual(fake.commands("quit"), ["quit"])
        self.assertTrue(fake.closed)
        self.assertFalse(session.ready)


if __name__ == "__main__":
    unittest.main()
