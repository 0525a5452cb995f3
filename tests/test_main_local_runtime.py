from __future__ import annotations

import asyncio
import os
import tempfile
import unittest

import config
import main_local
from monitor.patterns import TradingParams
from trading.paper_executor import PaperOrderSubmitter
from trading.registry import MonitoredToken


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class MainLocalRuntimeTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.patch_cfg(
            TELEMETRY_FILE=os.path.join(self._tmp.name, "events.jsonl"),
            QUOTE_PRICE_SOURCE="router",
            RPC_URLS=["http://127.0.0.1:8545"],
            SHUTDOWN_TIMEOUT_SECONDS=1,
            TEST_MODE=True,
        )

    def tearDown(self) -> None:
        super().tearDown()
        self._tmp.cleanup()

    async def test_build_runtime_uses_paper_submitter_in_test_mode(self) -> None:
        runtime = main_local.build_runtime(patterns=[])
        self.assertIsInstance(runtime.executor.submitter, PaperOrderSubmitter)
        self.assertEqual(runtime.executor.mode, "paper")
        self.assertIsNone(runtime.http)
        self.assertIs(runtime.price_loop.registry, runtime.scanner.registry)

    async def test_dexscreener_source_gets_http_client(self) -> None:
        self.patch_cfg(QUOTE_PRICE_SOURCE="dexscreener")
        runtime = main_local.build_runtime(patterns=[], submitter=PaperOrderSubmitter())
        self.assertIsNotNone(runtime.http)
        self.assertEqual(runtime.quote_cache.source.name, "dexscreener")
        await runtime.http.close()

    async def test_status_report_lists_tokens_patterns_and_stats(self) -> None:
        runtime = main_local.build_runtime(patterns=[], submitter=PaperOrderSubmitter())
        params = TradingParams(0.00002, 0.00002, 20, 50, 15, 30, 0.001)
        await runtime.registry.insert(
            MonitoredToken(
                address="0x" + "e5" * 20,
                creator="",
                created_ts=1.0,
                params=params,
                matched_pattern="low_gas",
                price_change_percent=12.5,
            )
        )
        with self.assertLogs("main_local", level="INFO") as logs:
            await main_local.log_status(runtime)
        text = "\n".join(logs.output)
        self.assertIn("STATUS uptime=", text)
        self.assertIn("change=12.50%", text)
        self.assertIn("pattern=low_gas active=1 traded=0 total=1", text)
        self.assertIn("STATUS stats monitored=0", text)

    async def test_periodic_task_stops_when_event_is_set(self) -> None:
        stop_event = asyncio.Event()
        calls: list[int] = []

        async def _step() -> None:
            calls.append(1)
            if len(calls) == 2:
                raise RuntimeError("one bad iteration")
            if len(calls) >= 3:
                stop_event.set()

        with self.assertLogs("main_local", level="ERROR"):
            await asyncio.wait_for(main_local.run_periodic("unit", 0.01, _step, stop_event), timeout=2)
        self.assertEqual(len(calls), 3)

    async def test_shutdown_sets_stop_event_and_logs_final_stats(self) -> None:
        runtime = main_local.build_runtime(patterns=[], submitter=PaperOrderSubmitter())
        with self.assertLogs("main_local", level="INFO") as logs:
            await main_local.shutdown(runtime)
        self.assertTrue(runtime.stop_event.is_set())
        self.assertTrue(any("SHUTDOWN complete" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
