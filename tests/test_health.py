"""Tests for culinarylens.session and culinarylens.health."""
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from culinarylens.health import CredentialProvider, HealthMonitor, NetworkProbe
from culinarylens.session import Session

UNSET_ENV = "CULINARYLENS_TEST_KEY_NEVER_SET"


class TestSession(unittest.TestCase):
    def test_trip_and_reset_are_idempotent(self):
        session = Session()
        self.assertFalse(session.reset())
        self.assertTrue(session.trip("quota"))
        self.assertFalse(session.trip("quota again"))
        self.assertTrue(session.latched)
        self.assertTrue(session.reset())
        self.assertFalse(session.reset())
        self.assertFalse(session.latched)
        self.assertEqual([t.offline for t in session.transitions], [True, False])

    def test_sessions_are_isolated(self):
        first, second = Session(), Session()
        first.trip("quota")
        self.assertTrue(first.latched)
        self.assertFalse(second.latched)
        self.assertNotEqual(first.id, second.id)

    def test_transition_dict(self):
        session = Session()
        session.trip("quota", source="critical:manifest")
        record = session.transitions[0].to_dict()
        self.assertEqual(record["mode"], "OFFLINE")
        self.assertEqual(record["source"], "critical:manifest")


class TestHealthMonitor(unittest.TestCase):
    def setUp(self):
        self.session = Session()
        self.network = True
        self.key = "k"
        self.monitor = HealthMonitor(self.session, network=lambda: self.network, credentials=lambda: self.key)

    def test_reachable_requires_network_and_key(self):
        self.assertTrue(self.monitor.is_reachable())
        self.network = False
        self.assertFalse(self.monitor.is_reachable())
        self.network = True
        self.key = None
        self.assertFalse(self.monitor.is_reachable())

    def test_latch_overrides_and_reset_restores(self):
        self.session.trip("quota")
        self.assertFalse(self.monitor.is_reachable())
        self.session.reset()
        self.assertTrue(self.monitor.is_reachable())

    def test_reset_reflects_network_alone(self):
        self.session.trip("quota")
        self.network = False
        self.session.reset()
        self.assertFalse(self.monitor.is_reachable())

    def test_reads_never_mutate_latch(self):
        for _ in range(3):
            self.monitor.is_reachable()
        self.assertEqual(self.session.transitions, [])

    def test_raising_check_counts_as_unreachable(self):
        def boom():
            raise RuntimeError("network check exploded")
        monitor = HealthMonitor(self.session, network=boom, credentials=lambda: "k")
        self.assertFalse(monitor.is_reachable())
        self.assertFalse(monitor.snapshot()["network"])

    def test_snapshot(self):
        self.session.trip("quota")
        snap = self.monitor.snapshot()
        self.assertEqual(snap["session_id"], self.session.id)
        self.assertTrue(snap["failover_latched"])
        self.assertTrue(snap["network"])
        self.assertFalse(snap["reachable"])


def _mock_async_client(mock_client_cls, side_effect=None):
    mock_client = MagicMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.head = AsyncMock(side_effect=side_effect)
    mock_client_cls.return_value = mock_client
    return mock_client


class TestNetworkProbe(unittest.IsolatedAsyncioTestCase):
    @patch("culinarylens.health.httpx.AsyncClient")
    async def test_force_offline_skips_request(self, mock_client_cls):
        probe = NetworkProbe(force_offline=True)
        self.assertFalse(await probe.refresh())
        self.assertFalse(probe())
        mock_client_cls.assert_not_called()

    async def test_unchecked_network_reads_as_down(self):
        probe = NetworkProbe()
        self.assertTrue(probe.stale)
        self.assertFalse(probe())

    @patch("culinarylens.health.httpx.AsyncClient")
    async def test_result_is_cached(self, mock_client_cls):
        mock_client = _mock_async_client(mock_client_cls)

        probe = NetworkProbe(ttl_seconds=60)
        self.assertTrue(await probe.refresh())
        self.assertTrue(await probe.refresh())
        self.assertTrue(probe())
        self.assertEqual(mock_client.head.await_count, 1)
        probe.invalidate()
        self.assertFalse(probe())
        await probe.refresh()
        self.assertEqual(mock_client.head.await_count, 2)

    @patch("culinarylens.health.httpx.AsyncClient")
    async def test_http_error_is_down(self, mock_client_cls):
        _mock_async_client(mock_client_cls, side_effect=httpx.ConnectError("no route"))
        probe = NetworkProbe(ttl_seconds=0)
        self.assertFalse(await probe.refresh())
        self.assertFalse(probe())

    @patch("culinarylens.health.httpx.AsyncClient")
    async def test_monitor_refresh_drives_network_check(self, mock_client_cls):
        _mock_async_client(mock_client_cls)
        monitor = HealthMonitor(Session(), network=NetworkProbe(), credentials=lambda: "k")
        self.assertFalse(monitor.is_reachable())
        await monitor.refresh()
        self.assertTrue(monitor.is_reachable())

    async def test_monitor_refresh_without_network_io(self):
        monitor = HealthMonitor(Session(), network=lambda: True, credentials=lambda: "k")
        await monitor.refresh()
        self.assertTrue(monitor.is_reachable())


class TestCredentialProvider(unittest.TestCase):
    def test_resolution_order(self):
        with patch.dict(os.environ, {UNSET_ENV: "env-key"}):
            self.assertEqual(CredentialProvider(api_key="explicit", env_var=UNSET_ENV)(), "explicit")
            self.assertEqual(CredentialProvider(env_var=UNSET_ENV, config_key="cfg")(), "env-key")
        self.assertEqual(CredentialProvider(env_var=UNSET_ENV, config_key="cfg")(), "cfg")
        self.assertIsNone(CredentialProvider(env_var=UNSET_ENV)())

    def test_store_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "credentials.json"
            provider = CredentialProvider(env_var=UNSET_ENV, store_path=path)
            self.assertIsNone(provider())
            provider.store("stored-key")
            self.assertEqual(provider(), "stored-key")
            self.assertEqual(json.loads(path.read_text())["gemini_api_key"], "stored-key")

    def test_unreadable_store_is_ignored(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "credentials.json"
            path.write_text("{not json")
            self.assertIsNone(CredentialProvider(env_var=UNSET_ENV, store_path=path)())

    def test_store_without_path_raises(self):
        with self.assertRaises(ValueError):
            CredentialProvider(env_var=UNSET_ENV).store("k")


if __name__ == "__main__":
    unittest.main()
