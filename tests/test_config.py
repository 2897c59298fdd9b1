"""Tests for culinarylens.config."""
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from culinarylens.config import Config, load_config
from culinarylens.fusion import FusionParams
from culinarylens.resilience import RetryPolicy

MISSING = Path("/nonexistent/culinarylens/config.yaml")


class TestLoadConfig(unittest.TestCase):
    def test_defaults_match_builtin_policies(self):
        with patch.dict(os.environ, {}, clear=True):
            config = Config(load_config(MISSING))
        self.assertEqual(config.critical_policy(), RetryPolicy.critical())
        self.assertEqual(config.asset_policy(), RetryPolicy.asset())
        self.assertEqual(config.fusion_params(), FusionParams())
        self.assertFalse(config.force_offline)

    def test_user_file_deep_merges(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yaml"
            path.write_text(
                "resilience:\n"
                "  asset:\n"
                "    max_attempts: 5\n"
                "fusion:\n"
                "  weights:\n"
                "    perception: 0.6\n"
            )
            with patch.dict(os.environ, {}, clear=True):
                config = Config(load_config(path))
        policy = config.asset_policy()
        self.assertEqual(policy.max_attempts, 5)
        self.assertEqual(policy.initial_delay, 1.0)
        params = config.fusion_params()
        self.assertEqual(params.perception_weight, 0.6)
        self.assertEqual(params.coherence_weight, 0.3)
        self.assertEqual(config.gemini.get("synthesis_model"), "gemini-3-pro-preview")

    def test_env_overrides(self):
        env = {
            "CULINARYLENS_DATA_DIR": "/tmp/culinarylens-test",
            "CULINARYLENS_PORT": "9001",
            "CULINARYLENS_OFFLINE": "yes",
            "CULINARYLENS_PROBE_URL": "http://probe.local",
            "CULINARYLENS_PROBE_TTL": "not-a-number",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config(load_config(MISSING))
        self.assertEqual(config.data_dir, Path("/tmp/culinarylens-test"))
        self.assertEqual(config.server["port"], 9001)
        self.assertTrue(config.force_offline)
        self.assertEqual(config.health["probe_url"], "http://probe.local")
        self.assertEqual(config.health["probe_ttl_seconds"], 15.0)

    def test_invalid_backoff_rejected(self):
        config = Config({"resilience": {"critical": {"backoff_multiplier": 0.5}}})
        with self.assertRaises(ValueError):
            config.critical_policy()

    def test_empty_raw_uses_defaults(self):
        config = Config({})
        self.assertEqual(config.data_dir, Path.home() / ".culinarylens")
        self.assertEqual(config.critical_policy().max_attempts, 4)


if __name__ == "__main__":
    unittest.main()
