"""
mintsaga — Config Loader Tests

Tests:
  - deep merge semantics
  - overlay file merged over base
  - MINTSAGA_SECTION__KEY overrides, runtime-only vars excluded
  - typed settings ignore unknown keys and keep defaults
"""

import os
import sys
import tempfile
import unittest
from unittest.mock import patch

import yaml

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from gateway.config import (
    _load_env_overrides,
    deep_merge,
    get_config_value,
    load_config,
    load_settings,
)


class TestDeepMerge(unittest.TestCase):

    def test_nested(self):
        base = {"channel": {"max_retries": 5, "cap_ms": 30000}, "logging": {"level": "INFO"}}
        merged = deep_merge(base, {"channel": {"max_retries": 2}})
        self.assertEqual(merged["channel"], {"max_retries": 2, "cap_ms": 30000})
        self.assertEqual(base["channel"]["max_retries"], 5)

    def test_lists_replaced(self):
        self.assertEqual(deep_merge({"a": [1, 2]}, {"a": [3]}), {"a": [3]})

    def test_get_config_value(self):
        cfg = {"reconcile": {"interval_s": 3.0}}
        self.assertEqual(get_config_value("reconcile.interval_s", cfg), 3.0)
        self.assertEqual(get_config_value("reconcile.missing", cfg, default=7), 7)


class TestEnvOverrides(unittest.TestCase):

    def test_sections_and_types(self):
        env = {
            "MINTSAGA_RECONCILE__MAX_ATTEMPTS": "90",
            "MINTSAGA_CHANNEL__BASE_DELAY_MS": "500",
            "MINTSAGA_BACKEND__BASE_URL": "http://api.test",
        }
        with patch.dict(os.environ, env):
            overrides = _load_env_overrides()
        self.assertEqual(overrides["reconcile"], {"max_attempts": 90})
        self.assertEqual(overrides["channel"], {"base_delay_ms": 500})
        self.assertEqual(overrides["backend"], {"base_url": "http://api.test"})

    def test_runtime_vars_excluded(self):
        env = {"MINTSAGA_SIGNER_KEY": "0x" + "11" * 32, "MINTSAGA_WORKER_MODE": "inline", "MINTSAGA_DB": "x.db"}
        with patch.dict(os.environ, env):
            overrides = _load_env_overrides()
        self.assertNotIn("signer_key", overrides)
        self.assertNotIn("worker_mode", overrides)
        self.assertNotIn("db", overrides)


class TestLoadSettings(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.base_path = os.path.join(self.tmp.name, "mintsaga.yaml")
        with open(self.base_path, "w") as f:
            yaml.safe_dump({
                "backend": {"base_url": "http://base.test"},
                "reconcile": {"interval_s": 3.0, "max_attempts": 60, "bogus": True},
                "logging": {"level": "WARNING"},
            }, f)
        os.makedirs(os.path.join(self.tmp.name, "config"))
        with open(os.path.join(self.tmp.name, "config", "dev.yaml"), "w") as f:
            yaml.safe_dump({"reconcile": {"max_attempts": 5}}, f)

    def test_base_only(self):
        settings = load_settings(self.base_path, include_env_vars=False)
        self.assertEqual(settings.backend.base_url, "http://base.test")
        self.assertEqual(settings.reconcile.max_attempts, 60)
        self.assertEqual(settings.log_level, "WARNING")
        self.assertEqual(settings.coordinator.signature_timeout_s, 30.0)
        self.assertEqual(settings.channel.max_retries, 5)

    def test_overlay(self):
        config_dir = os.path.join(self.tmp.name, "config")
        settings = load_settings(self.base_path, env="dev", config_dir=config_dir, include_env_vars=False)
        self.assertEqual(settings.reconcile.max_attempts, 5)
        self.assertEqual(settings.reconcile.interval_s, 3.0)
        self.assertEqual(settings.active_env, "dev")

    def test_env_wins(self):
        with patch.dict(os.environ, {"MINTSAGA_RECONCILE__INTERVAL_S": "1.5"}):
            settings = load_settings(self.base_path)
        self.assertEqual(settings.reconcile.interval_s, 1.5)

    def test_missing_file(self):
        cfg = load_config(os.path.join(self.tmp.name, "absent.yaml"), include_env_vars=False)
        self.assertEqual(cfg["_config_source"], os.path.join(self.tmp.name, "absent.yaml"))
        self.assertEqual(get_config_value("ledger.chain_id", cfg, 50312), 50312)


if __name__ == "__main__":
    unittest.main()
