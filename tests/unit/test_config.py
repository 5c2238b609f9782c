#!/usr/bin/env python3
"""
Configuration loading tests.
"""

import logging
import os
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import reservation_fixtures  # noqa: F401  (puts src on the path)
from fleetpark.config import EngineConfig, load_config, setup_logging


class TestLoadConfig(unittest.TestCase):
    """Unit tests for load_config"""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def write(self, text):
        path = os.path.join(self.tmpdir.name, "fleetpark.yml")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
        return path

    def test_defaults(self):
        config = load_config(environ={})
        self.assertEqual(config, EngineConfig())
        self.assertEqual(config.retry_attempts, 3)
        self.assertIsNone(config.redis_url)

    def test_yaml_file(self):
        path = self.write(
            "database_url: postgresql://db/fleetpark\n"
            "redis_url: redis://cache:6379/0\n"
            "retry_attempts: 5\n"
            "lock_timeout_seconds: 2.5\n"
        )
        config = load_config(path, environ={})

        self.assertEqual(config.database_url, "postgresql://db/fleetpark")
        self.assertEqual(config.redis_url, "redis://cache:6379/0")
        self.assertEqual(config.retry_attempts, 5)
        self.assertEqual(config.lock_timeout_seconds, 2.5)

    def test_config_path_from_environment(self):
        path = self.write("currency: USD\n")
        self.assertEqual(load_config(environ={"FLEETPARK_CONFIG": path}).currency, "USD")

    def test_environment_overrides_file(self):
        path = self.write("retry_attempts: 5\nlog_level: DEBUG\n")
        config = load_config(path, environ={
            "FLEETPARK_RETRY_ATTEMPTS": "7",
            "FLEETPARK_RETRY_BACKOFF_SECONDS": "0.25",
            "DATABASE_URL": "sqlite:///./other.db",
        })

        self.assertEqual(config.retry_attempts, 7)
        self.assertEqual(config.retry_backoff_seconds, 0.25)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.database_url, "sqlite:///./other.db")

    def test_prefixed_database_url_wins(self):
        config = load_config(environ={
            "DATABASE_URL": "sqlite:///./a.db",
            "FLEETPARK_DATABASE_URL": "sqlite:///./b.db",
        })
        self.assertEqual(config.database_url, "sqlite:///./b.db")

    def test_unknown_key_rejected(self):
        path = self.write("retry_attempt: 5\n")
        with self.assertRaises(ValueError):
            load_config(path, environ={})

    def test_non_mapping_rejected(self):
        path = self.write("- just\n- a list\n")
        with self.assertRaises(ValueError):
            load_config(path, environ={})

    def test_invalid_values_rejected(self):
        with self.assertRaises(ValueError):
            load_config(environ={"FLEETPARK_RETRY_ATTEMPTS": "0"})
        with self.assertRaises(ValueError):
            EngineConfig(lock_timeout_seconds=0)

    def test_blank_optional_url_means_disabled(self):
        config = load_config(environ={"FLEETPARK_REDIS_URL": ""})
        self.assertIsNone(config.redis_url)


class TestSetupLogging(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root_level = logging.getLogger().level

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
        root.setLevel(self.root_level)
        self.tmpdir.cleanup()

    def test_file_handler_and_level(self):
        log_file = os.path.join(self.tmpdir.name, "logs", "fleetpark.log")
        logger = setup_logging("debug", log_file)
        logger.info("engine started")

        self.assertEqual(logger.name, "fleetpark")
        self.assertEqual(logging.getLogger().level, logging.DEBUG)
        self.assertTrue(os.path.exists(log_file))


if __name__ == '__main__':
    unittest.main()
