#!/usr/bin/env python3
"""Tests for session_config module."""

import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from port_allocator import PreferredPorts
from session_config import SessionConfig, merge_config, missing_initialization_items


class TestSessionConfig(unittest.TestCase):
    """Test cases for SessionConfig"""

    def setUp(self):
        """Set up a project directory"""
        self.test_dir = tempfile.mkdtemp()
        os.makedirs(os.path.join(self.test_dir, ".devsession"))
        self.config_path = os.path.join(self.test_dir, ".devsession", "config.json")

    def tearDown(self):
        """Clean up the project directory"""
        shutil.rmtree(self.test_dir)

    def write_config(self, content):
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write(content if isinstance(content, str) else json.dumps(content))

    def test_defaults_without_file(self):
        """A missing config file gives the built-in defaults"""
        config = SessionConfig(self.test_dir)
        self.assertEqual(config.resolve_preferred_ports(), PreferredPorts(3000, 3001, 3333))
        self.assertEqual(config.app_command, "npm run dev")
        self.assertTrue(config.overlay_enabled)

    def test_loaded_values_merge_over_defaults(self):
        """Nested keys override defaults without dropping siblings"""
        self.write_config({"app": {"port": 4000}, "overlay": {"enabled": False}})
        config = SessionConfig(self.test_dir)

        self.assertEqual(config.get("app.port"), 4000)
        self.assertEqual(config.get("app.command"), "npm run dev")
        self.assertFalse(config.overlay_enabled)

    def test_malformed_json_warns_and_uses_defaults(self):
        """Broken JSON is reported once and ignored"""
        self.write_config("{not json")
        with self.assertLogs("session_config", level="WARNING") as logs:
            config = SessionConfig(self.test_dir)

        self.assertEqual(len(logs.output), 1)
        self.assertEqual(config.resolve_preferred_ports(), PreferredPorts())

    def test_get_dot_path(self):
        """Dot paths walk nested objects and fall back to the default"""
        self.write_config({"support": {"host": "0.0.0.0"}})
        config = SessionConfig(self.test_dir)

        self.assertEqual(config.get("support.host"), "0.0.0.0")
        self.assertEqual(config.get("support.missing", "x"), "x")
        self.assertEqual(config.get("support.host.deeper", "y"), "y")

    def test_proxy_port_sources(self):
        """server.proxy_port wins over proxy.port"""
        self.write_config({"proxy": {"port": 5000}})
        self.assertEqual(SessionConfig(self.test_dir).resolve_preferred_ports().proxy_port, 5000)

        self.write_config({"server": {"proxy_port": 6000}, "proxy": {"port": 5000}})
        self.assertEqual(SessionConfig(self.test_dir).resolve_preferred_ports().proxy_port, 6000)

    def test_non_numeric_ports_fall_back(self):
        """Strings, booleans and out-of-range numbers are ignored"""
        self.write_config({"app": {"port": "4000"}, "support": {"port": True}, "server": {"proxy_port": 70000}})
        self.assertEqual(SessionConfig(self.test_dir).resolve_preferred_ports(), PreferredPorts())

    def test_host_resolution_order(self):
        """Config, then DEVSESSION_SUPPORT_HOST, then HOST, then localhost"""
        env = {"DEVSESSION_SUPPORT_HOST": "10.0.0.2", "HOST": "10.0.0.3"}

        with patch.dict(os.environ, env):
            self.write_config({"support": {"host": "10.0.0.1"}})
            self.assertEqual(SessionConfig(self.test_dir).resolve_host(), "10.0.0.1")

            self.write_config({})
            self.assertEqual(SessionConfig(self.test_dir).resolve_host(), "10.0.0.2")

            del os.environ["DEVSESSION_SUPPORT_HOST"]
            self.assertEqual(SessionConfig(self.test_dir).resolve_host(), "10.0.0.3")

            del os.environ["HOST"]
            self.assertEqual(SessionConfig(self.test_dir).resolve_host(), "localhost")

    def test_merge_does_not_mutate_defaults(self):
        default = {"a": {"b": 1}}
        merged = merge_config(default, {"a": {"c": 2}})
        self.assertEqual(merged, {"a": {"b": 1, "c": 2}})
        self.assertEqual(default, {"a": {"b": 1}})


class TestInitializationCheck(unittest.TestCase):
    """Test cases for missing_initialization_items"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_empty_project(self):
        """Everything is missing in a fresh directory"""
        self.assertEqual(
            missing_initialization_items(self.test_dir),
            [
                ".devsession/ directory",
                ".devsession/config.json",
                ".devsession/loader.js",
                ".gitignore entry for .devsession/",
            ],
        )

    def test_complete_project(self):
        """Nothing is missing once all four items exist"""
        os.makedirs(os.path.join(self.test_dir, ".devsession"))
        for name in ("config.json", "loader.js"):
            with open(os.path.join(self.test_dir, ".devsession", name), "w", encoding="utf-8") as f:
                f.write("{}")
        with open(os.path.join(self.test_dir, ".gitignore"), "w", encoding="utf-8") as f:
            f.write("node_modules\n.devsession/\n")

        self.assertEqual(missing_initialization_items(self.test_dir), [])


if __name__ == "__main__":
    unittest.main()
