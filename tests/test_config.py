from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from health_node.config import DEFAULT_CONFIG, load_config


class LoadConfigTest(unittest.TestCase):
    def test_defaults_are_copied(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = load_config()
        config["probe"]["url"] = "http://changed/"
        self.assertEqual(DEFAULT_CONFIG["probe"]["url"], "https://www.gstatic.com/generate_204")
        self.assertEqual(config["speed"]["max_bytes"], 10 * 1024 * 1024)
        self.assertIsNone(config["installer"]["token"])

    def test_file_overrides_merge_per_section(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = load_config({"speed": {"timeout": 5}, "proxy": {"inbound": " HTTP "}})
        self.assertEqual(config["speed"]["timeout"], 5)
        self.assertEqual(config["speed"]["url"], DEFAULT_CONFIG["speed"]["url"])
        self.assertEqual(config["proxy"]["inbound"], "http")

    def test_environment_beats_file_and_flags_beat_environment(self) -> None:
        env = {
            "HEALTH_NODE_CORE": "/opt/xray",
            "HEALTH_NODE_TIMEOUT": "7",
            "HEALTH_NODE_SPEED_TIMEOUT": "9",
            "HEALTH_NODE_MAX_BYTES": "-3",
            "LOG_LEVEL": "debug",
            "GITHUB_TOKEN": "ghp_test",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config(
                {"core": {"path": "/from/file"}, "probe": {"timeout": 1}},
                {"probe": {"url": "http://flag/"}},
            )
        self.assertEqual(config["core"]["path"], "/opt/xray")
        self.assertEqual(config["probe"]["timeout"], 7.0)
        self.assertEqual(config["speed"]["timeout"], 9.0)
        self.assertEqual(config["speed"]["max_bytes"], 0)
        self.assertEqual(config["logging"]["level"], "debug")
        self.assertEqual(config["installer"]["token"], "ghp_test")
        self.assertEqual(config["probe"]["url"], "http://flag/")

        with patch.dict(os.environ, env, clear=True):
            config = load_config(None, {"core": {"path": "/from/flag"}})
        self.assertEqual(config["core"]["path"], "/from/flag")

    def test_invalid_environment_values_are_ignored(self) -> None:
        with patch.dict(os.environ, {"HEALTH_NODE_TIMEOUT": "soon", "HEALTH_NODE_PROBE_URL": "  "}, clear=True):
            config = load_config()
        self.assertEqual(config["probe"]["timeout"], DEFAULT_CONFIG["probe"]["timeout"])
        self.assertEqual(config["probe"]["url"], DEFAULT_CONFIG["probe"]["url"])

    def test_values_are_clamped(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = load_config({"readiness": {"interval": 0}, "proxy": {"report_interval": -1, "inbound": None}})
        self.assertEqual(config["readiness"]["interval"], 0.01)
        self.assertEqual(config["proxy"]["report_interval"], 0.1)
        self.assertEqual(config["proxy"]["inbound"], "socks")


if __name__ == "__main__":
    unittest.main()
