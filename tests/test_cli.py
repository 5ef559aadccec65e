"""Tests for the CLI module."""

import json
import os
import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from typer.testing import CliRunner

from unipost.cli import app
from unipost.errors import ConflictError


def json_output(output):
    """The JSON document printed by a command, ignoring any log lines before it."""
    return json.loads(output[output.index("{"):])


@patch("unipost.cli.setup_logging")
class TestCli(unittest.TestCase):
    """Test cases for the CLI interface."""

    def setUp(self):
        """Set up test environment."""
        self.runner = CliRunner()

        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.temp_dir.name, "config.yaml")

        # The in-memory backend needs no credentials
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write("""
store:
  backend: memory
admins:
  - root
retention:
  default_retention_days: 20
  batch_size: 5
  interval_sec: 3600
            """)

    def tearDown(self):
        """Clean up test environment."""
        self.temp_dir.cleanup()

    def test_init_index(self, mock_setup_logging):
        result = self.runner.invoke(app, ["init-index", "--config", self.config_path])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Index ready: 0 users, 0 communities, 0 posts", result.output)
        mock_setup_logging.assert_called_once_with("INFO")

    def test_verbose_enables_debug_logging(self, mock_setup_logging):
        self.runner.invoke(app, ["init-index", "-c", self.config_path, "-v"])
        mock_setup_logging.assert_called_once_with("DEBUG")

    def test_stats(self, mock_setup_logging):
        result = self.runner.invoke(app, ["stats", "--config", self.config_path])

        self.assertEqual(result.exit_code, 0, result.output)
        stats = json_output(result.output)
        self.assertEqual((stats["users"], stats["communities"], stats["posts"]), (0, 0, 0))

    def test_retention_run(self, mock_setup_logging):
        result = self.runner.invoke(app, ["retention", "run", "-c", self.config_path, "--days", "7"])

        self.assertEqual(result.exit_code, 0, result.output)
        report = json_output(result.output)
        self.assertEqual(report["deletedCount"], 0)
        self.assertEqual(report["deletedIds"], [])

    def test_set_days(self, mock_setup_logging):
        result = self.runner.invoke(
            app, ["retention", "set-days", "30", "-c", self.config_path, "--user", "ops"]
        )

        self.assertEqual(result.exit_code, 0, result.output)
        settings = json_output(result.output)
        self.assertEqual(settings["retentionDays"], 30)
        self.assertEqual(settings["updatedBy"], "ops")

    def test_set_days_rejects_zero(self, mock_setup_logging):
        result = self.runner.invoke(app, ["retention", "set-days", "0", "-c", self.config_path])

        self.assertEqual(result.exit_code, 2)

    def test_daemon_disabled(self, mock_setup_logging):
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write("store:\n  backend: memory\nretention:\n  enabled: false\n")

        with patch("unipost.cli._retention_daemon") as mock_daemon:
            result = self.runner.invoke(app, ["retention", "daemon", "-c", self.config_path])

        self.assertEqual(result.exit_code, 0, result.output)
        mock_daemon.assert_not_called()

    def test_daemon_prints_scheduler_metrics(self, mock_setup_logging):
        metrics = {"runs_completed": 2, "total_deleted": 3}
        with patch("unipost.cli._retention_daemon", new=AsyncMock(return_value=metrics)):
            result = self.runner.invoke(app, ["retention", "daemon", "-c", self.config_path])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json_output(result.output), metrics)

    def test_invalid_config_exits(self, mock_setup_logging):
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write("store:\n  backend: ftp\n")

        result = self.runner.invoke(app, ["stats", "--config", self.config_path])

        self.assertEqual(result.exit_code, 1)

    def test_storage_error_exits(self, mock_setup_logging):
        failure = AsyncMock(side_effect=ConflictError("index kept changing", attempts=3))
        with patch("unipost.cli._stats", new=failure):
            result = self.runner.invoke(app, ["stats", "--config", self.config_path])

        self.assertEqual(result.exit_code, 1)


if __name__ == "__main__":
    unittest.main()
