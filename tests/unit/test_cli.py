"""
Tests for the LocalBus command-line interface.
"""

import json
import logging

import pytest
import yaml
from click.testing import CliRunner

from localbus import __version__
from localbus.cli import cli


@pytest.fixture(autouse=True)
def restore_root_logger():
    """The CLI calls setup_logging; put the root handlers back afterwards."""
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    for handler in root_logger.handlers:
        if handler not in handlers:
            handler.close()
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """A configuration with one queue and a filtered topic."""
    path = tmp_path / "localbus.yaml"
    path.write_text(yaml.dump({
        "namespace": {"name": "orders"},
        "queues": [
            {"name": "jobs", "properties": {"requires_session": True, "lock_duration": 30}},
        ],
        "topics": [
            {
                "name": "events",
                "subscriptions": [
                    {"name": "all"},
                    {
                        "name": "high",
                        "rules": [{
                            "name": "High",
                            "sql_filter": "priority = 'high'",
                            "sql_action": "SET routed = 'yes'",
                        }],
                    },
                    {
                        "name": "eu",
                        "rules": [{"name": "Eu", "correlation_filter": {"subject": "order"}}],
                    },
                ],
            }
        ],
    }))
    return path


class TestCliBasics:
    """Tests for version and connection strings."""

    def test_version_command(self, runner):
        """Test the version command."""
        result = runner.invoke(cli, ["version"])

        assert result.exit_code == 0
        assert f"LocalBus version {__version__}" in result.output

    def test_version_option(self, runner):
        """Test --version."""
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_connection_string_default(self, runner, monkeypatch):
        """Test the default namespace connection string."""
        monkeypatch.delenv("LOCALBUS_NAMESPACE", raising=False)
        monkeypatch.delenv("LOCALBUS_SHARED_ACCESS_KEY", raising=False)

        result = runner.invoke(cli, ["connection-string"])

        assert result.exit_code == 0
        assert result.output.strip() == (
            "Endpoint=sb://localbus.servicebus.windows.net/;"
            "SharedAccessKeyName=RootManageSharedAccessKey;"
            "SharedAccessKey=SAS_KEY_VALUE;"
            "UseDevelopmentEmulator=true"
        )

    def test_connection_string_for_entity(self, runner, config_file):
        """Test scoping the connection string to an entity."""
        result = runner.invoke(cli, ["connection-string", "--config", str(config_file), "--entity", "jobs"])

        assert result.exit_code == 0
        assert "sb://orders.servicebus.windows.net/" in result.output
        assert "EntityPath=jobs" in result.output


class TestConfigCommands:
    """Tests for config check."""

    def test_check_valid(self, runner, config_file):
        """Test a valid configuration is summarised."""
        result = runner.invoke(cli, ["config", "check", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "[OK] Configuration is valid" in result.output
        assert "Namespace:   orders" in result.output
        assert "high (rules: High)" in result.output
        assert "all (rules: $Default)" in result.output

    def test_check_invalid(self, runner, tmp_path):
        """Test an invalid configuration exits with status 1."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"queues": [{"name": "jobs", "properties": {"lock_duration": 1}}]}))

        result = runner.invoke(cli, ["config", "check", "--config", str(path)])

        assert result.exit_code == 1
        assert "[ERROR] Invalid configuration" in result.output

    def test_check_requires_config(self, runner):
        """Test config check needs --config."""
        result = runner.invoke(cli, ["config", "check"])

        assert result.exit_code != 0


class TestEntityCommands:
    """Tests for queue and topic inspection."""

    def test_queue_list(self, runner, config_file):
        """Test listing configured queues."""
        result = runner.invoke(cli, ["queue", "list", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "NAME" in result.output
        assert "jobs" in result.output
        assert "Active" in result.output

    def test_queue_list_empty(self, runner):
        """Test listing with no configured queues."""
        result = runner.invoke(cli, ["queue", "list"])

        assert result.exit_code == 0
        assert "No queues found." in result.output

    def test_queue_show(self, runner, config_file):
        """Test showing one queue."""
        result = runner.invoke(cli, ["queue", "show", "jobs", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Queue: jobs" in result.output
        assert "requires_session" in result.output
        assert "active_message_count" in result.output

    def test_queue_show_missing(self, runner, config_file):
        """Test showing an unknown queue exits with status 1."""
        result = runner.invoke(cli, ["queue", "show", "nope", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Cannot show queue" in result.output

    def test_topic_list(self, runner, config_file):
        """Test listing configured topics."""
        result = runner.invoke(cli, ["topic", "list", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "events" in result.output
        assert "SUBSCRIPTIONS" in result.output

    def test_topic_show(self, runner, config_file):
        """Test showing a topic with subscriptions and rules."""
        result = runner.invoke(cli, ["topic", "show", "events", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Subscriptions (3):" in result.output
        assert "$Default: True" in result.output
        assert "High: SQL: priority = 'high'  [action: SET routed = 'yes']" in result.output
        assert "Eu: Correlation: subject=order" in result.output


class TestLoggingOptions:
    """Tests for how logging flags, environment and config file combine."""

    def test_quiet_by_default(self, runner, config_file):
        """Test commands log at WARNING when nothing else is configured."""
        result = runner.invoke(
            cli, ["queue", "list", "--config", str(config_file)], env={"LOCALBUS_LOG_LEVEL": None}
        )

        assert result.exit_code == 0
        assert logging.getLogger().level == logging.WARNING

    def test_environment_level_applies(self, runner, config_file):
        """Test LOCALBUS_LOG_LEVEL wins when no flag is given."""
        result = runner.invoke(
            cli, ["queue", "list", "--config", str(config_file)], env={"LOCALBUS_LOG_LEVEL": "ERROR"}
        )

        assert result.exit_code == 0
        assert logging.getLogger().level == logging.ERROR

    def test_flag_beats_environment(self, runner, config_file):
        """Test --log-level overrides LOCALBUS_LOG_LEVEL."""
        result = runner.invoke(
            cli,
            ["--log-level", "CRITICAL", "queue", "list", "--config", str(config_file)],
            env={"LOCALBUS_LOG_LEVEL": "ERROR"},
        )

        assert result.exit_code == 0
        assert logging.getLogger().level == logging.CRITICAL

    def test_config_file_logging_section(self, runner, tmp_path):
        """Test the file's logging level and log file are applied."""
        log_file = tmp_path / "logs" / "localbus.log"
        path = tmp_path / "logging.yaml"
        path.write_text(yaml.dump({
            "logging": {"level": "ERROR", "format": "text", "file": str(log_file)},
        }))

        result = runner.invoke(
            cli, ["queue", "list", "--config", str(path)], env={"LOCALBUS_LOG_LEVEL": None}
        )

        assert result.exit_code == 0
        assert logging.getLogger().level == logging.ERROR
        assert log_file.exists()


class TestWalkthroughCommand:
    """Tests for the walkthrough command."""

    def test_walkthrough_text(self, runner):
        """Test the walkthrough prints each step."""
        result = runner.invoke(cli, ["--log-level", "ERROR", "walkthrough"])

        assert result.exit_code == 0
        assert "1. Send messages" in result.output
        assert "req-doc-003: dead-lettered" in result.output
        assert "MalformedPayload" in result.output
        assert "[OK] Walkthrough complete" in result.output

    def test_walkthrough_json(self, runner):
        """Test the walkthrough's JSON output."""
        result = runner.invoke(cli, ["--log-level", "ERROR", "walkthrough", "--json"])

        assert result.exit_code == 0
        results = json.loads(result.output)
        assert [item["status"] for item in results["process"]] == ["completed", "completed", "dead-lettered"]
        assert [m["document_id"] for m in results["topic"]["high_priority"]] == ["doc-002", "doc-004"]
