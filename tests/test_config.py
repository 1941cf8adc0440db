"""Settings and CLI argument tests."""

import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from zpower_ingest import cli
from zpower_ingest.common.config import Settings, get_settings

ENV_KEYS = (
    "MQTT_BROKER_HOST",
    "MQTT_BROKER_PORT",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_QOS",
    "MQTT_BASE_TOPIC",
    "MQTT_DEVICES",
    "ZPOWER_DB_PATH",
    "ZPOWER_PAYLOAD_FORMAT",
    "ZPOWER_IDLE_TIMEOUT_SECONDS",
    "ZPOWER_METRICS_PORT",
    "LOG_LEVEL",
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # setenv first so the original value (or absence) is restored afterwards,
    # including keys that load_dotenv writes.
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.setenv("ZPOWER_ENV_FILE", str(tmp_path / "missing.env"))
    return monkeypatch


# =============================================================================
# SETTINGS
# =============================================================================

class TestSettings:

    def test_defaults(self, clean_env):
        settings = get_settings()

        assert settings.mqtt_host == "localhost"
        assert settings.mqtt_port == 1883
        assert settings.db_path == "./zpowergraph.db"
        assert settings.devices == ()
        assert settings.idle_timeout_seconds == 30.0
        assert settings.metrics_port is None

    def test_environment(self, clean_env):
        clean_env.setenv("MQTT_BROKER_HOST", "broker.lan")
        clean_env.setenv("MQTT_BROKER_PORT", "8883")
        clean_env.setenv("MQTT_DEVICES", "plug-kitchen, plug-office,,")
        clean_env.setenv("ZPOWER_METRICS_PORT", "9100")
        clean_env.setenv("LOG_LEVEL", "debug")

        settings = get_settings()

        assert settings.mqtt_host == "broker.lan"
        assert settings.mqtt_port == 8883
        assert settings.devices == ("plug-kitchen", "plug-office")
        assert settings.metrics_port == 9100
        assert settings.log_level == "DEBUG"

    def test_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("MQTT_BROKER_HOST=from-file\nZPOWER_DB_PATH=/data/power.db\n")
        clean_env.setenv("ZPOWER_ENV_FILE", str(env_file))
        clean_env.setenv("ZPOWER_DB_PATH", "/override/power.db")

        settings = get_settings()

        assert settings.mqtt_host == "from-file"
        assert settings.db_path == "/override/power.db"

    def test_topics_per_device(self):
        settings = Settings(base_topic="zigbee2mqtt/", devices=("plug-kitchen", "plug-office"))

        assert settings.topics == ("zigbee2mqtt/plug-kitchen", "zigbee2mqtt/plug-office")

    def test_wildcard_topic_without_devices(self):
        assert Settings().topics == ("zigbee2mqtt/+",)

    def test_with_overrides_ignores_none(self):
        settings = Settings(mqtt_host="a").with_overrides(mqtt_host=None, mqtt_port=1884)

        assert settings.mqtt_host == "a"
        assert settings.mqtt_port == 1884


# =============================================================================
# CLI
# =============================================================================

class TestCli:

    def test_positional_arguments(self):
        args = cli.build_parser().parse_args(
            ["localhost", "1883", "zigbee2mqtt", "plug-kitchen", "plug-office", "--user", "u", "--pass", "p"]
        )

        settings = cli.settings_from_args(args, base=Settings())

        assert settings.mqtt_host == "localhost"
        assert settings.mqtt_port == 1883
        assert settings.base_topic == "zigbee2mqtt"
        assert settings.devices == ("plug-kitchen", "plug-office")
        assert settings.mqtt_username == "u"
        assert settings.mqtt_password == "p"

    def test_arguments_override_base_settings(self):
        base = Settings(mqtt_host="env-host", db_path="/env.db", devices=("plug-env",))
        args = cli.build_parser().parse_args(["--db", "/cli.db", "--idle-timeout", "0"])

        settings = cli.settings_from_args(args, base=base)

        assert settings.mqtt_host == "env-host"
        assert settings.db_path == "/cli.db"
        assert settings.devices == ("plug-env",)
        assert settings.idle_timeout_seconds == 0

    def test_unknown_payload_format_is_rejected_by_parser(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--payload-format", "shelly"])

    def test_schema_mismatch_exit_code(self, clean_env, tmp_path):
        db = tmp_path / "old.db"
        with sqlite3.connect(db) as conn:
            conn.execute("PRAGMA user_version = 9")

        assert cli.main(["--db", str(db)]) == cli.EXIT_SCHEMA_MISMATCH

    def test_invalid_configuration_exit_code(self, clean_env, tmp_path):
        clean_env.setenv("ZPOWER_PAYLOAD_FORMAT", "shelly")

        assert cli.main(["--db", str(tmp_path / "power.db")]) == 1

    def test_malformed_environment_value_exit_code(self, clean_env, tmp_path):
        clean_env.setenv("MQTT_BROKER_PORT", "abc")

        assert cli.main(["--db", str(tmp_path / "power.db")]) == cli.EXIT_INVALID_CONFIG
        assert not (tmp_path / "power.db").exists()

    def test_runs_context_until_stopped(self, clean_env, tmp_path):
        context = MagicMock()
        with patch.object(cli.IngestContext, "build", return_value=context) as build, \
                patch("zpower_ingest.cli.signal.signal") as install:
            code = cli.main(["broker.lan", "1883", "zigbee2mqtt", "plug-kitchen", "--db", str(tmp_path / "p.db")])

        assert code == 0
        settings = build.call_args.args[0]
        assert settings.mqtt_host == "broker.lan"
        assert settings.devices == ("plug-kitchen",)
        context.run.assert_called_once()

        handler = install.call_args_list[0].args[1]
        handler(2, None)
        context.request_stop.assert_called_once()
