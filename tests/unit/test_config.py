"""Tests for configuration loading, the CLI surface and passcodes."""

import logging

import pytest

from aprs_firehose.config.settings import FirehoseSettings, load_settings, substitute_env_vars
from aprs_firehose.exceptions import ConfigError
from aprs_firehose.main import build_parser, level_from_args, main, settings_from_args
from aprs_firehose.utils.passcode import generate_passcode


@pytest.mark.unit
class TestSettings:
    """Test settings defaults and validation."""

    def test_defaults(self):
        settings = FirehoseSettings()

        assert settings.aprs_is.host == "rotate.aprs.net"
        assert settings.aprs_is.port == 10152
        assert settings.aprs_is.passcode is None
        assert settings.aprs_is.max_line_length == 2048
        assert settings.dedup.horizon_seconds == 30.0
        assert settings.storage.retry_attempts == 3
        assert settings.database.table == "aprs_frames"

    def test_callsign_normalized(self):
        settings = FirehoseSettings(aprs_is={"callsign": " n0call-9 "})
        assert settings.aprs_is.callsign == "N0CALL-9"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("APRS_FIREHOSE_APRS_IS__HOST", "euro.aprs2.net")
        monkeypatch.setenv("APRS_FIREHOSE_STORAGE__BATCH_SIZE", "250")

        settings = FirehoseSettings()

        assert settings.aprs_is.host == "euro.aprs2.net"
        assert settings.storage.batch_size == 250


@pytest.mark.unit
class TestLoadSettings:
    """Test load_settings functionality."""

    def test_no_file_uses_defaults(self):
        assert load_settings().aprs_is.port == 10152

    def test_yaml_with_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_APRS_CALL", "W1AW")
        config_file = tmp_path / "firehose.yaml"
        config_file.write_text(
            "aprs_is:\n"
            "  callsign: ${TEST_APRS_CALL}\n"
            "  filter: ${TEST_APRS_FILTER:-r/42/-71/100}\n"
            "dedup:\n"
            "  horizon_seconds: 45\n"
        )

        settings = load_settings(str(config_file))

        assert settings.aprs_is.callsign == "W1AW"
        assert settings.aprs_is.filter == "r/42/-71/100"
        assert settings.dedup.horizon_seconds == 45

    def test_overrides_merge_into_file_sections(self, tmp_path):
        config_file = tmp_path / "firehose.yaml"
        config_file.write_text("aprs_is:\n  host: first.example\n  port: 14580\n")

        settings = load_settings(str(config_file), aprs_is={"host": "second.example"})

        assert settings.aprs_is.host == "second.example"
        assert settings.aprs_is.port == 14580

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(str(tmp_path / "missing.yaml"))

    def test_missing_required_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_UNSET_VARIABLE", raising=False)
        config_file = tmp_path / "firehose.yaml"
        config_file.write_text("database:\n  password: ${TEST_UNSET_VARIABLE}\n")

        with pytest.raises(ConfigError, match="TEST_UNSET_VARIABLE"):
            load_settings(str(config_file))

    @pytest.mark.parametrize("section,values", [
        ("aprs_is", {"callsign": "NOT A CALL"}),
        ("aprs_is", {"passcode": 40000}),
        ("aprs_is", {"port": 0}),
        ("reconnect", {"initial_backoff_seconds": 10, "max_backoff_seconds": 1}),
        ("storage", {"retry_attempts": -1}),
        ("logging", {"format": "xml"}),
        ("database", {"table": "frames; DROP TABLE x"}),
    ])
    def test_invalid_values_raise_config_error(self, section, values):
        with pytest.raises(ConfigError):
            load_settings(**{section: values})

    def test_substitute_env_vars_nested(self, monkeypatch):
        monkeypatch.setenv("TEST_NESTED", "value")

        result = substitute_env_vars({"a": ["${TEST_NESTED}", 1], "b": {"c": "x-${TEST_NESTED}"}})

        assert result == {"a": ["value", 1], "b": {"c": "x-value"}}


@pytest.mark.unit
class TestPasscode:

    def test_known_passcode(self):
        assert generate_passcode("N0CALL") == 13023

    def test_ssid_and_case_ignored(self):
        assert generate_passcode("n0call-9") == generate_passcode("N0CALL")

    def test_range(self):
        for callsign in ["A", "W1AW", "DL1ABC", "VK2XYZ-15"]:
            assert 0 <= generate_passcode(callsign) <= 32767


@pytest.mark.unit
class TestCommandLine:

    def test_passcode_derived_when_missing(self):
        args = build_parser().parse_args(["N0CALL"])

        settings = settings_from_args(args)

        assert settings.aprs_is.callsign == "N0CALL"
        assert settings.aprs_is.passcode == 13023

    def test_explicit_options(self):
        args = build_parser().parse_args([
            "W1AW", "--passcode", "-1", "--host", "noam.aprs2.net",
            "--port", "14580", "--filter", "t/p"
        ])

        settings = settings_from_args(args)

        assert settings.aprs_is.passcode == -1
        assert settings.aprs_is.host == "noam.aprs2.net"
        assert settings.aprs_is.port == 14580
        assert settings.aprs_is.filter == "t/p"

    @pytest.mark.parametrize("argv,expected", [
        ([], None),
        (["-v"], logging.DEBUG),
        (["-q"], logging.WARNING),
        (["-qq"], logging.ERROR),
    ])
    def test_verbosity(self, argv, expected):
        assert level_from_args(build_parser().parse_args(argv)) == expected

    def test_verbose_and_quiet_conflict(self):
        with pytest.raises(ConfigError):
            level_from_args(build_parser().parse_args(["-v", "-q"]))

    def test_main_exits_with_error_on_bad_config(self, tmp_path, capsys):
        exit_code = main(["-c", str(tmp_path / "missing.yaml")])

        assert exit_code == 1
        assert "Configuration error" in capsys.readouterr().err
