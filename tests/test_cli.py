"""Tests for the command-line entry point."""

import argparse
import json
from unittest.mock import patch

import pytest

from datamove import cli, constants
from datamove.models.job import ReportLevel


def make_args(**overrides):
    values = {
        "config_path": constants.DEFAULT_CONFIG_PATH,
        "work_dir": None,
        "source_instance_url": None,
        "source_access_token": None,
        "target_instance_url": None,
        "target_access_token": None,
        "csv_source": None,
        "csv_target": None,
        "api_version": constants.DEFAULT_API_VERSION,
        "settings": None,
        "child_query_rounds": constants.CHILD_QUERY_RETRY_ROUNDS,
        "report_level": ReportLevel.ERRORS.value,
        "continue_on_error": False,
        "verbose": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


class TestBuildConfig:
    """Tests for build_config."""

    def test_endpoints_from_flags(self, tmp_path):
        config = cli.build_config(make_args(
            source_instance_url="https://src.example.com",
            source_access_token="abc",
            csv_target=str(tmp_path / "out"),
            report_level="All",
        ))

        assert config.source.instance_url == "https://src.example.com"
        assert not config.source.is_csv
        assert config.target.is_csv
        assert config.report_level == ReportLevel.ALL

    def test_environment_fallback(self, monkeypatch):
        monkeypatch.setenv("DATAMOVE_TARGET_INSTANCE_URL", "https://env.example.com")
        monkeypatch.setenv("DATAMOVE_TARGET_ACCESS_TOKEN", "env-token")

        config = cli.build_config(make_args())

        assert config.target.instance_url == "https://env.example.com"
        assert config.target.access_token == "env-token"

    def test_settings_file(self, tmp_path):
        settings = tmp_path / "settings.json"
        settings.write_text(json.dumps({"rest_max_records_per_call": 500, "unknown": True}))

        config = cli.build_config(make_args(settings=str(settings)))

        assert config.engine.rest_max_records_per_call == 500


class TestRunDataMove:
    """Tests for run_data_move and main."""

    def test_failed_run_returns_non_zero(self, tmp_path, capsys):
        code = cli.run_data_move(make_args(config_path=str(tmp_path / "missing.json")))

        assert code == 1
        output = capsys.readouterr().out
        assert "DATA MOVE FAILED" in output
        assert "Script file not found" in output

    def test_main_exits_with_run_code(self, tmp_path):
        argv = ["datamove", "data-move", "-p", str(tmp_path / "missing.json")]
        with patch("sys.argv", argv), patch.object(cli, "run_data_move", return_value=0) as run:
            with pytest.raises(SystemExit) as exc_info:
                cli.main()

        assert exc_info.value.code == 0
        assert run.call_args.args[0].config_path == str(tmp_path / "missing.json")

    def test_main_without_command_prints_help(self, capsys):
        with patch("sys.argv", ["datamove"]):
            cli.main()
        assert "data-move" in capsys.readouterr().out
