"""Unit tests for CLI argument parsing and the apy command."""
from __future__ import annotations

import sys

import pytest

from crucible_engine.cli import build_parser, main


class TestBuildParser:
    def test_check_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["check"])
        assert args.command == "check"

    def test_report_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["report"])
        assert args.command == "report"

    def test_monitor_command_default_interval(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["monitor"])
        assert args.command == "monitor"
        assert args.interval is None

    def test_monitor_command_custom_interval(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["monitor", "10"])
        assert args.command == "monitor"
        assert args.interval == 10

    def test_apy_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["apy", "--base-apy", "0.08", "--leverage", "2.0"])
        assert args.command == "apy"
        assert args.base_apy == 0.08
        assert args.leverage == 2.0
        assert args.borrow_rate is None

    def test_config_flag(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--config", "/tmp/c.yaml", "check"])
        assert args.config == "/tmp/c.yaml"

    def test_log_level_flag(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--log-level", "DEBUG", "check"])
        assert args.log_level == "DEBUG"

    def test_no_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args([])
        assert args.command is None


class TestMain:
    def test_apy_prints_effective_apy(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setattr(
            sys,
            "argv",
            ["crucible-engine", "apy", "--base-apy", "0.08", "--leverage", "2.0", "--borrow-rate", "0.10"],
        )
        main()
        assert "6.00%" in capsys.readouterr().out

    def test_apy_rejects_unsupported_leverage(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            sys,
            "argv",
            ["crucible-engine", "apy", "--base-apy", "0.08", "--leverage", "3.0", "--borrow-rate", "0.10"],
        )
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 2

    def test_no_command_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "argv", ["crucible-engine"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
