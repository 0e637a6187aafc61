"""Tests for output formatting utilities."""

import json

import pytest
import yaml

from releasectl.core.output import (
    STATUS_STYLES,
    OutputFormat,
    OutputFormatter,
    format_bytes,
    format_duration,
)
from releasectl.release.models import ReleaseStatus


class TestFormatBytes:
    """Tests for format_bytes utility."""

    def test_bytes(self):
        assert format_bytes(500) == "500.0 B"

    def test_kilobytes(self):
        assert format_bytes(1536) == "1.5 KB"

    def test_megabytes(self):
        assert format_bytes(1024 * 1024 * 2.5) == "2.5 MB"

    def test_zero(self):
        assert format_bytes(0) == "0.0 B"


class TestFormatDuration:
    """Tests for format_duration utility."""

    def test_seconds(self):
        assert format_duration(4.2) == "4.2s"
        assert format_duration(59.9) == "59.9s"

    def test_minutes(self):
        assert format_duration(90) == "1.5m"

    def test_hours(self):
        assert format_duration(7200) == "2.0h"

    def test_days(self):
        assert format_duration(172800) == "2.0d"


class TestStatusStyles:
    """Every release status has a table style."""

    def test_all_statuses_styled(self):
        assert set(STATUS_STYLES) == {s.value for s in ReleaseStatus}


class TestOutputFormatter:
    """Tests for OutputFormatter class."""

    def test_quiet_mode_suppresses_output(self, capsys):
        formatter = OutputFormatter(quiet=True, color=False)
        formatter.print("test message")
        formatter.print_info("info message")
        formatter.print_warning("warning message")
        formatter.print_success("success message")
        captured = capsys.readouterr()
        assert captured.out == ""

    def test_error_always_prints(self, capsys):
        formatter = OutputFormatter(quiet=True, color=False)
        formatter.print_error("host_busy")
        captured = capsys.readouterr()
        assert "host_busy" in captured.err

    def test_json_output(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.JSON, color=False)
        data = {"id": "abc12345", "status": "succeeded", "attempts": 3}
        formatter.print_data(data)
        assert json.loads(capsys.readouterr().out) == data

    def test_json_output_via_print_table(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.JSON, color=False)
        rows = [{"host": "web-1"}, {"host": "web-2"}]
        formatter.print_table(rows, title="Hosts")
        assert json.loads(capsys.readouterr().out) == rows

    def test_yaml_output(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.YAML, color=False)
        data = {"host": "web-1", "last_known_good": "abc12345"}
        formatter.print_data(data)
        assert yaml.safe_load(capsys.readouterr().out) == data

    def test_raw_output_dict(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.RAW, color=False)
        formatter.print_data({"host": "web-1", "status": "failed"})
        captured = capsys.readouterr()
        assert "host: web-1" in captured.out
        assert "status: failed" in captured.out

    def test_table_output(self, capsys):
        formatter = OutputFormatter(color=False)
        formatter.print_table(
            [
                {"host": "web-1", "status": "succeeded", "reason": None},
                {"host": "web-2", "status": "rolled_back", "reason": "health_check_timeout"},
            ],
            title="Releases",
        )
        out = capsys.readouterr().out
        assert "Releases" in out
        assert "rolled_back" in out
        assert "None" not in out

    def test_table_selected_columns(self, capsys):
        formatter = OutputFormatter(color=False)
        formatter.print_table([{"host": "web-1", "address": "10.0.0.1"}], columns=["host"])
        out = capsys.readouterr().out
        assert "web-1" in out
        assert "10.0.0.1" not in out

    def test_empty_table(self, capsys):
        OutputFormatter(color=False).print_table([])
        assert "No data to display" in capsys.readouterr().out

    def test_print_code_plain(self, capsys):
        formatter = OutputFormatter(color=False)
        formatter.print_code("key: ${{ secrets.KEY }}\n")
        assert "${{ secrets.KEY }}" in capsys.readouterr().out

    @pytest.mark.parametrize("answer,expected", [("y", True), ("yes", True), ("n", False), ("", False)])
    def test_confirm(self, monkeypatch, answer, expected):
        monkeypatch.setattr("builtins.input", lambda: answer)
        assert OutputFormatter(color=False).confirm("Release?") is expected

    def test_confirm_quiet_uses_default(self):
        assert OutputFormatter(quiet=True, color=False).confirm("Release?", default=True) is True


class TestOutputFormat:
    """Tests for OutputFormat enum."""

    def test_values(self):
        assert OutputFormat.TABLE.value == "table"
        assert OutputFormat.JSON.value == "json"
        assert OutputFormat.YAML.value == "yaml"
        assert OutputFormat.RAW.value == "raw"

    def test_string_comparison(self):
        assert OutputFormat.TABLE == "table"
