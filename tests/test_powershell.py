"""Tests for core/powershell.py - PowerShell subprocess runner."""

import subprocess
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from m365admin.core.powershell import (
    PowerShellRunner,
    as_list,
    parse_json_output,
    parse_ps_datetime,
    quote,
    secure_string,
)


def _completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


# =============================================================================
# Quoting
# =============================================================================


class TestQuote:
    """Tests for PowerShell string quoting."""

    def test_plain(self):
        assert quote("user@contoso.org") == "'user@contoso.org'"

    def test_doubles_single_quotes(self):
        assert quote("O'Brien") == "'O''Brien'"

    def test_injection_stays_inside_literal(self):
        assert quote("x'; Remove-Item C:\\ -Recurse; '") == "'x''; Remove-Item C:\\ -Recurse; '''"

    def test_non_string(self):
        assert quote(5000) == "'5000'"

    def test_secure_string(self):
        assert secure_string("p'w") == "(ConvertTo-SecureString -String 'p''w' -AsPlainText -Force)"


# =============================================================================
# Output parsing
# =============================================================================


class TestParseJsonOutput:
    """Tests for parse_json_output."""

    def test_object(self):
        assert parse_json_output('{"a": 1}') == {"a": 1}

    def test_array(self):
        assert parse_json_output('[{"a": 1}, {"a": 2}]') == [{"a": 1}, {"a": 2}]

    def test_banner_before_json(self):
        output = 'WARNING: module loaded\n[{"Identity": "x"}]'
        assert parse_json_output(output) == [{"Identity": "x"}]

    def test_unparseable(self):
        assert parse_json_output("not json at all") == {"raw": "not json at all"}

    def test_broken_json_returns_raw(self):
        assert parse_json_output("{broken") == {"raw": "{broken"}


class TestAsList:
    """Tests for as_list normalisation."""

    def test_single_object(self):
        assert as_list({"a": 1}) == [{"a": 1}]

    def test_list_passthrough(self):
        assert as_list([{"a": 1}, "junk", {"b": 2}]) == [{"a": 1}, {"b": 2}]

    @pytest.mark.parametrize("value", [None, {}, [], {"raw": "text"}])
    def test_empty(self, value):
        assert as_list(value) == []


class TestParsePsDatetime:
    """Tests for parse_ps_datetime."""

    def test_iso_with_offset(self):
        assert parse_ps_datetime("2026-10-01T12:30:00+00:00") == datetime(
            2026, 10, 1, 12, 30, tzinfo=UTC
        )

    def test_iso_z(self):
        assert parse_ps_datetime("2026-10-01T12:30:00Z") == datetime(
            2026, 10, 1, 12, 30, tzinfo=UTC
        )

    def test_naive_is_utc(self):
        assert parse_ps_datetime("2026-10-01T12:30:00").tzinfo == UTC

    def test_legacy_date_format(self):
        assert parse_ps_datetime("/Date(1700000000000)/") == datetime.fromtimestamp(
            1700000000, tz=UTC
        )

    @pytest.mark.parametrize("value", [None, "", "yesterday", "/Date(abc)/"])
    def test_invalid(self, value):
        assert parse_ps_datetime(value) is None


# =============================================================================
# Runner
# =============================================================================


class TestPowerShellRunner:
    """Tests for PowerShellRunner.run."""

    @patch("m365admin.core.powershell.subprocess.run")
    def test_joins_commands(self, mock_run):
        mock_run.return_value = _completed('{"ok": true}')

        result = PowerShellRunner(timeout=30).run(["Import-Module X", "Get-Thing | ConvertTo-Json"])

        assert result == {"ok": True}
        args, kwargs = mock_run.call_args
        assert args[0] == [
            "pwsh",
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            "Import-Module X; Get-Thing | ConvertTo-Json",
        ]
        assert kwargs["timeout"] == 30
        assert kwargs["capture_output"] is True

    @patch("m365admin.core.powershell.subprocess.run")
    def test_raw_output(self, mock_run):
        mock_run.return_value = _completed("  done  \n")
        assert PowerShellRunner().run(["Write-Output done"], parse_json=False) == "done"

    @patch("m365admin.core.powershell.subprocess.run")
    def test_empty_output(self, mock_run):
        mock_run.return_value = _completed("")
        runner = PowerShellRunner()

        assert runner.run(["x"]) == {}
        assert runner.run(["x"], parse_json=False) == ""

    @patch("m365admin.core.powershell.subprocess.run")
    def test_nonzero_exit(self, mock_run):
        mock_run.return_value = _completed(stderr="Connect failed", returncode=1)
        assert PowerShellRunner().run(["x"]) is None

    @patch("m365admin.core.powershell.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="pwsh", timeout=1)
        assert PowerShellRunner(timeout=1).run(["x"]) is None

    @patch("m365admin.core.powershell.subprocess.run")
    def test_pwsh_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError("pwsh")
        assert PowerShellRunner().run(["x"]) is None

    @patch("m365admin.core.powershell.subprocess.run")
    def test_custom_executable(self, mock_run):
        mock_run.return_value = _completed("[]")

        PowerShellRunner(executable="/opt/pwsh/pwsh").run(["x"])

        assert mock_run.call_args[0][0][0] == "/opt/pwsh/pwsh"
