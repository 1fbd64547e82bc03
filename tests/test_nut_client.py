"""Tests for the upsc-based NUT client."""
from __future__ import annotations

import subprocess
from unittest.mock import Mock, patch

import pytest

from ups_bridge.exceptions import SourceConnectionError
from ups_bridge.nut_client import NutClient, parse_upsc_output

UPSC_OUTPUT = """battery.charge: 100
battery.runtime: 1800
device.mfr: American Power Conversion
input.transfer.reason: input voltage out of range
ups.status: OL
Init SSL without certificate database
"""


@pytest.fixture
def client():
    return NutClient("nas.lan", 3493, "backups@nas.lan", timeout_s=5)


def completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> Mock:
    return Mock(stdout=stdout, returncode=returncode, stderr=stderr)


class TestParseUpscOutput:
    """Tests for parsing upsc output."""

    def test_parses_variables(self):
        variables = parse_upsc_output(UPSC_OUTPUT)

        assert variables["battery.charge"] == "100"
        assert variables["input.transfer.reason"] == "input voltage out of range"
        assert "Init SSL without certificate database" not in variables

    def test_value_containing_colon(self):
        assert parse_upsc_output("ups.test.date: 2024-05-01 12:00:00") == {
            "ups.test.date": "2024-05-01 12:00:00"
        }


class TestNutClient:
    """Tests for NutClient."""

    def test_strips_host_from_ups_name(self, client):
        assert client.ups_name == "backups"
        assert client.target == "backups@nas.lan:3493"

    def test_connect_lists_ups(self, client):
        with patch.object(client, "_run_command", return_value="backups\n") as run:
            assert client.connect()
        run.assert_called_once_with(["upsc", "-l", "nas.lan:3493"])
        assert client.is_connected()

    def test_connect_failure(self, client):
        with patch.object(client, "_run_command", side_effect=SourceConnectionError("refused")):
            assert not client.connect()
        assert not client.is_connected()

    def test_get_all_variables(self, client):
        with patch.object(client, "_run_command", side_effect=["backups\n", UPSC_OUTPUT]) as run:
            client.connect()
            variables = client.get_all_variables()
        assert variables["ups.status"] == "OL"
        assert run.call_args.args[0] == ["upsc", "backups@nas.lan:3493"]

    def test_get_all_variables_requires_connection(self, client):
        with pytest.raises(SourceConnectionError):
            client.get_all_variables()

    def test_failed_poll_disconnects(self, client):
        with patch.object(
            client, "_run_command", side_effect=["backups\n", SourceConnectionError("Data stale")]
        ):
            client.connect()
            with pytest.raises(SourceConnectionError):
                client.get_all_variables()
        assert not client.is_connected()


class TestRunCommand:
    """Tests for subprocess handling."""

    def test_nonzero_exit(self, client):
        with patch("ups_bridge.nut_client.subprocess.run", return_value=completed(returncode=1, stderr="Error: Unknown UPS")):
            with pytest.raises(SourceConnectionError):
                client._run_command(["upsc", "backups@nas.lan:3493"])

    def test_missing_binary(self, client):
        with patch("ups_bridge.nut_client.subprocess.run", side_effect=FileNotFoundError("upsc")):
            with pytest.raises(SourceConnectionError, match="Command not found"):
                client._run_command(["upsc", "-l", "nas.lan:3493"])

    def test_timeout(self, client):
        with patch(
            "ups_bridge.nut_client.subprocess.run",
            side_effect=subprocess.TimeoutExpired(["upsc"], 5),
        ):
            with pytest.raises(SourceConnectionError, match="timed out"):
                client._run_command(["upsc", "-l", "nas.lan:3493"])

    def test_success(self, client):
        with patch("ups_bridge.nut_client.subprocess.run", return_value=completed(stdout=UPSC_OUTPUT)) as run:
            assert client._run_command(["upsc", "backups@nas.lan:3493"]) == UPSC_OUTPUT
        assert run.call_args.kwargs["timeout"] == 5
