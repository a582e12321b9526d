"""Tests for post-activation health probes."""
import socket
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from gendeploy.core.health_checker import HealthChecker, parse_df_percent
from gendeploy.models.generation import Generation
from gendeploy.models.health import ProbeKind, ProbeSpec
from gendeploy.services.transport import CommandResult, LocalTransport

DF_OUTPUT = """Filesystem     1024-blocks     Used Available Capacity Mounted on
/dev/nvme0n1p2   479079112 431171200  23497544      95% /
"""

GENERATION = Generation(id=6, bundle_fingerprint="f" * 64)


def fake_transport(*results):
    transport = MagicMock()
    transport.target = "web1"
    transport.hostname = "web1.lan"
    transport.exec.side_effect = list(results)
    return transport


class TestHttpProbe:

    @patch('gendeploy.core.health_checker.requests.get')
    def test_unexpected_status_fails(self, mock_get):
        mock_get.return_value = MagicMock(status_code=503)
        probe = ProbeSpec("web", ProbeKind.HTTP_STATUS, url="http://web1.lan/")

        report = HealthChecker(LocalTransport()).check(GENERATION, [probe])

        assert not report.overall_passed
        assert "returned 503" in report.checks[0].detail
        mock_get.assert_called_once_with("http://web1.lan/", timeout=5.0, allow_redirects=False)

    @patch('gendeploy.core.health_checker.requests.get')
    def test_redirect_accepted_when_expected(self, mock_get):
        mock_get.return_value = MagicMock(status_code=301)
        probe = ProbeSpec("web", ProbeKind.HTTP_STATUS, url="http://web1.lan/", expected_codes=(200, 301, 302))

        assert HealthChecker(LocalTransport()).check(GENERATION, [probe]).overall_passed

    @patch('gendeploy.core.health_checker.requests.get')
    def test_connection_error_fails(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("refused")
        probe = ProbeSpec("web", ProbeKind.HTTP_STATUS, url="http://web1.lan/")

        report = HealthChecker(LocalTransport()).check(GENERATION, [probe])

        assert "unreachable" in report.checks[0].detail


class TestPortProbe:

    def test_open_port(self):
        with socket.socket() as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]
            probe = ProbeSpec("listener", ProbeKind.PORT_OPEN, port=port, host="127.0.0.1")

            result = HealthChecker(LocalTransport()).run_probe(probe)

        assert result.passed
        assert result.detail == f"127.0.0.1:{port} open"

    def test_closed_port(self):
        with socket.socket() as probe_socket:
            probe_socket.bind(("127.0.0.1", 0))
            port = probe_socket.getsockname()[1]
        probe = ProbeSpec("listener", ProbeKind.PORT_OPEN, port=port, host="127.0.0.1")

        result = HealthChecker(LocalTransport()).run_probe(probe)

        assert not result.passed
        assert "closed" in result.detail


class TestRemoteProbes:

    def test_service_inactive(self):
        transport = fake_transport(CommandResult(3, "inactive\n", ""))
        probe = ProbeSpec("nginx", ProbeKind.SERVICE_ACTIVE, service="nginx")

        result = HealthChecker(transport).run_probe(probe)

        assert not result.passed
        assert result.detail == "nginx is inactive"
        assert transport.exec.call_args[0][0] == "systemctl is-active nginx"

    def test_service_active(self):
        transport = fake_transport(CommandResult(0, "active\n", ""))
        probe = ProbeSpec("sshd", ProbeKind.SERVICE_ACTIVE, service="sshd")

        assert HealthChecker(transport).run_probe(probe).passed

    def test_disk_usage_over_limit(self):
        transport = fake_transport(CommandResult(0, DF_OUTPUT, ""))
        probe = ProbeSpec("root-disk", ProbeKind.DISK_USAGE, path="/", max_percent=90)

        result = HealthChecker(transport).run_probe(probe)

        assert not result.passed
        assert "95%" in result.detail

    def test_disk_usage_within_limit(self):
        transport = fake_transport(CommandResult(0, DF_OUTPUT, ""))
        probe = ProbeSpec("root-disk", ProbeKind.DISK_USAGE, path="/", max_percent=96)

        assert HealthChecker(transport).run_probe(probe).passed

    def test_command_probe(self):
        checker = HealthChecker(LocalTransport())

        assert checker.run_probe(ProbeSpec("ok", ProbeKind.COMMAND, command="true")).passed
        failed = checker.run_probe(ProbeSpec("degraded", ProbeKind.COMMAND, command="echo degraded; exit 1"))
        assert not failed.passed
        assert failed.detail == "exit 1: degraded"

    def test_unreachable_target_fails_probe(self):
        from gendeploy.models.errors import TransientTransportError

        transport = fake_transport(TransientTransportError("Connection refused"))
        probe = ProbeSpec("sshd", ProbeKind.SERVICE_ACTIVE, service="sshd")

        result = HealthChecker(transport).run_probe(probe)

        assert not result.passed
        assert "unreachable" in result.detail


@pytest.mark.parametrize("output,expected", [
    (DF_OUTPUT, 95),
    ("Filesystem 1024-blocks Used Available Capacity Mounted on\n", None),
    ("", None),
    ("header\n/dev/sda1 1 1 1 n/a /\n", None),
])
def test_parse_df_percent(output, expected):
    assert parse_df_percent(output) == expected


class TestAggregation:
    """Every probe runs; one failure fails the report."""

    def test_no_probes_passes(self):
        report = HealthChecker(LocalTransport()).check(GENERATION, [])

        assert report.overall_passed
        assert report.checks == []
        assert report.generation_id == 6

    def test_failure_does_not_stop_other_probes(self):
        probes = [
            ProbeSpec("first", ProbeKind.COMMAND, command="false"),
            ProbeSpec("second", ProbeKind.COMMAND, command="true"),
        ]

        report = HealthChecker(LocalTransport()).check(GENERATION, probes)

        assert [c.name for c in report.checks] == ["first", "second"]
        assert [c.passed for c in report.checks] == [False, True]
        assert not report.overall_passed
        assert [c.name for c in report.failed_checks] == ["first"]

    def test_slow_probe_times_out(self):
        probes = [ProbeSpec("slow", ProbeKind.COMMAND, command="sleep 3", timeout=0.2)]

        report = HealthChecker(LocalTransport()).check(GENERATION, probes)

        assert not report.overall_passed
        assert "timed out after 0.2s" in report.checks[0].detail

    def test_crashing_probe_is_a_failed_probe(self):
        transport = MagicMock()
        transport.target = "web1"
        transport.exec.side_effect = RuntimeError("boom")
        probes = [
            ProbeSpec("crash", ProbeKind.COMMAND, command="anything"),
            ProbeSpec("disk", ProbeKind.DISK_USAGE),
        ]

        report = HealthChecker(transport).check(GENERATION, probes)

        assert [c.passed for c in report.checks] == [False, False]
        assert report.checks[0].detail == "probe error: boom"

    def test_probes_run_in_parallel(self):
        probes = [ProbeSpec(f"slow{n}", ProbeKind.COMMAND, command="sleep 1", timeout=5) for n in range(4)]

        start = time.monotonic()
        report = HealthChecker(LocalTransport()).check(GENERATION, probes)
        elapsed = time.monotonic() - start

        assert report.overall_passed
        assert len(report.checks) == 4
        assert elapsed < 2.5
