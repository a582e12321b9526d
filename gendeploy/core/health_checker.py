"""Post-activation health probes."""
import asyncio
import shlex
import socket
from typing import List, Optional, Sequence

import requests

from gendeploy.core.logger import get_logger
from gendeploy.models.errors import CommandTimeout, TransportError
from gendeploy.models.generation import Generation
from gendeploy.models.health import CheckResult, HealthReport, ProbeKind, ProbeSpec
from gendeploy.services.transport import Transport

logger = get_logger(__name__)

# Extra seconds a probe thread gets beyond its own timeout before it is written off
TIMEOUT_GRACE = 1.0


class HealthChecker:
    """Runs every probe of a probe set and aggregates one HealthReport.

    Probes are independent: they run concurrently, each under its own
    timeout, and a failing or crashing probe never stops the others.
    """

    def __init__(self, transport: Transport, timeout: float = 5.0):
        self.transport = transport
        self.timeout = timeout

    def check(self, generation: Generation, probes: Sequence[ProbeSpec]) -> HealthReport:
        probes = list(probes)
        if not probes:
            logger.warning(f"No health probes configured for {self.transport.target}; treating generation {generation.id} as healthy")
            return HealthReport(generation_id=generation.id)

        logger.info(f"Running {len(probes)} health probe(s) against generation {generation.id}")
        checks = asyncio.run(self._run_all(probes))
        report = HealthReport(generation_id=generation.id, checks=list(checks))

        for check in report.checks:
            if check.passed:
                logger.info(f"✓ {check.name}: {check.detail}")
            else:
                logger.error(f"✗ {check.name}: {check.detail}")

        if report.overall_passed:
            logger.info(f"All health probes passed for generation {generation.id}")
        else:
            logger.error(
                f"{len(report.failed_checks)}/{len(report.checks)} health probe(s) failed for generation {generation.id}"
            )
        return report

    async def _run_all(self, probes: List[ProbeSpec]) -> List[CheckResult]:
        return await asyncio.gather(*(self._run_probe(probe) for probe in probes))

    async def _run_probe(self, probe: ProbeSpec) -> CheckResult:
        timeout = probe.timeout or self.timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.run_probe, probe, timeout),
                timeout=timeout + TIMEOUT_GRACE,
            )
        except asyncio.TimeoutError:
            return CheckResult(probe.name, False, f"timed out after {timeout:g}s")
        except Exception as e:  # a crashing probe is a failed probe
            logger.debug(f"Probe {probe.name} raised", exc_info=True)
            return CheckResult(probe.name, False, f"probe error: {e}")

    def run_probe(self, probe: ProbeSpec, timeout: Optional[float] = None) -> CheckResult:
        """Run a single probe synchronously."""
        timeout = timeout or probe.timeout or self.timeout
        handlers = {
            ProbeKind.SERVICE_ACTIVE: self._service_active,
            ProbeKind.PORT_OPEN: self._port_open,
            ProbeKind.HTTP_STATUS: self._http_status,
            ProbeKind.COMMAND: self._command,
            ProbeKind.DISK_USAGE: self._disk_usage,
        }
        try:
            return handlers[probe.kind](probe, timeout)
        except CommandTimeout:
            return CheckResult(probe.name, False, f"timed out after {timeout:g}s")
        except TransportError as e:
            return CheckResult(probe.name, False, f"target unreachable: {e}")

    def _service_active(self, probe: ProbeSpec, timeout: float) -> CheckResult:
        result = self.transport.exec(f"systemctl is-active {shlex.quote(probe.service)}", timeout=timeout)
        state = result.stdout.strip() or result.stderr.strip() or f"exit {result.exit_code}"
        return CheckResult(probe.name, result.ok, f"{probe.service} is {state}")

    def _port_open(self, probe: ProbeSpec, timeout: float) -> CheckResult:
        host = probe.host or self.transport.hostname
        try:
            with socket.create_connection((host, probe.port), timeout=timeout):
                pass
        except OSError as e:
            return CheckResult(probe.name, False, f"{host}:{probe.port} closed ({e})")
        return CheckResult(probe.name, True, f"{host}:{probe.port} open")

    def _http_status(self, probe: ProbeSpec, timeout: float) -> CheckResult:
        try:
            response = requests.get(probe.url, timeout=timeout, allow_redirects=False)
        except requests.RequestException as e:
            return CheckResult(probe.name, False, f"{probe.url} unreachable ({e})")

        expected = ", ".join(str(code) for code in probe.expected_codes)
        passed = response.status_code in probe.expected_codes
        return CheckResult(
            probe.name,
            passed,
            f"{probe.url} returned {response.status_code} (expected {expected})",
        )

    def _command(self, probe: ProbeSpec, timeout: float) -> CheckResult:
        result = self.transport.exec(probe.command, timeout=timeout)
        output = (result.stdout.strip() or result.stderr.strip()).splitlines()
        summary = output[-1] if output else ""
        detail = f"exit {result.exit_code}" + (f": {summary}" if summary else "")
        return CheckResult(probe.name, result.ok, detail)

    def _disk_usage(self, probe: ProbeSpec, timeout: float) -> CheckResult:
        result = self.transport.exec(f"df -P {shlex.quote(probe.path)}", timeout=timeout)
        if not result.ok:
            return CheckResult(probe.name, False, f"df failed: {result.stderr.strip()}")

        percent = parse_df_percent(result.stdout)
        if percent is None:
            return CheckResult(probe.name, False, f"could not parse df output for {probe.path}")
        passed = percent <= probe.max_percent
        return CheckResult(probe.name, passed, f"{probe.path} at {percent}% (limit {probe.max_percent}%)")


def parse_df_percent(output: str) -> Optional[int]:
    """Extract the capacity percentage from `df -P` output."""
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    fields = lines[-1].split()
    if len(fields) < 5 or not fields[4].endswith("%"):
        return None
    try:
        return int(fields[4].rstrip("%"))
    except ValueError:
        return None
