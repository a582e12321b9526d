"""Turn probe entries from the YAML config into ProbeSpec objects.

Example:
    probes:
      - name: sshd
        type: service-active
        service: sshd
      - name: web
        type: http-status
        url: http://{host}/
        expected: [200, 301, 302]
      - name: postgres
        type: port-open
        port: 5432
      - name: systemd
        type: command
        command: systemctl is-system-running
      - name: root-disk
        type: disk-usage
        path: /
        max_percent: 90
"""
from typing import Any, Dict, List

from gendeploy.models.errors import ConfigError
from gendeploy.models.health import ProbeKind, ProbeSpec


class ProbeParser:
    """Parses probe definitions, substituting the target host into URLs."""

    @staticmethod
    def parse(entry: Dict[str, Any], host: str = "localhost") -> ProbeSpec:
        name = entry.get('name', '')
        try:
            kind = ProbeKind(entry.get('type'))
        except ValueError as e:
            raise ConfigError(f"Probe '{name}' has unknown type: {entry.get('type')}") from e

        expected = entry.get('expected', entry.get('expected_codes', [200]))
        if isinstance(expected, int):
            expected = [expected]

        url = entry.get('url')
        if url:
            url = url.replace('{host}', host)

        try:
            return ProbeSpec(
                name=name,
                kind=kind,
                service=entry.get('service'),
                port=int(entry['port']) if entry.get('port') is not None else None,
                host=entry.get('host'),
                url=url,
                expected_codes=tuple(int(code) for code in expected),
                command=entry.get('command'),
                path=entry.get('path', '/'),
                max_percent=int(entry.get('max_percent', 90)),
                timeout=float(entry['timeout']) if entry.get('timeout') is not None else None,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid probe '{name}': {e}") from e

    def parse_all(self, entries: List[Dict[str, Any]], host: str = "localhost") -> List[ProbeSpec]:
        return [self.parse(entry, host) for entry in entries or []]
