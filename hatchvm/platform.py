"""VM platform provider: create, list, expose, and remove exe.dev VMs over ssh."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from .errors import ConnectivityError, ReadinessTimeout
from .remote import RemoteGateway
from .runtime import PLATFORM_HOST, platform_cmd, ssh_base_args
from .util import CmdError, run_cmd

log = logger


@dataclass(frozen=True)
class PlatformVM:
    name: str
    ssh_host: str


@dataclass(frozen=True)
class PlatformListing:
    name: str
    status: str


def _access_failure_message(host: str, text: str) -> str:
    if 'Permission denied' in text:
        return (
            f'SSH key not authorized on {host}. '
            f'Add your SSH public key to {host} and retry.'
        )
    if 'Could not resolve hostname' in text or 'Connection refused' in text:
        return f'Cannot connect to {host}. Check your network connection.'
    return f'SSH connection to {host} failed: {text.strip()}'


class ExeDevPlatform:
    def __init__(
        self,
        *,
        host: str = PLATFORM_HOST,
        domain: str = 'exe.xyz',
        gateway: RemoteGateway | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host
        self.domain = domain
        self.gateway = gateway or RemoteGateway()
        self.clock = clock
        self.sleep = sleep

    def _cmd(self, *args: str, connect_timeout: int = 10) -> list[str]:
        return platform_cmd(*args, host=self.host, connect_timeout=connect_timeout)

    def check_access(self) -> None:
        """Raise :class:`ConnectivityError` unless the platform answers."""
        cmd = [
            'ssh',
            *ssh_base_args(connect_timeout=10, batch_mode=True),
            self.host,
            'help',
        ]
        try:
            res = run_cmd(cmd, check=False, capture=True, timeout_s=60)
        except CmdError as ex:
            raise ConnectivityError(_access_failure_message(self.host, str(ex))) from ex
        if res.code != 0:
            raise ConnectivityError(
                _access_failure_message(self.host, res.stderr or res.stdout)
            )

    def create(self) -> PlatformVM:
        res = run_cmd(
            self._cmd('new', '--json', connect_timeout=30),
            check=True,
            capture=True,
            timeout_s=300,
        )
        return self._parse_new(res.stdout.strip())

    def _parse_new(self, output: str) -> PlatformVM:
        try:
            parsed = json.loads(output)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            name = parsed.get('vm_name') or parsed.get('name')
            if name:
                ssh_host = parsed.get('ssh_dest') or f'{name}.{self.domain}'
                return PlatformVM(name=str(name), ssh_host=str(ssh_host))
        match = re.search(
            r'(?:vm_name|name|VM)[:\s]+["\']?([a-z]+-[a-z]+)["\']?',
            output,
            flags=re.IGNORECASE,
        )
        if match:
            name = match.group(1)
            return PlatformVM(name=name, ssh_host=f'{name}.{self.domain}')
        raise ConnectivityError(
            f'Failed to parse VM name from {self.host} output: {output}'
        )

    def list(self) -> list[PlatformListing]:
        res = run_cmd(self._cmd('list'), check=True, capture=True, timeout_s=60)
        out = []
        for line in res.stdout.splitlines():
            parts = line.strip().split()
            if not parts:
                continue
            low = line.lower()
            if 'name' in low and 'status' in low:
                continue
            if parts[0].startswith(('-', '=')):
                continue
            out.append(
                PlatformListing(
                    name=parts[0], status=parts[1] if len(parts) > 1 else 'unknown'
                )
            )
        return out

    def remove(self, name: str) -> None:
        run_cmd(self._cmd('rm', name), check=True, capture=True, timeout_s=120)
        log.info('VM removed: {}', name)

    def configure_port(self, name: str, port: int) -> None:
        run_cmd(
            self._cmd('share', 'port', name, str(port)),
            check=True,
            capture=True,
            timeout_s=60,
        )

    def remove_hint(self, name: str) -> str:
        return f'ssh {self.host} rm {name}'

    def port_hint(self, name: str, port: int) -> str:
        return f'ssh {self.host} share port {name} {port}'

    def app_url(self, name: str) -> str:
        return f'https://{name}.{self.domain}'

    def wait_until_ready(
        self, ssh_host: str, *, timeout_s: float = 120, interval_s: float = 3
    ) -> None:
        deadline = self.clock() + timeout_s
        while self.clock() < deadline:
            if self.gateway.check_connection(ssh_host):
                log.info('SSH is ready on {}', ssh_host)
                return
            self.sleep(interval_s)
        raise ReadinessTimeout(
            f'VM {ssh_host} did not become ready within {timeout_s:g}s'
        )
