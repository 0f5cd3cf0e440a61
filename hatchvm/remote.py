"""Remote execution gateway: run commands on and copy files to VMs over ssh."""

from __future__ import annotations

from loguru import logger

from .runtime import ssh_base_args
from .util import CmdError, CmdResult, run_cmd

log = logger

DEFAULT_TIMEOUT_S = 60


class RemoteGateway:
    """
    Thin ssh/scp wrapper.

    Commands are strings interpreted by the remote login shell. A non-zero
    exit raises :class:`hatchvm.util.CmdError`; a timeout raises
    :class:`hatchvm.util.CmdTimeoutError`.
    """

    def exec(
        self,
        host: str,
        command: str,
        *,
        timeout_s: float | None = DEFAULT_TIMEOUT_S,
        stream_output: bool = False,
    ) -> CmdResult:
        cmd = [
            'ssh',
            *ssh_base_args(
                connect_timeout=10,
                server_alive_interval=30,
                server_alive_count_max=10,
            ),
            host,
            command,
        ]
        return run_cmd(
            cmd, check=True, capture=not stream_output, timeout_s=timeout_s
        )

    def copy_file(self, local_path: str, host: str, remote_path: str) -> None:
        cmd = [
            'scp',
            *ssh_base_args(connect_timeout=10),
            str(local_path),
            f'{host}:{remote_path}',
        ]
        run_cmd(cmd, check=True, capture=True)

    def check_connection(self, host: str) -> bool:
        cmd = [
            'ssh',
            *ssh_base_args(connect_timeout=5, batch_mode=True),
            host,
            'echo ok',
        ]
        try:
            res = run_cmd(cmd, check=False, capture=True, timeout_s=30)
        except CmdError as ex:
            log.debug('Connectivity probe to {} failed: {}', host, ex)
            return False
        return res.code == 0
