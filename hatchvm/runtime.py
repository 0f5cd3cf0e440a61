"""Runtime helpers for constructing ssh and scp command arguments."""

from __future__ import annotations

PLATFORM_HOST = 'exe.dev'


def ssh_base_args(
    *,
    strict_host_key_checking: str = 'accept-new',
    connect_timeout: int | None = None,
    batch_mode: bool = False,
    server_alive_interval: int | None = None,
    server_alive_count_max: int | None = None,
) -> list[str]:
    args: list[str] = []
    args.extend(['-o', f'StrictHostKeyChecking={strict_host_key_checking}'])
    if connect_timeout is not None:
        args.extend(['-o', f'ConnectTimeout={connect_timeout}'])
    if batch_mode:
        args.extend(['-o', 'BatchMode=yes'])
    if server_alive_interval is not None:
        args.extend(['-o', f'ServerAliveInterval={server_alive_interval}'])
    if server_alive_count_max is not None:
        args.extend(['-o', f'ServerAliveCountMax={server_alive_count_max}'])
    return args


def platform_cmd(
    *args: str, host: str = PLATFORM_HOST, connect_timeout: int = 10
) -> list[str]:
    """Build an ssh invocation of the VM platform's command interface."""
    return [
        'ssh',
        *ssh_base_args(connect_timeout=connect_timeout),
        host,
        *args,
    ]
