from __future__ import annotations

import json
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..config import HatchConfig, default_config_path, load_or_default
from ..confirm import ConfirmationGate
from ..errors import PreconditionError
from ..results import ProvisionResult, TeardownReport
from ..store import RecordStore

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help='Path to config TOML (default: per-user app config dir).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


def _cfg_path(p: str | None) -> Path:
    return Path(p).expanduser().resolve() if p else default_config_path()


def _load_cfg(config_path: str | None) -> HatchConfig:
    if config_path is not None:
        path = _cfg_path(config_path)
        if not path.exists():
            raise PreconditionError(
                f'Config not found: {path}. '
                f'Run: hatchvm config init --config {path}'
            )
        return load_or_default(path)
    return load_or_default()


def _store(cfg: HatchConfig) -> RecordStore:
    return RecordStore(Path(cfg.paths.state_dir))


def _gate(cfg: HatchConfig) -> ConfirmationGate:
    return ConfirmationGate(
        Path(cfg.paths.state_dir) / 'confirmations.json',
        ttl_s=cfg.confirm.ttl_s,
        min_age_s=cfg.confirm.min_age_s,
    )


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2))


def _print_provision_summary(result: ProvisionResult, cfg: HatchConfig, repo: str) -> None:
    home = cfg.platform.home_dir.rstrip('/')
    print('')
    if result.warnings:
        print('Feature VM created with warnings.')
    else:
        print('Feature VM created successfully.')
    print('')
    print('Feature details:')
    print(f'  VM:         {result.vm_name}')
    print(f'  Project:    {result.project}')
    print(f'  Git branch: {result.branch}')
    if result.backend_url:
        print(f'  Backend:    {result.backend_url}')
    print('')
    print('Connect:')
    print(f'  SSH:     ssh {result.ssh_host}')
    print(f'  VS Code: vscode://vscode-remote/ssh-remote+{result.ssh_host}{home}/{repo}')
    print(f'  Web:     {result.app_url} (once the app runs on port {cfg.platform.preview_port})')
    if result.warnings:
        print('')
        print('Needs manual follow-up:')
        for step in result.warnings:
            print(f'  - {step.name}: {step.error}')
            if step.manual:
                print(f'    Manual: {step.manual}')
    print('')
    print('When done:')
    print(f'  hatchvm clean {result.feature} --project {result.project}')


def _print_teardown_report(report: TeardownReport, *, what: str) -> None:
    print('')
    if report.ok:
        print(f'{what} {report.target!r} removed.')
    else:
        print(f'{what} {report.target!r} partially removed. Manual cleanup needed:')
        for step in report.failed:
            print(f'  - {step.name}: {step.error}')
            if step.manual:
                print(f'    Manual: {step.manual}')
    for note in report.notes:
        print(note)


__all__ = [name for name in globals() if not name.startswith('__')]
