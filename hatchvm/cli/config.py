"""CLI commands for the hatchvm config file."""

from __future__ import annotations

import scriptconfig as scfg

from ..config import HatchConfig, dump_toml, save
from ._common import _BaseCommand, _cfg_path, _load_cfg, log


class InitCLI(_BaseCommand):
    """Write a config file populated with defaults."""

    force = scfg.Value(
        False, isflag=True, help='Overwrite an existing config file.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            raise FileExistsError(
                f'Config already exists: {path}. Use --force to overwrite.'
            )
        save(path, HatchConfig())
        log.info('Wrote config to {}', path)
        print(f'Config written: {path}')
        return 0


class ConfigShowCLI(_BaseCommand):
    """Show the resolved config."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print(f'# Config: {_cfg_path(args.config)}')
        print(dump_toml(cfg), end='')
        return 0


class ConfigPathCLI(_BaseCommand):
    """Show the config file path and the state directory in use."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print(f'Config file: {_cfg_path(args.config)}')
        print(f'State dir:   {cfg.paths.state_dir}')
        print(f'Credentials: {cfg.paths.credentials_file}')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Config file management commands."""

    init = InitCLI
    show = ConfigShowCLI
    path = ConfigPathCLI
