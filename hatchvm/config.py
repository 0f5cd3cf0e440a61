"""Tool configuration: dataclass sections persisted as a small TOML file."""

from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path

import ubelt as ub

from .util import expand


@dataclass
class PlatformConfig:
    host: str = 'exe.dev'
    domain: str = 'exe.xyz'
    preview_port: int = 3000
    home_dir: str = '/home/exedev'


@dataclass
class ProvisionConfig:
    ready_timeout_s: int = 120
    ready_interval_s: int = 3
    install_timeout_s: int = 600
    default_branch: str = 'main'
    web_dir: str = 'apps/web'
    install_script: str = ''


@dataclass
class SpikeConfig:
    poll_interval_s: int = 30
    start_timeout_min: int = 240
    wait_timeout_min: int = 60
    runner_script: str = ''


@dataclass
class ConfirmConfig:
    ttl_s: int = 300
    min_age_s: int = 10


@dataclass
class PathsConfig:
    state_dir: str = ''
    credentials_file: str = '~/.hatchvm.json'
    agent_credentials_file: str = '~/.claude/.credentials.json'


@dataclass
class HatchConfig:
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    provision: ProvisionConfig = field(default_factory=ProvisionConfig)
    spike: SpikeConfig = field(default_factory=SpikeConfig)
    confirm: ConfirmConfig = field(default_factory=ConfirmConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    verbosity: int = 1

    def expanded_paths(self) -> 'HatchConfig':
        if not self.paths.state_dir:
            self.paths.state_dir = str(default_state_dir())
        self.paths.state_dir = expand(self.paths.state_dir)
        self.paths.credentials_file = expand(self.paths.credentials_file)
        self.paths.agent_credentials_file = expand(
            self.paths.agent_credentials_file
        )
        if self.provision.install_script:
            self.provision.install_script = expand(
                self.provision.install_script
            )
        if self.spike.runner_script:
            self.spike.runner_script = expand(self.spike.runner_script)
        return self


SECTIONS = ('platform', 'provision', 'spike', 'confirm', 'paths')


def default_state_dir() -> Path:
    return Path(ub.Path.appdir('hatchvm', type='data').ensuredir())


def default_config_path() -> Path:
    root = ub.Path.appdir('hatchvm', type='config').ensuredir()
    return Path(root) / 'config.toml'


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def dump_toml(cfg: HatchConfig) -> str:
    d = asdict(cfg)
    lines: list[str] = []
    verbosity = int(d.pop('verbosity', 1))
    # Bare keys must precede the first table header.
    if verbosity != 1:
        lines.append(f'verbosity = {verbosity}')
        lines.append('')
    for section in SECTIONS:
        lines.append(f'[{section}]')
        for k, v in d[section].items():
            if isinstance(v, bool):
                lines.append(f'{k} = {"true" if v else "false"}')
            elif isinstance(v, int):
                lines.append(f'{k} = {v}')
            else:
                lines.append(f'{k} = "{_toml_escape(str(v))}"')
        lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def load(path: Path) -> HatchConfig:
    raw = tomllib.loads(path.read_text(encoding='utf-8'))
    cfg = HatchConfig()
    for section in SECTIONS:
        if section in raw and isinstance(raw[section], dict):
            obj = getattr(cfg, section)
            for k, v in raw[section].items():
                if hasattr(obj, k):
                    setattr(obj, k, v)
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def save(path: Path, cfg: HatchConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_toml(cfg), encoding='utf-8')


def load_or_default(path: Path | None = None) -> HatchConfig:
    """Load the config file if present, otherwise return defaults."""
    fpath = path or default_config_path()
    if not fpath.exists():
        return HatchConfig().expanded_paths()
    return load(fpath).expanded_paths()
