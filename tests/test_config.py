"""Tests for TOML config loading and dumping."""

from __future__ import annotations

from pathlib import Path

from hatchvm.config import HatchConfig, dump_toml, load, load_or_default, save


def test_config_roundtrip(tmp_path: Path) -> None:
    cfg = HatchConfig()
    cfg.platform.preview_port = 8080
    cfg.provision.default_branch = 'develop'
    cfg.spike.poll_interval_s = 5
    cfg.paths.state_dir = str(tmp_path / 'state "quoted"')
    cfg.verbosity = 2
    fpath = tmp_path / 'config.toml'
    save(fpath, cfg)

    loaded = load(fpath)
    assert loaded.platform.preview_port == 8080
    assert loaded.provision.default_branch == 'develop'
    assert loaded.spike.poll_interval_s == 5
    assert loaded.paths.state_dir == str(tmp_path / 'state "quoted"')
    assert loaded.verbosity == 2


def test_dump_toml_puts_verbosity_before_tables() -> None:
    cfg = HatchConfig()
    cfg.verbosity = 0
    text = dump_toml(cfg)
    assert text.splitlines()[0] == 'verbosity = 0'
    assert text.index('verbosity') < text.index('[platform]')


def test_dump_toml_omits_default_verbosity() -> None:
    text = dump_toml(HatchConfig())
    assert 'verbosity' not in text
    assert '[confirm]' in text
    assert 'ttl_s = 300' in text


def test_load_ignores_unknown_keys(tmp_path: Path) -> None:
    fpath = tmp_path / 'config.toml'
    fpath.write_text(
        '[platform]\nhost = "example.dev"\nbogus = 1\n\n[nonsense]\nx = 1\n',
        encoding='utf-8',
    )
    cfg = load(fpath)
    assert cfg.platform.host == 'example.dev'
    assert not hasattr(cfg.platform, 'bogus')


def test_load_or_default_expands_paths(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv('HOME', str(tmp_path))
    fpath = tmp_path / 'config.toml'
    cfg = HatchConfig()
    cfg.paths.state_dir = '~/hatch-state'
    save(fpath, cfg)
    loaded = load_or_default(fpath)
    assert loaded.paths.state_dir == str(tmp_path / 'hatch-state')
    assert loaded.paths.credentials_file == str(tmp_path / '.hatchvm.json')
