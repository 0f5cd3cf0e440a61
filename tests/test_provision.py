"""Tests for feature VM provisioning and rollback."""

from __future__ import annotations

import pytest

from hatchvm.errors import ConnectivityError, PreconditionError
from hatchvm.provision import Provisioner, detached_command, validate_feature_name
from hatchvm.store import VMRecord
from hatchvm.util import CmdError, CmdResult


def _provisioner(cfg, store, gateway, platform, backend) -> Provisioner:
    return Provisioner(
        cfg,
        store,
        gateway=gateway,
        platform=platform,
        backend_factory=lambda provider, gw: backend,
    )


def test_validate_feature_name() -> None:
    assert validate_feature_name(' login-v2 ') == 'login-v2'
    for bad in ['', 'Login', 'has space', '-dash', 'semi;colon']:
        with pytest.raises(PreconditionError):
            validate_feature_name(bad)


def test_detached_command() -> None:
    cmd = detached_command('~/demo', 'bash ./run.sh')
    assert cmd == 'cd ~/demo && (nohup bash ./run.sh > /dev/null 2>&1 < /dev/null &)'


def test_provision_success(cfg, store, gateway, platform, backend) -> None:
    prov = _provisioner(cfg, store, gateway, platform, backend)
    result = prov.provision('login', 'demo')

    assert result.vm_name == 'brave-otter'
    assert result.branch == 'login'
    assert result.app_url == 'https://brave-otter.exe.xyz'
    assert result.backend_url == 'https://db.example'
    assert result.warnings == []
    assert platform.ports == [('brave-otter', 3000)]
    assert backend.created == ['login']

    remote_paths = [c[2] for c in gateway.copies]
    assert remote_paths == ['~/.hatchvm.json', '~/feature-install.sh']
    assert gateway.ran('~/feature-install.sh https://github.com/acme/demo --config ~/.hatchvm.json')
    assert gateway.ran('git checkout -b login origin/main')
    assert gateway.ran('git push -u origin login')

    rec = store.get_vm('brave-otter')
    assert rec.feature == 'login'
    assert rec.github_branch == 'login'
    assert rec.backend.identifiers == {'project_ref': 'abc123', 'branch': 'login'}


def test_provision_best_effort_failures_are_warnings(
    cfg, store, gateway, platform, backend
) -> None:
    platform.port_error = RuntimeError('share failed')
    backend.populate_error = RuntimeError('no env')
    result = _provisioner(cfg, store, gateway, platform, backend).provision(
        'login', 'demo'
    )
    warned = {w.name: w.manual for w in result.warnings}
    assert warned['Exposing port 3000'] == 'ssh exe.dev share port brave-otter 3000'
    assert warned['Populate backend env'] == 'fix .env.local by hand'
    assert store.get_vm('brave-otter') is not None
    assert platform.removed == []


def test_provision_rolls_back_on_fatal_failure(
    cfg, store, gateway, platform, backend
) -> None:
    gateway.responses['git push'] = CmdError('git push', CmdResult(1, '', 'denied'))
    platform.remove_error = RuntimeError('platform down')
    prov = _provisioner(cfg, store, gateway, platform, backend)
    with pytest.raises(CmdError):
        prov.provision('login', 'demo')
    assert backend.deleted == [{'project_ref': 'abc123', 'branch': 'login'}]
    assert store.get_vm('brave-otter') is None


def test_provision_rollback_before_backend(cfg, store, gateway, platform, backend) -> None:
    platform.ready_error = ConnectivityError('never came up')
    prov = _provisioner(cfg, store, gateway, platform, backend)
    with pytest.raises(ConnectivityError):
        prov.provision('login', 'demo')
    assert backend.created == []
    assert backend.deleted == []
    assert platform.removed == ['brave-otter']
    assert store.load_vms() == []


def test_provision_rolls_back_when_install_fails(
    cfg, store, gateway, platform, backend
) -> None:
    gateway.responses['~/feature-install.sh https'] = CmdError(
        'install', CmdResult(1, '', 'npm ci failed')
    )
    prov = _provisioner(cfg, store, gateway, platform, backend)
    with pytest.raises(CmdError, match='npm ci failed'):
        prov.provision('login', 'demo')
    assert platform.removed == ['brave-otter']
    assert store.get_vm('brave-otter') is None
    assert backend.created == []
    assert not gateway.ran('git checkout -b login')


def test_provision_rolls_back_when_record_write_fails(
    cfg, store, gateway, platform, backend, monkeypatch
) -> None:
    def fail_add(vm):
        raise OSError('disk full')

    monkeypatch.setattr(store, 'add_vm', fail_add)
    prov = _provisioner(cfg, store, gateway, platform, backend)
    with pytest.raises(OSError, match='disk full'):
        prov.provision('login', 'demo')
    assert platform.created == ['brave-otter']
    assert platform.removed == ['brave-otter']


def test_provision_preconditions(cfg, store, gateway, platform, backend) -> None:
    prov = _provisioner(cfg, store, gateway, platform, backend)
    with pytest.raises(PreconditionError, match='hatchvm list'):
        prov.provision('login', 'nope')
    store.add_vm(
        VMRecord(name='old-vm', ssh_host='h', project='demo', feature='login')
    )
    with pytest.raises(PreconditionError, match='hatchvm clean login --project demo'):
        prov.provision('login', 'demo')
    assert platform.created == []
