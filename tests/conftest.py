"""Shared fakes for the remote gateway, VM platform, and backend providers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from hatchvm.backends import BackendProvider, IsolatedEnvironment
from hatchvm.config import HatchConfig
from hatchvm.platform import PlatformVM
from hatchvm.steps import StepPolicy
from hatchvm.store import BackendInfo, GithubRef, ProjectRecord, RecordStore, VercelRef
from hatchvm.util import CmdResult


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeGateway:
    """Records commands; ``responses`` maps a command substring to output.

    A response may be a string, an exception instance to raise, or a list
    consumed one item per matching call.
    """

    def __init__(self, responses: dict | None = None):
        self.responses = dict(responses or {})
        self.commands: list[tuple[str, str]] = []
        self.copies: list[tuple[str, str, str]] = []
        self.connected = True

    def exec(self, host, command, *, timeout_s=60, stream_output=False):
        self.commands.append((host, command))
        for key, value in self.responses.items():
            if key not in command:
                continue
            if isinstance(value, list):
                value = value.pop(0) if len(value) > 1 else value[0]
            if isinstance(value, Exception):
                raise value
            return CmdResult(0, value, '')
        return CmdResult(0, '', '')

    def copy_file(self, local_path, host, remote_path):
        self.copies.append((str(local_path), host, remote_path))

    def check_connection(self, host):
        return self.connected

    def ran(self, fragment: str) -> bool:
        return any(fragment in cmd for _, cmd in self.commands)


class FakePlatform:
    host = 'exe.dev'

    def __init__(self, vm: PlatformVM | None = None):
        self.vm = vm or PlatformVM(name='brave-otter', ssh_host='brave-otter.exe.xyz')
        self.created: list[str] = []
        self.removed: list[str] = []
        self.ports: list[tuple[str, int]] = []
        self.port_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.ready_error: Exception | None = None

    def check_access(self):
        return None

    def create(self):
        self.created.append(self.vm.name)
        return self.vm

    def wait_until_ready(self, ssh_host, *, timeout_s=120, interval_s=3):
        if self.ready_error is not None:
            raise self.ready_error

    def configure_port(self, name, port):
        if self.port_error is not None:
            raise self.port_error
        self.ports.append((name, port))

    def remove(self, name):
        if self.remove_error is not None:
            raise self.remove_error
        self.removed.append(name)

    def remove_hint(self, name):
        return f'ssh exe.dev rm {name}'

    def port_hint(self, name, port):
        return f'ssh exe.dev share port {name} {port}'

    def app_url(self, name):
        return f'https://{name}.exe.xyz'


class FakeBackend(BackendProvider):
    name = 'supabase'

    def __init__(self, gateway=None):
        super().__init__(gateway)
        self.created: list[str] = []
        self.deleted: list[dict] = []
        self.destroyed: list[str] = []
        self.create_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.populate_error: Exception | None = None

    def describe(self, project, env):
        return [f'Supabase branches: {env.identifiers.get("branch", "")}']

    def create_isolated_environment(self, ctx):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(ctx.feature)
        return IsolatedEnvironment(
            provider=self.name,
            identifiers={'project_ref': 'abc123', 'branch': ctx.feature},
            url='https://db.example',
        )

    def populate_environment(self, ctx, env, runner):
        def populate():
            if self.populate_error is not None:
                raise self.populate_error

        runner.run(
            'Populate backend env',
            populate,
            policy=StepPolicy.BEST_EFFORT,
            manual='fix .env.local by hand',
        )

    def delete_isolated_environment(self, project, env, credentials):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(dict(env.identifiers))

    def delete_hint(self, project, env):
        return f'supabase branches delete {env.identifiers.get("branch")}'

    def destroy_project(self, project, credentials):
        self.destroyed.append(project.name)

    def destroy_hint(self, project):
        return 'supabase projects delete abc123 --yes'


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def cfg(tmp_path: Path) -> HatchConfig:
    cfg = HatchConfig()
    cfg.paths.state_dir = str(tmp_path / 'state')
    creds = tmp_path / 'hatchvm.json'
    creds.write_text(
        json.dumps({'github': {'token': 'ghp_test'}, 'vercel': {'token': 'vc'}}),
        encoding='utf-8',
    )
    cfg.paths.credentials_file = str(creds)
    cfg.paths.agent_credentials_file = str(tmp_path / 'agent-credentials.json')
    install = tmp_path / 'feature-install.sh'
    install.write_text('#!/bin/sh\n', encoding='utf-8')
    cfg.provision.install_script = str(install)
    return cfg


@pytest.fixture
def store(cfg: HatchConfig) -> RecordStore:
    store = RecordStore(Path(cfg.paths.state_dir))
    store.save_project(
        ProjectRecord(
            name='demo',
            github=GithubRef(
                url='https://github.com/acme/demo', owner='acme', repo='demo'
            ),
            vercel=VercelRef(project_id='prj_123'),
            backend=BackendInfo(
                provider='supabase', identifiers={'project_ref': 'abc123'}
            ),
        )
    )
    return store
