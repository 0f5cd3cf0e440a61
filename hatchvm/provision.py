"""Ordered provisioning of a feature VM with rollback on fatal failure."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from .backends import (
    BackendContext,
    BackendProvider,
    IsolatedEnvironment,
    get_backend,
    upsert_env_line_cmd,
)
from .config import HatchConfig
from .credentials import ensure_fresh_credentials
from .errors import PreconditionError
from .platform import ExeDevPlatform, PlatformVM
from .remote import RemoteGateway
from .results import ProvisionResult
from .steps import StepPolicy, StepRunner
from .store import ProjectRecord, RecordStore, VMRecord

log = logger

REMOTE_CREDENTIALS_PATH = '~/.hatchvm.json'
REMOTE_INSTALL_PATH = '~/feature-install.sh'
SCRIPTS_DIR = Path(__file__).parent / 'scripts'

_FEATURE_RE = re.compile(r'^[a-z0-9][a-z0-9._-]*$')


def validate_feature_name(feature: str) -> str:
    feature = feature.strip()
    if not _FEATURE_RE.match(feature):
        raise PreconditionError(
            f'Invalid feature name {feature!r}. Use lowercase letters, digits, '
            'dots, dashes or underscores.'
        )
    return feature


def detached_command(workdir: str, command: str) -> str:
    """Wrap ``command`` so it survives the ssh session that starts it."""
    return (
        f'cd {workdir} && '
        f'(nohup {command} > /dev/null 2>&1 < /dev/null &)'
    )


@dataclass
class ProvisionContext:
    project: ProjectRecord
    feature: str
    vm: PlatformVM
    repo_path: str
    web_path: str
    app_url: str
    credentials: dict[str, Any]
    runner: StepRunner
    env: IsolatedEnvironment | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def backend_context(self) -> BackendContext:
        return BackendContext(
            project=self.project,
            feature=self.feature,
            ssh_host=self.vm.ssh_host,
            repo_path=self.repo_path,
            web_path=self.web_path,
            app_url=self.app_url,
            credentials=self.credentials,
        )


class Provisioner:
    """
    Creates a feature VM and wires it to the project's repo and backend.

    Any fatal failure after the VM exists triggers rollback: the isolated
    backend environment (if one was created) and the VM are deleted and the
    VM record is removed. Rollback problems are logged together with the
    manual command and never replace the original error.
    """

    def __init__(
        self,
        cfg: HatchConfig,
        store: RecordStore,
        *,
        gateway: RemoteGateway | None = None,
        platform: ExeDevPlatform | None = None,
        backend_factory: Callable[..., BackendProvider] = get_backend,
    ):
        self.cfg = cfg
        self.store = store
        self.gateway = gateway or RemoteGateway()
        self.platform = platform or ExeDevPlatform(
            host=cfg.platform.host,
            domain=cfg.platform.domain,
            gateway=self.gateway,
        )
        self.backend_factory = backend_factory

    def resolve_project(self, name: str) -> ProjectRecord:
        project = self.store.get_project(name)
        if project is None:
            raise PreconditionError(
                f'Project not found: {name}. '
                'Run `hatchvm list --section projects` to see available projects.'
            )
        return project

    def backend_for(self, provider: str) -> BackendProvider:
        return self.backend_factory(provider, self.gateway)

    def install_script_path(self) -> Path:
        if self.cfg.provision.install_script:
            return Path(self.cfg.provision.install_script)
        return SCRIPTS_DIR / 'feature-install.sh'

    def refresh_credentials(self) -> dict[str, Any]:
        return ensure_fresh_credentials(
            Path(self.cfg.paths.credentials_file),
            Path(self.cfg.paths.agent_credentials_file),
        )

    def upload_credentials(self, ssh_host: str) -> None:
        self.gateway.copy_file(
            self.cfg.paths.credentials_file, ssh_host, REMOTE_CREDENTIALS_PATH
        )

    def provision(
        self,
        feature: str,
        project_name: str,
        *,
        extra_steps: Callable[[ProvisionContext], None] | None = None,
        record_updates: dict[str, Any] | None = None,
        launch: Callable[[ProvisionContext], None] | None = None,
    ) -> ProvisionResult:
        feature = validate_feature_name(feature)
        project = self.resolve_project(project_name)
        existing = self.store.find_vm_by_feature(project.name, feature)
        if existing is not None:
            raise PreconditionError(
                f'Feature VM already exists: {feature} ({existing.name}). '
                f'Run `hatchvm clean {feature} --project {project.name}` first.'
            )
        backend = self.backend_for(project.backend.provider)
        runner = StepRunner()

        runner.run(f'Checking {self.platform.host} access', self.platform.check_access)
        credentials = runner.run('Checking credentials', self.refresh_credentials)

        vm = runner.run(f'Creating {self.platform.host} VM', self.platform.create)
        repo_path = f'~/{project.github.repo}'
        ctx = ProvisionContext(
            project=project,
            feature=feature,
            vm=vm,
            repo_path=repo_path,
            web_path=f'{repo_path}/{self.cfg.provision.web_dir}',
            app_url=self.platform.app_url(vm.name),
            credentials=credentials,
            runner=runner,
        )
        try:
            self.store.add_vm(
                VMRecord(
                    name=vm.name,
                    ssh_host=vm.ssh_host,
                    project=project.name,
                    feature=feature,
                    github_branch=feature,
                )
            )
            log.info('VM created: {} ({})', vm.name, vm.ssh_host)
            self._provision_vm(ctx, backend, extra_steps, record_updates, launch)
        except Exception:
            self._rollback(ctx, backend)
            raise

        return ProvisionResult(
            vm_name=vm.name,
            ssh_host=vm.ssh_host,
            feature=feature,
            project=project.name,
            branch=feature,
            app_url=ctx.app_url,
            backend_url=ctx.env.url if ctx.env else '',
            steps=list(runner.reports),
        )

    def _provision_vm(
        self,
        ctx: ProvisionContext,
        backend: BackendProvider,
        extra_steps: Callable[[ProvisionContext], None] | None,
        record_updates: dict[str, Any] | None,
        launch: Callable[[ProvisionContext], None] | None,
    ) -> None:
        runner = ctx.runner
        vm = ctx.vm
        pcfg = self.cfg.provision
        runner.run(
            'Waiting for VM to be ready',
            lambda: self.platform.wait_until_ready(
                vm.ssh_host,
                timeout_s=pcfg.ready_timeout_s,
                interval_s=pcfg.ready_interval_s,
            ),
        )
        port = self.cfg.platform.preview_port
        runner.run(
            f'Exposing port {port}',
            lambda: self.platform.configure_port(vm.name, port),
            policy=StepPolicy.BEST_EFFORT,
            manual=self.platform.port_hint(vm.name, port),
        )
        runner.run('Copying credentials to VM', lambda: self.upload_credentials(vm.ssh_host))
        runner.run('Running feature install script', lambda: self._run_install(ctx))
        runner.run(
            f'Creating git branch {ctx.feature}',
            lambda: self.gateway.exec(
                vm.ssh_host,
                f'cd {ctx.repo_path} && git fetch origin && '
                f'git checkout -b {shlex.quote(ctx.feature)} '
                f'origin/{shlex.quote(pcfg.default_branch)}',
            ),
        )
        self._configure_app_env(ctx)

        def create_backend():
            ctx.env = backend.create_isolated_environment(ctx.backend_context())
            self.store.update_vm(vm.name, backend=ctx.env.to_backend_info())

        runner.run(f'Creating {backend.name} environment', create_backend)
        backend.populate_environment(ctx.backend_context(), ctx.env, runner)

        if extra_steps is not None:
            extra_steps(ctx)

        runner.run(
            'Pushing branch to origin',
            lambda: self.gateway.exec(
                vm.ssh_host,
                f'cd {ctx.repo_path} && git push -u origin {shlex.quote(ctx.feature)}',
                timeout_s=120,
            ),
        )
        updates = dict(record_updates or {})
        updates['backend'] = ctx.env.to_backend_info()
        self.store.update_vm(vm.name, **updates)
        if launch is not None:
            runner.run('Launching background process', lambda: launch(ctx))

    def _run_install(self, ctx: ProvisionContext) -> None:
        host = ctx.vm.ssh_host
        self.gateway.copy_file(str(self.install_script_path()), host, REMOTE_INSTALL_PATH)
        self.gateway.exec(
            host,
            f'chmod +x {REMOTE_INSTALL_PATH} && {REMOTE_INSTALL_PATH} '
            f'{shlex.quote(ctx.project.github.url)} '
            f'--config {REMOTE_CREDENTIALS_PATH}',
            timeout_s=self.cfg.provision.install_timeout_s,
            stream_output=True,
        )

    def _configure_app_env(self, ctx: ProvisionContext) -> None:
        runner = ctx.runner
        host = ctx.vm.ssh_host
        project = ctx.project
        prefix = ctx.backend_context().env_prefix
        vercel_id = shlex.quote(project.vercel.project_id)

        def pull_env():
            self.gateway.exec(
                host,
                f'{prefix} cd {ctx.web_path} && '
                f'vercel link --yes --project {vercel_id} --token "$VERCEL_TOKEN"',
                timeout_s=120,
            )
            self.gateway.exec(
                host,
                f'{prefix} cd {ctx.web_path} && '
                'vercel env pull .env.local --yes --environment=development '
                '--token "$VERCEL_TOKEN"',
                timeout_s=120,
            )

        def app_urls():
            for key, value in (
                ('ALLOWED_DEV_ORIGINS', ctx.app_url.replace('https://', '')),
                ('BETTER_AUTH_URL', ctx.app_url),
                ('NEXT_PUBLIC_APP_URL', ctx.app_url),
            ):
                self.gateway.exec(host, upsert_env_line_cmd(ctx.web_path, key, value))

        runner.run(
            'Pulling environment from Vercel',
            pull_env,
            policy=StepPolicy.BEST_EFFORT,
            manual=f'cd {ctx.web_path} && vercel env pull .env.local',
        )
        runner.run(
            'Configuring app URLs',
            app_urls,
            policy=StepPolicy.BEST_EFFORT,
            manual=f'Set NEXT_PUBLIC_APP_URL={ctx.app_url} in {ctx.web_path}/.env.local',
        )

    def _rollback(self, ctx: ProvisionContext, backend: BackendProvider) -> None:
        vm = ctx.vm
        log.warning('Rolling back VM {}', vm.name)
        if ctx.env is not None:
            try:
                backend.delete_isolated_environment(ctx.project, ctx.env, ctx.credentials)
            except Exception as ex:
                log.error(
                    'Rollback could not delete {} environment: {}. Manual: {}',
                    backend.name,
                    ex,
                    backend.delete_hint(ctx.project, ctx.env),
                )
        try:
            self.platform.remove(vm.name)
        except Exception as ex:
            log.error(
                'Rollback could not delete VM {}: {}. Manual: {}',
                vm.name,
                ex,
                self.platform.remove_hint(vm.name),
            )
        try:
            self.store.remove_vm(vm.name)
        except OSError as ex:
            log.error('Rollback could not remove VM record {}: {}', vm.name, ex)
