"""Confirmation-gated teardown of feature VMs and whole projects."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from loguru import logger

from .backends import BackendProvider, IsolatedEnvironment, get_backend
from .config import HatchConfig
from .confirm import ConfirmationGate
from .credentials import load_credentials, section_value
from .errors import ConfirmationError, CredentialsError, PreconditionError
from .platform import ExeDevPlatform
from .prompts import PromptCollector, unwrap
from .remote import RemoteGateway
from .results import TeardownReport
from .steps import StepPolicy, StepRunner
from .store import ProjectRecord, RecordStore, VMRecord
from .util import run_cmd

log = logger


def _report_from(target: str, runner: StepRunner) -> TeardownReport:
    report = TeardownReport(target=target)
    for step in runner.reports:
        if step.status == 'ok':
            report.completed.append(step.name)
        else:
            report.failed.append(step)
    return report


class TeardownController:
    def __init__(
        self,
        cfg: HatchConfig,
        store: RecordStore,
        gate: ConfirmationGate,
        *,
        gateway: RemoteGateway | None = None,
        platform: ExeDevPlatform | None = None,
        prompts: PromptCollector | None = None,
        backend_factory: Callable[..., BackendProvider] = get_backend,
    ):
        self.cfg = cfg
        self.store = store
        self.gate = gate
        self.gateway = gateway or RemoteGateway()
        self.platform = platform or ExeDevPlatform(
            host=cfg.platform.host,
            domain=cfg.platform.domain,
            gateway=self.gateway,
        )
        self.prompts = prompts or PromptCollector()
        self.backend_factory = backend_factory

    def _project(self, name: str) -> ProjectRecord:
        project = self.store.get_project(name)
        if project is None:
            raise PreconditionError(
                f'Project not found: {name}. '
                'Run `hatchvm list --section projects` to see available projects.'
            )
        return project

    def _credentials(self) -> dict[str, Any]:
        try:
            return load_credentials(Path(self.cfg.paths.credentials_file))
        except CredentialsError as ex:
            log.warning('Continuing without provider tokens: {}', ex)
            return {}

    def clean(
        self,
        feature: str,
        project_name: str,
        *,
        dry_run: bool = False,
        confirm_token: str | None = None,
        force: bool = False,
    ) -> TeardownReport | None:
        """
        Delete a feature VM with its backend environment and remote branch.

        Returns None after a dry run. Each deletion runs even if an earlier
        one failed; failures land in the report with the manual command.
        """
        project = self._project(project_name)
        rec = self.store.find_vm_by_feature(project.name, feature)
        if rec is None:
            raise PreconditionError(
                f'Feature VM not found: {feature} (project: {project.name}). '
                'Run `hatchvm list` to see available feature VMs.'
            )
        backend = None
        env = None
        if rec.backend.provider:
            backend = self.backend_factory(rec.backend.provider, self.gateway)
            env = IsolatedEnvironment.from_backend_info(rec.backend)

        def details() -> None:
            print(f'Feature: {feature}')
            print(f'  Project: {project.name}')
            print(f'  VM: {rec.name}')
            if rec.github_branch:
                print(f'  Git branch: {rec.github_branch}')
            if backend is not None and env is not None:
                for line in backend.describe(project, env):
                    print(f'  {line}')

        decision = self.gate.require_confirmation(
            f'clean {feature}',
            {'project': project.name},
            f'Delete feature VM {rec.name} for {feature}',
            details,
            dry_run=dry_run,
            confirm_token=confirm_token,
            force=force,
        )
        if not decision.approved:
            return None
        details()

        credentials = self._credentials()
        runner = StepRunner()
        if backend is not None and env is not None:
            runner.run(
                f'Deleting {backend.name} environment',
                lambda: backend.delete_isolated_environment(project, env, credentials),
                policy=StepPolicy.BEST_EFFORT,
                manual=backend.delete_hint(project, env),
            )
        if rec.github_branch:
            runner.run(
                f'Deleting remote git branch {rec.github_branch}',
                lambda: self._delete_remote_branch(project, rec, credentials),
                policy=StepPolicy.BEST_EFFORT,
                manual=f'git push origin --delete {rec.github_branch}',
            )
        runner.run(
            f'Deleting VM {rec.name}',
            lambda: self.platform.remove(rec.name),
            policy=StepPolicy.BEST_EFFORT,
            manual=self.platform.remove_hint(rec.name),
        )
        runner.run(
            'Removing VM record',
            lambda: self.store.remove_vm(rec.name),
            policy=StepPolicy.BEST_EFFORT,
        )
        return _report_from(feature, runner)

    def _delete_remote_branch(
        self, project: ProjectRecord, rec: VMRecord, credentials: dict[str, Any]
    ) -> None:
        ref = (
            f'/repos/{project.github.owner}/{project.github.repo}'
            f'/git/refs/heads/{rec.github_branch}'
        )
        run_cmd(
            ['gh', 'api', '-X', 'DELETE', ref],
            extra_env={'GH_TOKEN': section_value(credentials, 'github')},
            timeout_s=60,
        )

    def destroy(
        self,
        project_name: str,
        *,
        dry_run: bool = False,
        confirm_token: str | None = None,
        force: bool = False,
    ) -> TeardownReport | None:
        """
        Delete a project's backend and deployment-target projects and its
        local record. The source repository is never deleted.
        """
        project = self._project(project_name)
        vms = self.store.vms_for_project(project.name)
        if vms:
            print(f'Project {project.name} still has active feature VMs:')
            for vm in vms:
                print(f'  hatchvm clean {vm.feature} --project {project.name}')
            raise PreconditionError(
                f'Project {project.name} has {len(vms)} active feature VM(s). '
                'Clean them up before destroying the project.'
            )
        backend = None
        if project.backend.provider:
            backend = self.backend_factory(project.backend.provider, self.gateway)

        def details() -> None:
            print(f'Project: {project.name}')
            print('  The following will be permanently deleted:')
            if backend is not None:
                idents = ', '.join(
                    f'{k}={v}' for k, v in sorted(project.backend.identifiers.items())
                )
                print(f'    {backend.name}: {idents or "(no identifiers)"}')
            print(f'    vercel: {project.vercel.project_id or "(none)"}')
            print('    local project record')
            print('  Preserved:')
            print(f'    repository: {project.github.url}')

        if dry_run or confirm_token or force:
            decision = self.gate.require_confirmation(
                f'destroy {project.name}',
                {},
                f'Destroy project {project.name}',
                details,
                dry_run=dry_run,
                confirm_token=confirm_token,
                force=force,
            )
            if not decision.approved:
                return None
            details()
        else:
            if not self.prompts.is_interactive():
                raise ConfirmationError(
                    'This command requires confirmation. '
                    'Run with --dry_run first to review.'
                )
            details()
            matched = unwrap(
                self.prompts.typed_match(
                    f'Type "{project.name}" to confirm destruction: ',
                    project.name,
                )
            )
            if not matched:
                raise ConfirmationError('Project name does not match. Aborting.')

        credentials = self._credentials()
        runner = StepRunner()
        if backend is not None:
            runner.run(
                f'Deleting {backend.name} project',
                lambda: backend.destroy_project(project, credentials),
                policy=StepPolicy.BEST_EFFORT,
                manual=backend.destroy_hint(project),
            )
        team = section_value(credentials, 'vercel', 'team')
        scope = f' --scope {team}' if team else ''
        if project.vercel.project_id:
            runner.run(
                'Deleting Vercel project',
                lambda: self._delete_vercel_project(project, credentials, team),
                policy=StepPolicy.BEST_EFFORT,
                manual=f'vercel project rm {project.vercel.project_id}{scope}',
            )
        runner.run(
            'Removing project record',
            lambda: self.store.delete_project(project.name),
            policy=StepPolicy.BEST_EFFORT,
        )
        report = _report_from(project.name, runner)
        report.notes.append(f'Repository preserved: {project.github.url}')
        report.notes.append(
            f'To delete it: gh repo delete {project.github.owner}/{project.github.repo} --yes'
        )
        return report

    def _delete_vercel_project(
        self, project: ProjectRecord, credentials: dict[str, Any], team: str
    ) -> None:
        cmd = ['vercel', 'project', 'rm', project.vercel.project_id]
        if team:
            cmd.extend(['--scope', team])
        run_cmd(
            cmd,
            extra_env={'VERCEL_TOKEN': section_value(credentials, 'vercel')},
            input_text='y\n',
            timeout_s=120,
        )
