"""Backend providers: per-feature isolated database/backend environments."""

from __future__ import annotations

import json
import shlex
from dataclasses import dataclass, field
from typing import Any

import requests
from loguru import logger

from .credentials import remote_env_prefix, section_value
from .errors import CredentialsError, HatchError, PreconditionError
from .remote import RemoteGateway
from .steps import StepPolicy, StepRunner
from .store import BackendInfo, ProjectRecord
from .util import CmdError, run_cmd

log = logger

CONVEX_API_BASE = 'https://api.convex.dev/v1'
HTTP_TIMEOUT_S = 30


@dataclass
class IsolatedEnvironment:
    provider: str
    identifiers: dict[str, str] = field(default_factory=dict)
    deploy_key: str = ''
    url: str = ''

    def to_backend_info(self) -> BackendInfo:
        return BackendInfo(
            provider=self.provider,
            identifiers=dict(self.identifiers),
            deploy_key=self.deploy_key,
            url=self.url,
        )

    @classmethod
    def from_backend_info(cls, info: BackendInfo) -> 'IsolatedEnvironment':
        return cls(
            provider=info.provider,
            identifiers=dict(info.identifiers),
            deploy_key=info.deploy_key,
            url=info.url,
        )


@dataclass
class BackendContext:
    """Everything a provider needs to act on one feature VM."""

    project: ProjectRecord
    feature: str
    ssh_host: str
    repo_path: str
    web_path: str
    app_url: str
    credentials: dict[str, Any]

    @property
    def env_prefix(self) -> str:
        return remote_env_prefix(self.credentials)


def upsert_env_line_cmd(web_path: str, key: str, value: str) -> str:
    """Shell command that sets ``key=value`` in ``.env.local``, replacing any existing line."""
    line = f'{key}={value}'
    sed_expr = f's|^{key}=.*|{line}|'
    return (
        f'cd {web_path} && '
        f"(grep -q '^{key}=' .env.local 2>/dev/null "
        f'&& sed -i {shlex.quote(sed_expr)} .env.local '
        f'|| echo {shlex.quote(line)} >> .env.local)'
    )


class BackendProvider:
    """Interface implemented by each backend kind."""

    name = ''

    def __init__(self, gateway: RemoteGateway | None = None):
        self.gateway = gateway or RemoteGateway()

    def describe(self, project: ProjectRecord, env: IsolatedEnvironment) -> list[str]:
        raise NotImplementedError

    def create_isolated_environment(self, ctx: BackendContext) -> IsolatedEnvironment:
        raise NotImplementedError

    def populate_environment(
        self, ctx: BackendContext, env: IsolatedEnvironment, runner: StepRunner
    ) -> None:
        raise NotImplementedError

    def delete_isolated_environment(
        self,
        project: ProjectRecord,
        env: IsolatedEnvironment,
        credentials: dict[str, Any],
    ) -> None:
        raise NotImplementedError

    def delete_hint(self, project: ProjectRecord, env: IsolatedEnvironment) -> str:
        raise NotImplementedError

    def destroy_project(
        self, project: ProjectRecord, credentials: dict[str, Any]
    ) -> None:
        raise NotImplementedError

    def destroy_hint(self, project: ProjectRecord) -> str:
        raise NotImplementedError


class SupabaseBackend(BackendProvider):
    """Persistent Supabase preview branches (main and test) per feature."""

    name = 'supabase'

    def _project_ref(self, project: ProjectRecord) -> str:
        ref = project.backend.identifiers.get('project_ref', '')
        if not ref:
            raise PreconditionError(
                f'Project {project.name} has no Supabase project_ref recorded.'
            )
        return ref

    def _token_env(self, credentials: dict[str, Any]) -> dict[str, str]:
        return {'SUPABASE_ACCESS_TOKEN': section_value(credentials, 'supabase')}

    def describe(self, project, env):
        branches = [
            b
            for b in (
                env.identifiers.get('branch', ''),
                env.identifiers.get('test_branch', ''),
            )
            if b
        ]
        return [f'Supabase branches: {", ".join(branches) or "(none)"}']

    def create_isolated_environment(self, ctx):
        ref = self._project_ref(ctx.project)
        main_branch = ctx.feature
        test_branch = f'{ctx.feature}-test'
        prefix = ctx.env_prefix
        self.gateway.exec(
            ctx.ssh_host,
            f'{prefix} cd {ctx.repo_path} && supabase link --project-ref {shlex.quote(ref)}',
            timeout_s=120,
        )
        created: list[str] = []
        try:
            for branch in (main_branch, test_branch):
                self.gateway.exec(
                    ctx.ssh_host,
                    f'{prefix} cd {ctx.repo_path} && '
                    f'supabase branches create {shlex.quote(branch)} --persistent',
                    timeout_s=180,
                )
                created.append(branch)
        except Exception:
            self._discard_branches(ctx, ref, created)
            raise
        log.info('Supabase branches created: {}, {}', main_branch, test_branch)
        return IsolatedEnvironment(
            provider=self.name,
            identifiers={
                'project_ref': ref,
                'branch': main_branch,
                'test_branch': test_branch,
            },
        )

    def _discard_branches(self, ctx: BackendContext, ref: str, branches: list[str]) -> None:
        for branch in branches:
            log.warning('Deleting partially created Supabase branch {}', branch)
            try:
                self.gateway.exec(
                    ctx.ssh_host,
                    f'{ctx.env_prefix} cd {ctx.repo_path} && '
                    f'supabase branches delete {shlex.quote(branch)} '
                    f'--project-ref {shlex.quote(ref)}',
                    timeout_s=120,
                )
            except Exception as ex:
                log.error(
                    'Could not delete Supabase branch {}: {}. Run manually: '
                    'supabase branches delete {} --project-ref {}',
                    branch, ex, branch, ref,
                )

    def populate_environment(self, ctx, env, runner):
        def configure_database_url():
            res = self.gateway.exec(
                ctx.ssh_host,
                f'{ctx.env_prefix} cd {ctx.repo_path} && '
                f'supabase branches get {shlex.quote(env.identifiers["branch"])} '
                '--output json',
                timeout_s=120,
            )
            info = json.loads(res.stdout or '{}')
            db_url = info.get('db_url') or info.get('POSTGRES_URL') or ''
            if not db_url:
                raise HatchError('Supabase branch did not report a database URL yet.')
            self.gateway.exec(
                ctx.ssh_host, upsert_env_line_cmd(ctx.web_path, 'DATABASE_URL', db_url)
            )

        runner.run(
            'Configure Supabase branch credentials',
            configure_database_url,
            policy=StepPolicy.BEST_EFFORT,
            manual=f'Update DATABASE_URL in {ctx.web_path}/.env.local',
        )

    def delete_isolated_environment(self, project, env, credentials):
        ref = env.identifiers.get('project_ref') or self._project_ref(project)
        token_env = self._token_env(credentials)
        failed = []
        for key in ('branch', 'test_branch'):
            branch = env.identifiers.get(key, '')
            if not branch:
                continue
            try:
                run_cmd(
                    [
                        'supabase',
                        'branches',
                        'update',
                        branch,
                        '--persistent=false',
                        '--project-ref',
                        ref,
                    ],
                    extra_env=token_env,
                    timeout_s=120,
                )
                run_cmd(
                    ['supabase', 'branches', 'delete', branch, '--project-ref', ref],
                    extra_env=token_env,
                    timeout_s=120,
                )
            except CmdError as ex:
                log.warning('Failed to delete Supabase branch {}: {}', branch, ex)
                failed.append(branch)
        if failed:
            raise HatchError(f'Failed to delete Supabase branches: {", ".join(failed)}')

    def delete_hint(self, project, env):
        ref = env.identifiers.get('project_ref', '<project-ref>')
        branches = [
            env.identifiers[k] for k in ('branch', 'test_branch') if env.identifiers.get(k)
        ]
        return '; '.join(
            f'supabase branches delete {b} --project-ref {ref}' for b in branches
        )

    def destroy_project(self, project, credentials):
        ref = self._project_ref(project)
        run_cmd(
            ['supabase', 'projects', 'delete', ref, '--yes'],
            extra_env=self._token_env(credentials),
            timeout_s=300,
        )

    def destroy_hint(self, project):
        ref = project.backend.identifiers.get('project_ref', '<project-ref>')
        return f'SUPABASE_ACCESS_TOKEN=<token> supabase projects delete {ref} --yes'


class ConvexClient:
    """Minimal client for the Convex management API."""

    def __init__(self, access_token: str, *, base_url: str = CONVEX_API_BASE):
        if not access_token:
            raise CredentialsError('Convex access token not configured.')
        self.access_token = access_token
        self.base_url = base_url

    def _headers(self) -> dict[str, str]:
        return {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json',
        }

    def _check(self, response: requests.Response, action: str) -> Any:
        if not response.ok:
            raise HatchError(
                f'Failed to {action} ({response.status_code}): {response.text}'
            )
        if not response.content:
            return {}
        return response.json()

    def token_details(self) -> dict[str, Any]:
        response = requests.get(
            f'{self.base_url}/token_details',
            headers=self._headers(),
            timeout=HTTP_TIMEOUT_S,
        )
        return self._check(response, 'validate Convex token')

    def team_id(self) -> str:
        details = self.token_details()
        team_id = details.get('teamId')
        if team_id is None:
            raise HatchError('Convex token details did not include a team id.')
        return str(team_id)

    def list_projects(self, team_id: str) -> list[dict[str, Any]]:
        response = requests.get(
            f'{self.base_url}/teams/{team_id}/list_projects',
            headers=self._headers(),
            timeout=HTTP_TIMEOUT_S,
        )
        return list(self._check(response, 'list Convex projects') or [])

    def create_project(self, team_id: str, name: str) -> dict[str, Any]:
        response = requests.post(
            f'{self.base_url}/teams/{team_id}/create_project',
            headers=self._headers(),
            json={'projectName': name, 'deploymentType': 'prod'},
            timeout=HTTP_TIMEOUT_S,
        )
        return self._check(response, 'create Convex project')

    def create_deploy_key(self, deployment_name: str) -> str:
        response = requests.post(
            f'{self.base_url}/deployments/{deployment_name}/create_deploy_key',
            headers=self._headers(),
            json={'name': 'hatchvm-deploy-key'},
            timeout=HTTP_TIMEOUT_S,
        )
        data = self._check(response, 'create Convex deploy key')
        return str(data.get('deployKey', ''))

    def delete_project(self, project_id: str) -> None:
        response = requests.post(
            f'{self.base_url}/projects/{project_id}/delete',
            headers=self._headers(),
            timeout=HTTP_TIMEOUT_S,
        )
        self._check(response, 'delete Convex project')


def _convex_token(credentials: dict[str, Any]) -> str:
    return section_value(credentials, 'convex', 'access_token') or section_value(
        credentials, 'convex', 'accessToken'
    )


class ConvexBackend(BackendProvider):
    """A dedicated Convex project per feature, created through the management API."""

    name = 'convex'

    def client(self, credentials: dict[str, Any]) -> ConvexClient:
        return ConvexClient(_convex_token(credentials))

    def describe(self, project, env):
        slug = env.identifiers.get('project_slug', '(unknown)')
        return [f'Convex project: {slug}']

    def create_isolated_environment(self, ctx):
        client = self.client(ctx.credentials)
        team_id = client.team_id()
        base_slug = ctx.project.backend.identifiers.get('project_slug') or ctx.project.name
        name = f'{base_slug}-{ctx.feature}'
        created = client.create_project(team_id, name)
        project_id = str(created.get('projectId', ''))
        deployment_name = str(created.get('deploymentName', ''))
        try:
            deploy_key = client.create_deploy_key(deployment_name)
        except Exception:
            log.warning('Deploy key creation failed; deleting Convex project {}', name)
            try:
                client.delete_project(project_id)
            except Exception as cleanup_ex:
                log.error(
                    'Could not delete Convex project {} ({}): {}. '
                    'Delete it from the Convex dashboard.',
                    name, project_id, cleanup_ex,
                )
            raise
        log.info('Convex feature project created: {}', name)
        return IsolatedEnvironment(
            provider=self.name,
            identifiers={
                'project_id': project_id,
                'project_slug': name,
                'deployment_name': deployment_name,
                'team_id': team_id,
            },
            deploy_key=deploy_key,
            url=str(created.get('deploymentUrl', '')),
        )

    def _convex_cmd(self, ctx: BackendContext, env: IsolatedEnvironment, args: str) -> str:
        return (
            f'{ctx.env_prefix} cd {ctx.web_path} && '
            f'CONVEX_DEPLOY_KEY={shlex.quote(env.deploy_key)} npx convex {args}'
        )

    def populate_environment(self, ctx, env, runner):
        seed_fn = section_value(ctx.credentials, 'convex', 'seed_function') or 'seed:seedData'
        site_url = env.url.replace('.convex.cloud', '.convex.site')

        def deploy():
            self.gateway.exec(
                ctx.ssh_host,
                self._convex_cmd(ctx, env, 'deploy --yes'),
                timeout_s=600,
            )

        def configure_env():
            values = [
                ('CONVEX_DEPLOY_KEY', env.deploy_key),
                ('CONVEX_DEPLOYMENT', env.identifiers.get('deployment_name', '')),
                ('NEXT_PUBLIC_CONVEX_URL', env.url),
                ('NEXT_PUBLIC_CONVEX_SITE_URL', site_url),
            ]
            for key, value in values:
                if value:
                    self.gateway.exec(
                        ctx.ssh_host, upsert_env_line_cmd(ctx.web_path, key, value)
                    )

        def seed():
            self.gateway.exec(
                ctx.ssh_host,
                self._convex_cmd(ctx, env, f'run {shlex.quote(seed_fn)}'),
                timeout_s=300,
            )

        def dev_mode():
            self.gateway.exec(
                ctx.ssh_host,
                self._convex_cmd(ctx, env, 'env set HATCH_DEV_MODE true'),
                timeout_s=120,
            )

        runner.run(
            'Deploy Convex functions',
            deploy,
            policy=StepPolicy.BEST_EFFORT,
            manual=f'cd {ctx.web_path} && npx convex deploy --yes',
        )
        runner.run(
            'Configure Convex environment',
            configure_env,
            policy=StepPolicy.BEST_EFFORT,
            manual=f'Update {ctx.web_path}/.env.local with the Convex deployment URL',
        )
        runner.run(
            'Seed Convex data',
            seed,
            policy=StepPolicy.BEST_EFFORT,
            manual=f'cd {ctx.web_path} && npx convex run {seed_fn}',
        )
        runner.run(
            'Enable Convex dev mode',
            dev_mode,
            policy=StepPolicy.BEST_EFFORT,
            manual=f'cd {ctx.web_path} && npx convex env set HATCH_DEV_MODE true',
        )

    def delete_isolated_environment(self, project, env, credentials):
        project_id = env.identifiers.get('project_id', '')
        if not project_id:
            raise HatchError('No Convex project id recorded for this feature.')
        self.client(credentials).delete_project(project_id)

    def delete_hint(self, project, env):
        slug = env.identifiers.get('project_slug', '<project>')
        return f'Delete via https://dashboard.convex.dev (project: {slug})'

    def destroy_project(self, project, credentials):
        client = self.client(credentials)
        project_id = project.backend.identifiers.get('project_id', '')
        if not project_id:
            slug = project.backend.identifiers.get('project_slug', '')
            if not slug:
                raise PreconditionError(
                    f'No Convex project slug found for project {project.name}.'
                )
            team_id = client.team_id()
            for item in client.list_projects(team_id):
                if str(item.get('slug', item.get('name', ''))).lower() == slug.lower():
                    project_id = str(item.get('id', ''))
                    break
            if not project_id:
                raise HatchError(f'Convex project not found: {slug}')
        client.delete_project(project_id)

    def destroy_hint(self, project):
        slug = project.backend.identifiers.get('project_slug', project.name)
        return f'Delete via https://dashboard.convex.dev (project: {slug})'


BACKENDS = {
    SupabaseBackend.name: SupabaseBackend,
    ConvexBackend.name: ConvexBackend,
}


def get_backend(provider: str, gateway: RemoteGateway | None = None) -> BackendProvider:
    try:
        cls = BACKENDS[provider]
    except KeyError:
        raise PreconditionError(
            f'Unknown backend provider {provider!r}. '
            f'Expected one of: {", ".join(sorted(BACKENDS))}'
        ) from None
    return cls(gateway)
