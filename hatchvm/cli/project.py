"""CLI commands for registering projects and listing tracked records."""

from __future__ import annotations

import re
from dataclasses import asdict

import scriptconfig as scfg

from ..backends import BACKENDS
from ..errors import PreconditionError
from ..platform import ExeDevPlatform
from ..store import (
    SPIKE_COMPLETED,
    BackendInfo,
    GithubRef,
    ProjectRecord,
    VercelRef,
)
from ._common import _BaseCommand, _load_cfg, _print_json, _store, log

_GITHUB_RE = re.compile(
    r'github\.com[:/](?P<owner>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?/?$'
)

# Key under which each backend stores the id given by --backend_id.
_BACKEND_ID_KEYS = {'supabase': 'project_ref', 'convex': 'project_slug'}


def parse_github_url(url: str) -> GithubRef:
    match = _GITHUB_RE.search(url.strip())
    if match is None:
        raise PreconditionError(
            f'Could not parse a GitHub owner/repo from {url!r}. '
            'Expected https://github.com/<owner>/<repo>.'
        )
    return GithubRef(
        url=url.strip(), owner=match.group('owner'), repo=match.group('repo')
    )


class AddCLI(_BaseCommand):
    """Register an existing project so feature VMs can be created for it."""

    name = scfg.Value('', position=1, help='Project name (unique).')
    github_url = scfg.Value('', help='GitHub repository URL.')
    vercel_project_id = scfg.Value('', help='Vercel project id.')
    vercel_url = scfg.Value('', help='Production URL of the Vercel project.')
    backend = scfg.Value('supabase', help='Backend provider: supabase or convex.')
    backend_id = scfg.Value(
        '', help='Supabase project ref or Convex project slug.'
    )
    backend_project_id = scfg.Value(
        '', help='Convex project id (optional; looked up by slug otherwise).'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = str(args.name or '').strip()
        if not name or not args.github_url:
            raise PreconditionError(
                'Usage: hatchvm add <project> --github_url <url> '
                '--backend supabase|convex --backend_id <id>'
            )
        provider = str(args.backend or '').strip().lower()
        if provider not in BACKENDS:
            raise PreconditionError(
                f'--backend must be one of: {", ".join(sorted(BACKENDS))}'
            )
        if not args.backend_id:
            raise PreconditionError(
                f'--backend_id is required ({_BACKEND_ID_KEYS[provider]}).'
            )
        cfg = _load_cfg(args.config)
        store = _store(cfg)
        if store.get_project(name) is not None:
            raise PreconditionError(f'Project already exists: {name}')
        identifiers = {_BACKEND_ID_KEYS[provider]: str(args.backend_id)}
        if args.backend_project_id:
            identifiers['project_id'] = str(args.backend_project_id)
        project = ProjectRecord(
            name=name,
            github=parse_github_url(args.github_url),
            vercel=VercelRef(
                project_id=str(args.vercel_project_id or ''),
                url=str(args.vercel_url or ''),
            ),
            backend=BackendInfo(provider=provider, identifiers=identifiers),
        )
        store.save_project(project)
        log.info('Registered project {}', name)
        print(f'Project added: {name}')
        print(f'  GitHub:  {project.github.url}')
        print(f'  Backend: {provider} ({args.backend_id})')
        print('')
        print('Create a feature VM with:')
        print(f'  hatchvm feature <name> --project {name}')
        return 0


class ListCLI(_BaseCommand):
    """List registered projects, feature VMs, and resumable spikes."""

    section = scfg.Value(
        'all',
        help='One of: all, projects, vms, spikes.',
    )
    project = scfg.Value('', help='Only show records for this project.')
    remote = scfg.Value(
        False,
        isflag=True,
        help='Also ask the VM platform which VMs exist and their status.',
    )
    json = scfg.Value(False, isflag=True, help='Print records as JSON.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        want = str(args.section or 'all').strip().lower()
        allowed = {'all', 'projects', 'vms', 'spikes'}
        if want not in allowed:
            raise PreconditionError(
                f'--section must be one of: {", ".join(sorted(allowed))}'
            )
        cfg = _load_cfg(args.config)
        store = _store(cfg)
        only = str(args.project or '').strip()
        projects = [p for p in store.load_projects() if not only or p.name == only]
        vms = [v for v in store.load_vms() if not only or v.project == only]
        spikes = store.active_spikes(only or None)
        live = None
        if args.remote:
            platform = ExeDevPlatform(
                host=cfg.platform.host, domain=cfg.platform.domain
            )
            live = {item.name: item.status for item in platform.list()}

        if args.json:
            data = {}
            if want in {'all', 'projects'}:
                data['projects'] = [asdict(p) for p in projects]
            if want in {'all', 'vms'}:
                data['vms'] = [asdict(v) for v in vms]
            if want in {'all', 'spikes'}:
                data['spikes'] = [asdict(v) for v in spikes]
            if live is not None:
                data['platform'] = live
            _print_json(data)
            return 0

        if want in {'all', 'projects'}:
            print('Projects')
            if not projects:
                print('  (none)')
            for p in projects:
                usage = sum(1 for v in vms if v.project == p.name)
                print(
                    f'  - {p.name} | backend={p.backend.provider or "(none)"} '
                    f'| repo={p.github.owner}/{p.github.repo} | vm_count={usage}'
                )

        if want in {'all', 'vms'}:
            if want == 'all':
                print('')
            print('Feature VMs')
            if not vms:
                print('  (none)')
            for v in vms:
                status = v.spike_status or '-'
                remote = ''
                if live is not None:
                    remote = f' | platform={live.get(v.name, "missing")}'
                print(
                    f'  - {v.name} | project={v.project} | feature={v.feature} '
                    f'| spike={status} | ssh={v.ssh_host}{remote}'
                )
            if live is not None and not only:
                tracked = {v.name for v in vms}
                for name in sorted(set(live) - tracked):
                    print(f'  - {name} | untracked | platform={live[name]}')

        if want in {'all', 'spikes'}:
            if want == 'all':
                print('')
            print(f'Spikes ready to continue ({SPIKE_COMPLETED})')
            if not spikes:
                print('  (none)')
            for v in spikes:
                pr = f' | pr={v.pr_url}' if v.pr_url else ''
                print(
                    f'  - {v.name} | feature={v.feature} '
                    f'| iterations={v.spike_iterations} '
                    f'| cost=${v.cumulative_cost.total_usd:.2f}{pr}'
                )
        print('')
        print(f'State dir: {store.root}')
        return 0
