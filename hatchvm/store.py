"""Flat JSON record store for project and VM records."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from .errors import PreconditionError

log = logger

STORE_VERSION = 1

SPIKE_RUNNING = 'running'
SPIKE_COMPLETED = 'completed'
SPIKE_FAILED = 'failed'


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CostSummary:
    total_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: 'CostSummary') -> 'CostSummary':
        return CostSummary(
            total_usd=self.total_usd + other.total_usd,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    @classmethod
    def from_dict(cls, raw: Any) -> 'CostSummary':
        if not isinstance(raw, dict):
            return cls()
        # The agent runner writes camelCase keys.
        return cls(
            total_usd=float(raw.get('total_usd', raw.get('totalUsd', 0)) or 0),
            input_tokens=int(
                raw.get('input_tokens', raw.get('inputTokens', 0)) or 0
            ),
            output_tokens=int(
                raw.get('output_tokens', raw.get('outputTokens', 0)) or 0
            ),
        )


@dataclass
class BackendInfo:
    provider: str = ''
    identifiers: dict[str, str] = field(default_factory=dict)
    deploy_key: str = ''
    url: str = ''

    @classmethod
    def from_dict(cls, raw: Any) -> 'BackendInfo':
        if not isinstance(raw, dict):
            return cls()
        idents = raw.get('identifiers', {})
        return cls(
            provider=str(raw.get('provider', '') or ''),
            identifiers={
                str(k): str(v) for k, v in (idents or {}).items()
            }
            if isinstance(idents, dict)
            else {},
            deploy_key=str(raw.get('deploy_key', '') or ''),
            url=str(raw.get('url', '') or ''),
        )


@dataclass
class GithubRef:
    url: str = ''
    owner: str = ''
    repo: str = ''


@dataclass
class VercelRef:
    project_id: str = ''
    url: str = ''


@dataclass
class ProjectRecord:
    name: str
    created_at: str = field(default_factory=utcnow_iso)
    github: GithubRef = field(default_factory=GithubRef)
    vercel: VercelRef = field(default_factory=VercelRef)
    backend: BackendInfo = field(default_factory=BackendInfo)

    @classmethod
    def from_dict(cls, raw: dict) -> 'ProjectRecord':
        gh = raw.get('github') or {}
        vc = raw.get('vercel') or {}
        return cls(
            name=str(raw['name']),
            created_at=str(raw.get('created_at', '') or ''),
            github=GithubRef(
                url=str(gh.get('url', '')),
                owner=str(gh.get('owner', '')),
                repo=str(gh.get('repo', '')),
            ),
            vercel=VercelRef(
                project_id=str(vc.get('project_id', '')),
                url=str(vc.get('url', '')),
            ),
            backend=BackendInfo.from_dict(raw.get('backend')),
        )


@dataclass
class VMRecord:
    name: str
    ssh_host: str
    project: str
    feature: str = ''
    created_at: str = field(default_factory=utcnow_iso)
    github_branch: str = ''
    backend: BackendInfo = field(default_factory=BackendInfo)
    spike_status: str | None = None
    spike_iterations: int = 0
    original_prompt: str = ''
    cumulative_cost: CostSummary = field(default_factory=CostSummary)
    agent_session_id: str = ''
    pr_url: str = ''

    @classmethod
    def from_dict(cls, raw: dict) -> 'VMRecord':
        status = raw.get('spike_status')
        return cls(
            name=str(raw['name']),
            ssh_host=str(raw.get('ssh_host', '')),
            project=str(raw.get('project', '')),
            feature=str(raw.get('feature', '') or ''),
            created_at=str(raw.get('created_at', '') or ''),
            github_branch=str(raw.get('github_branch', '') or ''),
            backend=BackendInfo.from_dict(raw.get('backend')),
            spike_status=str(status) if status else None,
            spike_iterations=int(raw.get('spike_iterations', 0) or 0),
            original_prompt=str(raw.get('original_prompt', '') or ''),
            cumulative_cost=CostSummary.from_dict(raw.get('cumulative_cost')),
            agent_session_id=str(raw.get('agent_session_id', '') or ''),
            pr_url=str(raw.get('pr_url', '') or ''),
        )


_VM_FIELDS = {f.name for f in fields(VMRecord)}
_PROJECT_FIELDS = {f.name for f in fields(ProjectRecord)}


def _read_document(fpath: Path, key: str) -> list[dict]:
    if not fpath.exists():
        return []
    try:
        data = json.loads(fpath.read_text(encoding='utf-8'))
    except (OSError, ValueError) as ex:
        log.warning('Ignoring unreadable store {}: {}', fpath, ex)
        return []
    if (
        not isinstance(data, dict)
        or data.get('version') != STORE_VERSION
        or not isinstance(data.get(key), list)
    ):
        log.warning('Ignoring store {} with unexpected layout', fpath)
        return []
    return [item for item in data[key] if isinstance(item, dict)]


def _write_document(fpath: Path, key: str, items: list[dict]) -> Path:
    fpath.parent.mkdir(parents=True, exist_ok=True)
    doc = {'version': STORE_VERSION, key: items}
    fpath.write_text(json.dumps(doc, indent=2) + '\n', encoding='utf-8')
    return fpath


class RecordStore:
    """
    Repository over two JSON documents, ``projects.json`` and ``vms.json``.

    Every mutation is an explicit load, modify, save of the whole document.
    There is no file locking: concurrent invocations against the same
    directory can lose updates.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def projects_path(self) -> Path:
        return self.root / 'projects.json'

    @property
    def vms_path(self) -> Path:
        return self.root / 'vms.json'

    # Projects

    def load_projects(self) -> list[ProjectRecord]:
        out = []
        for item in _read_document(self.projects_path, 'projects'):
            if not str(item.get('name', '')).strip():
                continue
            out.append(ProjectRecord.from_dict(item))
        return out

    def save_projects(self, projects: list[ProjectRecord]) -> Path:
        items = [asdict(p) for p in sorted(projects, key=lambda p: p.name)]
        return _write_document(self.projects_path, 'projects', items)

    def get_project(self, name: str) -> ProjectRecord | None:
        for rec in self.load_projects():
            if rec.name == name:
                return rec
        return None

    def save_project(self, project: ProjectRecord) -> None:
        projects = [p for p in self.load_projects() if p.name != project.name]
        projects.append(project)
        self.save_projects(projects)

    def update_project(self, name: str, **updates: Any) -> ProjectRecord:
        unknown = set(updates) - _PROJECT_FIELDS
        if unknown:
            raise ValueError(f'Unknown project fields: {sorted(unknown)}')
        projects = self.load_projects()
        for i, rec in enumerate(projects):
            if rec.name == name:
                for k, v in updates.items():
                    setattr(rec, k, v)
                projects[i] = rec
                self.save_projects(projects)
                return rec
        raise PreconditionError(f'Project not found: {name}')

    def delete_project(self, name: str) -> None:
        projects = [p for p in self.load_projects() if p.name != name]
        self.save_projects(projects)

    # VMs

    def load_vms(self) -> list[VMRecord]:
        out = []
        for item in _read_document(self.vms_path, 'vms'):
            if not str(item.get('name', '')).strip():
                continue
            out.append(VMRecord.from_dict(item))
        return out

    def save_vms(self, vms: list[VMRecord]) -> Path:
        items = [asdict(v) for v in sorted(vms, key=lambda v: v.name)]
        return _write_document(self.vms_path, 'vms', items)

    def get_vm(self, name: str) -> VMRecord | None:
        for rec in self.load_vms():
            if rec.name == name:
                return rec
        return None

    def add_vm(self, vm: VMRecord) -> None:
        vms = [v for v in self.load_vms() if v.name != vm.name]
        vms.append(vm)
        self.save_vms(vms)

    def update_vm(self, name: str, **updates: Any) -> VMRecord:
        """Merge the given fields into a stored VM record, keeping the rest."""
        unknown = set(updates) - _VM_FIELDS
        if unknown:
            raise ValueError(f'Unknown VM fields: {sorted(unknown)}')
        vms = self.load_vms()
        for i, rec in enumerate(vms):
            if rec.name == name:
                for k, v in updates.items():
                    setattr(rec, k, v)
                vms[i] = rec
                self.save_vms(vms)
                return rec
        raise PreconditionError(f'VM not found: {name}')

    def remove_vm(self, name: str) -> None:
        vms = [v for v in self.load_vms() if v.name != name]
        self.save_vms(vms)

    def vms_for_project(self, project: str) -> list[VMRecord]:
        return [v for v in self.load_vms() if v.project == project]

    def find_vm_by_feature(self, project: str, feature: str) -> VMRecord | None:
        for rec in self.load_vms():
            if rec.project == project and rec.feature == feature:
                return rec
        return None

    def active_spikes(self, project: str | None = None) -> list[VMRecord]:
        """Spikes that finished and can take another iteration."""
        return [
            v
            for v in self.load_vms()
            if v.spike_status == SPIKE_COMPLETED
            and (project is None or v.project == project)
        ]
