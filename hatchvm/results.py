"""Result dataclasses returned by provisioning, spike, and teardown operations."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from .store import CostSummary


@dataclass
class StepReport:
    name: str
    status: str
    error: str = ''
    manual: str = ''

    def as_dict(self) -> dict[str, str]:
        return {
            'name': self.name,
            'status': self.status,
            'error': self.error,
            'manual': self.manual,
        }


@dataclass
class ProvisionResult:
    vm_name: str
    ssh_host: str
    feature: str
    project: str
    branch: str
    app_url: str = ''
    backend_url: str = ''
    steps: list[StepReport] = field(default_factory=list)

    @property
    def warnings(self) -> list[StepReport]:
        return [s for s in self.steps if s.status == 'warning']


@dataclass
class SpikeResult:
    status: str
    vm_name: str = ''
    ssh_host: str = ''
    feature: str = ''
    project: str = ''
    iteration: int = 0
    monitor: dict[str, str] = field(default_factory=dict)
    cost: CostSummary | None = None
    cumulative_cost: CostSummary | None = None
    session_id: str = ''
    pr_url: str = ''
    error: str = ''

    def as_dict(self) -> dict:
        out: dict = {
            'status': self.status,
            'vm_name': self.vm_name,
            'ssh_host': self.ssh_host,
            'feature': self.feature,
            'project': self.project,
            'iteration': self.iteration,
        }
        if self.monitor:
            out['monitor'] = dict(self.monitor)
        if self.cost is not None:
            out['cost'] = asdict(self.cost)
        if self.cumulative_cost is not None:
            out['cumulative_cost'] = asdict(self.cumulative_cost)
        if self.session_id:
            out['session_id'] = self.session_id
        if self.pr_url:
            out['pr_url'] = self.pr_url
        if self.error:
            out['error'] = self.error
        return out


@dataclass
class TeardownReport:
    target: str
    completed: list[str] = field(default_factory=list)
    failed: list[StepReport] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict:
        return {
            'target': self.target,
            'completed': list(self.completed),
            'failed': [f.as_dict() for f in self.failed],
            'notes': list(self.notes),
        }


@dataclass
class PlanStep:
    label: str
    done: bool


@dataclass
class SpikeProgress:
    """Snapshot of a feature VM's spike: the local record plus what the VM reports."""

    vm_name: str
    feature: str
    project: str
    ssh_host: str
    branch: str = ''
    created_at: str = ''
    reachable: bool = False
    spike_status: str | None = None
    iteration: int = 0
    cumulative_cost: CostSummary | None = None
    original_prompt: str = ''
    pr_url: str = ''
    plan: list[PlanStep] | None = None
    activity: list[str] = field(default_factory=list)
    recent_logs: list[str] = field(default_factory=list)

    @property
    def plan_completed(self) -> int:
        return sum(1 for s in self.plan or [] if s.done)

    def as_dict(self) -> dict:
        plan = None
        if self.plan is not None:
            plan = {
                'completed': self.plan_completed,
                'total': len(self.plan),
                'steps': [asdict(s) for s in self.plan],
            }
        return {
            'vm': {
                'name': self.vm_name,
                'feature': self.feature,
                'project': self.project,
                'ssh_host': self.ssh_host,
                'branch': self.branch,
                'created_at': self.created_at,
                'reachable': self.reachable,
                'spike_status': self.spike_status,
                'iteration': self.iteration or None,
                'cumulative_cost': (
                    asdict(self.cumulative_cost) if self.cumulative_cost else None
                ),
                'original_prompt': self.original_prompt or None,
                'pr_url': self.pr_url or None,
            },
            'plan': plan,
            'activity': list(self.activity),
            'recent_logs': list(self.recent_logs),
        }
