"""Autonomous agent spikes: start, resume, and poll a detached agent on a feature VM."""

from __future__ import annotations

import enum
import json
import re
import shlex
import time
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from .config import HatchConfig
from .credentials import remote_env_prefix
from .errors import ConnectivityError, PreconditionError, SpikeStateError
from .provision import SCRIPTS_DIR, ProvisionContext, Provisioner, detached_command
from .remote import RemoteGateway
from .results import PlanStep, SpikeProgress, SpikeResult
from .store import (
    SPIKE_COMPLETED,
    SPIKE_FAILED,
    SPIKE_RUNNING,
    CostSummary,
    RecordStore,
    VMRecord,
)
from .util import CmdError

log = logger

DONE_MARKER = '~/spike-done'
RESULT_FILE = '~/spike-result.json'
PR_URL_FILE = '~/pr-url.txt'
LOG_FILE = '~/spike.log'
PROGRESS_FILE = '~/spike-progress.jsonl'
RUNNER_NAME = 'spike-runner.sh'


class SpikePhase(enum.Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'


_TRANSITIONS: dict[str | None, set[str]] = {
    None: {SPIKE_RUNNING},
    SPIKE_RUNNING: {SPIKE_COMPLETED, SPIKE_FAILED},
    SPIKE_COMPLETED: {SPIKE_RUNNING},
    SPIKE_FAILED: set(),
}


def transition_status(current: str | None, new: str) -> str:
    """Return ``new`` if moving from ``current`` is allowed, else raise."""
    if new not in _TRANSITIONS.get(current, set()):
        raise SpikeStateError(
            f'Illegal spike status transition: {current or "none"} -> {new}'
        )
    return new


def monitor_commands(ssh_host: str) -> dict[str, str]:
    return {
        'tail_log': f"ssh {ssh_host} 'tail -f {LOG_FILE}'",
        'tail_progress': f"ssh {ssh_host} 'tail -f {PROGRESS_FILE}'",
        'check_done': f"ssh {ssh_host} 'test -f {DONE_MARKER} && cat {RESULT_FILE}'",
    }


_PLAN_STEP_RE = re.compile(r'^- \[([ xX])\]\s+(.+)')


def parse_plan(text: str) -> list[PlanStep] | None:
    """Markdown checklist items (``- [x] step``) from a plan document."""
    steps = []
    for line in text.splitlines():
        match = _PLAN_STEP_RE.match(line)
        if match:
            steps.append(PlanStep(label=match.group(2).strip(), done=match.group(1) != ' '))
    return steps or None


def summarize_events(text: str, *, width: int = 100) -> list[str]:
    """One line per tool call, message or result in the agent's stream-json output."""
    out: list[str] = []
    for line in text.splitlines():
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if not isinstance(event, dict):
            continue
        kind = event.get('type')
        if kind == 'system' and event.get('subtype') == 'init':
            out.append('session started')
        elif kind == 'assistant':
            message = event.get('message') or {}
            for item in message.get('content') or []:
                if not isinstance(item, dict):
                    continue
                if item.get('type') == 'tool_use':
                    out.append(f'tool: {item.get("name", "?")}')
                elif item.get('type') == 'text':
                    first = (item.get('text') or '').strip().splitlines()
                    if first:
                        msg = first[0]
                        if len(msg) > width:
                            msg = msg[:width - 3] + '...'
                        out.append(f'say: {msg}')
        elif kind == 'result':
            out.append(f'result: {event.get("subtype") or "done"}')
    return out


class SpikeController:
    """
    Drives an agent run on a feature VM.

    The agent writes its progress to files in the VM user's home directory.
    Completion is signalled only by the ``~/spike-done`` marker, after which
    ``~/spike-result.json`` and ``~/pr-url.txt`` are read once.
    """

    def __init__(
        self,
        cfg: HatchConfig,
        store: RecordStore,
        *,
        gateway: RemoteGateway | None = None,
        provisioner: Provisioner | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.store = store
        self.gateway = gateway or RemoteGateway()
        self.provisioner = provisioner or Provisioner(cfg, store, gateway=self.gateway)
        self.clock = clock
        self.sleep = sleep

    def runner_script_path(self) -> Path:
        if self.cfg.spike.runner_script:
            return Path(self.cfg.spike.runner_script)
        return SCRIPTS_DIR / RUNNER_NAME

    def start(
        self,
        feature: str,
        project: str,
        prompt: str,
        *,
        wait: bool = False,
        timeout_min: int | None = None,
    ) -> SpikeResult:
        if not prompt.strip():
            raise PreconditionError('A spike needs a non-empty --prompt.')
        status = transition_status(None, SPIKE_RUNNING)

        def upload_runner(ctx: ProvisionContext) -> None:
            ctx.runner.run(
                'Uploading agent runner', lambda: self._upload_runner(ctx)
            )

        def launch(ctx: ProvisionContext) -> None:
            self._launch(
                ctx.vm.ssh_host,
                ctx.repo_path,
                prompt=prompt,
                feature=ctx.feature,
                project=ctx.project.name,
                credentials=ctx.credentials,
                deploy_key=ctx.env.deploy_key if ctx.env else '',
            )

        prov = self.provisioner.provision(
            feature,
            project,
            extra_steps=upload_runner,
            record_updates={
                'spike_status': status,
                'spike_iterations': 1,
                'original_prompt': prompt,
            },
            launch=launch,
        )
        log.info('Agent started on {}', prov.vm_name)
        result = SpikeResult(
            status='started',
            vm_name=prov.vm_name,
            ssh_host=prov.ssh_host,
            feature=prov.feature,
            project=prov.project,
            iteration=1,
            monitor=monitor_commands(prov.ssh_host),
        )
        if not wait:
            return result
        minutes = timeout_min or self.cfg.spike.start_timeout_min
        return self.wait_for_completion(prov.vm_name, timeout_min=minutes)

    def continue_spike(
        self,
        vm_name: str,
        prompt: str,
        *,
        wait: bool = False,
        timeout_min: int | None = None,
    ) -> SpikeResult:
        rec = self.store.get_vm(vm_name)
        if rec is None:
            raise PreconditionError(
                f'VM not found: {vm_name}. Run `hatchvm list --section spikes` '
                'to see spikes that can be continued.'
            )
        if rec.spike_status == SPIKE_RUNNING:
            raise SpikeStateError(
                'Spike is still running. Wait for it to complete first.'
            )
        if rec.spike_status != SPIKE_COMPLETED:
            raise SpikeStateError(
                f'Spike status is "{rec.spike_status}". '
                'Can only continue completed spikes.'
            )
        if not prompt.strip():
            raise PreconditionError('A spike needs a non-empty --prompt.')
        project = self.provisioner.resolve_project(rec.project)

        try:
            self.gateway.exec(rec.ssh_host, 'echo ok', timeout_s=10)
        except CmdError as ex:
            raise ConnectivityError(
                'Cannot connect to VM. It may have been deleted. '
                'Start a new spike instead.'
            ) from ex

        credentials = self.provisioner.refresh_credentials()
        self.provisioner.upload_credentials(rec.ssh_host)
        self.gateway.exec(rec.ssh_host, f'rm -f {DONE_MARKER} {RESULT_FILE}')

        iteration = (rec.spike_iterations or 1) + 1
        self.store.update_vm(
            vm_name,
            spike_status=transition_status(rec.spike_status, SPIKE_RUNNING),
            spike_iterations=iteration,
        )
        try:
            self._launch(
                rec.ssh_host,
                f'~/{project.github.repo}',
                prompt=prompt,
                feature=rec.feature,
                project=rec.project,
                credentials=credentials,
                deploy_key=rec.backend.deploy_key,
                resume=rec.agent_session_id,
            )
        except Exception:
            log.error('Agent launch failed on {}; restoring spike status', vm_name)
            self.store.update_vm(
                vm_name,
                spike_status=rec.spike_status,
                spike_iterations=rec.spike_iterations,
            )
            raise
        log.info('Agent resumed on {} (iteration {})', vm_name, iteration)
        result = SpikeResult(
            status='started',
            vm_name=rec.name,
            ssh_host=rec.ssh_host,
            feature=rec.feature,
            project=rec.project,
            iteration=iteration,
            monitor=monitor_commands(rec.ssh_host),
        )
        if not wait:
            return result
        minutes = timeout_min or self.cfg.spike.wait_timeout_min
        return self.wait_for_completion(vm_name, timeout_min=minutes)

    def wait_for_completion(self, vm_name: str, *, timeout_min: float) -> SpikeResult:
        rec = self.store.get_vm(vm_name)
        if rec is None:
            raise PreconditionError(f'VM not found: {vm_name}')
        timeout_s = timeout_min * 60
        poll_s = self.cfg.spike.poll_interval_s

        phase = SpikePhase.PENDING
        deadline = self.clock() + timeout_s
        while phase in (SpikePhase.PENDING, SpikePhase.RUNNING):
            if phase is SpikePhase.PENDING:
                phase = SpikePhase.RUNNING
            if self._is_done(rec.ssh_host):
                phase = SpikePhase.COMPLETED
                break
            if self.clock() + poll_s > deadline:
                phase = SpikePhase.TIMED_OUT
                break
            self.sleep(poll_s)

        base = SpikeResult(
            status='failed',
            vm_name=rec.name,
            ssh_host=rec.ssh_host,
            feature=rec.feature,
            project=rec.project,
            iteration=rec.spike_iterations,
            monitor=monitor_commands(rec.ssh_host),
        )
        if phase is SpikePhase.TIMED_OUT:
            self.store.update_vm(
                vm_name, spike_status=transition_status(rec.spike_status, SPIKE_FAILED)
            )
            base.error = f'Spike timed out after {timeout_min:g} minutes'
            log.error(base.error)
            return base
        return self._collect(rec, base)

    def _is_done(self, ssh_host: str) -> bool:
        try:
            res = self.gateway.exec(
                ssh_host,
                f"test -f {DONE_MARKER} && echo 'done' || echo 'running'",
            )
        except CmdError as ex:
            log.debug('Poll of {} failed, retrying: {}', ssh_host, ex)
            return False
        return res.stdout.strip() == 'done'

    def _read_outcome(self, ssh_host: str) -> tuple[dict[str, Any], str]:
        res = self.gateway.exec(ssh_host, f"cat {RESULT_FILE} 2>/dev/null || echo '{{}}'")
        raw = json.loads(res.stdout.strip() or '{}')
        if not isinstance(raw, dict):
            raw = {}
        pr = self.gateway.exec(ssh_host, f"cat {PR_URL_FILE} 2>/dev/null || echo ''")
        return raw, pr.stdout.strip()

    def _collect(self, rec: VMRecord, result: SpikeResult) -> SpikeResult:
        try:
            raw, pr_url = self._read_outcome(rec.ssh_host)
        except (CmdError, ValueError) as ex:
            log.warning('Spike finished but its result could not be read: {}', ex)
            raw, pr_url = {}, ''
        reported = str(raw.get('status') or SPIKE_COMPLETED)
        new_status = SPIKE_COMPLETED if reported == SPIKE_COMPLETED else SPIKE_FAILED
        run_cost = CostSummary.from_dict(raw.get('cost'))
        cumulative = rec.cumulative_cost + run_cost
        session_id = str(raw.get('sessionId') or raw.get('session_id') or '')
        self.store.update_vm(
            rec.name,
            spike_status=transition_status(rec.spike_status, new_status),
            cumulative_cost=cumulative,
            agent_session_id=session_id or rec.agent_session_id,
            pr_url=pr_url or rec.pr_url,
        )
        result.status = new_status
        result.cost = run_cost
        result.cumulative_cost = cumulative
        result.session_id = session_id or rec.agent_session_id
        result.pr_url = pr_url or rec.pr_url
        if new_status == SPIKE_FAILED:
            result.error = str(raw.get('error') or 'Agent reported failure')
        log.info('Spike on {} finished: {}', rec.name, new_status)
        return result

    def progress(self, feature: str, project: str, *, lines: int = 10) -> SpikeProgress:
        """
        Report on the spike running (or finished) on a feature VM.

        Status, iteration and cost come from the local record. When the VM
        answers, the plan checklist at ``docs/plans/<feature>.md``, recent
        agent events and the tail of ``~/spike.log`` are read from it.
        Remote reads are best effort; a failed read leaves that part empty.
        """
        rec = self.store.find_vm_by_feature(project, feature)
        if rec is None:
            raise PreconditionError(
                f'No VM found for feature "{feature}" in project "{project}".'
            )
        project_rec = self.provisioner.resolve_project(project)
        report = SpikeProgress(
            vm_name=rec.name,
            feature=rec.feature,
            project=rec.project,
            ssh_host=rec.ssh_host,
            branch=rec.github_branch,
            created_at=rec.created_at,
            spike_status=rec.spike_status,
            iteration=rec.spike_iterations,
            cumulative_cost=rec.cumulative_cost if rec.spike_status else None,
            original_prompt=rec.original_prompt,
            pr_url=rec.pr_url,
        )
        report.reachable = self.gateway.check_connection(rec.ssh_host)
        if not report.reachable:
            log.warning('VM {} is unreachable; showing local record only', rec.name)
            return report
        plan_path = f'~/{project_rec.github.repo}/docs/plans/{feature}.md'
        report.plan = parse_plan(self._read_remote(rec.ssh_host, f'cat {plan_path}'))
        report.activity = summarize_events(
            self._read_remote(rec.ssh_host, f'tail -n {lines * 5} {PROGRESS_FILE}')
        )[-lines:]
        report.recent_logs = [
            line
            for line in self._read_remote(
                rec.ssh_host, f'tail -n {lines} {LOG_FILE}'
            ).splitlines()
            if line.strip()
        ]
        return report

    def _read_remote(self, ssh_host: str, command: str) -> str:
        try:
            res = self.gateway.exec(ssh_host, f'{command} 2>/dev/null', timeout_s=10)
        except CmdError as ex:
            log.debug('Progress read failed on {} ({}): {}', ssh_host, command, ex)
            return ''
        return res.stdout

    def _upload_runner(self, ctx: ProvisionContext) -> None:
        host = ctx.vm.ssh_host
        self.gateway.copy_file(
            str(self.runner_script_path()), host, f'{ctx.repo_path}/{RUNNER_NAME}'
        )
        self.gateway.exec(
            host,
            f'cd {ctx.repo_path} && '
            f"(grep -qx '{RUNNER_NAME}' .gitignore 2>/dev/null "
            f"|| echo '{RUNNER_NAME}' >> .gitignore)",
        )

    def _launch(
        self,
        ssh_host: str,
        repo_path: str,
        *,
        prompt: str,
        feature: str,
        project: str,
        credentials: dict[str, Any],
        deploy_key: str = '',
        resume: str = '',
    ) -> None:
        prefix = remote_env_prefix(credentials)
        if deploy_key:
            prefix = f'{prefix} export CONVEX_DEPLOY_KEY={shlex.quote(deploy_key)};'
        args = [
            'bash',
            f'./{RUNNER_NAME}',
            '--prompt',
            shlex.quote(prompt),
            '--feature',
            shlex.quote(feature),
            '--project',
            shlex.quote(project),
        ]
        if resume:
            args.extend(['--resume', shlex.quote(resume)])
        command = detached_command(repo_path, ' '.join(args))
        self.gateway.exec(ssh_host, f'{prefix} {command}'.strip())
