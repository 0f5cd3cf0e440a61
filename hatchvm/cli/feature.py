"""CLI commands that provision feature VMs and run agent spikes on them."""

from __future__ import annotations

from datetime import datetime, timezone

import scriptconfig as scfg

from ..errors import HatchError, PreconditionError
from ..provision import Provisioner
from ..results import SpikeProgress, SpikeResult
from ..spike import SpikeController
from ..util import CmdError
from ._common import (
    _BaseCommand,
    _load_cfg,
    _print_json,
    _print_provision_summary,
    _store,
    log,
)


class FeatureCLI(_BaseCommand):
    """Create a feature VM with its own git branch and backend environment."""

    name = scfg.Value('', position=1, help='Feature name (also the git branch).')
    project = scfg.Value('', help='Registered project name.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.name or not args.project:
            raise PreconditionError(
                'Usage: hatchvm feature <name> --project <project>'
            )
        cfg = _load_cfg(args.config)
        store = _store(cfg)
        provisioner = Provisioner(cfg, store)
        result = provisioner.provision(args.name, args.project)
        project = store.get_project(result.project)
        _print_provision_summary(
            result, cfg, project.github.repo if project else ''
        )
        return 0


class SpikeCLI(_BaseCommand):
    """Run an autonomous agent on a fresh feature VM, or resume a finished one."""

    name = scfg.Value('', position=1, help='Feature name for a new spike.')
    project = scfg.Value('', help='Registered project name.')
    prompt = scfg.Value('', help='Instructions for the agent.')
    wait = scfg.Value(
        False, isflag=True, help='Block until the agent finishes.'
    )
    continue_vm = scfg.Value(
        '', help='Resume the completed spike on this VM (--continue).'
    )
    timeout = scfg.Value(
        None, type=int, help='Minutes to wait with --wait (default 240, or 60 on continue).'
    )
    json = scfg.Value(False, isflag=True, help='Print the result as JSON.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        try:
            result = cls._run(args)
        except (HatchError, CmdError) as ex:
            if not args.json:
                raise
            result = SpikeResult(
                status='failed',
                vm_name=args.continue_vm or '',
                feature=args.name or '',
                project=args.project or '',
                error=str(ex),
            )
            log.error('Spike failed: {}', ex)
        if args.json:
            _print_json(result.as_dict())
        else:
            _print_spike_result(result)
        return 1 if result.status == 'failed' else 0

    @classmethod
    def _run(cls, args) -> SpikeResult:
        cfg = _load_cfg(args.config)
        controller = SpikeController(cfg, _store(cfg))
        timeout_min = int(args.timeout) if args.timeout else None
        if args.continue_vm:
            return controller.continue_spike(
                args.continue_vm,
                args.prompt or '',
                wait=bool(args.wait),
                timeout_min=timeout_min,
            )
        if not args.name or not args.project:
            raise PreconditionError(
                'Usage: hatchvm spike <name> --project <project> --prompt <text>'
            )
        return controller.start(
            args.name,
            args.project,
            args.prompt or '',
            wait=bool(args.wait),
            timeout_min=timeout_min,
        )


def _print_spike_result(result: SpikeResult) -> None:
    print('')
    if result.status == 'started':
        print(f'Spike started (iteration {result.iteration}).')
    elif result.status == 'completed':
        print('Spike completed.')
    else:
        print(f'Spike failed: {result.error}')
    print('')
    print('Spike details:')
    print(f'  VM:      {result.vm_name}')
    print(f'  Feature: {result.feature}')
    print(f'  Project: {result.project}')
    if result.pr_url:
        print(f'  PR:      {result.pr_url}')
    if result.cost is not None:
        print(
            f'  Cost:    ${result.cost.total_usd:.2f} '
            f'({result.cost.input_tokens} in / {result.cost.output_tokens} out)'
        )
    if result.cumulative_cost is not None:
        print(f'  Total:   ${result.cumulative_cost.total_usd:.2f} across iterations')
    if result.monitor:
        print('')
        print('Monitor:')
        print(f'  Tail log:      {result.monitor["tail_log"]}')
        print(f'  Tail progress: {result.monitor["tail_progress"]}')
        print(f'  Check done:    {result.monitor["check_done"]}')
    if result.status == 'completed':
        print('')
        print('Continue with:')
        print(f'  hatchvm spike --continue {result.vm_name} --prompt "..."')


class ProgressCLI(_BaseCommand):
    """Show detailed spike progress for a feature VM."""

    name = scfg.Value('', position=1, help='Feature name.')
    project = scfg.Value('', help='Registered project name.')
    lines = scfg.Value(10, type=int, help='How many recent log lines and events to show.')
    json = scfg.Value(False, isflag=True, help='Print the report as JSON.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.name or not args.project:
            raise PreconditionError(
                'Usage: hatchvm progress <feature> --project <project>'
            )
        cfg = _load_cfg(args.config)
        controller = SpikeController(cfg, _store(cfg))
        report = controller.progress(args.name, args.project, lines=int(args.lines))
        if args.json:
            _print_json(report.as_dict())
        else:
            _print_progress(report)
        return 0


def _time_ago(iso: str, now: datetime | None = None) -> str:
    try:
        then = datetime.fromisoformat(iso)
    except ValueError:
        return 'unknown'
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    seconds = ((now or datetime.now(timezone.utc)) - then).total_seconds()
    if seconds < 60:
        return 'just now'
    minutes = int(seconds // 60)
    if minutes < 60:
        return f'{minutes}m ago'
    hours = minutes // 60
    if hours < 24:
        return f'{hours}h ago'
    return f'{hours // 24}d ago'


def _print_progress(report: SpikeProgress) -> None:
    ago = _time_ago(report.created_at)
    print('')
    print(f'Feature: {report.feature} ({report.vm_name})')
    if report.spike_status:
        print(f'Status:  {report.spike_status} (iteration {report.iteration or 1}, {ago})')
    else:
        print(f'Status:  active ({ago})')
    if report.original_prompt:
        prompt = report.original_prompt
        if len(prompt) > 60:
            prompt = prompt[:57] + '...'
        print(f'Prompt:  "{prompt}"')
    if report.cumulative_cost is not None:
        print(f'Cost:    ${report.cumulative_cost.total_usd:.2f}')
    if report.pr_url:
        print(f'PR:      {report.pr_url}')
    if not report.reachable:
        print('')
        print('VM is unreachable; cannot fetch remote progress.')
        return
    if report.plan:
        print('')
        print(f'Plan: {report.plan_completed}/{len(report.plan)} steps completed')
        for step in report.plan:
            print(f'  [{"x" if step.done else " "}] {step.label}')
    if report.activity:
        print('')
        print('Agent activity:')
        for line in report.activity:
            print(f'  {line}')
    if report.recent_logs:
        print('')
        print('Recent log:')
        for line in report.recent_logs:
            print(f'  {line}')
