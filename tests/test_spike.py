"""Tests for starting, resuming, polling and inspecting agent spikes."""

from __future__ import annotations

import json

import pytest

from hatchvm.errors import ConnectivityError, PreconditionError, SpikeStateError
from hatchvm.provision import Provisioner
from hatchvm.spike import (
    SpikeController,
    monitor_commands,
    parse_plan,
    summarize_events,
    transition_status,
)
from hatchvm.store import BackendInfo, CostSummary, VMRecord
from hatchvm.util import CmdError, CmdResult

DONE_CHECK = 'test -f ~/spike-done'
READ_RESULT = 'cat ~/spike-result.json'
READ_PR = 'cat ~/pr-url.txt'


def _controller(cfg, store, gateway, platform, backend, clock) -> SpikeController:
    provisioner = Provisioner(
        cfg,
        store,
        gateway=gateway,
        platform=platform,
        backend_factory=lambda provider, gw: backend,
    )
    return SpikeController(
        cfg,
        store,
        gateway=gateway,
        provisioner=provisioner,
        clock=clock,
        sleep=clock.sleep,
    )


def _completed_vm(store, **overrides) -> VMRecord:
    rec = VMRecord(
        name='brave-otter',
        ssh_host='brave-otter.exe.xyz',
        project='demo',
        feature='login',
        github_branch='login',
        backend=BackendInfo(provider='convex', deploy_key='prod:abc|key'),
        spike_status='completed',
        spike_iterations=1,
        original_prompt='build login',
        cumulative_cost=CostSummary(total_usd=1.0, input_tokens=100, output_tokens=50),
        agent_session_id='sess-1',
    )
    for k, v in overrides.items():
        setattr(rec, k, v)
    store.add_vm(rec)
    return rec


def _outcome(status='completed', usd=0.5, session='sess-2') -> str:
    return json.dumps(
        {
            'status': status,
            'sessionId': session,
            'cost': {'totalUsd': usd, 'inputTokens': 10, 'outputTokens': 20},
        }
    )


def test_transition_status() -> None:
    assert transition_status(None, 'running') == 'running'
    assert transition_status('running', 'completed') == 'completed'
    assert transition_status('completed', 'running') == 'running'
    for current, new in [
        (None, 'completed'),
        ('running', 'running'),
        ('failed', 'running'),
        ('completed', 'failed'),
    ]:
        with pytest.raises(SpikeStateError):
            transition_status(current, new)


def test_monitor_commands() -> None:
    cmds = monitor_commands('h.exe.xyz')
    assert cmds['tail_log'] == "ssh h.exe.xyz 'tail -f ~/spike.log'"
    assert 'spike-done' in cmds['check_done']


def test_start_launches_detached_agent(
    cfg, store, gateway, platform, backend, clock
) -> None:
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    result = controller.start('login', 'demo', "add a login page, don't break it")
    assert result.status == 'started'
    assert result.iteration == 1
    assert result.monitor == monitor_commands('brave-otter.exe.xyz')

    assert gateway.copies[-1][2] == '~/demo/spike-runner.sh'
    assert gateway.ran('.gitignore')
    launch = gateway.commands[-1][1]
    assert 'export GH_TOKEN=ghp_test;' in launch
    assert 'cd ~/demo && (nohup bash ./spike-runner.sh --prompt' in launch
    assert '--feature login --project demo' in launch
    assert '--resume' not in launch

    rec = store.get_vm('brave-otter')
    assert rec.spike_status == 'running'
    assert rec.spike_iterations == 1
    assert rec.original_prompt == "add a login page, don't break it"


def test_start_requires_prompt(cfg, store, gateway, platform, backend, clock) -> None:
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    with pytest.raises(PreconditionError):
        controller.start('login', 'demo', '   ')
    assert platform.created == []


def test_start_and_wait_collects_result(
    cfg, store, gateway, platform, backend, clock
) -> None:
    gateway.responses.update(
        {
            DONE_CHECK: ['running', 'done'],
            READ_RESULT: _outcome(usd=0.25),
            READ_PR: 'https://github.com/acme/demo/pull/7\n',
        }
    )
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    result = controller.start('login', 'demo', 'go', wait=True, timeout_min=5)
    assert result.status == 'completed'
    assert result.pr_url == 'https://github.com/acme/demo/pull/7'
    assert result.cost.total_usd == pytest.approx(0.25)
    assert clock.sleeps == [cfg.spike.poll_interval_s]
    rec = store.get_vm('brave-otter')
    assert rec.spike_status == 'completed'
    assert rec.agent_session_id == 'sess-2'


def test_continue_rejects_bad_states(cfg, store, gateway, platform, backend, clock) -> None:
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    with pytest.raises(PreconditionError, match='VM not found'):
        controller.continue_spike('missing', 'more')
    _completed_vm(store, spike_status='running')
    with pytest.raises(SpikeStateError, match='still running'):
        controller.continue_spike('brave-otter', 'more')
    store.update_vm('brave-otter', spike_status='failed')
    with pytest.raises(SpikeStateError, match='Can only continue completed'):
        controller.continue_spike('brave-otter', 'more')
    assert gateway.commands == []


def test_continue_unreachable_vm(cfg, store, gateway, platform, backend, clock) -> None:
    _completed_vm(store)
    gateway.responses['echo ok'] = CmdError('ssh', CmdResult(255, '', 'refused'))
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    with pytest.raises(ConnectivityError, match='Start a new spike instead'):
        controller.continue_spike('brave-otter', 'more')
    assert store.get_vm('brave-otter').spike_status == 'completed'


def test_continue_resumes_session_and_accumulates_cost(
    cfg, store, gateway, platform, backend, clock
) -> None:
    _completed_vm(store)
    gateway.responses.update(
        {
            DONE_CHECK: [CmdError('ssh', CmdResult(255, '', 'reset')), 'done'],
            READ_RESULT: _outcome(usd=0.5),
            READ_PR: '',
        }
    )
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    result = controller.continue_spike('brave-otter', 'fix the tests', wait=True)

    assert gateway.ran('rm -f ~/spike-done ~/spike-result.json')
    launch = [c for _, c in gateway.commands if 'spike-runner.sh' in c][0]
    assert '--resume sess-1' in launch
    assert "export CONVEX_DEPLOY_KEY='prod:abc|key';" in launch

    assert result.status == 'completed'
    assert result.iteration == 2
    assert result.cost.total_usd == pytest.approx(0.5)
    assert result.cumulative_cost.total_usd == pytest.approx(1.5)
    rec = store.get_vm('brave-otter')
    assert rec.spike_iterations == 2
    assert rec.cumulative_cost.input_tokens == 110
    assert rec.agent_session_id == 'sess-2'
    assert rec.original_prompt == 'build login'


def test_wait_times_out(cfg, store, gateway, platform, backend, clock) -> None:
    _completed_vm(store, spike_status='running')
    gateway.responses[DONE_CHECK] = 'running'
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    result = controller.wait_for_completion('brave-otter', timeout_min=1)
    assert result.status == 'failed'
    assert result.error == 'Spike timed out after 1 minutes'
    assert clock.sleeps == [30, 30]
    assert store.get_vm('brave-otter').spike_status == 'failed'


def test_wait_reports_agent_failure(cfg, store, gateway, platform, backend, clock) -> None:
    _completed_vm(store, spike_status='running')
    gateway.responses.update(
        {DONE_CHECK: 'done', READ_RESULT: _outcome(status='failed', session='')}
    )
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    result = controller.wait_for_completion('brave-otter', timeout_min=1)
    assert result.status == 'failed'
    assert result.session_id == 'sess-1'
    assert store.get_vm('brave-otter').spike_status == 'failed'


def test_continue_restores_status_when_launch_fails(
    cfg, store, gateway, platform, backend, clock
) -> None:
    _completed_vm(store)
    gateway.responses['nohup bash ./spike-runner.sh'] = CmdError(
        'ssh', CmdResult(255, '', 'connection reset')
    )
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    with pytest.raises(CmdError, match='connection reset'):
        controller.continue_spike('brave-otter', 'more')
    rec = store.get_vm('brave-otter')
    assert rec.spike_status == 'completed'
    assert rec.spike_iterations == 1

    del gateway.responses['nohup bash ./spike-runner.sh']
    result = controller.continue_spike('brave-otter', 'more')
    assert result.status == 'started'
    assert result.iteration == 2
    assert store.get_vm('brave-otter').spike_status == 'running'


def test_parse_plan_and_summarize_events() -> None:
    plan = parse_plan('# Plan\n- [x] Add form\n- [X] Wire API\n- [ ] Write tests\nnotes')
    assert [(s.label, s.done) for s in plan] == [
        ('Add form', True),
        ('Wire API', True),
        ('Write tests', False),
    ]
    assert parse_plan('no checklist here') is None

    events = '\n'.join(
        [
            json.dumps({'type': 'system', 'subtype': 'init'}),
            json.dumps(
                {
                    'type': 'assistant',
                    'message': {
                        'content': [
                            {'type': 'text', 'text': 'Looking at the form\nmore'},
                            {'type': 'tool_use', 'name': 'Edit'},
                        ]
                    },
                }
            ),
            'partial line {',
            json.dumps({'type': 'result', 'subtype': 'success'}),
        ]
    )
    assert summarize_events(events) == [
        'session started',
        'say: Looking at the form',
        'tool: Edit',
        'result: success',
    ]


def test_progress_reads_plan_events_and_log(
    cfg, store, gateway, platform, backend, clock
) -> None:
    _completed_vm(store, spike_status='running', spike_iterations=2, pr_url='')
    gateway.responses.update(
        {
            'docs/plans/login.md': '- [x] Add form\n- [ ] Write tests\n',
            'spike-progress.jsonl': json.dumps(
                {
                    'type': 'assistant',
                    'message': {'content': [{'type': 'tool_use', 'name': 'Bash'}]},
                }
            ),
            'spike.log': 'npm test\n\nall green\n',
        }
    )
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    report = controller.progress('login', 'demo', lines=5)
    assert report.reachable
    assert report.iteration == 2
    assert report.cumulative_cost.total_usd == pytest.approx(1.0)
    assert report.plan_completed == 1
    assert report.activity == ['tool: Bash']
    assert report.recent_logs == ['npm test', 'all green']
    assert gateway.ran('cat ~/demo/docs/plans/login.md')
    assert gateway.ran('tail -n 5 ~/spike.log')

    data = report.as_dict()
    assert data['vm']['spike_status'] == 'running'
    assert data['plan']['total'] == 2


def test_progress_unreachable_vm_uses_record_only(
    cfg, store, gateway, platform, backend, clock
) -> None:
    _completed_vm(store)
    gateway.connected = False
    controller = _controller(cfg, store, gateway, platform, backend, clock)
    report = controller.progress('login', 'demo')
    assert not report.reachable
    assert report.plan is None
    assert report.recent_logs == []
    assert gateway.commands == []
    with pytest.raises(PreconditionError, match='No VM found'):
        controller.progress('signup', 'demo')
