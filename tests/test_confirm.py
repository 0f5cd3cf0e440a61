"""Tests for confirmation tokens."""

from __future__ import annotations

from pathlib import Path

import pytest

from hatchvm.confirm import (
    TOO_YOUNG,
    ConfirmationGate,
    ConfirmationRecord,
    compute_command_hash,
)
from hatchvm.errors import ConfirmationError


def _gate(tmp_path: Path, clock, interactive: bool = False) -> ConfirmationGate:
    return ConfirmationGate(
        tmp_path / 'confirmations.json',
        ttl_s=300,
        min_age_s=10,
        clock=clock,
        is_interactive=lambda: interactive,
    )


def test_command_hash_is_order_independent() -> None:
    a = compute_command_hash('clean login', {'project': 'p', 'x': 1})
    b = compute_command_hash('clean login', {'x': 1, 'project': 'p'})
    assert a == b
    assert len(a) == 16
    assert a != compute_command_hash('clean login', {'project': 'q', 'x': 1})
    assert a != compute_command_hash('clean other', {'project': 'p', 'x': 1})


def test_token_lifecycle(tmp_path: Path, clock) -> None:
    gate = _gate(tmp_path, clock)
    args = {'project': 'demo'}
    token = gate.store_confirmation('clean login', args, 'Remove login')
    assert gate.validate_and_consume_token('clean login', args, token) == TOO_YOUNG

    clock.now += 11
    assert gate.validate_and_consume_token('clean login', {'project': 'x'}, token) is None
    rec = gate.validate_and_consume_token('clean login', args, token)
    assert isinstance(rec, ConfirmationRecord)
    # Single use.
    assert gate.validate_and_consume_token('clean login', args, token) is None


def test_token_expires(tmp_path: Path, clock) -> None:
    gate = _gate(tmp_path, clock)
    token = gate.store_confirmation('destroy demo', {}, 'Destroy demo')
    clock.now += 301
    assert gate.validate_and_consume_token('destroy demo', {}, token) is None


def test_dry_run_prints_hint(tmp_path: Path, clock, capsys) -> None:
    gate = _gate(tmp_path, clock)
    shown = []
    decision = gate.require_confirmation(
        'clean login',
        {'project': 'demo'},
        'Remove login',
        lambda: shown.append(True),
        dry_run=True,
    )
    assert not decision.approved
    assert shown == [True]
    out = capsys.readouterr().out
    assert f'hatchvm clean login --project demo --confirm {decision.token}' in out
    assert 'expires in 5 minutes' in out


def test_require_confirmation_modes(tmp_path: Path, clock) -> None:
    gate = _gate(tmp_path, clock)
    args = {'project': 'demo'}
    with pytest.raises(ConfirmationError, match='--dry_run'):
        gate.require_confirmation('clean login', args, 's', lambda: None)
    with pytest.raises(ConfirmationError, match='interactive'):
        gate.require_confirmation('clean login', args, 's', lambda: None, force=True)
    with pytest.raises(ConfirmationError, match='Invalid or expired'):
        gate.require_confirmation(
            'clean login', args, 's', lambda: None, confirm_token='deadbeef'
        )

    token = gate.store_confirmation('clean login', args, 's', prompt='build it')
    with pytest.raises(ConfirmationError, match='at least 10 seconds'):
        gate.require_confirmation(
            'clean login', args, 's', lambda: None, confirm_token=token
        )
    clock.now += 10
    decision = gate.require_confirmation(
        'clean login', args, 's', lambda: None, confirm_token=token
    )
    assert decision.approved
    assert decision.stored_prompt == 'build it'


def test_force_allowed_when_interactive(tmp_path: Path, clock) -> None:
    gate = _gate(tmp_path, clock, interactive=True)
    decision = gate.require_confirmation('destroy demo', {}, 's', lambda: None, force=True)
    assert decision.approved
    assert decision.token is None
