"""
Two-phase confirmation gate for destructive commands.

A dry run stores a short-lived, single-use token bound to the exact command
and arguments. Redeeming it requires the same command and arguments and a
minimum elapsed time since issue. The minimum age only nudges automation
toward a human review step; a script that sleeps past it gets through.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import sys
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Mapping

from loguru import logger

from .errors import ConfirmationError

log = logger

STORE_VERSION = 1
DEFAULT_TTL_S = 5 * 60
DEFAULT_MIN_AGE_S = 10

TOO_YOUNG = 'too_young'


def compute_command_hash(command: str, args: Mapping[str, object]) -> str:
    canonical = json.dumps(
        {str(k): args[k] for k in args}, sort_keys=True, separators=(',', ':')
    )
    digest = hashlib.sha256(f'{command}:{canonical}'.encode('utf-8'))
    return digest.hexdigest()[:16]


def generate_token() -> str:
    return secrets.token_hex(4)


@dataclass
class ConfirmationRecord:
    token: str
    command: str
    command_hash: str
    summary: str
    created_at: float
    expires_at: float
    consumed_at: float | None = None
    prompt: str | None = None


@dataclass(frozen=True)
class GateDecision:
    """Outcome of :meth:`ConfirmationGate.require_confirmation`.

    ``approved`` is False only for a dry run, after which the caller must
    stop without side effects.
    """

    approved: bool
    token: str | None = None
    stored_prompt: str | None = None


class ConfirmationGate:
    def __init__(
        self,
        path: Path,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        min_age_s: float = DEFAULT_MIN_AGE_S,
        clock: Callable[[], float] = time.time,
        is_interactive: Callable[[], bool] | None = None,
        program: str = 'hatchvm',
    ):
        self.path = Path(path)
        self.ttl_s = ttl_s
        self.min_age_s = min_age_s
        self.clock = clock
        self.is_interactive = is_interactive or (lambda: sys.stdin.isatty())
        self.program = program

    def _load(self) -> dict[str, ConfirmationRecord]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as ex:
            log.warning('Ignoring unreadable confirmation store {}: {}', self.path, ex)
            return {}
        if not isinstance(data, dict) or data.get('version') != STORE_VERSION:
            return {}
        raw = data.get('confirmations')
        if not isinstance(raw, dict):
            return {}
        now = self.clock()
        out: dict[str, ConfirmationRecord] = {}
        for token, item in raw.items():
            try:
                rec = ConfirmationRecord(**item)
            except TypeError:
                continue
            # Lazy prune: expired and consumed entries are dropped on read.
            if rec.consumed_at is not None or rec.expires_at <= now:
                continue
            out[token] = rec
        return out

    def _save(self, records: dict[str, ConfirmationRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        doc = {
            'version': STORE_VERSION,
            'confirmations': {k: asdict(v) for k, v in records.items()},
        }
        self.path.write_text(json.dumps(doc, indent=2) + '\n', encoding='utf-8')

    def store_confirmation(
        self,
        command: str,
        args: Mapping[str, object],
        summary: str,
        prompt: str | None = None,
    ) -> str:
        records = self._load()
        token = generate_token()
        while token in records:
            token = generate_token()
        now = self.clock()
        records[token] = ConfirmationRecord(
            token=token,
            command=command,
            command_hash=compute_command_hash(command, args),
            summary=summary,
            created_at=now,
            expires_at=now + self.ttl_s,
            prompt=prompt,
        )
        self._save(records)
        log.debug('Stored confirmation token for {!r}', command)
        return token

    def validate_and_consume_token(
        self, command: str, args: Mapping[str, object], token: str
    ) -> ConfirmationRecord | str | None:
        """
        Redeem a token.

        Returns:
            the consumed record on success, :data:`TOO_YOUNG` if the token is
            valid but was issued less than ``min_age_s`` ago, and None if it
            is unknown, already used, expired, or bound to different
            arguments.
        """
        records = self._load()
        rec = records.get(token)
        if rec is None or rec.consumed_at is not None:
            return None
        if rec.command_hash != compute_command_hash(command, args):
            return None
        now = self.clock()
        if now >= rec.expires_at:
            return None
        if now < rec.created_at + self.min_age_s:
            return TOO_YOUNG
        rec.consumed_at = now
        self._save(records)
        log.debug('Consumed confirmation token for {!r}', command)
        return rec

    def confirm_hint(self, command: str, args: Mapping[str, object], token: str) -> str:
        parts = [self.program, command]
        parts.extend(f'--{k} {v}' for k, v in args.items())
        parts.extend(['--confirm', token])
        return ' '.join(parts)

    def require_confirmation(
        self,
        command: str,
        args: Mapping[str, object],
        summary: str,
        details: Callable[[], None],
        *,
        dry_run: bool = False,
        confirm_token: str | None = None,
        force: bool = False,
        prompt: str | None = None,
    ) -> GateDecision:
        if dry_run:
            details()
            token = self.store_confirmation(command, args, summary, prompt=prompt)
            minutes = self.ttl_s / 60
            print('')
            print(f'Confirmation token: {token}')
            print(f'Token expires in {minutes:g} minutes.')
            print('')
            print('To confirm, run:')
            print(f'  {self.confirm_hint(command, args, token)}')
            return GateDecision(approved=False, token=token)

        if confirm_token:
            entry = self.validate_and_consume_token(command, args, confirm_token)
            if entry == TOO_YOUNG:
                raise ConfirmationError(
                    f'Confirmation token must be at least {self.min_age_s:g} seconds old. '
                    'This keeps automated agents from bypassing human review. '
                    'Wait and run the same command again.'
                )
            if not isinstance(entry, ConfirmationRecord):
                raise ConfirmationError(
                    'Invalid or expired confirmation token. '
                    'Run with --dry_run to get a new token.'
                )
            if entry.prompt:
                print(f'Stored prompt: {entry.prompt}')
            return GateDecision(
                approved=True, token=confirm_token, stored_prompt=entry.prompt
            )

        if force:
            if not self.is_interactive():
                raise ConfirmationError(
                    '--force requires an interactive terminal. '
                    'Use --dry_run and --confirm <token> instead.'
                )
            return GateDecision(approved=True)

        raise ConfirmationError(
            'This command requires confirmation. '
            'Run with --dry_run first to review.'
        )
