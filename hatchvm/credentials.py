"""Credentials document: provider tokens copied to each VM, with agent token refresh."""

from __future__ import annotations

import json
import shlex
import time
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from .errors import CredentialsError

log = logger

# Refresh when the agent token expires within this window.
REFRESH_MARGIN_S = 5 * 60


def load_credentials(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise CredentialsError(
            f'Credentials file not found: {path}. '
            'Create it with your provider tokens (github, vercel, supabase/convex, claude).'
        )
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, ValueError) as ex:
        raise CredentialsError(f'Unreadable credentials file {path}: {ex}') from ex
    if not isinstance(data, dict):
        raise CredentialsError(f'Credentials file {path} must hold a JSON object.')
    return data


def section_value(creds: dict[str, Any], section: str, key: str = 'token') -> str:
    body = creds.get(section)
    if not isinstance(body, dict):
        return ''
    return str(body.get(key, '') or '')


def agent_token_expires_soon(
    creds: dict[str, Any], *, now_s: float, margin_s: float = REFRESH_MARGIN_S
) -> bool:
    claude = creds.get('claude')
    if not isinstance(claude, dict):
        return False
    expires_at_ms = claude.get('expires_at')
    if not expires_at_ms:
        return False
    return float(expires_at_ms) / 1000.0 - now_s < margin_s


def refresh_agent_token(path: Path, agent_credentials_path: Path) -> bool:
    """
    Copy the locally cached agent OAuth credentials into the credentials document.

    Returns False when no usable local credentials exist.
    """
    if not agent_credentials_path.exists():
        log.debug('No agent credentials at {}', agent_credentials_path)
        return False
    try:
        raw = json.loads(agent_credentials_path.read_text(encoding='utf-8'))
    except (OSError, ValueError) as ex:
        log.warning('Could not read agent credentials {}: {}', agent_credentials_path, ex)
        return False
    oauth = raw.get('claudeAiOauth') if isinstance(raw, dict) else None
    if not isinstance(oauth, dict):
        return False
    if not oauth.get('accessToken') or not oauth.get('refreshToken'):
        return False
    creds = load_credentials(path)
    creds['claude'] = {
        'access_token': oauth['accessToken'],
        'refresh_token': oauth['refreshToken'],
        'expires_at': oauth.get('expiresAt'),
        'scopes': list(oauth.get('scopes') or []),
    }
    path.write_text(json.dumps(creds, indent=2) + '\n', encoding='utf-8')
    log.info('Agent token refreshed in {}', path)
    return True


def ensure_fresh_credentials(
    path: Path,
    agent_credentials_path: Path,
    *,
    clock: Callable[[], float] = time.time,
) -> dict[str, Any]:
    """Check freshness, refresh if near expiry, then reload. Not atomic."""
    creds = load_credentials(path)
    if not agent_token_expires_soon(creds, now_s=clock()):
        return creds
    log.debug('Agent token near expiry; refreshing')
    if not refresh_agent_token(path, agent_credentials_path):
        raise CredentialsError(
            'Agent token expired and could not be refreshed. '
            "Run 'claude' locally to re-authenticate."
        )
    creds = load_credentials(path)
    if agent_token_expires_soon(creds, now_s=clock()):
        raise CredentialsError(
            'Agent token is still expired after refresh. '
            "Run 'claude' locally to re-authenticate."
        )
    return creds


def remote_env_prefix(creds: dict[str, Any]) -> str:
    """Shell exports that make the provider CLIs on a VM non-interactive."""
    pairs = [
        ('GH_TOKEN', section_value(creds, 'github')),
        ('VERCEL_TOKEN', section_value(creds, 'vercel')),
        ('SUPABASE_ACCESS_TOKEN', section_value(creds, 'supabase')),
    ]
    parts = [f'export {k}={shlex.quote(v)};' for k, v in pairs if v]
    return ' '.join(parts)
