"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import re
import sys

import scriptconfig as scfg
from loguru import logger

from ..errors import OperationCancelled
from ._common import _load_cfg, log
from .config import ConfigModalCLI
from .feature import FeatureCLI, ProgressCLI, SpikeCLI
from .project import AddCLI, ListCLI
from .teardown import CleanCLI, DestroyCLI


class HatchModalCLI(scfg.ModalCLI):
    """Ephemeral feature VMs and autonomous agent spikes on exe.dev."""

    config = ConfigModalCLI
    feature = FeatureCLI
    spike = SpikeCLI
    progress = ProgressCLI
    clean = CleanCLI
    destroy = DestroyCLI
    add = AddCLI
    list = ListCLI


def main(argv: list[str] | None = None) -> None:
    argv = _normalize_argv(sys.argv[1:] if argv is None else list(argv))
    _setup_logging(_count_verbose(argv), _config_verbosity(argv))

    try:
        rc = HatchModalCLI.main(argv=argv, _noexit=True)
    except OperationCancelled as ex:
        print(str(ex) or 'Operation cancelled.')
        sys.exit(0)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('hatchvm {} failed: {}', argv[0] if argv else '', ex)
        sys.exit(1)

    if '-h' in argv or '--help' in argv:
        sys.exit(0)
    sys.exit(rc if isinstance(rc, int) else 0)


def _config_verbosity(argv: list[str]) -> int:
    """Verbosity from the config file named by ``--config`` (or the default one)."""
    config_value = None
    for idx, item in enumerate(argv):
        if item == '--config' and idx + 1 < len(argv):
            config_value = argv[idx + 1]
        elif item.startswith('--config='):
            config_value = item.split('=', 1)[1]
    try:
        return _load_cfg(config_value).verbosity
    except Exception:
        # A broken config is reported by the command itself.
        return 1


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'DEBUG' if effective >= 2 else ('INFO' if effective == 1 else 'WARNING')
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug('Logging at {} (verbosity={}, colorize={})', level, effective, colorize)


_LONG_OPT_RE = re.compile(r'^--[a-z][a-z0-9]*(?:-[a-z0-9]+)+$')

# Options whose value is free text and must pass through untouched.
_FREE_TEXT_OPTS = {'--prompt'}


def _normalize_argv(argv: list[str]) -> list[str]:
    """Map accepted spellings onto scriptconfig command and option names.

    ``ls`` becomes ``list``, ``--continue`` becomes ``--continue_vm``, and
    hyphenated long options such as ``--dry-run`` become ``--dry_run``.
    """
    if len(argv) >= 1 and argv[0] == 'ls':
        argv = ['list', *argv[1:]]
    out: list[str] = []
    skip_next = False
    for idx, item in enumerate(argv):
        if skip_next:
            out.append(item)
            skip_next = False
            continue
        if item == '--':
            out.extend(argv[idx:])
            break
        if item == '--continue':
            item = '--continue_vm'
        elif item.startswith('--continue='):
            item = '--continue_vm=' + item.split('=', 1)[1]
        elif _LONG_OPT_RE.match(item.split('=', 1)[0]):
            name, sep, value = item.partition('=')
            item = '--' + name[2:].replace('-', '_') + sep + value
        if item in _FREE_TEXT_OPTS:
            skip_next = True
        out.append(item)
    return out


def _count_verbose(argv: list[str]) -> int:
    """Count ``-v``/``-vv``/``--verbose`` occurrences before any ``--``."""
    total = 0
    for item in argv:
        if item == '--':
            break
        if item == '--verbose':
            total += 1
        elif re.fullmatch(r'-v+', item):
            total += len(item) - 1
    return total
