"""CLI commands that delete feature VMs and whole projects behind a confirmation gate."""

from __future__ import annotations

import scriptconfig as scfg

from ..errors import PreconditionError
from ..teardown import TeardownController
from ._common import (
    _BaseCommand,
    _gate,
    _load_cfg,
    _print_teardown_report,
    _store,
)


class _GatedCommand(_BaseCommand):
    force = scfg.Value(
        False,
        isflag=True,
        help='Skip the token step (interactive terminals only).',
    )
    dry_run = scfg.Value(
        False,
        isflag=True,
        help='Show what would be deleted and issue a confirmation token.',
    )
    confirm = scfg.Value(
        None, help='Confirmation token from a previous --dry_run.'
    )


class CleanCLI(_GatedCommand):
    """Delete a feature VM, its backend environment, and its remote branch."""

    name = scfg.Value('', position=1, help='Feature name to clean up.')
    project = scfg.Value('', help='Registered project name.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.name or not args.project:
            raise PreconditionError(
                'Usage: hatchvm clean <name> --project <project> '
                '[--dry_run | --confirm <token> | --force]'
            )
        cfg = _load_cfg(args.config)
        controller = TeardownController(cfg, _store(cfg), _gate(cfg))
        report = controller.clean(
            args.name,
            args.project,
            dry_run=bool(args.dry_run),
            confirm_token=args.confirm or None,
            force=bool(args.force),
        )
        if report is not None:
            _print_teardown_report(report, what='Feature')
        return 0


class DestroyCLI(_GatedCommand):
    """Delete a project's backend and deployment projects and its local record."""

    project = scfg.Value('', position=1, help='Project name to destroy.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.project:
            raise PreconditionError(
                'Usage: hatchvm destroy <project> '
                '[--dry_run | --confirm <token> | --force]'
            )
        cfg = _load_cfg(args.config)
        controller = TeardownController(cfg, _store(cfg), _gate(cfg))
        report = controller.destroy(
            args.project,
            dry_run=bool(args.dry_run),
            confirm_token=args.confirm or None,
            force=bool(args.force),
        )
        if report is not None:
            _print_teardown_report(report, what='Project')
        return 0
