"""Ordered step execution with a per-step fatal or best-effort policy."""

from __future__ import annotations

import enum
from typing import Callable, TypeVar

from loguru import logger

from .results import StepReport

log = logger

T = TypeVar('T')


class StepPolicy(enum.Enum):
    FATAL = 'fatal'
    BEST_EFFORT = 'best_effort'


class StepRunner:
    """
    Runs named steps and records what happened to each.

    A fatal step that raises propagates its exception after being recorded.
    A best-effort step that raises is recorded as a warning (with the manual
    command when one is given) and the run continues.
    """

    def __init__(self) -> None:
        self.reports: list[StepReport] = []

    @property
    def warnings(self) -> list[StepReport]:
        return [r for r in self.reports if r.status == 'warning']

    def run(
        self,
        name: str,
        fn: Callable[[], T],
        *,
        policy: StepPolicy = StepPolicy.FATAL,
        manual: str = '',
    ) -> T | None:
        log.info('{}...', name)
        try:
            value = fn()
        except Exception as ex:
            if policy is StepPolicy.BEST_EFFORT:
                log.warning('{} failed (continuing): {}', name, ex)
                self.reports.append(
                    StepReport(name=name, status='warning', error=str(ex), manual=manual)
                )
                return None
            log.error('{} failed: {}', name, ex)
            self.reports.append(
                StepReport(name=name, status='failed', error=str(ex), manual=manual)
            )
            raise
        self.reports.append(StepReport(name=name, status='ok'))
        return value
