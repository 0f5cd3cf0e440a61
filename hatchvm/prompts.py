"""Interactive prompt collector returning tagged results instead of raising."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, Union

from .errors import OperationCancelled

T = TypeVar('T')


@dataclass(frozen=True)
class Cancelled:
    reason: str = 'cancelled'


@dataclass(frozen=True)
class Value(Generic[T]):
    value: T


PromptResult = Union[Cancelled, Value[T]]


def unwrap(result: PromptResult) -> T:
    """Convert a :class:`Cancelled` result into :class:`OperationCancelled`."""
    if isinstance(result, Cancelled):
        raise OperationCancelled('Operation cancelled.')
    return result.value


class PromptCollector:
    def __init__(
        self,
        *,
        input_fn: Callable[[str], str] = input,
        is_interactive: Callable[[], bool] | None = None,
    ):
        self.input_fn = input_fn
        self.is_interactive = is_interactive or (lambda: sys.stdin.isatty())

    def _ask(self, message: str) -> PromptResult:
        try:
            return Value(self.input_fn(message))
        except (EOFError, KeyboardInterrupt):
            print('')
            return Cancelled()

    def confirm(self, message: str, *, default: bool = False) -> PromptResult:
        if not self.is_interactive():
            return Cancelled('stdin is not interactive')
        suffix = '[Y/n]' if default else '[y/N]'
        result = self._ask(f'{message} {suffix}: ')
        if isinstance(result, Cancelled):
            return result
        ans = result.value.strip().lower()
        if not ans:
            return Value(default)
        return Value(ans in {'y', 'yes'})

    def typed_match(self, message: str, expected: str) -> PromptResult:
        """Ask the user to type ``expected`` exactly; a mismatch is False."""
        if not self.is_interactive():
            return Cancelled('stdin is not interactive')
        result = self._ask(message)
        if isinstance(result, Cancelled):
            return result
        return Value(result.value.strip() == expected)
