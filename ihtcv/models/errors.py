"""Exception taxonomy shared by the IHT engine and the cross-validation layer."""
from __future__ import annotations

from typing import Optional


class IHTError(Exception):
    """Base class for all errors raised by ihtcv."""


class ConfigurationError(IHTError, ValueError):
    """Invalid argument rejected before any computation starts."""


class NumericalDegeneracyError(IHTError, FloatingPointError):
    """Step size could not be computed (zero image of the active set, non-finite values)."""


class DescentFailureError(IHTError, ArithmeticError):
    """Objective increased by more than the tolerance after an accepted step."""


class WorkUnitError(IHTError):
    """A cross-validation work unit failed; carries the fold / model size at fault."""

    def __init__(self, message: str, *, fold: Optional[int] = None, k: Optional[int] = None) -> None:
        super().__init__(message)
        self.fold = fold
        self.k = k

    def __reduce__(self):
        return (_rebuild_work_unit_error, (str(self), self.fold, self.k))


def _rebuild_work_unit_error(message: str, fold: Optional[int], k: Optional[int]) -> WorkUnitError:
    return WorkUnitError(message, fold=fold, k=k)


__all__ = [
    "IHTError",
    "ConfigurationError",
    "NumericalDegeneracyError",
    "DescentFailureError",
    "WorkUnitError",
]
