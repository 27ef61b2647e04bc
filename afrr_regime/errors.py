"""
Error Taxonomy for the Regime Inference Engine
==============================================

Exceptions raised by the lower-level components (categorizer, model builder,
decoder, trainer, backtester) and the structured failure record returned by
the public pipeline entry points.

Propagation policy
------------------
    - Components raise typed exceptions (InputError, ConfigurationError,
      NumericalError) as soon as a precondition fails.
    - Degenerate internal states (zero variance, zero outgoing transitions)
      are recovered locally; NumericalError is raised and caught inside the
      component that owns the fallback.
    - Pipeline entry points convert exceptions into an EngineFailure so no
      caller ever sees NaN/Inf or an unchecked crash.

Version: 1.0.0
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class ErrorKind(Enum):
    """Classification of fatal and non-fatal engine conditions."""
    INPUT = "InputError"
    CONFIGURATION = "ConfigurationError"
    NUMERICAL = "NumericalError"
    CONVERGENCE = "ConvergenceWarning"


class RegimeEngineError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INPUT


class InputError(RegimeEngineError, ValueError):
    """Empty, undersized, non-finite or mismatched-length input sequences."""

    kind = ErrorKind.INPUT


class ConfigurationError(RegimeEngineError, ValueError):
    """Unknown categorization method or out-of-range option values."""

    kind = ErrorKind.CONFIGURATION


class NumericalError(RegimeEngineError, ArithmeticError):
    """Degenerate numerics (e.g. zero variance) that would produce NaN."""

    kind = ErrorKind.NUMERICAL


class ConvergenceWarning(UserWarning):
    """EM reached max_iterations without meeting its tolerance."""


@dataclass(frozen=True)
class EngineFailure:
    """
    Structured failure returned by pipeline entry points.

    Mirrors the success records so callers can branch on ``success``
    without a try/except around every call.
    """
    error_kind: ErrorKind
    message: str
    success: bool = False

    @classmethod
    def from_exception(cls, exc: RegimeEngineError) -> "EngineFailure":
        return cls(error_kind=exc.kind, message=str(exc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'errorKind': self.error_kind.value,
            'message': self.message,
        }


__all__ = [
    'ErrorKind',
    'RegimeEngineError',
    'InputError',
    'ConfigurationError',
    'NumericalError',
    'ConvergenceWarning',
    'EngineFailure',
]
