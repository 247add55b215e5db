"""Run status codes shared by every layer of a group run."""

from __future__ import annotations

import logging
from enum import IntEnum


__all__ = ["ErrorCode", "RunResult", "WorkloadArgsError"]


logger = logging.getLogger(__name__)


class ErrorCode(IntEnum):
    """Closed set of run outcomes; the value doubles as the process exit status."""

    NONE = 0
    INIT = 1
    COMM_SIZE = 2
    COMM_RANK = 3
    REDUCE = 4
    FINALIZE = 5
    BARRIER = 6
    BCAST = 7
    ARGS = 8

    @property
    def ok(self) -> bool:
        return self is ErrorCode.NONE


class RunResult:
    """Holds the outcome of one run with first-error-wins semantics.

    Once a failure is recorded, later failures are logged but never replace it.

    Example:
        >>> result = RunResult()
        >>> result.record(ErrorCode.BARRIER)
        <ErrorCode.BARRIER: 6>
        >>> result.record(ErrorCode.FINALIZE)
        <ErrorCode.BARRIER: 6>
    """

    def __init__(self):
        self._code = ErrorCode.NONE

    @property
    def code(self) -> ErrorCode:
        return self._code

    @property
    def ok(self) -> bool:
        return self._code is ErrorCode.NONE

    def record(self, code: ErrorCode) -> ErrorCode:
        """Record ``code`` unless an earlier failure is already held.

        Args:
            code: Outcome of the step that just finished

        Returns:
            The run's current (possibly unchanged) error code
        """
        code = ErrorCode(code)
        if code is ErrorCode.NONE:
            return self._code
        if self._code is ErrorCode.NONE:
            self._code = code
        elif code is not self._code:
            logger.debug(f"Ignoring {code.name}; run already failed with {self._code.name}")
        return self._code

    def __repr__(self):
        return f"RunResult({self._code.name})"


class WorkloadArgsError(ValueError):
    """Raised by workload argument parsing on malformed input."""
