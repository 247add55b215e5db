"""Sequence one task's run: init, start sync, role dispatch, end sync, finalize."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .collectives import CollectiveOps
from .errors import ErrorCode
from .group import GroupContext

__all__ = ["RoleRunner", "RoleWorkloads", "Workload"]


logger = logging.getLogger(__name__)

Workload = Callable[[GroupContext, CollectiveOps, Sequence[str]], ErrorCode]


@dataclass(frozen=True)
class RoleWorkloads:
    """The manager and worker halves of one SPMD computation.

    Both callables receive ``(context, ops, args)`` and return an ErrorCode.
    They must issue the same collective calls in the same order.
    """
    manager: Workload
    worker: Workload

    def for_context(self, context: GroupContext) -> Workload:
        return self.manager if context.is_manager else self.worker


class RoleRunner:
    """Run a workload pair on one task and return the run's ErrorCode.

    Finalize always runs exactly once; the first recorded failure is the
    result, even if later steps (teardown included) fail too.

    Example:
        >>> runner = RoleRunner(GroupContext(config), workloads)
        >>> sys.exit(int(runner.run(sys.argv[1:])))
    """

    def __init__(
        self,
        context: GroupContext,
        workloads: RoleWorkloads,
        sync_starts: bool = True,
        sync_ends: bool = False,
        ops: Optional[CollectiveOps] = None,
    ):
        self.context = context
        self.workloads = workloads
        self.sync_starts = sync_starts
        self.sync_ends = sync_ends
        self.ops = ops or CollectiveOps(context)

    def run(self, args: Sequence[str] = ()) -> ErrorCode:
        completed = False
        try:
            self._run_steps(args)
            completed = True
        finally:
            final = self.context.finalize()
            if completed:
                logger.info(f"Task {self.context.task_name()} ending ({final.name})")
            else:
                logger.error(f"Task {self.context.task_name()} ending on an unhandled exception")
        return final

    def _run_steps(self, args: Sequence[str]) -> None:
        context = self.context
        if context.init() is not ErrorCode.NONE:
            return

        logger.info(f"Task {context.task_name()} started")
        if self.sync_starts and not self.ops.barrier():
            context.record_error(ErrorCode.BARRIER)
            return

        workload = self.workloads.for_context(context)
        outcome = context.record_error(workload(context, self.ops, list(args)))
        if outcome is not ErrorCode.NONE:
            logger.error(f"Task {context.task_name()} workload failed with {outcome.name}")
        elif self.sync_ends and not self.ops.barrier():
            context.record_error(ErrorCode.BARRIER)
