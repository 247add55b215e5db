"""Collective operations available to workloads.

Each call blocks until every task in the group has made the matching call.
Calls are matched by order, so every task must issue the same sequence.
Failures are reported through the return value; nothing raises across the
group boundary.
"""

import logging
from typing import Optional, Tuple, Union

import torch
import torch.distributed as dist

from .group import TRANSPORT_ERRORS, GroupContext

__all__ = ["CollectiveOps"]


logger = logging.getLogger(__name__)

Buffer = Union[bytearray, memoryview]


class CollectiveOps:
    """Barrier, broadcast and sum-reduce over the context's group."""

    def __init__(self, context: GroupContext):
        self.context = context

    @property
    def _backend(self):
        return self.context.backend

    def _resolve_root(self, rank: Optional[int]) -> int:
        return self.context.manager_rank if rank is None else rank

    def barrier(self) -> bool:
        """Block until every task has reached this barrier."""
        try:
            self._backend.barrier()
        except TRANSPORT_ERRORS:
            logger.error("Barrier failed", exc_info=True)
            return False
        return True

    def broadcast(
        self,
        buffer: Buffer,
        size: Optional[int] = None,
        source_rank: Optional[int] = None,
    ) -> bool:
        """Copy the first ``size`` bytes of ``buffer`` from ``source_rank`` to every task.

        The buffer is overwritten in place on every task except the source.

        Args:
            buffer: Writable bytes-like object, same size on every task
            size: Number of bytes to send (default: the whole buffer)
            source_rank: Sending task (default: the manager)

        Returns:
            True when the broadcast completed on this task
        """
        size = len(buffer) if size is None else size
        if size <= 0 or size > len(buffer):
            logger.error(f"Broadcast size {size} does not fit a {len(buffer)}-byte buffer")
            return False

        source = self._resolve_root(source_rank)
        view = memoryview(buffer).cast("B")[:size]
        tensor = torch.frombuffer(view, dtype=torch.uint8).to(self.context.device)
        try:
            self._backend.broadcast(tensor, src=source)
        except TRANSPORT_ERRORS:
            logger.error(f"Broadcast of {size} bytes from rank {source} failed", exc_info=True)
            return False

        view[:] = tensor.cpu().numpy().tobytes()
        return True

    def reduce_sum(self, local_value: int, root: Optional[int] = None) -> Tuple[bool, Optional[int]]:
        """Sum one integer per task onto ``root``.

        Args:
            local_value: This task's contribution
            root: Task receiving the sum (default: the manager)

        Returns:
            ``(ok, total)``; ``total`` is ``None`` on every task but ``root``
        """
        root = self._resolve_root(root)
        tensor = torch.tensor([int(local_value)], dtype=torch.int64, device=self.context.device)
        try:
            self._backend.reduce(tensor, dst=root, op=dist.ReduceOp.SUM)
        except TRANSPORT_ERRORS:
            logger.error(f"Sum-reduce onto rank {root} failed", exc_info=True)
            return False, None

        if self.context.self_rank != root:
            return True, None
        return True, int(tensor.item())
