"""Per-order mutual exclusion for application submission.

The guard is process-local: two service instances behind a load balancer
can still both submit the same order. The CRM linkage check in the
orchestrator is the only cross-instance protection.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from src.credit_bridge.core.exceptions import DuplicateSubmissionError

logger = structlog.get_logger(__name__)


class SubmissionGuard:
    """Set of order ids whose submission is currently in flight.

    All mutation happens between awaits on a single event loop, so the
    check-and-add in try_acquire is atomic without a lock.
    """

    def __init__(self) -> None:
        self._in_flight: set[int] = set()

    def try_acquire(self, order_id: int) -> bool:
        """Claim order_id. Returns False if it is already held."""
        if order_id in self._in_flight:
            return False
        self._in_flight.add(order_id)
        return True

    def release(self, order_id: int) -> None:
        self._in_flight.discard(order_id)

    def is_held(self, order_id: int) -> bool:
        return order_id in self._in_flight

    @contextmanager
    def hold(self, order_id: int) -> Iterator[None]:
        """Hold order_id for the duration of the block.

        Raises:
            DuplicateSubmissionError: If another submission holds the order.
        """
        if not self.try_acquire(order_id):
            logger.warning("submission.duplicate_blocked", order_id=order_id)
            raise DuplicateSubmissionError(order_id)
        try:
            yield
        finally:
            self.release(order_id)
