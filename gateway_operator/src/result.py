from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Result:
    """Scheduling verdict of one reconcile pass.

    ``requeue`` asks for a rate-limited retry; ``requeue_after`` asks for a
    retry after a fixed delay in seconds and takes precedence.
    """

    requeue: bool = False
    requeue_after: float | None = None

    @property
    def is_zero(self) -> bool:
        return not self.requeue and self.requeue_after is None
