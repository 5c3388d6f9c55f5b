"""Typed error types for ScheduleKeyStore operations.

Result propagation policy
-------------------------
* **Store layer** -- returns ``StoreResult``.  Never raises for
  operational failures (only for ``asyncio.CancelledError``) and never
  retries on its own.

* **Registration path** (``Scheduler.schedule_at`` / ``schedule_every``)
  -- converts ``Err`` into ``ScheduleError(STORE_FAILED)`` for the caller,
  preserving ``retryable``.  Registration is not retried automatically.

* **Firing path** (listener, recurrence) -- logs ``Err`` values.  Nobody
  is synchronously waiting on a firing, so nothing is raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from chronokey.core.types.result import Result


class StoreErrorCode(str, Enum):
    """Categorized store operation failure codes."""

    CONNECT_FAILED = 'CONNECT_FAILED'
    NOTIFY_CONFIG_FAILED = 'NOTIFY_CONFIG_FAILED'
    ARM_FAILED = 'ARM_FAILED'
    DISARM_FAILED = 'DISARM_FAILED'
    LOAD_FAILED = 'LOAD_FAILED'
    CLAIM_FAILED = 'CLAIM_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'


@dataclass(slots=True, frozen=True)
class StoreOperationError:
    """Error payload carried inside Err(...) for store operations.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: StoreErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


type StoreResult[T] = Result[T, StoreOperationError]
