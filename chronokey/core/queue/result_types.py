"""Typed error types for job queue operations.

Follows the same pattern as ``StoreOperationError`` in
``chronokey/core/store/result_types.py``: queue methods return
``QueueResult`` and never raise for operational failures.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from chronokey.core.types.result import Result


class QueueErrorCode(str, Enum):
    """Categorized queue operation failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    ENQUEUE_FAILED = 'ENQUEUE_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'


@dataclass(slots=True, frozen=True)
class QueueOperationError:
    """Error payload carried inside Err(...) for queue operations.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: QueueErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


type QueueResult[T] = Result[T, QueueOperationError]
