from chronokey.core.store.keystore import ScheduleKeyStore
from chronokey.core.store.listener import ExpiryListener
from chronokey.core.store.result_types import (
    StoreErrorCode,
    StoreOperationError,
    StoreResult,
)

__all__ = [
    'ScheduleKeyStore',
    'ExpiryListener',
    'StoreErrorCode',
    'StoreOperationError',
    'StoreResult',
]
