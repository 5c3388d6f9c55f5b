# chronokey/core/store/keystore.py
"""
TTL marker storage in Redis.

Key layout (``<prefix>`` is ``RedisConfig.key_prefix``):

    <prefix>:marker:<schedule_id>              "1", PX = delay until firing
    <prefix>:payload:<schedule_id>             MarkerPayload JSON, no TTL
    <prefix>:fired:<schedule_id>:<fire_at_ms>  "1", PX = claim retention

Redis expiry notifications carry only the key name, so the marker holds
no data and its payload lives beside it. The marker's lifetime is owned
by Redis's TTL alone; the scheduler never deletes a marker to fire it.
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import Any, Optional, Union

from redis.asyncio import Redis

from chronokey.core.codec.marker import encode_payload
from chronokey.core.defaults import MIN_MARKER_DELAY_MS
from chronokey.core.logging import get_logger
from chronokey.core.models.schedule import MarkerPayload, epoch_ms
from chronokey.core.models.store import RedisConfig
from chronokey.core.store.result_types import (
    StoreErrorCode,
    StoreOperationError,
    StoreResult,
)
from chronokey.core.types.result import Err, Ok
from chronokey.core.utils.db import is_retryable_store_error

logger = get_logger('store')

# Deletes the payload only while no marker is armed for the schedule, so a
# re-arm that raced the release keeps its payload.
_RELEASE_PAYLOAD_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return redis.call('DEL', KEYS[2])
end
return 0
"""

# Expired-key events ('E' keyevent class, 'x' expired events)
_REQUIRED_NOTIFY_FLAGS = 'Ex'


def _as_str(value: Union[str, bytes, None]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


def merge_notify_flags(current: str, required: str = _REQUIRED_NOTIFY_FLAGS) -> str:
    """
    Add ``required`` keyspace-event flags to ``current`` without dropping any.

    ``A`` already implies ``x`` (and every other event class).
    """
    merged = current
    for flag in required:
        if flag in merged:
            continue
        if flag == 'x' and 'A' in merged:
            continue
        merged += flag
    return merged


class ScheduleKeyStore:
    """Arms, inspects and clears schedule markers in Redis."""

    def __init__(
        self,
        client: Redis,
        config: RedisConfig,
        min_delay_ms: int = MIN_MARKER_DELAY_MS,
    ) -> None:
        self._client = client
        self.config = config
        self.min_delay_ms = min_delay_ms
        self._marker_prefix = f'{config.key_prefix}:marker:'

    # ----------------- Keys -----------------

    def marker_key(self, schedule_id: str) -> str:
        return f'{self._marker_prefix}{schedule_id}'

    def payload_key(self, schedule_id: str) -> str:
        return f'{self.config.key_prefix}:payload:{schedule_id}'

    def claim_key(self, schedule_id: str, fire_at: datetime) -> str:
        return f'{self.config.key_prefix}:fired:{schedule_id}:{epoch_ms(fire_at)}'

    def schedule_id_from_key(self, key: Union[str, bytes]) -> Optional[str]:
        """Schedule id of a marker key, or None for keys outside the marker namespace."""
        text = _as_str(key)
        if not text or not text.startswith(self._marker_prefix):
            return None
        schedule_id = text[len(self._marker_prefix):]
        return schedule_id or None

    def ttl_for(self, delay_ms: Union[int, float]) -> int:
        """Marker TTL for a delay: rounded up, never below ``min_delay_ms``."""
        return max(math.ceil(delay_ms), self.min_delay_ms)

    # ----------------- Operations -----------------

    def _error(
        self, code: StoreErrorCode, action: str, exc: BaseException
    ) -> Err[StoreOperationError]:
        retryable = is_retryable_store_error(exc)
        logger.error('Store %s failed (retryable=%s): %s', action, retryable, exc)
        return Err(StoreOperationError(
            code=code,
            message=f'Failed to {action}: {exc}',
            retryable=retryable,
            exception=exc,
        ))

    async def ping(self) -> StoreResult[None]:
        try:
            await self._client.ping()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(StoreErrorCode.CONNECT_FAILED, 'reach Redis', exc)
        return Ok(None)

    async def arm(
        self,
        schedule_id: str,
        payload: MarkerPayload,
        delay_ms: Union[int, float],
    ) -> StoreResult[int]:
        """
        Write the payload and a marker expiring after ``delay_ms``.

        Both keys are written in one MULTI/EXEC transaction. An existing
        marker for the same id is replaced (last writer wins). The payload
        expires ``claim_retention_ms`` after its marker.

        Returns:
            Ok(ttl_ms) with the TTL actually applied.

        Raises:
            JobValidationError: the payload cannot be serialized; nothing
                is written.
        """
        encoded = encode_payload(payload)
        ttl_ms = self.ttl_for(delay_ms)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(
                    self.payload_key(schedule_id),
                    encoded,
                    px=ttl_ms + self.config.claim_retention_ms,
                )
                pipe.set(self.marker_key(schedule_id), '1', px=ttl_ms)
                await pipe.execute()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(
                StoreErrorCode.ARM_FAILED, f'arm schedule {schedule_id}', exc
            )

        logger.debug('Armed %s with ttl=%dms', schedule_id, ttl_ms)
        return Ok(ttl_ms)

    async def disarm(self, schedule_id: str) -> StoreResult[bool]:
        """Delete marker and payload. Ok(True) when anything was removed."""
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(self.marker_key(schedule_id))
                pipe.delete(self.payload_key(schedule_id))
                marker_deleted, payload_deleted = await pipe.execute()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(
                StoreErrorCode.DISARM_FAILED, f'disarm schedule {schedule_id}', exc
            )
        return Ok(bool(marker_deleted or payload_deleted))

    async def load(self, schedule_id: str) -> StoreResult[Optional[str]]:
        """Raw payload JSON for a schedule, Ok(None) when there is none."""
        try:
            raw = await self._client.get(self.payload_key(schedule_id))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(
                StoreErrorCode.LOAD_FAILED, f'load payload of {schedule_id}', exc
            )
        return Ok(_as_str(raw))

    async def is_armed(self, schedule_id: str) -> StoreResult[bool]:
        try:
            exists = await self._client.exists(self.marker_key(schedule_id))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(
                StoreErrorCode.LOAD_FAILED, f'check marker of {schedule_id}', exc
            )
        return Ok(bool(exists))

    async def ttl_ms(self, schedule_id: str) -> StoreResult[Optional[int]]:
        """Remaining marker TTL in ms; Ok(None) when no marker is armed."""
        try:
            remaining = await self._client.pttl(self.marker_key(schedule_id))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(
                StoreErrorCode.LOAD_FAILED, f'read ttl of {schedule_id}', exc
            )
        # -2: no such key, -1: key without expiry
        if remaining is None or remaining < 0:
            return Ok(None)
        return Ok(int(remaining))

    async def claim_occurrence(
        self, schedule_id: str, fire_at: datetime
    ) -> StoreResult[bool]:
        """
        Record that this occurrence is being dispatched.

        Ok(True) when this call won the claim, Ok(False) when another
        delivery of the same expiry already did.
        """
        try:
            won = await self._client.set(
                self.claim_key(schedule_id, fire_at),
                '1',
                nx=True,
                px=self.config.claim_retention_ms,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(
                StoreErrorCode.CLAIM_FAILED, f'claim occurrence of {schedule_id}', exc
            )
        return Ok(bool(won))

    async def release_payload(self, schedule_id: str) -> StoreResult[bool]:
        """Drop the payload of a dispatched one-shot schedule unless it was re-armed."""
        try:
            deleted: Any = await self._client.eval(
                _RELEASE_PAYLOAD_LUA,
                2,
                self.marker_key(schedule_id),
                self.payload_key(schedule_id),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(
                StoreErrorCode.DISARM_FAILED, f'release payload of {schedule_id}', exc
            )
        return Ok(bool(deleted))

    async def ensure_notifications(self) -> StoreResult[str]:
        """
        Make sure Redis publishes expired-key events.

        Merges ``Ex`` into the current ``notify-keyspace-events`` value.
        Managed Redis offerings often reject CONFIG; that comes back as Err
        and the caller decides whether to carry on.

        Returns:
            Ok(flags) with the effective flag string.
        """
        try:
            current_cfg = await self._client.config_get('notify-keyspace-events')
            current = _as_str(current_cfg.get('notify-keyspace-events')) or ''
            wanted = merge_notify_flags(current)
            if wanted != current:
                await self._client.config_set('notify-keyspace-events', wanted)
                logger.info(
                    "notify-keyspace-events changed from '%s' to '%s'", current, wanted
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._error(
                StoreErrorCode.NOTIFY_CONFIG_FAILED,
                'configure notify-keyspace-events',
                exc,
            )
        return Ok(wanted)
