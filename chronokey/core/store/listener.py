# chronokey/core/store/listener.py
"""
Redis key-expiration listener that turns expired markers into firings.

Flow:
  1. ScheduleKeyStore.arm writes <prefix>:marker:<id> with PX = delay
  2. Redis expires the marker and publishes its name on
     __keyevent@<db>__:expired
  3. ExpiryListener maps the key back to a schedule id, loads and decodes
     the payload, and awaits on_fire(schedule_id, payload)

Redis pub/sub is fire-and-forget: expirations published while the
subscription is down are lost. The listener reconnects with exponential
backoff and logs the length of every outage so the gap is visible.
"""

from __future__ import annotations

import asyncio
import time
from asyncio import Task
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from chronokey.core.codec.marker import decode_payload
from chronokey.core.defaults import LISTENER_BACKOFF_INITIAL_S, LISTENER_BACKOFF_MAX_S
from chronokey.core.errors import DecodeError
from chronokey.core.logging import get_logger
from chronokey.core.models.schedule import MarkerPayload
from chronokey.core.store.keystore import ScheduleKeyStore
from chronokey.core.types.result import is_err
from chronokey.core.utils.db import is_retryable_store_error

logger = get_logger('listener')

OnFire = Callable[[str, MarkerPayload], Awaitable[None]]

# Upper bound on one get_message wait, so stop requests are noticed promptly
_POLL_TIMEOUT_S: float = 1.0


class ExpiryListener:
    """
    Single background task consuming expired-key events.

    Events are handled one at a time in delivery order. Redis may deliver
    the same expiration more than once; ``on_fire`` must be idempotent per
    occurrence. Nothing raised while handling an event stops the loop.

    Usage:
    ------
    listener = ExpiryListener(client, keystore, on_fire, db=0)
    await listener.start()
    ...
    await listener.stop()
    """

    def __init__(
        self,
        client: Redis,
        keystore: ScheduleKeyStore,
        on_fire: OnFire,
        *,
        db: int = 0,
        backoff_initial: float = LISTENER_BACKOFF_INITIAL_S,
        backoff_max: float = LISTENER_BACKOFF_MAX_S,
    ) -> None:
        self._client = client
        self._keystore = keystore
        self._on_fire = on_fire
        self.channel = f'__keyevent@{db}__:expired'
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max

        self._task: Optional[Task[None]] = None
        self._stop_event = asyncio.Event()
        self._subscribed = asyncio.Event()

        self.fired_count = 0
        self.dropped_count = 0
        self.reconnect_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the listener task. No-op when already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name='chronokey-expiry-listener')

    async def wait_subscribed(self, timeout: Optional[float] = None) -> bool:
        """Wait until the subscription is live. False on timeout."""
        try:
            await asyncio.wait_for(self._subscribed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        """Signal the loop to stop and cancel the task. Safe to call more than once."""
        self._stop_event.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._subscribed.clear()

    async def _run(self) -> None:
        backoff = self.backoff_initial
        outage_started: Optional[float] = None

        while not self._stop_event.is_set():
            pubsub = self._client.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                if outage_started is not None:
                    logger.warning(
                        'Resubscribed to %s after %.1fs; expirations during that '
                        'window were not received',
                        self.channel,
                        time.monotonic() - outage_started,
                    )
                    outage_started = None
                else:
                    logger.info('Subscribed to %s', self.channel)
                backoff = self.backoff_initial
                self._subscribed.set()

                while not self._stop_event.is_set():
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=_POLL_TIMEOUT_S
                    )
                    if message is not None:
                        await self.handle_message(message)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._subscribed.clear()
                self.reconnect_count += 1
                if outage_started is None:
                    outage_started = time.monotonic()
                if is_retryable_store_error(exc):
                    logger.warning(
                        'Lost subscription to %s: %s; reconnecting in %.1fs',
                        self.channel,
                        exc,
                        backoff,
                    )
                else:
                    logger.error(
                        'Unexpected listener failure on %s: %r; reconnecting in %.1fs',
                        self.channel,
                        exc,
                        backoff,
                    )
                await self._sleep_unless_stopped(backoff)
                backoff = min(backoff * 2, self.backoff_max)
            finally:
                await self._close_pubsub(pubsub)

    async def _sleep_unless_stopped(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _close_pubsub(self, pubsub: PubSub) -> None:
        try:
            await pubsub.aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # The connection is usually already gone at this point
            logger.debug('Ignoring error while closing pubsub: %s', exc)

    async def handle_message(self, message: dict[str, Any]) -> None:
        """Process one pub/sub message. Never raises (except on cancellation)."""
        if message.get('type') != 'message':
            return

        schedule_id = self._keystore.schedule_id_from_key(message.get('data'))
        if schedule_id is None:
            # Some other key expired
            return

        load_r = await self._keystore.load(schedule_id)
        if is_err(load_r):
            self.dropped_count += 1
            logger.error(
                'Dropping firing of %s: payload could not be loaded: %s',
                schedule_id,
                load_r.err_value.message,
            )
            return

        raw = load_r.ok_value
        if raw is None:
            self.dropped_count += 1
            logger.warning(
                'Dropping firing of %s: no payload (cancelled or already dispatched)',
                schedule_id,
            )
            return

        try:
            payload = decode_payload(raw, schedule_id)
        except DecodeError as e:
            self.dropped_count += 1
            logger.error('Dropping firing of %s: %s', schedule_id, e.message)
            return

        try:
            await self._on_fire(schedule_id, payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception('Dispatch of %s raised; continuing', schedule_id)
            return

        self.fired_count += 1
