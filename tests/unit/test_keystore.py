"""Tests for ScheduleKeyStore against the in-memory FakeRedis."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chronokey.core.codec.marker import decode_payload
from chronokey.core.errors import ErrorCode, JobValidationError
from chronokey.core.models.schedule import AtSpec, MarkerPayload
from chronokey.core.models.store import RedisConfig
from chronokey.core.store.keystore import ScheduleKeyStore, merge_notify_flags
from chronokey.core.store.result_types import StoreErrorCode
from chronokey.core.types.result import is_err, is_ok
from tests.helpers.fakes import FakeRedis


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def _payload(schedule_id: str = 's1', data: object = None) -> MarkerPayload:
    return MarkerPayload(
        schedule_id=schedule_id,
        definition={'type': 'email', 'data': data if data is not None else {}},
        spec=AtSpec(at=_utc(2025, 6, 1, 12, 10)),
        fire_at=_utc(2025, 6, 1, 12, 10),
        armed_at=_utc(2025, 6, 1, 12, 0),
    )


def _store(redis: FakeRedis, **config: object) -> ScheduleKeyStore:
    return ScheduleKeyStore(redis, RedisConfig(**config))  # type: ignore[arg-type]


# =============================================================================
# Key layout
# =============================================================================


@pytest.mark.unit
class TestKeyLayout:
    """Tests for key naming and reverse mapping."""

    def test_keys_use_prefix(self) -> None:
        store = _store(FakeRedis(), key_prefix='billing')

        assert store.marker_key('abc') == 'billing:marker:abc'
        assert store.payload_key('abc') == 'billing:payload:abc'
        assert store.claim_key('abc', _utc(2025, 6, 1)) == 'billing:fired:abc:1748736000000'

    def test_schedule_id_from_marker_key(self) -> None:
        store = _store(FakeRedis())

        assert store.schedule_id_from_key('chronokey:marker:job-7') == 'job-7'
        assert store.schedule_id_from_key(b'chronokey:marker:job-7') == 'job-7'

    def test_schedule_id_keeps_colons(self) -> None:
        """Schedule ids may themselves contain colons."""
        store = _store(FakeRedis())

        assert store.schedule_id_from_key('chronokey:marker:tenant:42') == 'tenant:42'

    @pytest.mark.parametrize(
        'key',
        [
            'chronokey:payload:s1',
            'chronokey:fired:s1:1',
            'other:marker:s1',
            'chronokey:marker:',
            '',
            None,
        ],
    )
    def test_foreign_keys_map_to_none(self, key: object) -> None:
        store = _store(FakeRedis())

        assert store.schedule_id_from_key(key) is None  # type: ignore[arg-type]

    @pytest.mark.parametrize(
        ('delay', 'expected'),
        [(600_000, 600_000), (0.2, 1), (1500.1, 1501), (0, 1), (-5000, 1)],
    )
    def test_ttl_for_rounds_up_and_clamps(self, delay: float, expected: int) -> None:
        store = _store(FakeRedis())

        assert store.ttl_for(delay) == expected


# =============================================================================
# arm / disarm / load
# =============================================================================


@pytest.mark.unit
class TestArm:
    """Tests for writing markers and payloads."""

    @pytest.mark.asyncio
    async def test_arm_writes_marker_and_payload(self) -> None:
        redis = FakeRedis()
        store = _store(redis)

        result = await store.arm('s1', _payload(), 600_000)

        assert is_ok(result)
        assert result.ok_value == 600_000
        assert redis.values['chronokey:marker:s1'] == '1'
        assert await redis.pttl('chronokey:marker:s1') == 600_000
        assert await redis.pttl('chronokey:payload:s1') == 600_000 + 86_400_000
        loaded = await store.load('s1')
        assert is_ok(loaded)
        decoded = decode_payload(loaded.ok_value, 's1')
        assert decoded.schedule_id == 's1'
        assert decoded.fire_at == _utc(2025, 6, 1, 12, 10)
        assert decoded.definition == {'type': 'email', 'data': {}}

    @pytest.mark.asyncio
    async def test_arm_clamps_non_positive_delay(self) -> None:
        redis = FakeRedis()
        store = _store(redis)

        result = await store.arm('s1', _payload(), -250)

        assert is_ok(result)
        assert result.ok_value == 1
        assert await redis.pttl('chronokey:marker:s1') == 1

    @pytest.mark.asyncio
    async def test_arm_honours_min_delay(self) -> None:
        redis = FakeRedis()
        store = ScheduleKeyStore(redis, RedisConfig(), min_delay_ms=50)  # type: ignore[arg-type]

        result = await store.arm('s1', _payload(), 10)

        assert is_ok(result)
        assert result.ok_value == 50

    @pytest.mark.asyncio
    async def test_rearm_replaces_ttl(self) -> None:
        """Arming the same id again overwrites; there is one marker per id."""
        redis = FakeRedis()
        store = _store(redis)

        await store.arm('s1', _payload(), 600_000)
        await store.arm('s1', _payload(), 1_000)

        assert await redis.pttl('chronokey:marker:s1') == 1_000
        assert sorted(redis.values) == ['chronokey:marker:s1', 'chronokey:payload:s1']

    @pytest.mark.asyncio
    async def test_unclaimed_payload_expires_after_retention(self) -> None:
        """A marker expiry nobody handled does not strand its payload."""
        redis = FakeRedis()
        store = _store(redis, claim_retention_ms=60_000)

        await store.arm('s1', _payload(), 1_000)

        assert await redis.pttl('chronokey:payload:s1') == 61_000
        assert redis.advance(1_000) == ['chronokey:marker:s1']
        assert await redis.exists('chronokey:payload:s1') == 1
        assert redis.advance(60_000) == ['chronokey:payload:s1']
        assert redis.values == {}

    @pytest.mark.asyncio
    async def test_unserializable_payload_raises_before_writing(self) -> None:
        redis = FakeRedis()
        store = _store(redis)

        with pytest.raises(JobValidationError) as exc_info:
            await store.arm('s1', _payload(data={'fn': object()}), 1000)

        assert exc_info.value.code == ErrorCode.JOB_INVALID_DATA
        assert redis.values == {}

    @pytest.mark.asyncio
    async def test_arm_when_down(self) -> None:
        redis = FakeRedis()
        redis.down = True
        store = _store(redis)

        result = await store.arm('s1', _payload(), 1000)

        assert is_err(result)
        err = result.err_value
        assert err.code == StoreErrorCode.ARM_FAILED
        assert err.retryable is True
        assert err.exception is not None
        assert 's1' in err.message


@pytest.mark.unit
class TestDisarmAndLoad:
    """Tests for removal and inspection."""

    @pytest.mark.asyncio
    async def test_disarm_reports_removal(self) -> None:
        redis = FakeRedis()
        store = _store(redis)
        await store.arm('s1', _payload(), 600_000)

        first = await store.disarm('s1')
        second = await store.disarm('s1')

        assert is_ok(first) and first.ok_value is True
        assert is_ok(second) and second.ok_value is False
        assert redis.values == {}

    @pytest.mark.asyncio
    async def test_disarm_payload_only(self) -> None:
        """A payload left behind without a marker still counts as removed."""
        redis = FakeRedis()
        redis.values['chronokey:payload:s1'] = '{}'
        store = _store(redis)

        result = await store.disarm('s1')

        assert is_ok(result) and result.ok_value is True

    @pytest.mark.asyncio
    async def test_load_missing(self) -> None:
        result = await _store(FakeRedis()).load('nope')

        assert is_ok(result)
        assert result.ok_value is None

    @pytest.mark.asyncio
    async def test_is_armed_and_ttl(self) -> None:
        redis = FakeRedis()
        store = _store(redis)
        await store.arm('s1', _payload(), 5_000)

        redis.advance(2_000)
        armed = await store.is_armed('s1')
        remaining = await store.ttl_ms('s1')

        assert is_ok(armed) and armed.ok_value is True
        assert is_ok(remaining) and remaining.ok_value == 3_000

    @pytest.mark.asyncio
    async def test_expired_marker_is_not_armed(self) -> None:
        redis = FakeRedis()
        store = _store(redis)
        await store.arm('s1', _payload(), 5_000)

        expired = redis.advance(5_000)
        armed = await store.is_armed('s1')
        remaining = await store.ttl_ms('s1')
        loaded = await store.load('s1')

        assert expired == ['chronokey:marker:s1']
        assert is_ok(armed) and armed.ok_value is False
        assert is_ok(remaining) and remaining.ok_value is None
        # Payload outlives the marker until dispatch releases it
        assert is_ok(loaded) and loaded.ok_value is not None

    @pytest.mark.asyncio
    async def test_load_when_down(self) -> None:
        redis = FakeRedis()
        redis.down = True

        result = await _store(redis).load('s1')

        assert is_err(result)
        assert result.err_value.code == StoreErrorCode.LOAD_FAILED


# =============================================================================
# Occurrence claims and payload release
# =============================================================================


@pytest.mark.unit
class TestClaims:
    """Tests for per-occurrence claims."""

    @pytest.mark.asyncio
    async def test_first_claim_wins(self) -> None:
        redis = FakeRedis()
        store = _store(redis, claim_retention_ms=60_000)
        fire_at = _utc(2025, 6, 1, 12, 10)

        first = await store.claim_occurrence('s1', fire_at)
        second = await store.claim_occurrence('s1', fire_at)

        assert is_ok(first) and first.ok_value is True
        assert is_ok(second) and second.ok_value is False
        assert await redis.pttl(store.claim_key('s1', fire_at)) == 60_000

    @pytest.mark.asyncio
    async def test_claims_are_per_occurrence(self) -> None:
        store = _store(FakeRedis())

        first = await store.claim_occurrence('s1', _utc(2025, 6, 1, 12))
        second = await store.claim_occurrence('s1', _utc(2025, 6, 1, 13))

        assert is_ok(first) and first.ok_value is True
        assert is_ok(second) and second.ok_value is True

    @pytest.mark.asyncio
    async def test_claim_expires_after_retention(self) -> None:
        redis = FakeRedis()
        store = _store(redis, claim_retention_ms=1_000)
        fire_at = _utc(2025, 6, 1, 12)

        await store.claim_occurrence('s1', fire_at)
        redis.advance(1_000)
        again = await store.claim_occurrence('s1', fire_at)

        assert is_ok(again) and again.ok_value is True

    @pytest.mark.asyncio
    async def test_claim_when_down(self) -> None:
        redis = FakeRedis()
        redis.down = True

        result = await _store(redis).claim_occurrence('s1', _utc(2025, 6, 1))

        assert is_err(result)
        assert result.err_value.code == StoreErrorCode.CLAIM_FAILED
        assert result.err_value.retryable is True

    @pytest.mark.asyncio
    async def test_release_drops_payload_of_fired_marker(self) -> None:
        redis = FakeRedis()
        store = _store(redis)
        await store.arm('s1', _payload(), 1_000)
        redis.advance(1_000)

        result = await store.release_payload('s1')

        assert is_ok(result) and result.ok_value is True
        assert redis.values == {}

    @pytest.mark.asyncio
    async def test_release_keeps_payload_when_rearmed(self) -> None:
        """A schedule re-armed before the release keeps its payload."""
        redis = FakeRedis()
        store = _store(redis)
        await store.arm('s1', _payload(), 1_000)
        redis.advance(1_000)
        await store.arm('s1', _payload(), 5_000)

        result = await store.release_payload('s1')

        assert is_ok(result) and result.ok_value is False
        assert 'chronokey:payload:s1' in redis.values


# =============================================================================
# notify-keyspace-events
# =============================================================================


@pytest.mark.unit
class TestNotifications:
    """Tests for expired-event configuration."""

    @pytest.mark.parametrize(
        ('current', 'expected'),
        [
            ('', 'Ex'),
            ('Ex', 'Ex'),
            ('xE', 'xE'),
            ('K$', 'K$Ex'),
            ('KEA', 'KEA'),
            ('AK', 'AKE'),
            ('Kx', 'KxE'),
        ],
    )
    def test_merge_notify_flags(self, current: str, expected: str) -> None:
        assert merge_notify_flags(current) == expected

    @pytest.mark.asyncio
    async def test_ensure_notifications_sets_flags(self) -> None:
        redis = FakeRedis()
        redis.config['notify-keyspace-events'] = 'Kg'

        result = await _store(redis).ensure_notifications()

        assert is_ok(result)
        assert result.ok_value == 'KgEx'
        assert redis.config['notify-keyspace-events'] == 'KgEx'

    @pytest.mark.asyncio
    async def test_ensure_notifications_denied(self) -> None:
        """Servers rejecting CONFIG yield a non-retryable Err."""
        redis = FakeRedis()
        redis.deny_config = True

        result = await _store(redis).ensure_notifications()

        assert is_err(result)
        assert result.err_value.code == StoreErrorCode.NOTIFY_CONFIG_FAILED
        assert result.err_value.retryable is False

    @pytest.mark.asyncio
    async def test_ping(self) -> None:
        redis = FakeRedis()
        store = _store(redis)

        assert is_ok(await store.ping())
        redis.down = True
        down = await store.ping()

        assert is_err(down)
        assert down.err_value.code == StoreErrorCode.CONNECT_FAILED
