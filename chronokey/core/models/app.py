# chronokey/core/models/app.py
from typing import Optional
from zoneinfo import ZoneInfo
from pydantic import BaseModel, model_validator, Field, ConfigDict
from typing_extensions import Self
from chronokey.core.defaults import (
    LISTENER_BACKOFF_INITIAL_S,
    LISTENER_BACKOFF_MAX_S,
    MIN_MARKER_DELAY_MS,
)
from chronokey.core.models.queue import PostgresConfig
from chronokey.core.models.store import RedisConfig
from chronokey.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from chronokey.core.utils.url import mask_url
import logging


class AppConfig(BaseModel):
    """
    Connection and behavior settings for a Scheduler.

    Passed once at construction; individual schedule calls never carry
    connection parameters.
    """

    model_config = ConfigDict(frozen=True)

    store: RedisConfig = Field(default_factory=RedisConfig)
    queue: PostgresConfig
    default_timezone: str = Field(
        default='UTC', description='Timezone used to evaluate recurring schedules'
    )
    # Floor applied to every marker TTL, including re-arms that computed a
    # non-positive delay.
    min_delay_ms: int = MIN_MARKER_DELAY_MS
    listener_backoff_initial_s: float = LISTENER_BACKOFF_INITIAL_S
    listener_backoff_max_s: float = LISTENER_BACKOFF_MAX_S

    @model_validator(mode='after')
    def validate_scheduler_settings(self) -> Self:
        """Collects all independent errors and raises them together."""
        report = ValidationReport('config')

        try:
            ZoneInfo(self.default_timezone)
        except Exception as e:
            report.add(
                ConfigurationError(
                    message=f"unknown default_timezone '{self.default_timezone}'",
                    code=ErrorCode.SCHEDULE_INVALID_TIMEZONE,
                    notes=[f'zoneinfo lookup failed: {e}'],
                    help_text="use an IANA timezone name such as 'UTC'",
                )
            )

        if self.min_delay_ms < MIN_MARKER_DELAY_MS:
            report.add(
                ConfigurationError(
                    message='min_delay_ms below store resolution',
                    code=ErrorCode.CONFIG_INVALID_STORE,
                    notes=[f'got min_delay_ms={self.min_delay_ms}'],
                    help_text=f'use an integer >= {MIN_MARKER_DELAY_MS}',
                )
            )

        if self.listener_backoff_initial_s <= 0:
            report.add(
                ConfigurationError(
                    message='listener_backoff_initial_s must be positive',
                    code=ErrorCode.CONFIG_INVALID_LISTENER,
                    notes=[f'got {self.listener_backoff_initial_s}'],
                    help_text='use a small positive number of seconds, e.g. 0.2',
                )
            )
        elif self.listener_backoff_max_s < self.listener_backoff_initial_s:
            report.add(
                ConfigurationError(
                    message='listener_backoff_max_s smaller than initial backoff',
                    code=ErrorCode.CONFIG_INVALID_LISTENER,
                    notes=[
                        f'listener_backoff_initial_s={self.listener_backoff_initial_s}',
                        f'listener_backoff_max_s={self.listener_backoff_max_s}',
                    ],
                    help_text='raise listener_backoff_max_s or lower the initial value',
                )
            )

        raise_collected(report)
        return self

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """
        Log the AppConfig in a human-readable format.
        Masks credentials in connection URLs.
        """
        if logger is None:
            logger = logging.getLogger()
        logger.info('AppConfig:\n%s', self.format_summary())

    def format_summary(self) -> str:
        """Multi-line, credential-masked summary of the settings."""
        lines: list[str] = []
        lines.append('  store:')
        lines.append(f'    redis_url: {mask_url(self.store.redis_url)}')
        lines.append(f'    key_prefix: {self.store.key_prefix}')
        lines.append(f'    claim_retention: {self.store.claim_retention_ms}ms')
        lines.append(
            f'    configure_notifications: {self.store.configure_notifications}'
        )
        lines.append('  queue:')
        lines.append(f'    database_url: {mask_url(self.queue.database_url)}')
        lines.append(f'    default_queue: {self.queue.default_queue}')
        lines.append(f'    pool_size: {self.queue.pool_size}')
        lines.append(f'  default_timezone: {self.default_timezone}')
        lines.append(f'  min_delay: {self.min_delay_ms}ms')
        lines.append(
            f'  listener_backoff: {self.listener_backoff_initial_s}s..'
            f'{self.listener_backoff_max_s}s'
        )
        return '\n'.join(lines)
