from pydantic import BaseModel, Field, field_validator
from chronokey.core.defaults import DEFAULT_CLAIM_RETENTION_MS, DEFAULT_KEY_PREFIX
from chronokey.core.errors import ConfigurationError, ErrorCode


class RedisConfig(BaseModel):
    redis_url: str = Field(
        default='redis://127.0.0.1:6379/0', description='The URL of the Redis server'
    )
    key_prefix: str = Field(
        default=DEFAULT_KEY_PREFIX,
        min_length=1,
        description='Namespace for marker, payload and claim keys',
    )
    claim_retention_ms: int = Field(
        default=DEFAULT_CLAIM_RETENTION_MS,
        ge=1000,
        description='How long claims and payloads are kept after a marker fires',
    )
    configure_notifications: bool = Field(
        default=True,
        description="Issue CONFIG SET notify-keyspace-events 'Ex' on start",
    )
    socket_timeout: float | None = Field(
        default=None, description='Socket timeout for command connections (seconds)'
    )
    socket_connect_timeout: float = Field(
        default=5.0, gt=0, description='Timeout for establishing a connection'
    )
    health_check_interval: int = Field(
        default=30,
        ge=0,
        description='Seconds between PING health checks on idle pub/sub connections',
    )

    @field_validator('redis_url')
    def validate_redis_url(cls, v: str) -> str:
        if not v.startswith(('redis://', 'rediss://', 'unix://')):
            raise ConfigurationError(
                message='invalid Redis URL scheme',
                code=ErrorCode.STORE_INVALID_URL,
                notes=[f"got: {v.split('://')[0] if '://' in v else v[:20]}://..."],
                help_text="use 'redis://[:password@]host:port/db' or 'rediss://...'",
            )
        return v

    @field_validator('key_prefix')
    def validate_key_prefix(cls, v: str) -> str:
        if ':' in v or ' ' in v:
            raise ConfigurationError(
                message='key_prefix must not contain colons or spaces',
                code=ErrorCode.CONFIG_INVALID_STORE,
                notes=[f'got key_prefix={v!r}'],
                help_text="use a plain token such as 'chronokey' or 'billing_sched'",
            )
        return v
