"""Shared default constants for the chronokey library."""

# Namespace prepended to every key chronokey writes to the store.
DEFAULT_KEY_PREFIX: str = 'chronokey'

# Smallest TTL a marker may carry, in milliseconds (Redis PX resolution).
# Delays below this (including non-positive ones) are clamped up to it.
MIN_MARKER_DELAY_MS: int = 1

# How long an occurrence claim key is retained after firing.
# Must comfortably exceed the window in which Redis may redeliver an
# expiration event for the same key.
DEFAULT_CLAIM_RETENTION_MS: int = 86_400_000  # 24 hours

# Listener reconnect backoff bounds, in seconds.
LISTENER_BACKOFF_INITIAL_S: float = 0.2
LISTENER_BACKOFF_MAX_S: float = 5.0

# Schedule tag written into job data for jobs enqueued immediately.
SCHEDULE_TAG_NOW: str = 'NOW'
SCHEDULE_TAG_ONCE: str = 'ONCE'
SCHEDULE_TAG_RECURRING_PREFIX: str = 'RECURRING:'
