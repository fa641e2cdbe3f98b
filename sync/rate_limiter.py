"""Minimum interval between manual syncs of one source."""
import math
from datetime import datetime, timedelta
from typing import Optional

from processor.errors import RateLimitedError

MIN_SYNC_INTERVAL = timedelta(minutes=5)


class RateLimiter:
    """
    Rejects user-triggered syncs that arrive too soon after the last one.

    The batch sweep is governed by next_run_at and does not consult this.
    """

    def __init__(self, min_interval: timedelta = MIN_SYNC_INTERVAL):
        self.min_interval = min_interval

    def can_sync_now(self, last_synced_at: Optional[datetime], now: datetime) -> bool:
        if last_synced_at is None:
            return True
        return now - last_synced_at >= self.min_interval

    def retry_after_seconds(self, last_synced_at: Optional[datetime], now: datetime) -> int:
        """Seconds until a manual sync is allowed again (0 if allowed now)."""
        if self.can_sync_now(last_synced_at, now):
            return 0
        remaining = self.min_interval - (now - last_synced_at)
        return max(1, math.ceil(remaining.total_seconds()))

    def check(self, last_synced_at: Optional[datetime], now: datetime) -> None:
        """
        Raises:
            RateLimitedError: With a retry-after hint if called too soon
        """
        if not self.can_sync_now(last_synced_at, now):
            raise RateLimitedError(self.retry_after_seconds(last_synced_at, now))
