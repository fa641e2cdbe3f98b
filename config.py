"""Process-wide settings read once from the environment."""
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional

from processor.models import DEFAULT_REFRESH_MINUTES


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration."""
    sources_table_name: str = 'calendar-sources'
    credentials_table_name: str = 'feed-credentials'
    events_table_name: str = 'calendar-events'
    mappings_table_name: str = 'calendar-event-mappings'
    encryption_key: Optional[str] = None
    cron_secret: Optional[str] = None
    log_level: str = 'INFO'
    fetch_timeout_seconds: int = 30
    max_sources_per_run: int = 10
    max_workers: int = 4
    deadline_margin_seconds: int = 10
    default_refresh_minutes: int = DEFAULT_REFRESH_MINUTES


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build settings from environment variables.

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        Settings instance
    """
    env = os.environ if environ is None else environ
    return Settings(
        sources_table_name=env.get('SOURCES_TABLE_NAME', 'calendar-sources'),
        credentials_table_name=env.get('CREDENTIALS_TABLE_NAME', 'feed-credentials'),
        events_table_name=env.get('EVENTS_TABLE_NAME', 'calendar-events'),
        mappings_table_name=env.get('MAPPINGS_TABLE_NAME', 'calendar-event-mappings'),
        encryption_key=env.get('ENCRYPTION_KEY') or None,
        cron_secret=env.get('CRON_SECRET') or None,
        log_level=env.get('LOG_LEVEL', 'INFO'),
        fetch_timeout_seconds=int(env.get('FETCH_TIMEOUT_SECONDS', '30')),
        max_sources_per_run=int(env.get('MAX_SOURCES_PER_RUN', '10')),
        max_workers=int(env.get('MAX_WORKERS', '4')),
        deadline_margin_seconds=int(env.get('DEADLINE_MARGIN_SECONDS', '10')),
        default_refresh_minutes=int(
            env.get('DEFAULT_REFRESH_MINUTES', str(DEFAULT_REFRESH_MINUTES))
        ),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings for this process, loaded on first use."""
    return load_settings()
