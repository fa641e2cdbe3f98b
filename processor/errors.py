"""Error taxonomy for calendar feed synchronization."""
from typing import Optional


# Safe, user-facing messages keyed by error code. Never include feed URLs.
ERROR_MESSAGES = {
    'configuration_error': 'Server configuration error',
    'invalid_url': 'Invalid calendar link',
    'duplicate_source': 'This calendar is already connected for this child',
    'source_not_found': 'Calendar not found',
    'source_inactive': 'Calendar is disconnected, connect it again',
    'decryption_failed': 'Stored calendar link could not be read, replace it',
    'unsupported_provider': 'Calendar provider is not supported',
    'unreachable': 'Calendar link unreachable',
    'expired': 'Calendar link expired, replace it',
    'auth_required': 'Calendar requires login, use a public iCloud link',
    'invalid_format': 'Invalid calendar format',
    'too_large': 'Calendar file too large',
    'too_many_events': 'Too many recurring events. Use a smaller calendar.',
    'timeout': 'Calendar took too long to load',
    'rate_limited': 'Please wait a few minutes before syncing again',
    'concurrent_sync': 'Calendar is already being synced',
    'partial_write': 'Some calendar events could not be saved',
    'source_deactivated': 'Calendar was disconnected after repeated rejections',
    'invalid_mapping': 'Invalid mapping rule',
    'mapping_not_found': 'Mapping rule not found',
    'unknown': 'Could not sync calendar',
}


class CalendarSyncError(Exception):
    """Base class for all calendar sync errors."""

    code = 'unknown'

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        if code:
            self.code = code
        self.message = message or ERROR_MESSAGES.get(self.code, ERROR_MESSAGES['unknown'])
        super().__init__(self.message)


class ConfigurationError(CalendarSyncError):
    """Missing encryption key or scheduler secret."""

    code = 'configuration_error'


class ValidationError(CalendarSyncError):
    """Malformed or unsupported feed URL."""

    code = 'invalid_url'


class DuplicateSourceError(CalendarSyncError):
    """An active source with the same feed already exists for the child."""

    code = 'duplicate_source'


class SourceNotFoundError(CalendarSyncError):
    code = 'source_not_found'


class SourceInactiveError(CalendarSyncError):
    code = 'source_inactive'


class DecryptionError(CalendarSyncError):
    """Stored ciphertext is corrupt or was encrypted with another key."""

    code = 'decryption_failed'


class UnsupportedProviderError(CalendarSyncError):
    code = 'unsupported_provider'


class TransportError(CalendarSyncError):
    """Fetch timeout, connection failure or non-success HTTP status."""

    code = 'unreachable'


class ParseError(CalendarSyncError):
    """Feed body could not be parsed as a calendar."""

    code = 'invalid_format'


class RateLimitedError(CalendarSyncError):
    """Manual sync requested before the minimum interval elapsed."""

    code = 'rate_limited'

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)


class ConcurrentSyncError(CalendarSyncError):
    """Another run completed a sync of the same source first."""

    code = 'concurrent_sync'


class MappingNotFoundError(CalendarSyncError):
    code = 'mapping_not_found'
