"""Data models for calendar sources, feed events and sync results."""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

PROVIDER_ICS = 'ics'

DEFAULT_REFRESH_MINUTES = 30

FETCH_OK = 'ok'
FETCH_NOT_MODIFIED = 'not_modified'
FETCH_ERROR = 'error'

EVENT_TYPE_EVENT = 'event'
EVENT_TYPE_HOME_DAY = 'home_day'
EVENT_TYPES = (EVENT_TYPE_EVENT, EVENT_TYPE_HOME_DAY)

STATUS_CONFIRMED = 'confirmed'
STATUS_PROPOSED = 'proposed'

MATCH_EVENT_ID = 'event_id'
MATCH_TITLE_EXACT = 'title_exact'
MATCH_TITLE_CONTAINS = 'title_contains'
# Most specific first; also the order rules are tried in
MATCH_TYPES = (MATCH_EVENT_ID, MATCH_TITLE_EXACT, MATCH_TITLE_CONTAINS)


@dataclass
class CalendarSource:
    """One external feed connected to one child profile."""
    source_id: str
    user_id: str
    child_id: str
    provider: str
    display_name: str
    active: bool
    created_at: datetime
    last_synced_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_sync_error: Optional[str] = None
    consecutive_rejections: int = 0


@dataclass
class FeedCredential:
    """Encrypted feed location and conditional-fetch state for a source."""
    source_id: str
    encrypted_url: str
    url_hash: str
    next_run_at: datetime
    refresh_interval_minutes: int = DEFAULT_REFRESH_MINUTES
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    revoked_at: Optional[datetime] = None


@dataclass
class ParsedEvent:
    """Event as read from a feed, before validation."""
    uid: str
    summary: str
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    timezone: Optional[str] = None
    recurrence_id: Optional[str] = None
    recurrence_rule: Optional[str] = None


@dataclass
class CalendarEvent:
    """Persisted occurrence derived from a feed."""
    source_id: str
    uid: str
    recurrence_id: Optional[str]
    title: str
    start_at: datetime
    end_at: datetime
    all_day: bool
    content_hash: str
    description: Optional[str] = None
    location: Optional[str] = None
    timezone: Optional[str] = None
    recurrence_rule: Optional[str] = None
    home_stay_candidate: bool = False
    candidate_reason: Optional[str] = None
    event_type: str = EVENT_TYPE_EVENT
    home_id: Optional[str] = None
    status: str = STATUS_CONFIRMED
    mapping_id: Optional[str] = None

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        return self.uid, self.recurrence_id


@dataclass
class FetchResult:
    """Outcome of a conditional feed retrieval."""
    status: str
    body: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    error_code: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class ReconcilePlan:
    to_create: List[CalendarEvent] = field(default_factory=list)
    to_update: List[CalendarEvent] = field(default_factory=list)
    to_delete: List[CalendarEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)


@dataclass
class SyncError:
    code: str
    message: str


@dataclass
class SyncResult:
    """Result of syncing one source."""
    created: int = 0
    updated: int = 0
    deleted: int = 0
    candidates_found: int = 0
    not_modified: bool = False
    errors: List[SyncError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BatchSyncResult:
    """Result of a sweep over all due sources."""
    synced_count: int = 0
    skipped_count: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class MappingRule:
    """User rule that turns matching feed events into typed events for a child."""
    mapping_id: str
    child_id: str
    match_type: str
    match_value: str
    resulting_event_type: str = EVENT_TYPE_EVENT
    home_id: Optional[str] = None
    auto_confirm: bool = False
    source_id: Optional[str] = None
    priority: int = 0
    active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def resulting_status(self) -> str:
        if self.resulting_event_type == EVENT_TYPE_HOME_DAY and not self.auto_confirm:
            return STATUS_PROPOSED
        return STATUS_CONFIRMED

    def matches(self, uid: str, title: str) -> bool:
        if self.match_type == MATCH_EVENT_ID:
            return uid == self.match_value
        if self.match_type == MATCH_TITLE_EXACT:
            return title.strip() == self.match_value.strip()
        if self.match_type == MATCH_TITLE_CONTAINS:
            return self.match_value.strip().casefold() in title.casefold()
        return False
