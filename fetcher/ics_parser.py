"""ICS feed parser built on icalendar."""
import hashlib
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rruleset, rrulestr
from icalendar import Calendar

from processor.errors import ParseError
from processor.models import ParsedEvent
from processor.time_utils import utcnow

logger = logging.getLogger(__name__)

BOM_AND_WHITESPACE = '\ufeff \r\n\t'

# Sync window for recurring series, relative to the run time
PAST_MONTHS = 6
FUTURE_MONTHS = 12
MAX_OCCURRENCES = 2000


class IcsParser:
    """Turns raw ICS text into ParsedEvent records."""

    def __init__(
        self,
        past_months: int = PAST_MONTHS,
        future_months: int = FUTURE_MONTHS,
        max_occurrences: int = MAX_OCCURRENCES
    ):
        self.past_months = past_months
        self.future_months = future_months
        self.max_occurrences = max_occurrences

    def parse(self, body: str, now: Optional[datetime] = None) -> List[ParsedEvent]:
        """
        Parse an ICS document.

        Recurring series are expanded into one event per occurrence inside
        the sync window around ``now``. Each occurrence is keyed by the UID
        and its original start, the same key a RECURRENCE-ID override uses,
        so overrides replace the generated occurrence.

        Malformed VEVENTs are skipped; a document that is not a calendar at
        all, or whose every VEVENT is malformed, raises. An empty calendar
        returns an empty list.

        Args:
            body: Raw ICS text
            now: Reference time for the recurrence window

        Returns:
            List of ParsedEvent objects

        Raises:
            ParseError: If the body is not a parseable VCALENDAR
        """
        now = now or utcnow()
        text = (body or '').lstrip(BOM_AND_WHITESPACE)
        if not text.upper().startswith('BEGIN:VCALENDAR'):
            logger.warning('Feed body is not a VCALENDAR document')
            raise ParseError()

        try:
            calendar = Calendar.from_ical(text)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Failed to parse ICS document: {e}")
            raise ParseError()

        calendar_tz = self._calendar_timezone(calendar)
        components = calendar.walk('VEVENT')
        overrides = self._override_keys(components, calendar_tz)
        window = (now - relativedelta(months=self.past_months),
                  now + relativedelta(months=self.future_months))

        events = []
        skipped = 0

        for component in components:
            try:
                expanded = self._parse_vevent(component, calendar_tz, overrides, window)
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                skipped += 1
                logger.warning(f"Skipping malformed VEVENT: {e}")
                continue
            events.extend(expanded)

        if skipped and not events:
            logger.warning(f"All {skipped} VEVENTs in the feed were malformed")
            raise ParseError()

        logger.info(f"Parsed {len(events)} events ({skipped} malformed skipped)")
        return events

    def _parse_vevent(
        self,
        component,
        calendar_tz: Optional[ZoneInfo],
        overrides: Set[Tuple[str, str]],
        window: Tuple[datetime, datetime]
    ) -> List[ParsedEvent]:
        """
        Parse a single VEVENT component.

        Returns:
            Events for the component; empty for cancelled events
        """
        status = component.get('STATUS')
        if status is not None and str(status).upper() == 'CANCELLED':
            return []

        if component.get('DTSTART') is None:
            raise ValueError('VEVENT has no DTSTART')

        raw_start = component.decoded('DTSTART')
        all_day = isinstance(raw_start, date) and not isinstance(raw_start, datetime)
        start_at = self._to_utc(raw_start, calendar_tz)
        end_at = self._resolve_end(component, raw_start, all_day, calendar_tz)
        if end_at < start_at:
            end_at = start_at

        summary = str(component.get('SUMMARY', '')).strip()
        uid = str(component.get('UID', '')).strip()
        if not uid:
            uid = self._fallback_uid(summary, start_at)

        event = ParsedEvent(
            uid=uid,
            summary=summary,
            start_at=start_at,
            end_at=end_at,
            all_day=all_day,
            description=self._text(component, 'DESCRIPTION'),
            location=self._text(component, 'LOCATION'),
            timezone=self._timezone_name(raw_start, calendar_tz),
            recurrence_id=self._recurrence_key(component, calendar_tz),
            recurrence_rule=self._ical_value(component, 'RRULE')
        )

        if event.recurrence_rule and event.recurrence_id is None:
            return self._expand(event, component, raw_start, calendar_tz, overrides, window)
        return [event]

    def _expand(
        self,
        event: ParsedEvent,
        component,
        raw_start,
        calendar_tz: Optional[ZoneInfo],
        overrides: Set[Tuple[str, str]],
        window: Tuple[datetime, datetime]
    ) -> List[ParsedEvent]:
        """
        Expand a recurring master into its occurrences inside the window.

        At most max_occurrences occurrences are generated per series,
        counting those before the window. A series with no occurrence in the
        window, or a rule dateutil cannot read, yields the master alone.
        """
        local_start = raw_start if not event.all_day \
            else datetime.combine(raw_start, time.min)

        try:
            rule = rrulestr(
                event.recurrence_rule,
                dtstart=local_start,
                ignoretz=local_start.tzinfo is None
            )
        except (ValueError, TypeError) as e:
            logger.warning(f"Unsupported RRULE on event {event.uid}: {e}")
            return [event]

        rule_set = rruleset()
        rule_set.rrule(rule)
        for excluded in self._exdates(component):
            rule_set.exdate(self._align(excluded, local_start, calendar_tz))

        window_start, window_end = window
        duration = event.end_at - event.start_at
        occurrences = []

        try:
            for count, occurrence in enumerate(rule_set):
                if count >= self.max_occurrences:
                    logger.warning(
                        f"Expansion of event {event.uid} stopped at {self.max_occurrences} "
                        f"occurrences"
                    )
                    break
                if event.all_day:
                    occurrence_start = occurrence.replace(tzinfo=timezone.utc)
                else:
                    occurrence_start = self._to_utc(occurrence, calendar_tz)
                if occurrence_start > window_end:
                    break
                if occurrence_start < window_start:
                    continue

                key = self._format_key(occurrence_start, event.all_day)
                if (event.uid, key) in overrides:
                    continue

                occurrences.append(ParsedEvent(
                    uid=event.uid,
                    summary=event.summary,
                    start_at=occurrence_start,
                    end_at=occurrence_start + duration,
                    all_day=event.all_day,
                    description=event.description,
                    location=event.location,
                    timezone=event.timezone,
                    recurrence_id=key,
                    recurrence_rule=event.recurrence_rule
                ))
        except TypeError as e:
            # Naive and aware datetimes mixed between DTSTART and EXDATE
            logger.warning(f"Could not expand event {event.uid}: {e}")
            return [event]

        return occurrences or [event]

    def _override_keys(self, components, calendar_tz) -> Set[Tuple[str, str]]:
        """(uid, recurrence key) of every RECURRENCE-ID override, cancelled ones included."""
        keys = set()
        for component in components:
            try:
                key = self._recurrence_key(component, calendar_tz)
            except (ValueError, KeyError, TypeError, AttributeError):
                continue
            uid = str(component.get('UID', '')).strip()
            if key and uid:
                keys.add((uid, key))
        return keys

    def _recurrence_key(self, component, calendar_tz) -> Optional[str]:
        if component.get('RECURRENCE-ID') is None:
            return None
        value = component.decoded('RECURRENCE-ID')
        all_day = isinstance(value, date) and not isinstance(value, datetime)
        return self._format_key(self._to_utc(value, calendar_tz), all_day)

    @staticmethod
    def _format_key(start_at: datetime, all_day: bool) -> str:
        if all_day:
            return start_at.strftime('%Y%m%d')
        return start_at.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')

    @staticmethod
    def _exdates(component) -> list:
        entries = component.get('EXDATE')
        if entries is None:
            return []
        if not isinstance(entries, list):
            entries = [entries]
        return [item.dt for entry in entries for item in entry.dts]

    @staticmethod
    def _align(value, local_start: datetime, calendar_tz):
        """Bring an EXDATE into the naive or aware frame of the series start."""
        if not isinstance(value, datetime):
            value = datetime.combine(value, time.min)
        if local_start.tzinfo is None:
            if value.tzinfo is not None:
                value = value.astimezone(calendar_tz or timezone.utc).replace(tzinfo=None)
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=local_start.tzinfo)
        return value

    def _resolve_end(self, component, raw_start, all_day: bool, calendar_tz) -> datetime:
        if component.get('DTEND') is not None:
            return self._to_utc(component.decoded('DTEND'), calendar_tz)
        start_at = self._to_utc(raw_start, calendar_tz)
        if component.get('DURATION') is not None:
            return start_at + component.decoded('DURATION')
        if all_day:
            return start_at + timedelta(days=1)
        return start_at

    @staticmethod
    def _to_utc(value, calendar_tz: Optional[ZoneInfo]) -> datetime:
        if not isinstance(value, datetime):
            # All-day dates are anchored at UTC midnight
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        if value.tzinfo is None:
            value = value.replace(tzinfo=calendar_tz or timezone.utc)
        return value.astimezone(timezone.utc)

    @staticmethod
    def _timezone_name(raw_start, calendar_tz: Optional[ZoneInfo]) -> Optional[str]:
        if isinstance(raw_start, datetime) and raw_start.tzinfo is not None:
            return getattr(raw_start.tzinfo, 'key', None) or str(raw_start.tzinfo)
        if calendar_tz is not None:
            return calendar_tz.key
        return None

    @staticmethod
    def _calendar_timezone(calendar) -> Optional[ZoneInfo]:
        name = calendar.get('X-WR-TIMEZONE')
        if not name:
            return None
        try:
            return ZoneInfo(str(name))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown calendar timezone {name}, using UTC")
            return None

    @staticmethod
    def _text(component, name: str) -> Optional[str]:
        value = component.get(name)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @staticmethod
    def _ical_value(component, name: str) -> Optional[str]:
        value = component.get(name)
        if value is None:
            return None
        if hasattr(value, 'to_ical'):
            raw = value.to_ical()
            return raw.decode('utf-8') if isinstance(raw, bytes) else str(raw)
        return str(value)

    @staticmethod
    def _fallback_uid(summary: str, start_at: datetime) -> str:
        composite = f"{summary}|{start_at.isoformat()}"
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()
