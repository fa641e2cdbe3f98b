"""Event processor for validating and normalizing parsed feed events."""
import hashlib
import logging
import re
from dataclasses import replace
from typing import Iterable, List, Optional, Tuple

from processor.errors import ParseError
from processor.event_mapper import EventMapper
from processor.models import CalendarEvent, MappingRule, ParsedEvent

logger = logging.getLogger(__name__)

# Words in a title that suggest a stay at a caregiver's home
HOME_STAY_KEYWORDS = [
    'daddy', 'dad', 'father', 'papa', 'dada',
    'mommy', 'mom', 'mother', 'mama', 'mummy', 'mum',
    'grandma', 'grandmother', 'nana', 'granny', 'oma',
    'grandpa', 'grandfather', 'gramps', 'granddad', 'opa',
    'aunt', 'auntie', 'uncle',
    'home', 'house', 'stay', 'custody',
]

_KEYWORD_PATTERN = re.compile(
    r'\b(' + '|'.join(re.escape(word) for word in HOME_STAY_KEYWORDS) + r')\b',
    re.IGNORECASE
)


class EventProcessor:
    """Processor for validating and normalizing parsed feed events."""

    MAX_TITLE_LENGTH = 200
    MAX_DESCRIPTION_LENGTH = 2000
    MAX_LOCATION_LENGTH = 500
    MAX_OCCURRENCES = 2000
    DEFAULT_TITLE = 'Untitled event'

    def process_events(
        self,
        source_id: str,
        parsed_events: List[ParsedEvent],
        mappings: Iterable[MappingRule] = ()
    ) -> List[CalendarEvent]:
        """
        Validate and normalize parsed events for one source.

        Args:
            source_id: Source the events belong to
            parsed_events: Events from the feed parser
            mappings: Mapping rules of the source's child

        Returns:
            List of CalendarEvent objects with content hashes

        Raises:
            ParseError: If the feed holds more events than the occurrence cap
        """
        if len(parsed_events) > self.MAX_OCCURRENCES:
            logger.warning(
                f"Source {source_id} has {len(parsed_events)} events, "
                f"over the cap of {self.MAX_OCCURRENCES}"
            )
            raise ParseError(code='too_many_events')

        mapper = EventMapper(mappings)
        processed_events = []
        for event in parsed_events:
            processed_event = self._process_single_event(source_id, event, mapper)
            if processed_event:
                processed_events.append(processed_event)

        logger.info(
            f"Processed {len(processed_events)} valid events out of "
            f"{len(parsed_events)} total events"
        )
        return processed_events

    def _process_single_event(
        self,
        source_id: str,
        event: ParsedEvent,
        mapper: EventMapper
    ) -> Optional[CalendarEvent]:
        if not event.uid or not event.uid.strip():
            logger.warning("Event missing required field: uid")
            return None

        if event.start_at is None:
            logger.warning(f"Event '{event.uid}' missing required field: start")
            return None

        end_at = event.end_at if event.end_at and event.end_at >= event.start_at \
            else event.start_at

        title = (event.summary or '').strip()[:self.MAX_TITLE_LENGTH] or self.DEFAULT_TITLE
        description = self._truncate(event.description, self.MAX_DESCRIPTION_LENGTH)
        location = self._truncate(event.location, self.MAX_LOCATION_LENGTH)

        is_candidate, reason = self.classify_home_stay(
            title, event.start_at, end_at, event.all_day, event.recurrence_rule
        )

        calendar_event = CalendarEvent(
            source_id=source_id,
            uid=event.uid.strip(),
            recurrence_id=event.recurrence_id,
            title=title,
            start_at=event.start_at,
            end_at=end_at,
            all_day=event.all_day,
            content_hash='',
            description=description,
            location=location,
            timezone=event.timezone,
            recurrence_rule=event.recurrence_rule,
            home_stay_candidate=is_candidate,
            candidate_reason=reason
        )
        mapper.apply(calendar_event)
        calendar_event.content_hash = self.compute_content_hash(calendar_event)
        return calendar_event

    def remap_events(
        self,
        events: Iterable[CalendarEvent],
        mappings: Iterable[MappingRule]
    ) -> List[CalendarEvent]:
        """
        Re-evaluate stored events against the current mapping rules.

        Returns:
            Copies of the events whose mapping outcome changed, with fresh hashes
        """
        mapper = EventMapper(mappings)
        changed = []
        for event in events:
            remapped = mapper.apply(replace(event))
            remapped.content_hash = self.compute_content_hash(remapped)
            if remapped.content_hash != event.content_hash:
                changed.append(remapped)
        return changed

    @staticmethod
    def _truncate(value: Optional[str], limit: int) -> Optional[str]:
        if value is None:
            return None
        return value[:limit]

    @staticmethod
    def classify_home_stay(
        title: str,
        start_at,
        end_at,
        all_day: bool,
        recurrence_rule: Optional[str]
    ) -> Tuple[bool, Optional[str]]:
        """
        Decide whether an event looks like a stay at a caregiver's home.

        Returns:
            Tuple of (is_candidate, reason) where reason is one of all_day,
            multi_day, recurring, title_match or None
        """
        if all_day:
            return True, 'all_day'
        if (end_at - start_at).total_seconds() >= 24 * 3600:
            return True, 'multi_day'
        if recurrence_rule:
            return True, 'recurring'
        if _KEYWORD_PATTERN.search(title):
            return True, 'title_match'
        return False, None

    @staticmethod
    def compute_content_hash(event: CalendarEvent) -> str:
        """
        Hash the content fields of an event.

        The key fields and candidate flags are excluded. The mapping outcome
        is included so a rule change rewrites the events it matches.

        Returns:
            SHA256 hex digest
        """
        composite = '|'.join([
            event.title,
            event.description or '',
            event.location or '',
            event.start_at.isoformat(),
            event.end_at.isoformat(),
            '1' if event.all_day else '0',
            event.timezone or '',
            event.recurrence_rule or '',
            event.event_type,
            event.home_id or '',
            event.status,
            event.mapping_id or '',
        ])
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()
