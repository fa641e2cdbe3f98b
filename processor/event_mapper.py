"""Applies a child's mapping rules to processed feed events."""
import logging
from typing import Iterable, Optional

from processor.models import (
    EVENT_TYPE_EVENT,
    MATCH_TYPES,
    STATUS_CONFIRMED,
    CalendarEvent,
    MappingRule,
)

logger = logging.getLogger(__name__)


class EventMapper:
    """
    Picks the first matching rule for each event.

    Rules are tried by priority (highest first), then by match type
    (event_id, title_exact, title_contains), then rules scoped to the
    event's source before child-wide ones. Inactive rules and rules scoped
    to another source never match.
    """

    def __init__(self, rules: Iterable[MappingRule] = ()):
        self.rules = sorted((rule for rule in rules if rule.active), key=self._rank)

    @staticmethod
    def _rank(rule: MappingRule):
        specificity = MATCH_TYPES.index(rule.match_type) \
            if rule.match_type in MATCH_TYPES else len(MATCH_TYPES)
        return -rule.priority, specificity, rule.source_id is None, rule.mapping_id

    def rule_for(self, event: CalendarEvent) -> Optional[MappingRule]:
        for rule in self.rules:
            if rule.source_id and rule.source_id != event.source_id:
                continue
            if rule.matches(event.uid, event.title):
                return rule
        return None

    def apply(self, event: CalendarEvent) -> CalendarEvent:
        """Set the mapping outcome fields in place; unmatched events get the defaults."""
        rule = self.rule_for(event)
        if rule is None:
            event.event_type = EVENT_TYPE_EVENT
            event.home_id = None
            event.status = STATUS_CONFIRMED
            event.mapping_id = None
            return event

        event.event_type = rule.resulting_event_type
        event.home_id = rule.home_id
        event.status = rule.resulting_status
        event.mapping_id = rule.mapping_id
        logger.debug(f"Event {event.uid} matched mapping rule {rule.mapping_id}")
        return event
