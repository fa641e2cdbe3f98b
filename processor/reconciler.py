"""Set-diff of freshly parsed events against persisted events."""
import logging
from typing import Dict, Iterable, Optional, Tuple

from processor.models import CalendarEvent, ReconcilePlan

logger = logging.getLogger(__name__)

EventKey = Tuple[str, Optional[str]]


class Reconciler:
    """Computes the create/update/delete operations for one source."""

    def reconcile(
        self,
        source_id: str,
        parsed_events: Iterable[CalendarEvent],
        persisted_events: Iterable[CalendarEvent]
    ) -> ReconcilePlan:
        """
        Diff parsed events against persisted events, keyed by
        (UID, recurrence id).

        An empty parsed set is a legitimate empty feed and deletes every
        persisted event; callers must only pass a parsed set from a fetch and
        parse that actually succeeded.

        Args:
            source_id: Source both sets belong to
            parsed_events: Events from the newest feed
            persisted_events: Events currently stored for the source

        Returns:
            ReconcilePlan; unchanged events appear in no list
        """
        parsed = self._index(source_id, parsed_events, 'parsed')
        persisted = self._index(source_id, persisted_events, 'persisted')

        plan = ReconcilePlan()
        for key, event in parsed.items():
            existing = persisted.get(key)
            if existing is None:
                plan.to_create.append(event)
            elif existing.content_hash != event.content_hash:
                plan.to_update.append(event)

        plan.to_delete = [
            event for key, event in persisted.items()
            if key not in parsed
        ]

        logger.info(
            f"Reconcile plan for source {source_id}: {len(plan.to_create)} to create, "
            f"{len(plan.to_update)} to update, {len(plan.to_delete)} to delete"
        )
        return plan

    @staticmethod
    def _index(
        source_id: str,
        events: Iterable[CalendarEvent],
        label: str
    ) -> Dict[EventKey, CalendarEvent]:
        indexed = {}
        for event in events:
            if event.source_id != source_id:
                raise ValueError(
                    f"{label} event {event.uid} belongs to source {event.source_id}, "
                    f"not {source_id}"
                )
            if event.key in indexed:
                # Last occurrence wins
                logger.warning(f"Duplicate {label} event key {event.key} for source {source_id}")
            indexed[event.key] = event
        return indexed
