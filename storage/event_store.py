"""DynamoDB storage for the per-source calendar event sets."""
import hashlib
import json
import logging
from typing import Dict, List, Optional, Tuple

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from processor.models import EVENT_TYPE_EVENT, STATUS_CONFIRMED, CalendarEvent, ReconcilePlan
from processor.time_utils import from_iso, to_iso
from storage.thread_local import ThreadLocalDynamoDB

logger = logging.getLogger(__name__)


class EventStore:
    """Manager for the calendar events table."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the events table (HASH source_id, RANGE event_key)
            dynamodb: Optional boto3 DynamoDB resource, used by the creating thread
        """
        self.table_name = table_name
        self.dynamodb = ThreadLocalDynamoDB(dynamodb)
        logger.info(f"Initialized EventStore for table: {table_name}")

    @property
    def table(self):
        return self.dynamodb.table(self.table_name)

    @staticmethod
    def event_key(uid: str, recurrence_id: Optional[str]) -> str:
        """Range key derived from the upstream UID and recurrence id."""
        composite = json.dumps([uid, recurrence_id])
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()

    def get_events(self, source_id: str) -> Dict[Tuple[str, Optional[str]], CalendarEvent]:
        """
        Retrieve all persisted events of one source.

        Returns:
            Dictionary mapping (uid, recurrence_id) to CalendarEvent objects
        """
        events = {}
        query_kwargs = {'KeyConditionExpression': Key('source_id').eq(source_id)}

        response = self.table.query(**query_kwargs)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = self.table.query(
                ExclusiveStartKey=response['LastEvaluatedKey'],
                **query_kwargs
            )
            items.extend(response.get('Items', []))

        for item in items:
            event = self._item_to_event(item)
            if event:
                events[event.key] = event

        logger.info(f"Retrieved {len(events)} events for source {source_id}")
        return events

    def apply_plan(self, plan: ReconcilePlan) -> Dict[str, int]:
        """
        Apply a reconcile plan.

        Returns:
            Counts of created, updated and deleted events actually written
        """
        return {
            'created': self.batch_write_events(plan.to_create),
            'updated': self.batch_write_events(plan.to_update),
            'deleted': self.batch_delete_events(plan.to_delete),
        }

    def batch_write_events(self, events: List[CalendarEvent]) -> int:
        """
        Write events to DynamoDB in batches of 25 items.

        Args:
            events: List of CalendarEvent objects to write

        Returns:
            Count of successfully written events
        """
        if not events:
            return 0

        logger.info(f"Writing {len(events)} events to DynamoDB")
        success_count = 0

        for i in range(0, len(events), self.BATCH_SIZE):
            batch = events[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for event in batch:
                        writer.put_item(Item=self._event_to_item(event))
                success_count += len(batch)

            except ClientError as e:
                logger.error(
                    f"Error writing batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                # Continue processing remaining batches
                continue

        logger.info(f"Successfully wrote {success_count} events")
        return success_count

    def batch_delete_events(self, events: List[CalendarEvent]) -> int:
        """
        Delete events from DynamoDB in batches of 25 items.

        Args:
            events: List of CalendarEvent objects to delete

        Returns:
            Count of successfully deleted events
        """
        if not events:
            return 0

        logger.info(f"Deleting {len(events)} events from DynamoDB")
        success_count = 0

        for i in range(0, len(events), self.BATCH_SIZE):
            batch = events[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for event in batch:
                        writer.delete_item(Key={
                            'source_id': event.source_id,
                            'event_key': self.event_key(event.uid, event.recurrence_id)
                        })
                success_count += len(batch)

            except ClientError as e:
                logger.error(
                    f"Error deleting batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        logger.info(f"Successfully deleted {success_count} events")
        return success_count

    def _item_to_event(self, item: dict) -> Optional[CalendarEvent]:
        """
        Convert DynamoDB item to CalendarEvent object.

        Returns:
            CalendarEvent object or None if conversion fails
        """
        try:
            return CalendarEvent(
                source_id=item['source_id'],
                uid=item['uid'],
                recurrence_id=item.get('recurrence_id'),
                title=item['title'],
                start_at=from_iso(item['start_at']),
                end_at=from_iso(item['end_at']),
                all_day=bool(item.get('all_day', False)),
                content_hash=item['content_hash'],
                description=item.get('description'),
                location=item.get('location'),
                timezone=item.get('timezone'),
                recurrence_rule=item.get('recurrence_rule'),
                home_stay_candidate=bool(item.get('home_stay_candidate', False)),
                candidate_reason=item.get('candidate_reason'),
                event_type=item.get('event_type', EVENT_TYPE_EVENT),
                home_id=item.get('home_id'),
                status=item.get('status', STATUS_CONFIRMED),
                mapping_id=item.get('mapping_id')
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to CalendarEvent: {e}")
            return None

    def _event_to_item(self, event: CalendarEvent) -> dict:
        item = {
            'source_id': event.source_id,
            'event_key': self.event_key(event.uid, event.recurrence_id),
            'uid': event.uid,
            'title': event.title,
            'start_at': to_iso(event.start_at),
            'end_at': to_iso(event.end_at),
            'all_day': event.all_day,
            'content_hash': event.content_hash,
            'home_stay_candidate': event.home_stay_candidate,
            'event_type': event.event_type,
            'status': event.status,
        }

        # Add optional fields if present
        optional_fields = {
            'recurrence_id': event.recurrence_id,
            'description': event.description,
            'location': event.location,
            'timezone': event.timezone,
            'recurrence_rule': event.recurrence_rule,
            'candidate_reason': event.candidate_reason,
            'home_id': event.home_id,
            'mapping_id': event.mapping_id,
        }
        for name, value in optional_fields.items():
            if value:
                item[name] = value

        return item
