"""DynamoDB storage for per-child event mapping rules."""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from processor.errors import MappingNotFoundError, ValidationError
from processor.models import (
    EVENT_TYPE_EVENT,
    EVENT_TYPE_HOME_DAY,
    EVENT_TYPES,
    MATCH_TYPES,
    MappingRule,
)
from processor.time_utils import from_iso, to_iso, utcnow
from storage.thread_local import ThreadLocalDynamoDB

logger = logging.getLogger(__name__)

MAX_MATCH_VALUE_LENGTH = 200


class MappingStore:
    """Manager for the event mappings table (HASH child_id, RANGE mapping_id)."""

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the mappings table
            dynamodb: Optional boto3 DynamoDB resource, used by the creating thread
        """
        self.table_name = table_name
        self.dynamodb = ThreadLocalDynamoDB(dynamodb)
        logger.info(f"Initialized MappingStore for table: {table_name}")

    @property
    def table(self):
        return self.dynamodb.table(self.table_name)

    def create_mapping(
        self,
        child_id: str,
        match_type: str,
        match_value: str,
        resulting_event_type: str = EVENT_TYPE_EVENT,
        home_id: Optional[str] = None,
        auto_confirm: bool = False,
        source_id: Optional[str] = None,
        priority: int = 0,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> MappingRule:
        """
        Store a new active mapping rule for a child.

        Args:
            child_id: Child whose events the rule applies to
            match_type: event_id, title_exact or title_contains
            match_value: UID or title text to match
            resulting_event_type: event or home_day
            home_id: Home the matched days belong to; required for home_day
            auto_confirm: Confirm matched home days instead of proposing them
            source_id: Limit the rule to one source; None for all of the child's sources
            priority: Higher priorities are tried first
            created_by: User creating the rule
            now: Creation time

        Raises:
            ValidationError: If the rule is malformed
        """
        try:
            priority = int(priority or 0)
        except (TypeError, ValueError):
            raise ValidationError('priority must be an integer', code='invalid_mapping')

        rule = MappingRule(
            mapping_id=uuid.uuid4().hex,
            child_id=child_id,
            match_type=match_type,
            match_value=(match_value or '').strip(),
            resulting_event_type=resulting_event_type,
            home_id=home_id or None,
            auto_confirm=bool(auto_confirm),
            source_id=source_id or None,
            priority=priority,
            active=True,
            created_by=created_by,
            created_at=now or utcnow()
        )
        self.validate(rule)

        self.table.put_item(Item=self._rule_to_item(rule))
        logger.info(
            f"Created mapping rule {rule.mapping_id} for child {child_id}",
            extra={'mapping_id': rule.mapping_id, 'match_type': match_type}
        )
        return rule

    @staticmethod
    def validate(rule: MappingRule) -> None:
        """
        Raises:
            ValidationError: For an unknown match or event type, an empty or
                overlong match value, or a home_day rule without a home
        """
        if rule.match_type not in MATCH_TYPES:
            raise ValidationError(
                f"match_type must be one of {', '.join(MATCH_TYPES)}", code='invalid_mapping'
            )
        if not rule.match_value:
            raise ValidationError('match_value is required', code='invalid_mapping')
        if len(rule.match_value) > MAX_MATCH_VALUE_LENGTH:
            raise ValidationError('match_value is too long', code='invalid_mapping')
        if rule.resulting_event_type not in EVENT_TYPES:
            raise ValidationError(
                f"resulting_event_type must be one of {', '.join(EVENT_TYPES)}",
                code='invalid_mapping'
            )
        if rule.resulting_event_type == EVENT_TYPE_HOME_DAY and not rule.home_id:
            raise ValidationError('home_id is required for home_day rules', code='invalid_mapping')

    def get_mapping(self, child_id: str, mapping_id: str) -> MappingRule:
        """
        Raises:
            MappingNotFoundError: If the rule does not exist
        """
        response = self.table.get_item(
            Key={'child_id': child_id, 'mapping_id': mapping_id}, ConsistentRead=True
        )
        item = response.get('Item')
        if not item:
            raise MappingNotFoundError()
        return self._item_to_rule(item)

    def list_mappings(self, child_id: str, include_inactive: bool = False) -> List[MappingRule]:
        """Rules of a child, most recently created first."""
        query_kwargs = {'KeyConditionExpression': Key('child_id').eq(child_id)}
        response = self.table.query(**query_kwargs)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = self.table.query(
                ExclusiveStartKey=response['LastEvaluatedKey'], **query_kwargs
            )
            items.extend(response.get('Items', []))

        rules = [self._item_to_rule(item) for item in items]
        if not include_inactive:
            rules = [rule for rule in rules if rule.active]
        return sorted(rules, key=lambda rule: to_iso(rule.created_at) or '', reverse=True)

    def rules_for_source(self, child_id: str, source_id: str) -> List[MappingRule]:
        """Active rules that can apply to one of the child's sources."""
        return [
            rule for rule in self.list_mappings(child_id)
            if rule.source_id in (None, source_id)
        ]

    def deactivate_mapping(self, child_id: str, mapping_id: str) -> MappingRule:
        """
        Soft-delete a rule; events it matched revert on the next remap.

        Raises:
            MappingNotFoundError: If the rule does not exist
        """
        try:
            self.table.update_item(
                Key={'child_id': child_id, 'mapping_id': mapping_id},
                UpdateExpression='SET #active = :inactive',
                ConditionExpression='attribute_exists(mapping_id)',
                ExpressionAttributeNames={'#active': 'active'},
                ExpressionAttributeValues={':inactive': False}
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise MappingNotFoundError()
            raise

        logger.info(f"Deactivated mapping rule {mapping_id} for child {child_id}")
        return self.get_mapping(child_id, mapping_id)

    @staticmethod
    def _rule_to_item(rule: MappingRule) -> dict:
        item = {
            'child_id': rule.child_id,
            'mapping_id': rule.mapping_id,
            'match_type': rule.match_type,
            'match_value': rule.match_value,
            'resulting_event_type': rule.resulting_event_type,
            'auto_confirm': rule.auto_confirm,
            'priority': rule.priority,
            'active': rule.active,
            'created_at': to_iso(rule.created_at),
        }
        optional_fields = {
            'home_id': rule.home_id,
            'source_id': rule.source_id,
            'created_by': rule.created_by,
        }
        for name, value in optional_fields.items():
            if value:
                item[name] = value
        return item

    @staticmethod
    def _item_to_rule(item: dict) -> MappingRule:
        return MappingRule(
            mapping_id=item['mapping_id'],
            child_id=item['child_id'],
            match_type=item['match_type'],
            match_value=item['match_value'],
            resulting_event_type=item.get('resulting_event_type', EVENT_TYPE_EVENT),
            home_id=item.get('home_id'),
            auto_confirm=bool(item.get('auto_confirm', False)),
            source_id=item.get('source_id'),
            priority=int(item.get('priority', 0)),
            active=bool(item.get('active', False)),
            created_by=item.get('created_by'),
            created_at=from_iso(item.get('created_at'))
        )
