"""Lifecycle of calendar sources and their feed credentials in DynamoDB."""
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.errors import (
    ConcurrentSyncError,
    ConfigurationError,
    DuplicateSourceError,
    SourceInactiveError,
    SourceNotFoundError,
)
from processor.models import (
    DEFAULT_REFRESH_MINUTES,
    PROVIDER_ICS,
    CalendarSource,
    FeedCredential,
)
from processor.time_utils import from_iso, to_iso, utcnow
from security.credential_vault import CredentialVault
from storage.thread_local import ThreadLocalDynamoDB

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = 'iCloud Calendar'
SYNC_STATUS_OK = 'ok'
SYNC_STATUS_ERROR = 'error'


class SourceRegistry:
    """Manager for the calendar source and feed credential tables."""

    def __init__(
        self,
        sources_table_name: str,
        credentials_table_name: str,
        vault: Optional[CredentialVault] = None,
        dynamodb=None,
        default_refresh_minutes: int = DEFAULT_REFRESH_MINUTES
    ):
        """
        Initialize DynamoDB table references.

        Args:
            sources_table_name: Table keyed by source_id holding CalendarSource
            credentials_table_name: Table keyed by source_id holding FeedCredential
            vault: Credential vault; required to register or replace feeds
            dynamodb: Optional boto3 DynamoDB resource, used by the creating thread
            default_refresh_minutes: Cadence for new sources
        """
        self.vault = vault
        self.sources_table_name = sources_table_name
        self.credentials_table_name = credentials_table_name
        self.dynamodb = ThreadLocalDynamoDB(dynamodb)
        self.default_refresh_minutes = default_refresh_minutes
        logger.info(
            f"Initialized SourceRegistry for tables: {sources_table_name}, "
            f"{credentials_table_name}"
        )

    @property
    def sources(self):
        return self.dynamodb.table(self.sources_table_name)

    @property
    def credentials(self):
        return self.dynamodb.table(self.credentials_table_name)

    def register_source(
        self,
        user_id: str,
        child_id: str,
        raw_url: str,
        display_name: Optional[str] = None,
        provider: str = PROVIDER_ICS,
        refresh_interval_minutes: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> CalendarSource:
        """
        Register a new feed for a child.

        Args:
            user_id: Owner of the source
            child_id: Child profile the feed is attached to
            raw_url: Feed URL as entered by the user
            display_name: Label for the source
            provider: Provider tag
            refresh_interval_minutes: Batch cadence (default 30)
            now: Registration time

        Returns:
            The created CalendarSource, immediately due for sync

        Raises:
            ValidationError: If the URL is malformed
            DuplicateSourceError: If the child already has this feed active
            ConfigurationError: If no encryption key is configured
        """
        vault = self._require_vault()
        now = now or utcnow()

        vault.validate(raw_url)
        normalized_url = vault.normalize(raw_url)
        url_hash = vault.hash(normalized_url)

        if self._find_active_duplicate(child_id, url_hash):
            logger.info(f"Rejected duplicate feed registration for child {child_id}")
            raise DuplicateSourceError()

        encrypted_url = vault.encrypt(normalized_url)

        source = CalendarSource(
            source_id=uuid.uuid4().hex,
            user_id=user_id,
            child_id=child_id,
            provider=provider,
            display_name=(display_name or '').strip() or DEFAULT_DISPLAY_NAME,
            active=True,
            created_at=now
        )
        credential = FeedCredential(
            source_id=source.source_id,
            encrypted_url=encrypted_url,
            url_hash=url_hash,
            next_run_at=now,
            refresh_interval_minutes=refresh_interval_minutes or self.default_refresh_minutes
        )

        self.sources.put_item(Item=self._source_to_item(source))
        try:
            self.credentials.put_item(Item=self._credential_to_item(credential))
        except ClientError as e:
            logger.error(f"Failed to store credential for source {source.source_id}: {e}")
            # Roll back the source record
            self.sources.delete_item(Key={'source_id': source.source_id})
            raise

        logger.info(
            f"Registered source {source.source_id} for child {child_id}",
            extra={'source_id': source.source_id, 'masked_url': vault.mask(normalized_url)}
        )
        return source

    def deactivate_source(self, source_id: str, now: Optional[datetime] = None) -> CalendarSource:
        """
        Deactivate a source. Historical events are kept.

        Raises:
            SourceNotFoundError: If the source does not exist
        """
        now = now or utcnow()
        source = self.get_source(source_id)

        self.sources.update_item(
            Key={'source_id': source_id},
            UpdateExpression='SET #active = :inactive',
            ExpressionAttributeNames={'#active': 'active'},
            ExpressionAttributeValues={':inactive': False}
        )
        self.credentials.update_item(
            Key={'source_id': source_id},
            UpdateExpression='SET revoked_at = :now',
            ExpressionAttributeValues={':now': to_iso(now)}
        )

        source.active = False
        logger.info(f"Deactivated source {source_id}")
        return source

    def replace_credential(
        self,
        source_id: str,
        raw_url: str,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None
    ) -> Tuple[CalendarSource, str]:
        """
        Replace the feed URL of an active source.

        Validators are reset so the next run does a full fetch; events are
        preserved and reconciled against the new feed.

        Returns:
            Tuple of (source, masked_url)

        Raises:
            ValidationError, DuplicateSourceError, SourceNotFoundError,
            SourceInactiveError, ConfigurationError
        """
        vault = self._require_vault()
        now = now or utcnow()
        source = self.get_source(source_id, user_id=user_id)
        if not source.active:
            raise SourceInactiveError()

        vault.validate(raw_url)
        normalized_url = vault.normalize(raw_url)
        url_hash = vault.hash(normalized_url)

        if self._find_active_duplicate(source.child_id, url_hash, exclude_source_id=source_id):
            raise DuplicateSourceError()

        self.credentials.update_item(
            Key={'source_id': source_id},
            UpdateExpression=(
                'SET encrypted_url = :encrypted, url_hash = :hash, next_run_at = :now '
                'REMOVE etag, last_modified'
            ),
            ExpressionAttributeValues={
                ':encrypted': vault.encrypt(normalized_url),
                ':hash': url_hash,
                ':now': to_iso(now),
            }
        )
        self.sources.update_item(
            Key={'source_id': source_id},
            UpdateExpression='SET consecutive_rejections = :zero REMOVE last_sync_error',
            ExpressionAttributeValues={':zero': 0}
        )

        source.consecutive_rejections = 0
        source.last_sync_error = None
        logger.info(f"Replaced credential for source {source_id}")
        return source, vault.mask(normalized_url)

    def get_source(self, source_id: str, user_id: Optional[str] = None) -> CalendarSource:
        """
        Load a source, optionally checking ownership.

        Raises:
            SourceNotFoundError: If missing or owned by another user
        """
        response = self.sources.get_item(Key={'source_id': source_id}, ConsistentRead=True)
        item = response.get('Item')
        if not item or (user_id is not None and item.get('user_id') != user_id):
            raise SourceNotFoundError()
        return self._item_to_source(item)

    def get_credential(self, source_id: str) -> FeedCredential:
        response = self.credentials.get_item(Key={'source_id': source_id}, ConsistentRead=True)
        item = response.get('Item')
        if not item:
            raise SourceNotFoundError()
        return self._item_to_credential(item)

    def list_sources(self, user_id: str, include_inactive: bool = False) -> List[CalendarSource]:
        """Sources owned by a user, most recently created first."""
        filter_expression = Attr('user_id').eq(user_id)
        if not include_inactive:
            filter_expression = filter_expression & Attr('active').eq(True)

        items = self._scan(self.sources, filter_expression)
        sources = [self._item_to_source(item) for item in items]
        return sorted(sources, key=lambda source: source.created_at, reverse=True)

    def due_sources(
        self,
        now: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Tuple[CalendarSource, FeedCredential]]:
        """
        Active sources whose next run is due, most overdue first.

        Args:
            now: Reference time
            limit: Maximum number of sources to return

        Returns:
            List of (source, credential) tuples ordered by next_run_at
        """
        now = now or utcnow()
        items = self._scan(
            self.credentials,
            Attr('next_run_at').lte(to_iso(now)) & Attr('revoked_at').not_exists()
        )
        credentials = sorted(
            (self._item_to_credential(item) for item in items),
            key=lambda credential: credential.next_run_at
        )

        due = []
        for credential in credentials:
            if limit is not None and len(due) >= limit:
                break
            try:
                source = self.get_source(credential.source_id)
            except SourceNotFoundError:
                logger.warning(f"Credential without source: {credential.source_id}")
                continue
            if source.active:
                due.append((source, credential))

        logger.info(f"Found {len(due)} sources due for sync")
        return due

    def record_sync_outcome(
        self,
        source_id: str,
        new_etag: Optional[str] = None,
        new_last_modified: Optional[str] = None,
        now: Optional[datetime] = None,
        expected_last_synced_at: Optional[datetime] = None,
        status: str = SYNC_STATUS_OK,
        error: Optional[str] = None,
        consecutive_rejections: int = 0
    ) -> datetime:
        """
        Persist the result of a sync attempt and advance the schedule.

        Validators are only overwritten when new ones are supplied. The write
        is conditional on last_synced_at still holding the value the run
        started from; a run that lost the race gets ConcurrentSyncError.

        Returns:
            The new next_run_at

        Raises:
            ConcurrentSyncError: If another run recorded an outcome first
            SourceNotFoundError: If the source has no credential
        """
        now = now or utcnow()
        credential = self.get_credential(source_id)
        next_run_at = now + timedelta(minutes=credential.refresh_interval_minutes)

        if expected_last_synced_at is None:
            condition = Attr('last_synced_at').not_exists()
        else:
            condition = Attr('last_synced_at').eq(to_iso(expected_last_synced_at))

        source_update = 'SET last_synced_at = :now, last_sync_status = :status, ' \
                        'consecutive_rejections = :rejections'
        source_values = {
            ':now': to_iso(now),
            ':status': status,
            ':rejections': consecutive_rejections,
        }
        if error:
            source_update += ', last_sync_error = :error'
            source_values[':error'] = error
        else:
            source_update += ' REMOVE last_sync_error'

        try:
            self.sources.update_item(
                Key={'source_id': source_id},
                UpdateExpression=source_update,
                ConditionExpression=condition,
                ExpressionAttributeValues=source_values
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                logger.warning(f"Source {source_id} was synced by another run; aborting")
                raise ConcurrentSyncError()
            raise

        credential_update = 'SET next_run_at = :next_run'
        credential_values = {':next_run': to_iso(next_run_at)}
        if new_etag:
            credential_update += ', etag = :etag'
            credential_values[':etag'] = new_etag
        if new_last_modified:
            credential_update += ', last_modified = :last_modified'
            credential_values[':last_modified'] = new_last_modified

        self.credentials.update_item(
            Key={'source_id': source_id},
            UpdateExpression=credential_update,
            ExpressionAttributeValues=credential_values
        )

        logger.info(
            f"Recorded {status} outcome for source {source_id}",
            extra={'source_id': source_id, 'next_run_at': to_iso(next_run_at)}
        )
        return next_run_at

    def _require_vault(self) -> CredentialVault:
        if self.vault is None:
            raise ConfigurationError('Credential vault is not configured')
        return self.vault

    def _find_active_duplicate(
        self,
        child_id: str,
        url_hash: str,
        exclude_source_id: Optional[str] = None
    ) -> bool:
        for item in self._scan(self.credentials, Attr('url_hash').eq(url_hash)):
            if item['source_id'] == exclude_source_id:
                continue
            try:
                source = self.get_source(item['source_id'])
            except SourceNotFoundError:
                continue
            if source.child_id == child_id and source.active:
                return True
        return False

    @staticmethod
    def _scan(table, filter_expression) -> List[dict]:
        response = table.scan(FilterExpression=filter_expression)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = table.scan(
                FilterExpression=filter_expression,
                ExclusiveStartKey=response['LastEvaluatedKey']
            )
            items.extend(response.get('Items', []))
        return items

    @staticmethod
    def _source_to_item(source: CalendarSource) -> dict:
        item = {
            'source_id': source.source_id,
            'user_id': source.user_id,
            'child_id': source.child_id,
            'provider': source.provider,
            'display_name': source.display_name,
            'active': source.active,
            'created_at': to_iso(source.created_at),
            'consecutive_rejections': source.consecutive_rejections,
        }
        if source.last_synced_at:
            item['last_synced_at'] = to_iso(source.last_synced_at)
        if source.last_sync_status:
            item['last_sync_status'] = source.last_sync_status
        if source.last_sync_error:
            item['last_sync_error'] = source.last_sync_error
        return item

    @staticmethod
    def _item_to_source(item: dict) -> CalendarSource:
        return CalendarSource(
            source_id=item['source_id'],
            user_id=item['user_id'],
            child_id=item['child_id'],
            provider=item.get('provider', PROVIDER_ICS),
            display_name=item['display_name'],
            active=bool(item.get('active', False)),
            created_at=from_iso(item['created_at']),
            last_synced_at=from_iso(item.get('last_synced_at')),
            last_sync_status=item.get('last_sync_status'),
            last_sync_error=item.get('last_sync_error'),
            consecutive_rejections=int(item.get('consecutive_rejections', 0))
        )

    @staticmethod
    def _credential_to_item(credential: FeedCredential) -> dict:
        item = {
            'source_id': credential.source_id,
            'encrypted_url': credential.encrypted_url,
            'url_hash': credential.url_hash,
            'next_run_at': to_iso(credential.next_run_at),
            'refresh_interval_minutes': credential.refresh_interval_minutes,
        }
        if credential.etag:
            item['etag'] = credential.etag
        if credential.last_modified:
            item['last_modified'] = credential.last_modified
        if credential.revoked_at:
            item['revoked_at'] = to_iso(credential.revoked_at)
        return item

    @staticmethod
    def _item_to_credential(item: dict) -> FeedCredential:
        return FeedCredential(
            source_id=item['source_id'],
            encrypted_url=item['encrypted_url'],
            url_hash=item['url_hash'],
            next_run_at=from_iso(item['next_run_at']),
            refresh_interval_minutes=int(item.get('refresh_interval_minutes', DEFAULT_REFRESH_MINUTES)),
            etag=item.get('etag'),
            last_modified=item.get('last_modified'),
            revoked_at=from_iso(item.get('revoked_at'))
        )
