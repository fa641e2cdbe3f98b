"""Drives feed synchronization for single sources and batch sweeps."""
import logging
from collections import deque
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from fetcher.providers import FeedProvider
from processor.errors import (
    ERROR_MESSAGES,
    CalendarSyncError,
    ConcurrentSyncError,
    SourceInactiveError,
    TransportError,
    UnsupportedProviderError,
)
from processor.event_processor import EventProcessor
from processor.models import (
    FETCH_ERROR,
    FETCH_NOT_MODIFIED,
    BatchSyncResult,
    CalendarSource,
    FeedCredential,
    MappingRule,
    SyncError,
    SyncResult,
)
from processor.reconciler import Reconciler
from processor.time_utils import utcnow
from security.credential_vault import CredentialVault
from storage.event_store import EventStore
from storage.mapping_store import MappingStore
from storage.source_registry import SYNC_STATUS_ERROR, SYNC_STATUS_OK, SourceRegistry
from sync.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Upstream responses that mean the feed itself is rejected, not just unavailable
REJECTION_CODES = ('expired', 'auth_required')
MAX_CONSECUTIVE_REJECTIONS = 3


class SyncOrchestrator:
    """
    Runs the fetch, parse, reconcile and persist pipeline.

    Per source: Idle -> Fetching -> (NotModified | Parsing -> Reconciling ->
    Persisting) -> Idle, with any failure ending the run in Idle with an
    error recorded in the result.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        event_store: EventStore,
        vault: CredentialVault,
        providers: Dict[str, FeedProvider],
        processor: Optional[EventProcessor] = None,
        reconciler: Optional[Reconciler] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_workers: int = 4,
        mapping_store: Optional[MappingStore] = None
    ):
        self.registry = registry
        self.event_store = event_store
        self.vault = vault
        self.providers = providers
        self.processor = processor or EventProcessor()
        self.reconciler = reconciler or Reconciler()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_workers = max(1, max_workers)
        self.mapping_store = mapping_store

    def sync_manual(
        self,
        source_id: str,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None
    ) -> SyncResult:
        """
        User-triggered sync of one source.

        Raises:
            SourceNotFoundError: If the source does not exist or is not owned
            SourceInactiveError: If the source was disconnected
            RateLimitedError: If the last sync was less than 5 minutes ago
        """
        now = now or utcnow()
        source = self.registry.get_source(source_id, user_id=user_id)
        if not source.active:
            raise SourceInactiveError()

        self.rate_limiter.check(source.last_synced_at, now)
        credential = self.registry.get_credential(source_id)
        return self.sync_one(source, credential, now=now)

    def sync_one(
        self,
        source: CalendarSource,
        credential: FeedCredential,
        now: Optional[datetime] = None
    ) -> SyncResult:
        """
        Sync one source end to end.

        Failures are caught and returned in the result's error list. The
        outcome is recorded at the source's normal cadence either way, except
        when another run already completed a sync of the same source.

        Args:
            source: Source as loaded at the start of the run
            credential: Feed credential of the source
            now: Run time

        Returns:
            SyncResult with counts and errors
        """
        now = now or utcnow()
        result = SyncResult()
        new_etag = None
        new_last_modified = None

        logger.info(
            f"Starting sync for source {source.source_id}",
            extra={'source_id': source.source_id, 'provider': source.provider}
        )

        try:
            provider = self._provider_for(source)
            url = self.vault.decrypt(credential.encrypted_url)

            fetch_result = provider.fetch(url, credential.etag, credential.last_modified)
            if fetch_result.status == FETCH_ERROR:
                raise TransportError(code=fetch_result.error_code or 'unknown')

            if fetch_result.status == FETCH_NOT_MODIFIED:
                result.not_modified = True
            else:
                parsed_events = provider.parse(fetch_result.body, now)
                result.candidates_found = len(parsed_events)

                events = self.processor.process_events(
                    source.source_id, parsed_events, self._mapping_rules(source)
                )
                persisted = self.event_store.get_events(source.source_id)
                plan = self.reconciler.reconcile(
                    source.source_id, events, persisted.values()
                )

                self._ensure_not_superseded(source)
                counts = self.event_store.apply_plan(plan)
                result.created = counts['created']
                result.updated = counts['updated']
                result.deleted = counts['deleted']

                if (result.created, result.updated, result.deleted) != (
                        len(plan.to_create), len(plan.to_update), len(plan.to_delete)):
                    result.errors.append(self._error('partial_write'))

            # Only keep validators whose content was fully applied
            if result.success:
                new_etag = fetch_result.etag
                new_last_modified = fetch_result.last_modified

        except CalendarSyncError as e:
            logger.warning(
                f"Sync failed for source {source.source_id}: {e.code}",
                extra={'source_id': source.source_id, 'error_code': e.code}
            )
            result.errors.append(SyncError(code=e.code, message=e.message))
        except Exception as e:
            logger.error(
                f"Unexpected error syncing source {source.source_id}: {str(e)}",
                extra={'source_id': source.source_id, 'error_type': type(e).__name__},
                exc_info=True
            )
            result.errors.append(self._error('unknown'))

        if any(error.code == ConcurrentSyncError.code for error in result.errors):
            return result

        self._record_outcome(source, result, now, new_etag, new_last_modified)

        logger.info(
            f"Sync complete for source {source.source_id}: {result.created} created, "
            f"{result.updated} updated, {result.deleted} deleted",
            extra={
                'source_id': source.source_id,
                'not_modified': result.not_modified,
                'candidates_found': result.candidates_found,
                'errors': [error.code for error in result.errors],
            }
        )
        return result

    def sync_due(
        self,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
        time_remaining: Optional[Callable[[], float]] = None,
        margin_seconds: float = 10
    ) -> BatchSyncResult:
        """
        Sync every due source, most overdue first, on a bounded worker pool.

        A failing source is recorded and does not abort the sweep. When
        time_remaining reports less than margin_seconds, no further sources
        are started and the rest are counted as skipped.

        Args:
            now: Sweep time
            limit: Maximum number of sources for this sweep
            time_remaining: Callable returning seconds left in the run budget
            margin_seconds: Budget kept in reserve for in-flight sources

        Returns:
            BatchSyncResult
        """
        now = now or utcnow()
        batch = BatchSyncResult()
        pending = deque(self.registry.due_sources(now, limit=limit))
        logger.info(f"Batch sync starting with {len(pending)} due sources")

        in_flight = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            while pending or in_flight:
                while pending and len(in_flight) < self.max_workers:
                    if time_remaining is not None and time_remaining() < margin_seconds:
                        batch.skipped_count = len(pending)
                        logger.warning(
                            f"Run budget nearly exhausted; skipping {len(pending)} sources"
                        )
                        pending.clear()
                        break
                    source, credential = pending.popleft()
                    future = executor.submit(self.sync_one, source, credential, now)
                    in_flight[future] = source

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    source = in_flight.pop(future)
                    self._collect(batch, source, future)

        logger.info(
            f"Batch sync finished: {batch.synced_count} synced, "
            f"{len(batch.errors)} failed, {batch.skipped_count} skipped"
        )
        return batch

    def _collect(self, batch: BatchSyncResult, source: CalendarSource, future) -> None:
        try:
            result = future.result()
        except Exception as e:
            logger.error(
                f"Error syncing source {source.source_id}: {str(e)}",
                extra={'source_id': source.source_id, 'error_type': type(e).__name__},
                exc_info=True
            )
            batch.errors.append(f"Source {source.display_name}: Sync failed")
            return

        if result.success:
            batch.synced_count += 1
        else:
            messages = ', '.join(error.message for error in result.errors)
            batch.errors.append(f"Source {source.display_name}: {messages}")

    def reapply_mappings(self, child_id: str, sources: Iterable[CalendarSource]) -> int:
        """
        Re-evaluate stored events of a child's sources against its current rules.

        Called after a rule is created or removed, since an unchanged feed is
        not re-processed until its content changes.

        Returns:
            Number of events rewritten
        """
        updated = 0
        for source in sources:
            if source.child_id != child_id:
                continue
            stored = self.event_store.get_events(source.source_id)
            changed = self.processor.remap_events(stored.values(), self._mapping_rules(source))
            updated += self.event_store.batch_write_events(changed)

        logger.info(f"Reapplied mapping rules for child {child_id}: {updated} events updated")
        return updated

    def _mapping_rules(self, source: CalendarSource) -> List[MappingRule]:
        if self.mapping_store is None:
            return []
        return self.mapping_store.rules_for_source(source.child_id, source.source_id)

    def _provider_for(self, source: CalendarSource) -> FeedProvider:
        provider = self.providers.get(source.provider)
        if provider is None:
            raise UnsupportedProviderError()
        return provider

    def _ensure_not_superseded(self, source: CalendarSource) -> None:
        """Abort before writing events if another run finished this source."""
        current = self.registry.get_source(source.source_id)
        if current.last_synced_at != source.last_synced_at:
            raise ConcurrentSyncError()
        if not current.active:
            raise SourceInactiveError()

    def _record_outcome(
        self,
        source: CalendarSource,
        result: SyncResult,
        now: datetime,
        new_etag: Optional[str],
        new_last_modified: Optional[str]
    ) -> None:
        rejected = any(error.code in REJECTION_CODES for error in result.errors)
        rejections = source.consecutive_rejections + 1 if rejected else 0

        try:
            self.registry.record_sync_outcome(
                source.source_id,
                new_etag=new_etag,
                new_last_modified=new_last_modified,
                now=now,
                expected_last_synced_at=source.last_synced_at,
                status=SYNC_STATUS_OK if result.success else SYNC_STATUS_ERROR,
                error=result.errors[0].message if result.errors else None,
                consecutive_rejections=rejections
            )
        except CalendarSyncError as e:
            result.errors.append(SyncError(code=e.code, message=e.message))
            return

        if rejections >= MAX_CONSECUTIVE_REJECTIONS:
            logger.warning(
                f"Source {source.source_id} rejected {rejections} times in a row; deactivating"
            )
            self.registry.deactivate_source(source.source_id, now=now)
            result.errors.append(self._error('source_deactivated'))

    @staticmethod
    def _error(code: str) -> SyncError:
        return SyncError(code=code, message=ERROR_MESSAGES[code])
