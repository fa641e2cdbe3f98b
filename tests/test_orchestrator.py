"""Tests for SyncOrchestrator against mocked DynamoDB and HTTP."""
from datetime import timedelta
from unittest.mock import patch

import pytest
import responses

from conftest import FEED_URL, OTHER_ENCRYPTION_KEY, T0, build_ics, build_vevent
from fetcher.providers import build_providers
from processor.errors import RateLimitedError, SourceInactiveError
from security.credential_vault import CredentialVault
from sync.orchestrator import SyncOrchestrator

BROKEN_URL = 'https://calendar.example.com/feeds/gone.ics'


@pytest.fixture
def orchestrator(registry, event_store, vault):
    return SyncOrchestrator(
        registry, event_store, vault, build_providers(timeout=5), max_workers=1
    )


def snapshot(registry, source_id):
    """Reload a source and its credential the way a new run sees them."""
    return registry.get_source(source_id), registry.get_credential(source_id)


def three_events():
    return build_ics(
        build_vevent(uid='A', summary='Pickup'),
        build_vevent(uid='B', summary='Swim class'),
        build_vevent(uid='C', summary='Dentist'),
    )


def error_codes(result):
    return [error.code for error in result.errors]


class TestSyncOne:
    """Test cases for syncing a single source."""

    @responses.activate
    def test_first_sync_then_changes(self, orchestrator, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, 'School', now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)

        first = orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        assert first.success
        assert (first.created, first.updated, first.deleted) == (3, 0, 0)
        assert first.candidates_found == 3

        responses.replace(responses.GET, FEED_URL, body=build_ics(
            build_vevent(uid='A', summary='Pickup'),
            build_vevent(uid='B', summary='Swim class', location='Leisure centre'),
            build_vevent(uid='D', summary='Football'),
        ), status=200)

        second = orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )

        assert second.success
        assert (second.created, second.updated, second.deleted) == (1, 1, 1)
        stored = event_store.get_events(source.source_id)
        assert sorted(uid for uid, _ in stored) == ['A', 'B', 'D']
        assert stored[('B', None)].location == 'Leisure centre'

        refreshed = registry.get_source(source.source_id)
        assert refreshed.last_synced_at == T0 + timedelta(minutes=30)
        assert refreshed.last_sync_status == 'ok'

    @responses.activate
    def test_unchanged_feed_is_not_modified(self, orchestrator, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)

        def feed_callback(request):
            if request.headers.get('If-None-Match') == '"v1"':
                return 304, {}, ''
            return 200, {'ETag': '"v1"'}, three_events()

        responses.add_callback(responses.GET, FEED_URL, callback=feed_callback)

        orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)
        second = orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )

        assert second.success
        assert second.not_modified is True
        assert (second.created, second.updated, second.deleted) == (0, 0, 0)
        assert len(event_store.get_events(source.source_id)) == 3
        assert registry.get_credential(source.source_id).next_run_at == \
            T0 + timedelta(minutes=60)

    @responses.activate
    def test_same_content_without_validators_changes_nothing(self, orchestrator, registry):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)

        orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)
        second = orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )

        assert second.success
        assert second.not_modified is False
        assert (second.created, second.updated, second.deleted) == (0, 0, 0)

    @responses.activate
    def test_empty_feed_deletes_all(self, orchestrator, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)
        orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        responses.replace(responses.GET, FEED_URL, body=build_ics(), status=200)
        result = orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )

        assert result.success
        assert result.deleted == 3
        assert event_store.get_events(source.source_id) == {}

    @responses.activate
    def test_unparseable_feed_keeps_events(self, orchestrator, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200,
                      headers={'ETag': '"v1"'})
        orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        responses.replace(responses.GET, FEED_URL, body='<html>Sign in</html>', status=200,
                          headers={'ETag': '"v2"'})
        result = orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )

        assert error_codes(result) == ['invalid_format']
        assert len(event_store.get_events(source.source_id)) == 3
        assert registry.get_credential(source.source_id).etag == '"v1"'
        assert registry.get_source(source.source_id).last_sync_status == 'error'

    @responses.activate
    def test_feed_of_broken_events_keeps_events(self, orchestrator, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=build_ics(
            build_vevent(uid='1', summary='Pickup'),
            build_vevent(uid='2', summary='Swim class'),
        ), status=200)
        orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        responses.replace(responses.GET, FEED_URL, body=build_ics(
            build_vevent(uid='1', summary='Pickup', start=None, end=None),
            build_vevent(uid='2', summary='Swim class', start=None, end=None),
        ), status=200)
        result = orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )

        assert error_codes(result) == ['invalid_format']
        assert result.deleted == 0
        assert sorted(uid for uid, _ in event_store.get_events(source.source_id)) == ['1', '2']

    @responses.activate
    def test_recurring_event_stored_per_occurrence(self, orchestrator, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=build_ics(
            build_vevent(uid='weekly', summary='Handover',
                         extra_lines=['RRULE:FREQ=WEEKLY;COUNT=3']),
        ), status=200)

        first = orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        assert first.created == 3
        stored = event_store.get_events(source.source_id)
        assert sorted(stored) == [
            ('weekly', '20240101T150000Z'),
            ('weekly', '20240108T150000Z'),
            ('weekly', '20240115T150000Z'),
        ]

        responses.replace(responses.GET, FEED_URL, body=build_ics(
            build_vevent(uid='weekly', summary='Handover',
                         extra_lines=['RRULE:FREQ=WEEKLY;COUNT=3',
                                      'EXDATE:20240108T150000Z']),
        ), status=200)
        second = orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )

        assert (second.created, second.updated, second.deleted) == (0, 0, 1)
        assert ('weekly', '20240108T150000Z') not in event_store.get_events(source.source_id)

    @responses.activate
    def test_server_error_keeps_validators(self, orchestrator, registry):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200,
                      headers={'ETag': '"v1"'})
        orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        responses.replace(responses.GET, FEED_URL, body='Server Error', status=500)
        result = orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )

        assert error_codes(result) == ['unreachable']
        assert registry.get_credential(source.source_id).etag == '"v1"'
        assert registry.get_source(source.source_id).consecutive_rejections == 0

    @responses.activate
    def test_repeated_expiry_deactivates_source(self, orchestrator, registry):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body='Not Found', status=404)

        for run in range(3):
            result = orchestrator.sync_one(
                *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30 * run)
            )
            stored = registry.get_source(source.source_id)
            if run < 2:
                assert error_codes(result) == ['expired']
                assert stored.consecutive_rejections == run + 1
                assert stored.active is True

        assert error_codes(result) == ['expired', 'source_deactivated']
        assert stored.active is False
        assert stored.last_sync_error == 'Calendar link expired, replace it'

    @responses.activate
    def test_decryption_failure(self, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        orchestrator = SyncOrchestrator(
            registry, event_store, CredentialVault(OTHER_ENCRYPTION_KEY),
            build_providers(timeout=5)
        )

        result = orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        assert error_codes(result) == ['decryption_failed']
        assert len(responses.calls) == 0

    def test_unsupported_provider(self, orchestrator, registry):
        source = registry.register_source(
            'user-1', 'child-1', FEED_URL, provider='google', now=T0
        )

        result = orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        assert error_codes(result) == ['unsupported_provider']
        assert registry.get_source(source.source_id).last_sync_status == 'error'

    @responses.activate
    def test_superseded_run_writes_nothing(self, orchestrator, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        stale = snapshot(registry, source.source_id)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)

        # Another run completes first
        registry.record_sync_outcome(source.source_id, now=T0)

        result = orchestrator.sync_one(*stale, now=T0 + timedelta(seconds=5))

        assert error_codes(result) == ['concurrent_sync']
        assert event_store.get_events(source.source_id) == {}
        assert registry.get_source(source.source_id).last_synced_at == T0

    @responses.activate
    def test_partial_write_keeps_old_validators(self, orchestrator, registry, event_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200,
                      headers={'ETag': '"v1"'})

        with patch.object(event_store, 'batch_write_events',
                          side_effect=lambda events: min(len(events), 1)):
            result = orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        assert error_codes(result) == ['partial_write']
        assert result.created == 1
        assert registry.get_credential(source.source_id).etag is None


class TestSyncManual:
    """Test cases for user-triggered syncs."""

    @responses.activate
    def test_rate_limited_within_five_minutes(self, orchestrator, registry):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)

        assert orchestrator.sync_manual(source.source_id, now=T0, user_id='user-1').success

        with pytest.raises(RateLimitedError) as exc_info:
            orchestrator.sync_manual(source.source_id, now=T0 + timedelta(minutes=2))
        assert exc_info.value.retry_after_seconds == 180
        assert len(responses.calls) == 1

        assert orchestrator.sync_manual(
            source.source_id, now=T0 + timedelta(minutes=6)
        ).success

    def test_inactive_source_rejected(self, orchestrator, registry):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        registry.deactivate_source(source.source_id, now=T0)

        with pytest.raises(SourceInactiveError):
            orchestrator.sync_manual(source.source_id, now=T0)


class TestSyncDue:
    """Test cases for the batch sweep."""

    @responses.activate
    def test_failure_does_not_abort_batch(self, orchestrator, registry, event_store):
        good = registry.register_source('user-1', 'child-1', FEED_URL, 'School', now=T0)
        registry.register_source('user-1', 'child-2', BROKEN_URL, 'Broken', now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)
        responses.add(responses.GET, BROKEN_URL, body='Not Found', status=404)

        batch = orchestrator.sync_due(now=T0)

        assert batch.synced_count == 1
        assert batch.skipped_count == 0
        assert batch.errors == ['Source Broken: Calendar link expired, replace it']
        assert len(event_store.get_events(good.source_id)) == 3

        # Nothing is due again until the next cadence
        assert orchestrator.sync_due(now=T0 + timedelta(minutes=1)).synced_count == 0

    @responses.activate
    def test_limit_caps_sources_per_run(self, orchestrator, registry):
        registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        registry.register_source('user-1', 'child-2', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)

        batch = orchestrator.sync_due(now=T0, limit=1)

        assert batch.synced_count == 1
        assert len(responses.calls) == 1

    @responses.activate
    def test_exhausted_budget_skips_sources(self, orchestrator, registry):
        registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        registry.register_source('user-1', 'child-2', FEED_URL, now=T0)

        batch = orchestrator.sync_due(now=T0, time_remaining=lambda: 5, margin_seconds=10)

        assert batch.synced_count == 0
        assert batch.skipped_count == 2
        assert len(responses.calls) == 0

    def test_no_due_sources(self, orchestrator):
        batch = orchestrator.sync_due(now=T0)

        assert batch.synced_count == 0
        assert batch.errors == []


class TestMappings:
    """Mapping rules applied during sync and after rule changes."""

    @pytest.fixture
    def mapped_orchestrator(self, registry, event_store, vault, mapping_store):
        return SyncOrchestrator(
            registry, event_store, vault, build_providers(timeout=5),
            max_workers=1, mapping_store=mapping_store
        )

    @responses.activate
    def test_sync_applies_child_rules(self, mapped_orchestrator, registry, event_store,
                                      mapping_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        mapping_store.create_mapping(
            'child-1', 'title_exact', 'Swim class',
            resulting_event_type='home_day', home_id='home-1'
        )
        mapping_store.create_mapping(
            'child-2', 'title_exact', 'Pickup',
            resulting_event_type='home_day', home_id='home-2', auto_confirm=True
        )
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)

        result = mapped_orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        assert result.success
        stored = event_store.get_events(source.source_id)
        swim = stored[('B', None)]
        assert (swim.event_type, swim.home_id, swim.status) == ('home_day', 'home-1', 'proposed')
        pickup = stored[('A', None)]
        assert (pickup.event_type, pickup.home_id, pickup.mapping_id) == ('event', None, None)

    @responses.activate
    def test_new_rule_reapplied_to_stored_events(self, mapped_orchestrator, registry,
                                                 event_store, mapping_store):
        source = registry.register_source('user-1', 'child-1', FEED_URL, now=T0)
        responses.add(responses.GET, FEED_URL, body=three_events(), status=200)
        mapped_orchestrator.sync_one(*snapshot(registry, source.source_id), now=T0)

        rule = mapping_store.create_mapping(
            'child-1', 'event_id', 'C',
            resulting_event_type='home_day', home_id='home-1', auto_confirm=True
        )
        updated = mapped_orchestrator.reapply_mappings(
            'child-1', [registry.get_source(source.source_id)]
        )

        assert updated == 1
        dentist = event_store.get_events(source.source_id)[('C', None)]
        assert (dentist.status, dentist.mapping_id) == ('confirmed', rule.mapping_id)

        # The next sync of the unchanged feed agrees with the remapped state
        second = mapped_orchestrator.sync_one(
            *snapshot(registry, source.source_id), now=T0 + timedelta(minutes=30)
        )
        assert (second.created, second.updated, second.deleted) == (0, 0, 0)

        mapping_store.deactivate_mapping('child-1', rule.mapping_id)
        assert mapped_orchestrator.reapply_mappings(
            'child-1', [registry.get_source(source.source_id)]
        ) == 1
        assert event_store.get_events(source.source_id)[('C', None)].mapping_id is None

    def test_reapply_skips_other_childrens_sources(self, mapped_orchestrator, registry):
        other = registry.register_source('user-1', 'child-2', FEED_URL, now=T0)

        assert mapped_orchestrator.reapply_mappings('child-1', [other]) == 0
