"""Unit tests for Reconciler."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from processor.models import CalendarEvent
from processor.reconciler import Reconciler

START = datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc)


def make_event(uid, content_hash='h1', source_id='src-1', recurrence_id=None):
    return CalendarEvent(
        source_id=source_id,
        uid=uid,
        recurrence_id=recurrence_id,
        title=f'Event {uid}',
        start_at=START,
        end_at=START + timedelta(hours=1),
        all_day=False,
        content_hash=content_hash
    )


def uids(events):
    return sorted(event.uid for event in events)


class TestReconciler:
    """Test cases for Reconciler class."""

    def test_create_update_delete(self):
        persisted = [make_event('A'), make_event('B'), make_event('C')]
        parsed = [make_event('A'), make_event('B', content_hash='h2'), make_event('D')]

        plan = Reconciler().reconcile('src-1', parsed, persisted)

        assert uids(plan.to_create) == ['D']
        assert uids(plan.to_update) == ['B']
        assert uids(plan.to_delete) == ['C']

    def test_identical_sets_produce_empty_plan(self):
        events = [make_event('A'), make_event('B')]

        plan = Reconciler().reconcile('src-1', events, list(events))

        assert plan.is_empty

    def test_first_sync_creates_everything(self):
        plan = Reconciler().reconcile('src-1', [make_event('A'), make_event('B')], [])

        assert uids(plan.to_create) == ['A', 'B']
        assert plan.to_update == []
        assert plan.to_delete == []

    def test_empty_parsed_set_deletes_all(self):
        persisted = [make_event('A'), make_event('B')]

        plan = Reconciler().reconcile('src-1', [], persisted)

        assert uids(plan.to_delete) == ['A', 'B']
        assert plan.to_create == []

    def test_recurrence_overrides_are_distinct_keys(self):
        master = make_event('weekly')
        override = make_event('weekly', recurrence_id='20240108T150000Z')

        plan = Reconciler().reconcile('src-1', [master, override], [master])

        assert len(plan.to_create) == 1
        assert plan.to_create[0].recurrence_id == '20240108T150000Z'
        assert plan.to_delete == []

    def test_removed_override_is_deleted(self):
        master = make_event('weekly')
        override = make_event('weekly', recurrence_id='20240108T150000Z')

        plan = Reconciler().reconcile('src-1', [master], [master, override])

        assert plan.to_delete == [override]

    def test_duplicate_parsed_key_last_wins(self):
        first = make_event('A', content_hash='h1')
        second = replace(first, content_hash='h2')

        plan = Reconciler().reconcile('src-1', [first, second], [make_event('A')])

        assert plan.to_update == [second]

    def test_other_source_events_rejected(self):
        with pytest.raises(ValueError):
            Reconciler().reconcile('src-1', [make_event('A', source_id='src-2')], [])

        with pytest.raises(ValueError):
            Reconciler().reconcile('src-1', [], [make_event('A', source_id='src-2')])
