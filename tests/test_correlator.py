"""
Tests for event correlation.
"""
import asyncio
import re

import pytest
from datetime import timedelta

from security_pipeline.correlation import CorrelationScheduler, EventCorrelator
from security_pipeline.database.models import utcnow
from security_pipeline.exceptions import StoreUnavailableError
from security_pipeline.stores import EventStore

CORRELATION_ID = re.compile(r"^corr_\d+_[0-9a-f]{9}$")


class FlakyEventStore(EventStore):
    """Event store that cannot write correlation ids for one event."""

    def __init__(self, session_factory, failing_id):
        super().__init__(session_factory)
        self.failing_id = failing_id

    async def assign_correlation_id(self, event_id, correlation_id):
        if event_id == self.failing_id:
            raise StoreUnavailableError("event store unavailable during assign_correlation_id")
        return await super().assign_correlation_id(event_id, correlation_id)


@pytest.fixture
def correlator(event_store):
    return EventCorrelator(event_store)


async def _correlation_ids(event_store, events):
    return [(await event_store.get(e.id)).correlation_id for e in events]


@pytest.mark.asyncio
async def test_correlates_events_from_same_ip(correlator, event_store, store_events):
    """Test three events from one IP share a new correlation id."""
    events = await store_events(3, source_ip="10.0.0.5", user_id=None, created_at=utcnow())

    created = await correlator.correlate()

    assert len(created) == 1
    assert CORRELATION_ID.match(created[0])
    assert await _correlation_ids(event_store, events) == [created[0]] * 3


@pytest.mark.asyncio
async def test_small_groups_not_correlated(correlator, event_store, store_events):
    """Test groups below the minimum size are left alone."""
    events = await store_events(2, source_ip="10.0.0.6", user_id=None, created_at=utcnow())

    assert await correlator.correlate() == []
    assert await _correlation_ids(event_store, events) == [None, None]


@pytest.mark.asyncio
async def test_events_outside_window_ignored(correlator, store_events):
    """Test only events inside the trailing window are grouped."""
    await store_events(
        3,
        source_ip="10.0.0.7",
        user_id=None,
        created_at=utcnow() - timedelta(minutes=10),
    )

    assert await correlator.correlate() == []


@pytest.mark.asyncio
async def test_correlation_is_idempotent(correlator, event_store, store_events):
    """Test re-running over an unchanged window creates nothing and alters nothing."""
    events = await store_events(3, source_ip="10.0.0.8", user_id=None, created_at=utcnow())

    first = await correlator.correlate()
    before = await _correlation_ids(event_store, events)

    assert await correlator.correlate() == []
    assert await _correlation_ids(event_store, events) == before == [first[0]] * 3


@pytest.mark.asyncio
async def test_new_members_adopt_existing_id(correlator, event_store, store_events, make_event):
    """Test late arrivals join the group's existing correlation id."""
    await store_events(3, source_ip="10.0.0.9", user_id=None, created_at=utcnow())
    created = await correlator.correlate()

    late = await event_store.add(make_event(source_ip="10.0.0.9", user_id=None, created_at=utcnow()))

    assert await correlator.correlate() == []
    assert (await event_store.get(late.id)).correlation_id == created[0]


@pytest.mark.asyncio
async def test_event_in_ip_and_user_groups_gets_one_id(correlator, event_store, store_events):
    """Test events grouped by both IP and user keep a single correlation id."""
    events = await store_events(3, source_ip="10.0.0.10", user_id="carol", created_at=utcnow())

    created = await correlator.correlate()

    assert len(created) == 1
    assert await _correlation_ids(event_store, events) == [created[0]] * 3


@pytest.mark.asyncio
async def test_write_failure_does_not_stop_group(session_factory, store_events):
    """Test a failed per-event write is skipped and the rest of the group is tagged."""
    events = await store_events(3, source_ip="10.0.0.11", user_id=None, created_at=utcnow())
    store = FlakyEventStore(session_factory, failing_id=events[0].id)

    created = await EventCorrelator(store).correlate()

    assert len(created) == 1
    ids = await _correlation_ids(store, events)
    assert ids[0] is None
    assert ids[1:] == [created[0]] * 2


def test_group_events_by_ip_and_user(correlator, make_event):
    """Test grouping keys."""
    events = [
        make_event(source_ip="10.1.1.1", user_id="dave"),
        make_event(source_ip="10.1.1.1", user_id=None),
        make_event(source_ip=None, user_id="dave"),
    ]

    groups = {g.key: len(g.events) for g in correlator.group_events(events)}

    assert groups == {"ip:10.1.1.1": 2, "user:dave": 2}


class CountingCorrelator:
    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    async def correlate(self, window=None):
        self.calls += 1
        if self.fail:
            raise StoreUnavailableError("event store unavailable during events_between")
        return ["corr_1_abcdef012"]


@pytest.mark.asyncio
async def test_scheduler_run_once_logs_failures():
    """Test a failed run yields no ids instead of raising."""
    scheduler = CorrelationScheduler(CountingCorrelator(fail=True), interval_seconds=60)

    assert await scheduler.run_once() == []


@pytest.mark.asyncio
async def test_scheduler_start_stop():
    """Test the background loop runs and stops cleanly."""
    correlator = CountingCorrelator()
    scheduler = CorrelationScheduler(correlator, interval_seconds=0.01)

    scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert correlator.calls >= 1
    assert scheduler.running is False
