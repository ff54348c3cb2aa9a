import os
import sys
from uuid import uuid4

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from plumbhub.models import BookingCreateRequest, BookingStatus, Role
from plumbhub.services.assignment import AssignmentEngine
from plumbhub.services.entity_store import EntityStore, EntityStoreConflictError
from plumbhub.services.notification_store import NotificationStore
from plumbhub.services.reassignment import ReassignmentEngine


def _setup(tmp_path):
    store = EntityStore(db_path=str(tmp_path / "reassign.sqlite3"))
    notifications = NotificationStore()
    assignment = AssignmentEngine(store, notifications)
    return store, notifications, assignment, ReassignmentEngine(assignment)


def _add_provider(store, rating, category="Emergency"):
    account = store.create_account(
        name="Plumber",
        email=f"plumber_{uuid4().hex[:8]}@example.com",
        phone="0400 000 000",
        role=Role.PROVIDER,
        password_hash="unused",
    )
    return store.create_provider(
        account_id=account.id,
        specializations=[category],
        is_available=True,
        is_verified=True,
        rating=rating,
    )


def _add_booking(store, category="Emergency"):
    customer = store.create_account(
        name="Customer",
        email=f"customer_{uuid4().hex[:8]}@example.com",
        phone="0411 111 111",
        role=Role.CUSTOMER,
        password_hash="unused",
    )
    return store.create_booking(
        customer.id,
        BookingCreateRequest(category=category, description="Burst pipe", address="3 Quay Rd", phone="0411 111 111"),
    )


def test_reassign_excludes_decliner_even_if_still_eligible(tmp_path):
    store, _, assignment, reassignment = _setup(tmp_path)
    best = _add_provider(store, rating=90)
    other = _add_provider(store, rating=30)
    booking = _add_booking(store)
    assert assignment.assign(booking.id, booking.category).id == best.id

    selected = reassignment.reassign(booking.id, best.id)

    assert selected is not None
    assert selected.id == other.id
    assert store.get_provider(best.id).eligible
    updated = store.get_booking(booking.id)
    assert updated.status == BookingStatus.ASSIGNED
    assert updated.assigned_provider_id == other.id


def test_reassign_appends_history_without_touching_earlier_entries(tmp_path):
    store, _, assignment, reassignment = _setup(tmp_path)
    first = _add_provider(store, rating=90)
    second = _add_provider(store, rating=60)
    _add_provider(store, rating=30)
    booking = _add_booking(store)

    assignment.assign(booking.id, booking.category)
    original_entry = store.get_booking(booking.id).assignment_history[0]
    reassignment.reassign(booking.id, first.id)
    reassignment.reassign(booking.id, second.id)

    history = store.get_booking(booking.id).assignment_history
    assert len(history) == 3
    assert history[0] == original_entry
    # Only the latest decliner is excluded, so the first provider comes back.
    assert [entry.provider_id for entry in history] == [first.id, second.id, first.id]
    assert all(entry.status == BookingStatus.ASSIGNED for entry in history)


def test_reassign_exhaustion_returns_booking_to_pending(tmp_path):
    store, notifications, assignment, reassignment = _setup(tmp_path)
    only = _add_provider(store, rating=50)
    booking = _add_booking(store)
    assignment.assign(booking.id, booking.category)

    selected = reassignment.reassign(booking.id, only.id)

    assert selected is None
    updated = store.get_booking(booking.id)
    assert updated.status == BookingStatus.PENDING
    assert updated.assigned_provider_id is None
    assert [entry.provider_id for entry in updated.assignment_history] == [only.id]
    titles = [item.title for item in notifications.list_for_account(booking.account_id)]
    assert "Looking for another plumber" in titles


def test_reassign_notifies_new_provider(tmp_path):
    store, notifications, assignment, reassignment = _setup(tmp_path)
    best = _add_provider(store, rating=90)
    other = _add_provider(store, rating=30)
    booking = _add_booking(store)
    assignment.assign(booking.id, booking.category)

    reassignment.reassign(booking.id, best.id)

    feed = notifications.list_for_account(other.account_id)
    assert len(feed) == 1
    assert feed[0].title == "New job assigned"


def test_repeated_decline_after_reassignment_is_refused(tmp_path):
    store, notifications, assignment, reassignment = _setup(tmp_path)
    first = _add_provider(store, rating=90)
    second = _add_provider(store, rating=60)
    booking = _add_booking(store)
    assignment.assign(booking.id, booking.category)
    stale = store.get_booking(booking.id)

    reassignment.reassign(stale.id, first.id)
    with pytest.raises(EntityStoreConflictError):
        reassignment.reassign(stale.id, first.id)

    updated = store.get_booking(booking.id)
    assert updated.assigned_provider_id == second.id
    assert [entry.provider_id for entry in updated.assignment_history] == [first.id, second.id]
    assert len(notifications.list_for_account(second.account_id)) == 1


def test_repeated_decline_cannot_strand_a_reassigned_booking(tmp_path):
    store, _, assignment, reassignment = _setup(tmp_path)
    only = _add_provider(store, rating=90)
    booking = _add_booking(store)
    assignment.assign(booking.id, booking.category)
    store.update_provider(only.id, is_available=False)
    replacement = _add_provider(store, rating=40)
    reassignment.reassign(booking.id, only.id)

    with pytest.raises(EntityStoreConflictError):
        reassignment.reassign(booking.id, only.id)

    updated = store.get_booking(booking.id)
    assert updated.status == BookingStatus.ASSIGNED
    assert updated.assigned_provider_id == replacement.id
