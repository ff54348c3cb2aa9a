import os
import sys
from uuid import uuid4

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from plumbhub.models import (
    Actor,
    Booking,
    BookingCreateRequest,
    BookingPatch,
    BookingStatus,
    RejectionOutcome,
    Role,
)
from plumbhub.services.entity_store import (
    EntityStore,
    EntityStoreConflictError,
    EntityStoreNotFoundError,
    EntityStorePermissionError,
    EntityStoreValidationError,
)
from plumbhub.services.lifecycle import MAX_TRANSITION_ATTEMPTS, BookingLifecycle
from plumbhub.services.notification_store import NotificationStore


@pytest.fixture
def store(tmp_path):
    return EntityStore(db_path=str(tmp_path / "lifecycle.sqlite3"))


@pytest.fixture
def notifications():
    return NotificationStore()


@pytest.fixture
def lifecycle(store, notifications):
    return BookingLifecycle.build(store, notifications)


def _account(store, role, name="Someone"):
    account = store.create_account(
        name=name,
        email=f"{role.value}_{uuid4().hex[:8]}@example.com",
        phone="0400 000 000",
        role=role,
        password_hash="unused",
    )
    return account, Actor(account_id=account.id, role=role)


def _provider(store, rating, specializations=("Emergency",)):
    account, actor = _account(store, Role.PROVIDER, name="Plumber")
    provider = store.create_provider(
        account_id=account.id,
        specializations=list(specializations),
        is_available=True,
        is_verified=True,
        rating=rating,
    )
    return provider, actor


def _request(category="Emergency"):
    return BookingCreateRequest(
        category=category,
        description="Water everywhere",
        address="7 Ferry Lane",
        phone="0411 111 111",
        preferred_time_slot="8:00 AM - 10:00 AM",
    )


def test_end_to_end_emergency_scenario(store, lifecycle):
    provider_a, actor_a = _provider(store, rating=30)
    provider_b, actor_b = _provider(store, rating=80)
    _, customer = _account(store, Role.CUSTOMER)

    created = lifecycle.create_booking(customer, _request())
    assert created.assigned_provider.id == provider_b.id
    assert created.booking.status == BookingStatus.ASSIGNED
    assert [entry.provider_id for entry in created.booking.assignment_history] == [provider_b.id]
    assert created.message == "Booking created and plumber assigned successfully"
    booking_id = created.booking.id

    outcome = lifecycle.set_booking_status(booking_id, actor_b, BookingStatus.REJECTED)
    assert isinstance(outcome, RejectionOutcome)
    assert outcome.reassigned is True
    assert outcome.booking.status == BookingStatus.ASSIGNED
    assert outcome.booking.assigned_provider_id == provider_a.id
    assert [entry.provider_id for entry in outcome.booking.assignment_history] == [provider_b.id, provider_a.id]

    accepted = lifecycle.set_booking_status(booking_id, actor_a, BookingStatus.ACCEPTED)
    assert accepted.status == BookingStatus.ACCEPTED
    started = lifecycle.set_booking_status(booking_id, actor_a, BookingStatus.IN_PROGRESS)
    assert started.status == BookingStatus.IN_PROGRESS
    completed = lifecycle.set_booking_status(booking_id, actor_a, BookingStatus.COMPLETED)
    assert completed.status == BookingStatus.COMPLETED
    assert completed.assigned_provider_id == provider_a.id
    assert len(completed.assignment_history) == 2


def test_create_booking_without_providers_still_persists(store, lifecycle):
    _, customer = _account(store, Role.CUSTOMER)

    created = lifecycle.create_booking(customer, _request())

    assert created.assigned_provider is None
    assert created.booking.status == BookingStatus.PENDING
    assert created.message == "Booking created, but no plumbers available at the moment"
    assert store.get_booking(created.booking.id) is not None


def test_create_booking_rejects_inactive_or_unknown_category(store, lifecycle):
    _, customer = _account(store, Role.CUSTOMER)
    category = store.get_category_by_name("Maintenance")
    store.set_category_active(category.id, False)

    with pytest.raises(EntityStoreValidationError):
        lifecycle.create_booking(customer, _request(category="Maintenance"))
    with pytest.raises(EntityStoreValidationError):
        lifecycle.create_booking(customer, _request(category="Roof Repair"))
    assert store.list_bookings() == []


def test_providers_cannot_create_bookings(store, lifecycle):
    _, provider_actor = _provider(store, rating=10)

    with pytest.raises(EntityStorePermissionError):
        lifecycle.create_booking(provider_actor, _request())


def test_decline_by_last_provider_returns_booking_to_pending(store, lifecycle):
    provider, actor = _provider(store, rating=50)
    _, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id

    outcome = lifecycle.set_booking_status(booking_id, actor, BookingStatus.REJECTED)

    assert outcome.reassigned is False
    assert outcome.message == "Job rejected, no other plumbers available"
    assert outcome.booking.status == BookingStatus.PENDING
    assert outcome.booking.assigned_provider_id is None
    assert [entry.provider_id for entry in outcome.booking.assignment_history] == [provider.id]

    # The decliner no longer owns the booking, so a second decline is refused.
    with pytest.raises(EntityStorePermissionError):
        lifecycle.set_booking_status(booking_id, actor, BookingStatus.REJECTED)


@pytest.mark.parametrize("terminal", [BookingStatus.COMPLETED, BookingStatus.CANCELLED])
def test_terminal_states_refuse_every_transition(store, lifecycle, terminal):
    _, provider_actor = _provider(store, rating=50)
    _, customer = _account(store, Role.CUSTOMER)
    _, admin = _account(store, Role.ADMINISTRATOR)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    if terminal == BookingStatus.COMPLETED:
        for step in (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
            lifecycle.set_booking_status(booking_id, provider_actor, step)
    else:
        lifecycle.set_booking_status(booking_id, customer, BookingStatus.CANCELLED)
    frozen = store.get_booking(booking_id)

    for requested in BookingStatus:
        for actor in (admin, customer):
            with pytest.raises((EntityStoreConflictError, EntityStorePermissionError)):
                lifecycle.set_booking_status(booking_id, actor, requested)

    assert store.get_booking(booking_id) == frozen


def test_other_provider_is_refused_for_any_status(store, lifecycle):
    _, assigned_actor = _provider(store, rating=90)
    _, intruder = _provider(store, rating=10)
    _, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    before = store.get_booking(booking_id)

    for requested in BookingStatus:
        with pytest.raises(EntityStorePermissionError):
            lifecycle.set_booking_status(booking_id, intruder, requested)

    assert store.get_booking(booking_id) == before


def test_customer_must_own_booking(store, lifecycle):
    _provider(store, rating=90)
    _, owner = _account(store, Role.CUSTOMER)
    _, stranger = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(owner, _request()).booking.id

    with pytest.raises(EntityStorePermissionError):
        lifecycle.set_booking_status(booking_id, stranger, BookingStatus.CANCELLED)
    with pytest.raises(EntityStorePermissionError):
        lifecycle.get_booking(booking_id, stranger)

    cancelled = lifecycle.set_booking_status(booking_id, owner, BookingStatus.CANCELLED)
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.assigned_provider_id is None


def test_customer_cannot_drive_provider_edges(store, lifecycle):
    _provider(store, rating=90)
    _, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id

    with pytest.raises(EntityStorePermissionError):
        lifecycle.set_booking_status(booking_id, customer, BookingStatus.ACCEPTED)
    assert store.get_booking(booking_id).status == BookingStatus.ASSIGNED


def test_provider_cannot_cancel(store, lifecycle):
    _, provider_actor = _provider(store, rating=90)
    _, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id

    with pytest.raises(EntityStorePermissionError):
        lifecycle.set_booking_status(booking_id, provider_actor, BookingStatus.CANCELLED)


def test_admin_bypasses_ownership_but_not_edges(store, lifecycle):
    _, customer = _account(store, Role.CUSTOMER)
    _, admin = _account(store, Role.ADMINISTRATOR)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id

    with pytest.raises(EntityStoreValidationError):
        lifecycle.set_booking_status(booking_id, admin, BookingStatus.COMPLETED)
    with pytest.raises(EntityStoreValidationError):
        lifecycle.set_booking_status(booking_id, admin, BookingStatus.ASSIGNED)

    assert lifecycle.get_booking(booking_id, admin).status == BookingStatus.PENDING
    cancelled = lifecycle.set_booking_status(booking_id, admin, BookingStatus.CANCELLED)
    assert cancelled.status == BookingStatus.CANCELLED


def test_admin_can_reject_on_behalf_of_provider(store, lifecycle):
    first, _ = _provider(store, rating=90)
    second, _ = _provider(store, rating=40)
    _, customer = _account(store, Role.CUSTOMER)
    _, admin = _account(store, Role.ADMINISTRATOR)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id

    outcome = lifecycle.set_booking_status(booking_id, admin, BookingStatus.REJECTED)

    assert outcome.reassigned is True
    assert outcome.booking.assigned_provider_id == second.id
    assert first.id != second.id


def test_cancel_from_in_progress_is_not_an_edge(store, lifecycle):
    _, provider_actor = _provider(store, rating=90)
    _, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    lifecycle.set_booking_status(booking_id, provider_actor, BookingStatus.ACCEPTED)
    lifecycle.set_booking_status(booking_id, provider_actor, BookingStatus.IN_PROGRESS)

    with pytest.raises(EntityStoreValidationError):
        lifecycle.set_booking_status(booking_id, customer, BookingStatus.CANCELLED)


def test_completion_increments_provider_jobs(store, lifecycle):
    provider, provider_actor = _provider(store, rating=90)
    _, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    for step in (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
        lifecycle.set_booking_status(booking_id, provider_actor, step)

    assert store.get_provider(provider.id).total_jobs == provider.total_jobs + 1


def test_customer_is_notified_of_progress(store, lifecycle, notifications):
    _, provider_actor = _provider(store, rating=90)
    customer_account, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    lifecycle.set_booking_status(booking_id, provider_actor, BookingStatus.ACCEPTED)

    titles = [item.title for item in notifications.list_for_account(customer_account.id)]
    assert titles == ["Plumber on the way"]


def test_transition_retries_after_transient_conflict(store, lifecycle, monkeypatch):
    _, provider_actor = _provider(store, rating=90)
    _, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    original = store.update_booking
    calls = []

    def flaky_update(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise EntityStoreConflictError("stale")
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "update_booking", flaky_update)

    result = lifecycle.set_booking_status(booking_id, provider_actor, BookingStatus.ACCEPTED)

    assert isinstance(result, Booking)
    assert result.status == BookingStatus.ACCEPTED
    assert len(calls) == 2


def test_concurrent_cancel_wins_over_accept(store, lifecycle, monkeypatch):
    _provider(store, rating=90)
    _, customer = _account(store, Role.CUSTOMER)
    _, admin = _account(store, Role.ADMINISTRATOR)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    original = store.update_booking
    raced = []

    def racing_update(booking, patch, **kwargs):
        if not raced:
            raced.append(True)
            original(booking, BookingPatch(status=BookingStatus.CANCELLED, assigned_provider_id=None))
        return original(booking, patch, **kwargs)

    monkeypatch.setattr(store, "update_booking", racing_update)

    with pytest.raises(EntityStoreConflictError):
        lifecycle.set_booking_status(booking_id, admin, BookingStatus.ACCEPTED)
    assert store.get_booking(booking_id).status == BookingStatus.CANCELLED


def test_persistent_conflict_gives_up(store, lifecycle, monkeypatch):
    _, provider_actor = _provider(store, rating=90)
    _, customer = _account(store, Role.CUSTOMER)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    attempts = []

    def always_stale(*args, **kwargs):
        attempts.append(args)
        raise EntityStoreConflictError("stale")

    monkeypatch.setattr(store, "update_booking", always_stale)

    with pytest.raises(EntityStoreConflictError):
        lifecycle.set_booking_status(booking_id, provider_actor, BookingStatus.ACCEPTED)
    assert len(attempts) == MAX_TRANSITION_ATTEMPTS


def test_list_bookings_by_role(store, lifecycle):
    provider, provider_actor = _provider(store, rating=90)
    _, first_customer = _account(store, Role.CUSTOMER)
    _, second_customer = _account(store, Role.CUSTOMER)
    _, admin = _account(store, Role.ADMINISTRATOR)
    first = lifecycle.create_booking(first_customer, _request()).booking
    second = lifecycle.create_booking(second_customer, _request(category="Leak Repair")).booking

    assert [b.id for b in lifecycle.list_bookings(first_customer)] == [first.id]
    assert [b.id for b in lifecycle.list_bookings(provider_actor)] == [first.id]
    assert {b.id for b in lifecycle.list_bookings(admin)} == {first.id, second.id}
    assert second.status == BookingStatus.PENDING
    assert provider.specializations == ["Emergency"]


def test_retry_assignment_picks_up_newly_verified_provider(store, lifecycle):
    _, customer = _account(store, Role.CUSTOMER)
    _, admin = _account(store, Role.ADMINISTRATOR)
    booking_id = lifecycle.create_booking(customer, _request()).booking.id
    provider, _ = _provider(store, rating=20)

    with pytest.raises(EntityStorePermissionError):
        lifecycle.retry_assignment(booking_id, customer)
    result = lifecycle.retry_assignment(booking_id, admin)

    assert result.assigned_provider.id == provider.id
    assert result.booking.status == BookingStatus.ASSIGNED
    assert result.message == "Plumber assigned successfully"


def test_missing_booking_is_not_found(lifecycle, store):
    _, admin = _account(store, Role.ADMINISTRATOR)

    with pytest.raises(EntityStoreNotFoundError):
        lifecycle.set_booking_status("bk_missing", admin, BookingStatus.CANCELLED)
