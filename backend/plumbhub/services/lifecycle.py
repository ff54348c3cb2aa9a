import logging
from typing import Dict, FrozenSet, List, Optional, Union

from plumbhub.models import (
    TERMINAL_STATUSES,
    Actor,
    Booking,
    BookingCreateRequest,
    BookingCreateResult,
    BookingPatch,
    BookingStatus,
    Provider,
    RejectionOutcome,
    Role,
)
from plumbhub.services.assignment import AssignmentEngine
from plumbhub.services.entity_store import (
    EntityStore,
    EntityStoreConflictError,
    EntityStoreNotFoundError,
    EntityStorePermissionError,
    EntityStoreValidationError,
)
from plumbhub.services.notification_store import NotificationStore
from plumbhub.services.reassignment import ReassignmentEngine

logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = 3

_PROVIDER_SIDE: FrozenSet[Role] = frozenset({Role.PROVIDER, Role.ADMINISTRATOR})
_CUSTOMER_SIDE: FrozenSet[Role] = frozenset({Role.CUSTOMER, Role.ADMINISTRATOR})

# current status -> requested status -> roles allowed to request it.
# pending -> assigned only happens through the assignment engine.
ALLOWED_TRANSITIONS: Dict[BookingStatus, Dict[BookingStatus, FrozenSet[Role]]] = {
    BookingStatus.PENDING: {
        BookingStatus.CANCELLED: _CUSTOMER_SIDE,
    },
    BookingStatus.ASSIGNED: {
        BookingStatus.ACCEPTED: _PROVIDER_SIDE,
        BookingStatus.REJECTED: _PROVIDER_SIDE,
        BookingStatus.CANCELLED: _CUSTOMER_SIDE,
    },
    BookingStatus.ACCEPTED: {
        BookingStatus.IN_PROGRESS: _PROVIDER_SIDE,
        BookingStatus.CANCELLED: _CUSTOMER_SIDE,
    },
    BookingStatus.IN_PROGRESS: {
        BookingStatus.COMPLETED: _PROVIDER_SIDE,
    },
    BookingStatus.COMPLETED: {},
    BookingStatus.CANCELLED: {},
}

_CUSTOMER_UPDATES = {
    BookingStatus.ACCEPTED: ("Plumber on the way", "Your plumber accepted the job."),
    BookingStatus.IN_PROGRESS: ("Work started", "Your plumber has started the job."),
    BookingStatus.COMPLETED: ("Job completed", "Your plumber marked the job as completed."),
}


class BookingLifecycle:
    """Single entry point for booking state changes.

    Every transition is checked against ``ALLOWED_TRANSITIONS`` and the actor's
    relationship to the booking before anything is written. Writes carry the
    status they were validated against, so a concurrent change surfaces as a
    conflict and the transition is re-validated from a fresh read.
    """

    def __init__(
        self,
        store: EntityStore,
        assignment: AssignmentEngine,
        reassignment: ReassignmentEngine,
        notifications: Optional[NotificationStore] = None,
    ):
        self.store = store
        self.assignment = assignment
        self.reassignment = reassignment
        self.notifications = notifications

    @classmethod
    def build(cls, store: EntityStore, notifications: Optional[NotificationStore] = None) -> "BookingLifecycle":
        assignment = AssignmentEngine(store, notifications)
        return cls(store, assignment, ReassignmentEngine(assignment), notifications)

    def create_booking(self, actor: Actor, request: BookingCreateRequest) -> BookingCreateResult:
        if actor.role == Role.PROVIDER:
            raise EntityStorePermissionError("Providers cannot create bookings")
        category = self.store.get_category_by_name(request.category)
        if category is None or not category.is_active:
            raise EntityStoreValidationError(f"Unknown or inactive category: {request.category}")

        booking = self.store.create_booking(actor.account_id, request)
        provider = self.assignment.assign(booking.id, booking.category)
        return self._creation_result(booking.id, provider)

    def retry_assignment(self, booking_id: str, actor: Actor) -> BookingCreateResult:
        if actor.role != Role.ADMINISTRATOR:
            raise EntityStorePermissionError("Admin access required")
        booking = self._require_booking(booking_id)
        provider = self.assignment.assign(booking.id, booking.category)
        return self._creation_result(
            booking.id,
            provider,
            assigned_message="Plumber assigned successfully",
            unassigned_message="No plumbers available at the moment",
        )

    def set_booking_status(
        self,
        booking_id: str,
        actor: Actor,
        requested: BookingStatus,
    ) -> Union[Booking, RejectionOutcome]:
        for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
            booking = self._require_booking(booking_id)
            self._authorize(booking, actor)
            self._validate_transition(booking, actor, requested)
            try:
                if requested == BookingStatus.REJECTED:
                    return self._reject(booking)
                return self._apply(booking, requested)
            except EntityStoreConflictError:
                logger.warning(
                    "Booking %s changed during %s -> %s (attempt %s)",
                    booking_id,
                    booking.status.value,
                    requested.value,
                    attempt,
                )
        raise EntityStoreConflictError("Booking is being updated concurrently, please retry")

    def list_bookings(self, actor: Actor) -> List[Booking]:
        if actor.role == Role.ADMINISTRATOR:
            return self.store.list_bookings()
        if actor.role == Role.PROVIDER:
            provider = self.store.get_provider_by_account_id(actor.account_id)
            if provider is None:
                return []
            return self.store.list_bookings(provider_id=provider.id)
        if actor.role == Role.CUSTOMER:
            return self.store.list_bookings(account_id=actor.account_id)
        raise EntityStorePermissionError(f"Unsupported role: {actor.role}")

    def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = self._require_booking(booking_id)
        self._authorize(booking, actor)
        return booking

    def _require_booking(self, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            raise EntityStoreNotFoundError("Booking not found")
        return booking

    def _authorize(self, booking: Booking, actor: Actor) -> None:
        if actor.role == Role.ADMINISTRATOR:
            return
        if actor.role == Role.PROVIDER:
            provider = self.store.get_provider_by_account_id(actor.account_id)
            if provider is None or booking.assigned_provider_id != provider.id:
                raise EntityStorePermissionError("Not authorized to update this booking")
            return
        if actor.role == Role.CUSTOMER:
            if booking.account_id != actor.account_id:
                raise EntityStorePermissionError("Not authorized to update this booking")
            return
        raise EntityStorePermissionError(f"Unsupported role: {actor.role}")

    def _validate_transition(self, booking: Booking, actor: Actor, requested: BookingStatus) -> None:
        if booking.status in TERMINAL_STATUSES:
            raise EntityStoreConflictError(f"Booking is already {booking.status.value}")
        allowed = ALLOWED_TRANSITIONS[booking.status]
        if requested not in allowed:
            raise EntityStoreValidationError(
                f"Invalid status transition: {booking.status.value} -> {requested.value}"
            )
        if actor.role not in allowed[requested]:
            raise EntityStorePermissionError(f"A {actor.role.value} cannot set status {requested.value}")

    def _reject(self, booking: Booking) -> RejectionOutcome:
        declined_by = booking.assigned_provider_id
        assert declined_by is not None
        provider = self.reassignment.reassign(booking.id, declined_by)
        updated = self._require_booking(booking.id)
        return RejectionOutcome(
            message=(
                "Job rejected and reassigned to another plumber"
                if provider
                else "Job rejected, no other plumbers available"
            ),
            reassigned=provider is not None,
            booking=updated,
        )

    def _apply(self, booking: Booking, requested: BookingStatus) -> Booking:
        if requested == BookingStatus.CANCELLED:
            patch = BookingPatch(status=requested, assigned_provider_id=None)
        else:
            patch = BookingPatch(status=requested)
        updated = self.store.update_booking(
            booking.id,
            patch,
            expected_status=booking.status,
            expected_provider_id=booking.assigned_provider_id,
        )
        if updated is None:
            raise EntityStoreNotFoundError("Booking not found")
        logger.info("Booking %s moved %s -> %s", booking.id, booking.status.value, requested.value)

        self._notify_transition(booking, requested)
        return updated

    def _notify_transition(self, booking: Booking, requested: BookingStatus) -> None:
        if self.notifications is None:
            return
        if requested in _CUSTOMER_UPDATES:
            title, body = _CUSTOMER_UPDATES[requested]
            self.notifications.create(
                account_id=booking.account_id,
                title=title,
                body=body,
                deep_link=f"booking:{booking.id}",
            )
        elif requested == BookingStatus.CANCELLED and booking.assigned_provider_id:
            provider = self.store.get_provider(booking.assigned_provider_id)
            if provider is not None:
                self.notifications.create(
                    account_id=provider.account_id,
                    title="Booking cancelled",
                    body=f"The {booking.category} booking was cancelled.",
                    deep_link=f"booking:{booking.id}",
                )

    def _creation_result(
        self,
        booking_id: str,
        provider: Optional[Provider],
        *,
        assigned_message: str = "Booking created and plumber assigned successfully",
        unassigned_message: str = "Booking created, but no plumbers available at the moment",
    ) -> BookingCreateResult:
        booking = self._require_booking(booking_id)
        return BookingCreateResult(
            booking=booking,
            assigned_provider=provider,
            message=assigned_message if provider else unassigned_message,
        )
