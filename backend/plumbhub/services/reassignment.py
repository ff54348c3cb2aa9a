import logging
from typing import Optional

from plumbhub.models import BookingPatch, BookingStatus, Provider
from plumbhub.services.assignment import AssignmentEngine, assignment_patch, select_provider
from plumbhub.services.entity_store import EntityStoreNotFoundError

logger = logging.getLogger(__name__)


class ReassignmentEngine:
    """Moves a declined booking to the next best provider.

    The decline itself leaves no history entry; only new assignments are
    appended. Every write is conditioned on the booking still being
    ``assigned`` to the decliner, so a repeated decline raises a conflict
    instead of assigning twice.
    """

    def __init__(self, assignment: AssignmentEngine):
        self.assignment = assignment
        self.store = assignment.store
        self.notifications = assignment.notifications

    def reassign(self, booking_id: str, excluded_provider_id: str) -> Optional[Provider]:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            raise EntityStoreNotFoundError("Booking not found")

        candidates = self.assignment.eligible_providers(booking.category)
        selected = select_provider(candidates, exclude=excluded_provider_id)

        if selected is None:
            updated = self.store.update_booking(
                booking_id,
                BookingPatch(status=BookingStatus.PENDING, assigned_provider_id=None),
                expected_status=BookingStatus.ASSIGNED,
                expected_provider_id=excluded_provider_id,
            )
            if updated is None:
                raise EntityStoreNotFoundError("Booking not found")
            logger.info("Booking %s returned to pending after %s declined", booking_id, excluded_provider_id)
            if self.notifications is not None:
                self.notifications.create(
                    account_id=booking.account_id,
                    title="Looking for another plumber",
                    body="Your booking is waiting for an available plumber.",
                    deep_link=f"booking:{booking_id}",
                )
            return None

        updated = self.store.update_booking(
            booking_id,
            assignment_patch(selected),
            expected_status=BookingStatus.ASSIGNED,
            expected_provider_id=excluded_provider_id,
        )
        if updated is None:
            raise EntityStoreNotFoundError("Booking not found")

        logger.info("Booking %s reassigned from %s to %s", booking_id, excluded_provider_id, selected.id)
        self.assignment.notify_assigned(selected, booking_id, booking.category)
        return selected
