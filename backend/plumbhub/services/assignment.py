import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from plumbhub.models import AssignmentRecord, BookingPatch, BookingStatus, Provider
from plumbhub.services.entity_store import (
    EntityStore,
    EntityStoreConflictError,
    EntityStoreNotFoundError,
)
from plumbhub.services.notification_store import NotificationStore

logger = logging.getLogger(__name__)


def select_provider(candidates: Iterable[Provider], exclude: Optional[str] = None) -> Optional[Provider]:
    """Pick the highest-rated candidate.

    ``sorted`` is stable, so among equal ratings the candidate that came first
    in the input wins. The store returns providers in registration order,
    which makes the earliest-registered provider the tie winner.
    """
    pool = [provider for provider in candidates if provider.eligible and provider.id != exclude]
    if not pool:
        return None
    return sorted(pool, key=lambda provider: provider.rating, reverse=True)[0]


def assignment_patch(provider: Provider) -> BookingPatch:
    return BookingPatch(
        status=BookingStatus.ASSIGNED,
        assigned_provider_id=provider.id,
        history_entry=AssignmentRecord(
            provider_id=provider.id,
            assigned_at=datetime.now(timezone.utc).isoformat(),
            status=BookingStatus.ASSIGNED,
        ),
    )


class AssignmentEngine:
    def __init__(self, store: EntityStore, notifications: Optional[NotificationStore] = None):
        self.store = store
        self.notifications = notifications

    def eligible_providers(self, category: str) -> list[Provider]:
        return self.store.get_providers_where(eligible=True, specialization=category)

    def assign(self, booking_id: str, category: str) -> Optional[Provider]:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            raise EntityStoreNotFoundError("Booking not found")
        if booking.status != BookingStatus.PENDING:
            raise EntityStoreConflictError(f"Booking is {booking.status.value}, only pending bookings can be assigned")

        selected = select_provider(self.eligible_providers(category))
        if selected is None:
            logger.info("No eligible providers for category %s (booking %s)", category, booking_id)
            return None

        updated = self.store.update_booking(
            booking_id,
            assignment_patch(selected),
            expected_status=BookingStatus.PENDING,
        )
        if updated is None:
            raise EntityStoreNotFoundError("Booking not found")

        logger.info("Provider %s assigned to booking %s", selected.id, booking_id)
        self.notify_assigned(selected, booking_id, category)
        return selected

    def notify_assigned(self, provider: Provider, booking_id: str, category: str) -> None:
        if self.notifications is None:
            return
        self.notifications.create(
            account_id=provider.account_id,
            title="New job assigned",
            body=f"You have been assigned a {category} booking.",
            deep_link=f"booking:{booking_id}",
        )
