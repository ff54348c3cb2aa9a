from fastapi import APIRouter, Depends

from plumbhub.dependencies import get_store, raise_http_error, require_admin
from plumbhub.models import Actor, BookingStatus, DashboardStats, Role
from plumbhub.services.entity_store import EntityStore, EntityStoreError

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/stats", response_model=DashboardStats)
def dashboard_stats(
    _admin: Actor = Depends(require_admin),
    store: EntityStore = Depends(get_store),
):
    try:
        bookings = store.list_bookings()
        providers = store.list_providers()
        customers = store.list_accounts(role=Role.CUSTOMER)
    except EntityStoreError as exc:
        raise_http_error(exc)
    return DashboardStats(
        total_bookings=len(bookings),
        active_providers=sum(1 for provider in providers if provider.eligible),
        total_customers=len(customers),
        pending_bookings=sum(1 for booking in bookings if booking.status == BookingStatus.PENDING),
        completed_bookings=sum(1 for booking in bookings if booking.status == BookingStatus.COMPLETED),
    )
