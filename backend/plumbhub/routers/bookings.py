from typing import Union

from fastapi import APIRouter, Depends

from plumbhub.dependencies import get_lifecycle, raise_http_error, require_actor, require_admin
from plumbhub.models import (
    Actor,
    Booking,
    BookingCreateRequest,
    BookingCreateResult,
    BookingStatusUpdateRequest,
    RejectionOutcome,
)
from plumbhub.services.entity_store import EntityStoreError
from plumbhub.services.lifecycle import BookingLifecycle

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingCreateResult)
def create_booking(
    request: BookingCreateRequest,
    actor: Actor = Depends(require_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    try:
        return lifecycle.create_booking(actor, request)
    except EntityStoreError as exc:
        raise_http_error(exc)


@router.get("", response_model=list[Booking])
def list_bookings(
    actor: Actor = Depends(require_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    try:
        return lifecycle.list_bookings(actor)
    except EntityStoreError as exc:
        raise_http_error(exc)


@router.get("/{booking_id}", response_model=Booking)
def get_booking(
    booking_id: str,
    actor: Actor = Depends(require_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    try:
        return lifecycle.get_booking(booking_id, actor)
    except EntityStoreError as exc:
        raise_http_error(exc)


@router.patch("/{booking_id}/status", response_model=Union[RejectionOutcome, Booking])
def update_booking_status(
    booking_id: str,
    update: BookingStatusUpdateRequest,
    actor: Actor = Depends(require_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    try:
        return lifecycle.set_booking_status(booking_id, actor, update.status)
    except EntityStoreError as exc:
        raise_http_error(exc)


@router.post("/{booking_id}/assign", response_model=BookingCreateResult)
def retry_assignment(
    booking_id: str,
    actor: Actor = Depends(require_admin),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    try:
        return lifecycle.retry_assignment(booking_id, actor)
    except EntityStoreError as exc:
        raise_http_error(exc)
