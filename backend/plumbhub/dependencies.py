from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from plumbhub.auth import resolve_request_account
from plumbhub.models import Actor, Role
from plumbhub.services.entity_store import (
    EntityStore,
    EntityStoreConflictError,
    EntityStoreError,
    EntityStoreFailure,
    EntityStoreNotFoundError,
    EntityStorePermissionError,
)
from plumbhub.services.lifecycle import BookingLifecycle
from plumbhub.services.notification_store import NotificationStore


def get_store(request: Request) -> EntityStore:
    return request.app.state.store


def get_lifecycle(request: Request) -> BookingLifecycle:
    return request.app.state.lifecycle


def get_notifications(request: Request) -> NotificationStore:
    return request.app.state.notifications


def raise_http_error(exc: EntityStoreError) -> None:
    if isinstance(exc, EntityStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, EntityStorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, EntityStoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, EntityStoreFailure):
        raise HTTPException(status_code=500, detail="Internal storage error")
    raise HTTPException(status_code=400, detail=str(exc))


def require_actor(
    authorization: Optional[str] = Header(default=None),
    store: EntityStore = Depends(get_store),
) -> Actor:
    account_id = resolve_request_account(authorization)
    if not account_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    try:
        account = store.get_account(account_id)
    except EntityStoreError as exc:
        raise_http_error(exc)
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account no longer exists")
    return Actor(account_id=account.id, role=account.role)


def require_admin(actor: Actor = Depends(require_actor)) -> Actor:
    if actor.role != Role.ADMINISTRATOR:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return actor
