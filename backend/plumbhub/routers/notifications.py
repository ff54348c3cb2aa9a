from fastapi import APIRouter, Depends, HTTPException, Query

from plumbhub.dependencies import get_notifications, require_actor
from plumbhub.models import Actor, DeviceTokenRegisterRequest, NotificationRecord
from plumbhub.services.notification_store import NotificationStore

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    unread_only: bool = Query(default=False),
    actor: Actor = Depends(require_actor),
    notifications: NotificationStore = Depends(get_notifications),
):
    return notifications.list_for_account(account_id=actor.account_id, unread_only=unread_only)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    actor: Actor = Depends(require_actor),
    notifications: NotificationStore = Depends(get_notifications),
):
    notifications.register_device_token(account_id=actor.account_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    actor: Actor = Depends(require_actor),
    notifications: NotificationStore = Depends(get_notifications),
):
    updated = notifications.mark_read(account_id=actor.account_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
