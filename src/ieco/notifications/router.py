"""Notification API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from ieco.dependencies import get_admin_id, get_current_user_id, get_services
from ieco.notifications.scheduler import NotificationRequest
from ieco.notifications.schemas import (
    MarkReadRequest,
    NotificationListResponse,
    NotificationResponse,
    PreferenceResponse,
    PreferenceUpdate,
    SendNotificationRequest,
    UnreadCountResponse,
)
from ieco.services import Services

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    channel: str | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """List the current user's notifications, newest first."""
    messages = await services.scheduler.get_user_notifications(
        user_id, channel=channel, status=status, limit=limit, offset=offset
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(m) for m in messages],
        limit=limit,
        offset=offset,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    channel: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    count = await services.scheduler.get_unread_count(user_id, channel=channel)
    return UnreadCountResponse(count=count)


@router.post("/{notification_id}/read", status_code=200)
async def mark_notification_read(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """Mark a notification as read."""
    if not await services.scheduler.mark_as_read(notification_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"detail": "Notification marked as read"}


@router.post("/read", status_code=200)
async def mark_many_read(
    body: MarkReadRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    count = await services.scheduler.mark_multiple_as_read(body.ids, user_id=user_id)
    return {"detail": f"Marked {count} notifications as read", "count": count}


@router.get("/preferences", response_model=list[PreferenceResponse])
async def get_preferences(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """Per-type preferences, with defaults for types never configured."""
    preferences = await services.scheduler.get_user_preferences(user_id)
    return [PreferenceResponse(**p.to_dict()) for p in preferences]


@router.put("/preferences", response_model=list[PreferenceResponse])
async def update_preferences(
    body: list[PreferenceUpdate],
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    preferences = await services.scheduler.update_user_preferences(
        user_id, [update.model_dump(exclude_unset=True) for update in body]
    )
    return [PreferenceResponse(**p.to_dict()) for p in preferences]


@router.post("/send", status_code=200)
async def send_notification(
    body: SendNotificationRequest,
    _admin_id: str = Depends(get_admin_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """Send a notification on behalf of another service. An empty id means suppressed."""
    notification_id = await services.scheduler.send(NotificationRequest(**body.model_dump()))
    return {"id": notification_id, "suppressed": not notification_id}
