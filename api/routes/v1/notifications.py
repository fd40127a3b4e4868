"""
api/routes/v1/notifications.py -- Admin broadcast over the notifications hub.

POST /api/v1/notifications  (SETTINGS_MANAGER CREATE)

Target is chosen by the body: userId -> user:{id}, else roleCode ->
role:{CODE}, else the global group. Delivery is fire-and-forget; the
response reports how many live sockets received it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import NotificationCreate, NotificationResponse
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import require_permission
from auth.models import User
from realtime.hub import GLOBAL_GROUP, role_group, user_group

logger = logging.getLogger("ktk.api")

router = APIRouter()


@limiter.limit("30/minute")
@router.post("/notifications", response_model=NotificationResponse, status_code=202)
async def send_notification(
    request: Request,
    body: NotificationCreate,
    current_user: User = Depends(require_permission(ModuleCodes.SETTINGS_MANAGER, PermissionCodes.CREATE)),
) -> NotificationResponse:
    if body.user_id is not None:
        group, event = user_group(body.user_id), "ReceiveNotification"
    elif body.role_code:
        group, event = role_group(body.role_code), "ReceiveNotification"
    else:
        group, event = GLOBAL_GROUP, "ReceiveGlobalNotification"

    payload = {
        "title": body.title,
        "message": body.message,
        "data": body.data,
        "createdBy": current_user.id,
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }
    delivered = await request.app.state.notification_hub.send_group(group, event, payload)
    logger.info("Notification to %s by user %s delivered to %d socket(s)", group, current_user.id, delivered)
    return NotificationResponse(group=group, delivered=delivered)
