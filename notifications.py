import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import get_db, now_utc, oid, owned_by, serialize
from errors import ApiError
from schemas import Notification, NotificationType
from security import CurrentUser, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

LIST_LIMIT = 50


def notify(
    db: Database,
    user_id: str,
    title: str,
    message: str,
    type_: str = "info",
    setting: Optional[str] = None,
) -> Optional[str]:
    """
    Best-effort notification for a side effect (task created, profile saved...).

    When `setting` names a notificationSettings flag that the user turned
    off, nothing is stored. Never raises; storage failures are logged.
    """
    try:
        if setting:
            user = db["user"].find_one({"_id": oid(user_id)}, {"notificationSettings": 1})
            prefs = (user or {}).get("notificationSettings") or {}
            if prefs.get(setting, True) is False:
                return None
        doc = Notification(userId=str(user_id), title=title, message=message, type=type_, timestamp=now_utc())
        res = db["notification"].insert_one({**doc.model_dump(), "userId": oid(user_id)})
        return str(res.inserted_id)
    except (PyMongoError, ApiError, ValueError) as e:
        logger.warning("Notification %r for user %s not stored: %s", title, user_id, e)
        return None


class NotificationCreate(BaseModel):
    title: str
    message: str
    type: NotificationType = "info"


@router.get("")
async def list_notifications(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    cursor = db["notification"].find(owned_by("userId", user.user_id)).sort("timestamp", DESCENDING).limit(LIST_LIMIT)
    return {"state": True, "notifications": [serialize(n) for n in cursor]}


@router.post("")
async def create_notification(
    body: NotificationCreate,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    doc = Notification(userId=user.user_id, timestamp=now_utc(), **body.model_dump())
    payload = {**doc.model_dump(), "userId": oid(user.user_id)}
    res = db["notification"].insert_one(payload)
    logger.info("Notification created for %s: %s (%s)", user.user_id, body.title, body.type)
    return {"state": True, "notification": serialize({**payload, "_id": res.inserted_id})}


@router.patch("/read-all")
async def mark_all_read(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    db["notification"].update_many({**owned_by("userId", user.user_id), "read": False}, {"$set": {"read": True}})
    return {"state": True, "message": "All notifications marked as read"}


@router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query = {"_id": oid(notification_id), **owned_by("userId", user.user_id)}
    res = db["notification"].update_one(query, {"$set": {"read": True}})
    if res.matched_count == 0:
        raise ApiError(404, "Notification not found")
    return {"state": True, "notification": serialize(db["notification"].find_one(query))}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    res = db["notification"].delete_one({"_id": oid(notification_id), **owned_by("userId", user.user_id)})
    if res.deleted_count == 0:
        raise ApiError(404, "Notification not found")
    return {"state": True, "message": "Notification deleted successfully"}


@router.delete("")
async def clear_notifications(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    db["notification"].delete_many(owned_by("userId", user.user_id))
    return {"state": True, "message": "All notifications cleared"}
