from fastapi import APIRouter, Depends, Query

from api.deps import get_engine
from auth.utils import get_current_user
from db.models import User
from services.adherence_engine import AdherenceEngine
from services.errors import NotFound

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    return [n.to_dict() for n in engine.notifications.list(user.id, unread_only=unread_only)]


@router.get("/count")
def notification_count(
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    return {"count": engine.notifications.count(user.id, unread_only=True)}


@router.put("/read-all")
def read_all_notifications(
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    marked = engine.notifications.mark_all_read(user.id)
    return {"status": "ok", "marked": marked}


@router.put("/{notification_id}/read")
def read_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    if not engine.notifications.mark_read(user.id, notification_id):
        raise NotFound("Notification not found")
    return {"status": "ok", "notification_id": notification_id, "read": True}


@router.delete("/{notification_id}")
def delete_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    if not engine.notifications.delete(user.id, notification_id):
        raise NotFound("Notification not found")
    return {"status": "ok", "notification_id": notification_id}
