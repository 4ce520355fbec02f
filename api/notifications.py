from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from database import get_db
from services import notifications
from utils.dates import isoformat_or_none

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _to_response(n) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "read": n.read,
        "createdAt": isoformat_or_none(n.created_at),
    }


@router.get("")
async def list_notifications(
    unread: bool = False, user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)
):
    notes = await notifications.list_notifications(db, user_id, unread_only=unread)
    return [_to_response(n) for n in notes]


@router.post("/{notification_id}/read")
async def mark_read(notification_id: str, user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    note = await notifications.mark_read(db, user_id, notification_id)
    if note is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return _to_response(note)
