import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from .auth import get_current_user
from .database import get_db, page_bounds, pagination, utcnow, validate_id
from .models import MarkReadRequest, Notification, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _excerpt(text: str, size: int = 100) -> str:
    if len(text) > size:
        return text[:size] + "..."
    return text


async def _display_name(db, user_id: str) -> str:
    user = await db.users.find_one({"id": user_id}, {"_id": 0, "display_name": 1, "username": 1})
    if not user:
        return "Someone"
    return user.get("display_name") or user.get("username") or "Someone"


async def create_notification(db, recipient_id: str, sender_id: Optional[str], type: str,
                              title: str, message: str, data: Optional[dict] = None,
                              action_url: Optional[str] = None, priority: str = "normal"):
    """Store a notification; returns ``None`` when a user would notify themselves."""
    if sender_id is not None and sender_id == recipient_id:
        return None

    notification = Notification(
        recipient_id=recipient_id,
        sender_id=sender_id,
        type=type,
        title=title,
        message=message,
        data=data or {},
        action_url=action_url,
        priority=priority,
    )
    await db.notifications.insert_one(notification.model_dump())
    logger.debug("Notification %s (%s) -> %s", notification.id, type, recipient_id)
    return notification


async def create_follow_notification(db, follower_id: str, following_id: str):
    name = await _display_name(db, follower_id)
    return await create_notification(
        db, following_id, follower_id, "follow",
        title="New follower",
        message=f"{name} started following you",
        data={"follower_id": follower_id},
        action_url=f"/profile/{follower_id}",
    )


async def create_like_notification(db, liker_id: str, author_id: str, post_id: str, post_content: str = ""):
    name = await _display_name(db, liker_id)
    return await create_notification(
        db, author_id, liker_id, "like",
        title="New like",
        message=f"{name} liked your post",
        data={"post_id": post_id, "post_content": _excerpt(post_content)},
        action_url=f"/post/{post_id}",
    )


async def create_comment_notification(db, commenter_id: str, author_id: str, post_id: str, comment: str):
    name = await _display_name(db, commenter_id)
    return await create_notification(
        db, author_id, commenter_id, "comment",
        title="New comment",
        message=f"{name} commented: {_excerpt(comment)}",
        data={"post_id": post_id},
        action_url=f"/post/{post_id}",
    )


async def create_message_notification(db, sender_id: str, recipient_id: str, conversation_id: str, content: str):
    name = await _display_name(db, sender_id)
    return await create_notification(
        db, recipient_id, sender_id, "message",
        title=f"New message from {name}",
        message=_excerpt(content),
        data={"conversation_id": conversation_id},
        action_url=f"/messages?conversation={conversation_id}",
        priority="high",
    )


async def create_post_notification(db, author_id: str, follower_id: str, post: dict):
    name = await _display_name(db, author_id)
    return await create_notification(
        db, follower_id, author_id, "post",
        title=f"{name} just posted",
        message=_excerpt(post["content"]),
        data={"post_id": post["id"], "post_type": post.get("type", "text"), "author_id": author_id},
        action_url=f"/post/{post['id']}",
    )


async def get_user_notifications(db, user_id: str, page: int = 1, limit: int = 20,
                                 unread_only: bool = False, type: Optional[str] = None) -> dict:
    page, limit, skip = page_bounds(page, limit)
    query = {"recipient_id": user_id}
    if unread_only:
        query["is_read"] = False
    if type:
        query["type"] = type

    docs = await db.notifications.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.notifications.count_documents(query)
    return {
        "notifications": [Notification(**d) for d in docs],
        "pagination": pagination(page, limit, total),
        "unread_count": await get_unread_count(db, user_id),
    }


async def get_unread_count(db, user_id: str) -> int:
    return await db.notifications.count_documents({"recipient_id": user_id, "is_read": False})


async def mark_as_read(db, notification_ids: List[str], user_id: str) -> int:
    result = await db.notifications.update_many(
        {"id": {"$in": notification_ids}, "recipient_id": user_id, "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow()}},
    )
    return result.modified_count


async def mark_all_as_read(db, user_id: str) -> int:
    result = await db.notifications.update_many(
        {"recipient_id": user_id, "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow()}},
    )
    return result.modified_count


async def delete_notification(db, notification_id: str, user_id: str) -> bool:
    result = await db.notifications.delete_one({"id": notification_id, "recipient_id": user_id})
    return result.deleted_count > 0


# Routes
@router.get("")
async def list_notifications(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    type: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    return await get_user_notifications(db, current_user.id, page, limit, unread_only, type)


@router.get("/unread-count")
async def unread_count(current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return {"unread_count": await get_unread_count(db, current_user.id)}


@router.put("/read")
async def read_notifications(
    body: MarkReadRequest,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    ids = [validate_id(i, "notification ID") for i in body.notification_ids]
    modified = await mark_as_read(db, ids, current_user.id)
    return {"modified_count": modified, "unread_count": await get_unread_count(db, current_user.id)}


@router.put("/read-all")
async def read_all_notifications(current_user: User = Depends(get_current_user), db=Depends(get_db)):
    modified = await mark_all_as_read(db, current_user.id)
    return {"modified_count": modified, "unread_count": 0}


@router.delete("/{notification_id}")
async def remove_notification(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    validate_id(notification_id, "notification ID")
    if not await delete_notification(db, notification_id, current_user.id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"message": "Notification deleted"}
