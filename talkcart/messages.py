"""Direct and group messaging between users.

Conversations hold a list of participant ids. Messages keep their read
receipts, reactions and edit history inline; deleting a message blanks
its content but keeps the document so replies still resolve.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response

from . import notifications
from .auth import get_current_user
from .database import as_utc, get_db, page_bounds, pagination, utcnow, validate_id
from .models import (
    Conversation,
    DirectConversationCreate,
    DirectMessage,
    DirectMessageCreate,
    EditRecord,
    MessageEdit,
    Reaction,
    ReactionRequest,
    ReadReceipt,
    User,
)
from .users import _summaries

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])

DELETED_CONTENT = "This message was deleted"
EDIT_WINDOW = timedelta(hours=24)


def _unread_query(conversation_id: str, user_id: str) -> dict:
    return {
        "conversation_id": conversation_id,
        "sender_id": {"$ne": user_id},
        "read_by.user_id": {"$ne": user_id},
        "is_deleted": {"$ne": True},
    }


def message_view(message: dict, viewer_id: str) -> dict:
    view = DirectMessage(**message).model_dump()
    view["is_own"] = message["sender_id"] == viewer_id
    view["is_read"] = any(r["user_id"] == viewer_id for r in message.get("read_by", []))
    return view


async def _get_conversation(db, conversation_id: str, user: User) -> dict:
    validate_id(conversation_id, "conversation ID")
    conversation = await db.conversations.find_one(
        {"id": conversation_id, "participants": user.id, "is_active": True}, {"_id": 0}
    )
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found or access denied")
    return conversation


async def _get_message(db, message_id: str, user: User):
    """Return ``(message, conversation)`` for a participant of the conversation."""
    validate_id(message_id, "message ID")
    message = await db.messages.find_one({"id": message_id}, {"_id": 0})
    if not message or message.get("is_deleted"):
        raise HTTPException(status_code=404, detail="Message not found")
    conversation = await db.conversations.find_one({"id": message["conversation_id"]}, {"_id": 0})
    if not conversation or user.id not in conversation["participants"]:
        raise HTTPException(status_code=403, detail="Access denied")
    return message, conversation


async def _conversation_views(db, conversations: List[dict], user_id: str) -> List[dict]:
    ids = [c["last_message_id"] for c in conversations if c.get("last_message_id")]
    last_messages = await db.messages.find({"id": {"$in": ids}}, {"_id": 0}).to_list(length=None)
    by_id = {m["id"]: m for m in last_messages}

    result = []
    for c in conversations:
        item = Conversation(**c).model_dump()
        others = [p for p in c["participants"] if p != user_id]
        item["participant_summaries"] = [s.model_dump() for s in await _summaries(db, others)]
        last = by_id.get(c.get("last_message_id"))
        item["last_message"] = message_view(last, user_id) if last else None
        item["unread_count"] = await db.messages.count_documents(_unread_query(c["id"], user_id))
        result.append(item)
    return result


async def notify_participants(db, conversation: dict, sender_id: str, content: str):
    for recipient_id in conversation["participants"]:
        if recipient_id == sender_id:
            continue
        try:
            await notifications.create_message_notification(
                db, sender_id, recipient_id, conversation["id"], content or "Sent an attachment"
            )
        except Exception:
            logger.exception("Failed to create message notification for %s", recipient_id)


# Conversations
@router.get("/conversations")
async def list_conversations(
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    page, limit, skip = page_bounds(page, limit)
    query = {"participants": current_user.id, "is_active": True}
    docs = await db.conversations.find(query, {"_id": 0}) \
        .sort("last_activity", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.conversations.count_documents(query)
    return {
        "conversations": await _conversation_views(db, docs, current_user.id),
        "pagination": pagination(page, limit, total),
    }


@router.post("/conversations", status_code=201)
async def create_conversation(
    body: DirectConversationCreate,
    response: Response,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    others = []
    for participant_id in body.participant_ids:
        validate_id(participant_id, "participant ID")
        if participant_id != current_user.id and participant_id not in others:
            others.append(participant_id)
    if not others:
        raise HTTPException(status_code=400, detail="At least one other participant is required")

    group_name = (body.group_name or "").strip()
    if body.is_group and not group_name:
        raise HTTPException(status_code=400, detail="Group name is required for group conversations")
    if not body.is_group and len(others) != 1:
        raise HTTPException(status_code=400, detail="Direct conversations have exactly one other participant")

    found = await db.users.count_documents({"id": {"$in": others}, "is_active": True})
    if found != len(others):
        raise HTTPException(status_code=404, detail="One or more users not found")

    participants = [current_user.id] + others
    if not body.is_group:
        existing = await db.conversations.find_one(
            {"participants": {"$all": participants, "$size": 2}, "is_group": False, "is_active": True},
            {"_id": 0},
        )
        if existing:
            response.status_code = 200
            view = (await _conversation_views(db, [existing], current_user.id))[0]
            return {"conversation": view, "is_new": False, "message": "Conversation already exists"}

    conversation = Conversation(
        participants=participants,
        is_group=body.is_group,
        group_name=group_name or None,
        group_description=body.group_description if body.is_group else None,
        admin_id=current_user.id if body.is_group else None,
    )
    await db.conversations.insert_one(conversation.model_dump())
    logger.info("Conversation %s created by %s with %d participants",
                conversation.id, current_user.id, len(participants))
    view = (await _conversation_views(db, [conversation.model_dump()], current_user.id))[0]
    return {"conversation": view, "is_new": True}


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    conversation = await _get_conversation(db, conversation_id, current_user)
    return {"conversation": (await _conversation_views(db, [conversation], current_user.id))[0]}


@router.get("/conversations/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    page: int = 1,
    limit: int = 50,
    before: Optional[datetime] = None,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    await _get_conversation(db, conversation_id, current_user)

    page, limit, skip = page_bounds(page, limit)
    query = {"conversation_id": conversation_id, "is_deleted": {"$ne": True}}
    if before is not None:
        query["created_at"] = {"$lt": as_utc(before)}
    docs = await db.messages.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.messages.count_documents(query)

    docs.reverse()
    return {
        "messages": [message_view(d, current_user.id) for d in docs],
        "pagination": pagination(page, limit, total),
    }


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    body: DirectMessageCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    conversation = await _get_conversation(db, conversation_id, current_user)

    content = body.content.strip()
    if not content and not body.media:
        raise HTTPException(status_code=400, detail="Message content or media is required")

    if body.reply_to:
        validate_id(body.reply_to, "message ID")
        target = await db.messages.find_one(
            {"id": body.reply_to, "conversation_id": conversation_id}, {"_id": 0, "id": 1}
        )
        if not target:
            raise HTTPException(status_code=404, detail="Reply target not found")

    message = DirectMessage(
        conversation_id=conversation_id,
        sender_id=current_user.id,
        content=content,
        type=body.type,
        media=body.media,
        reply_to=body.reply_to,
        read_by=[ReadReceipt(user_id=current_user.id)],
    )
    await db.messages.insert_one(message.model_dump())
    await db.conversations.update_one(
        {"id": conversation_id},
        {"$set": {"last_message_id": message.id, "last_activity": message.created_at}},
    )

    background_tasks.add_task(notify_participants, db, conversation, current_user.id, content)
    return {"message": message_view(message.model_dump(), current_user.id)}


@router.get("/conversations/{conversation_id}/search")
async def search_messages(
    conversation_id: str,
    q: str = "",
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    await _get_conversation(db, conversation_id, current_user)
    if not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")

    page, limit, skip = page_bounds(page, limit)
    query = {
        "conversation_id": conversation_id,
        "is_deleted": {"$ne": True},
        "content": {"$regex": re.escape(q.strip()), "$options": "i"},
    }
    docs = await db.messages.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.messages.count_documents(query)
    return {
        "messages": [message_view(d, current_user.id) for d in docs],
        "pagination": pagination(page, limit, total),
    }


@router.put("/conversations/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    await _get_conversation(db, conversation_id, current_user)
    receipt = ReadReceipt(user_id=current_user.id).model_dump()
    result = await db.messages.update_many(
        _unread_query(conversation_id, current_user.id), {"$push": {"read_by": receipt}}
    )
    return {"message": "Conversation marked as read", "marked_count": result.modified_count}


# Single messages
@router.put("/{message_id}/read")
async def mark_message_read(
    message_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    await _get_message(db, message_id, current_user)
    receipt = ReadReceipt(user_id=current_user.id).model_dump()
    await db.messages.update_one(
        {"id": message_id, "read_by.user_id": {"$ne": current_user.id}}, {"$push": {"read_by": receipt}}
    )
    return {"message": "Message marked as read", "is_read": True}


@router.post("/{message_id}/reactions")
async def toggle_reaction(
    message_id: str,
    body: ReactionRequest,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    emoji = body.emoji.strip()
    if not emoji:
        raise HTTPException(status_code=400, detail="Emoji is required")
    await _get_message(db, message_id, current_user)

    mine = {"user_id": current_user.id, "emoji": emoji}
    reaction = Reaction(user_id=current_user.id, emoji=emoji).model_dump()
    result = await db.messages.update_one(
        {"id": message_id, "reactions": {"$not": {"$elemMatch": mine}}}, {"$push": {"reactions": reaction}}
    )
    added = result.modified_count > 0
    if not added:
        await db.messages.update_one({"id": message_id}, {"$pull": {"reactions": mine}})

    message = await db.messages.find_one({"id": message_id}, {"_id": 0})
    return {
        "action": "added" if added else "removed",
        "emoji": emoji,
        "reactions": message.get("reactions", []),
    }


@router.put("/{message_id}/edit")
async def edit_message(
    message_id: str,
    body: MessageEdit,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    content = body.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is required")

    message, _ = await _get_message(db, message_id, current_user)
    if message["sender_id"] != current_user.id:
        raise HTTPException(status_code=403, detail="You can only edit your own messages")
    if utcnow() - as_utc(message["created_at"]) > EDIT_WINDOW:
        raise HTTPException(status_code=403, detail="Message is too old to edit")

    now = utcnow()
    record = EditRecord(content=message["content"], edited_at=now).model_dump()
    await db.messages.update_one(
        {"id": message_id},
        {"$set": {"content": content, "is_edited": True, "updated_at": now}, "$push": {"edit_history": record}},
    )
    updated = await db.messages.find_one({"id": message_id}, {"_id": 0})
    return {"message": message_view(updated, current_user.id)}


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    message, conversation = await _get_message(db, message_id, current_user)
    is_group_admin = conversation.get("is_group") and conversation.get("admin_id") == current_user.id
    if message["sender_id"] != current_user.id and not is_group_admin:
        raise HTTPException(status_code=403, detail="You can only delete your own messages")

    now = utcnow()
    await db.messages.update_one(
        {"id": message_id},
        {"$set": {"is_deleted": True, "deleted_at": now, "content": DELETED_CONTENT, "media": [],
                  "updated_at": now}},
    )
    logger.info("Message %s deleted by %s", message_id, current_user.id)
    return {"message": "Message deleted successfully"}
