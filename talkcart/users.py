import logging
import re
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo.errors import DuplicateKeyError

from . import notifications
from .auth import get_current_user, get_optional_user
from .database import get_db, page_bounds, pagination, validate_id
from .models import Follow, User, UserSummary, UserUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

POPULAR_FOLLOWER_COUNT = 100


# Follow graph helpers
async def get_following_ids(db, user_id: str) -> List[str]:
    edges = await db.follows.find(
        {"follower_id": user_id, "is_active": True}, {"_id": 0, "following_id": 1}
    ).to_list(length=None)
    return [e["following_id"] for e in edges]


async def get_follower_ids(db, user_id: str) -> List[str]:
    edges = await db.follows.find(
        {"following_id": user_id, "is_active": True}, {"_id": 0, "follower_id": 1}
    ).to_list(length=None)
    return [e["follower_id"] for e in edges]


async def is_following(db, follower_id: Optional[str], following_id: str) -> bool:
    if follower_id is None:
        return False
    edge = await db.follows.find_one(
        {"follower_id": follower_id, "following_id": following_id, "is_active": True}
    )
    return edge is not None


async def follow_user(db, follower_id: str, following_id: str) -> bool:
    """Create or reactivate a follow edge. Returns False if it already existed."""
    existing = await db.follows.find_one({"follower_id": follower_id, "following_id": following_id})
    if existing and existing.get("is_active", True):
        return False

    if existing:
        result = await db.follows.update_one(
            {"id": existing["id"], "is_active": False}, {"$set": {"is_active": True}}
        )
        if result.modified_count == 0:
            return False
    else:
        follow = Follow(follower_id=follower_id, following_id=following_id)
        try:
            await db.follows.insert_one(follow.model_dump())
        except DuplicateKeyError:
            return False

    await db.users.update_one({"id": following_id}, {"$inc": {"follower_count": 1}})
    await db.users.update_one({"id": follower_id}, {"$inc": {"following_count": 1}})
    return True


async def unfollow_user(db, follower_id: str, following_id: str) -> bool:
    result = await db.follows.update_one(
        {"follower_id": follower_id, "following_id": following_id, "is_active": True},
        {"$set": {"is_active": False}},
    )
    if result.modified_count == 0:
        return False

    await db.users.update_one({"id": following_id}, {"$inc": {"follower_count": -1}})
    await db.users.update_one({"id": follower_id}, {"$inc": {"following_count": -1}})
    return True


async def _get_active_user(db, user_id: str) -> dict:
    validate_id(user_id, "user ID")
    user = await db.users.find_one({"id": user_id}, {"_id": 0})
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def _summaries(db, user_ids: List[str]) -> List[UserSummary]:
    docs = await db.users.find({"id": {"$in": user_ids}}, {"_id": 0}).to_list(length=None)
    by_id = {d["id"]: d for d in docs}
    return [UserSummary(**by_id[i]) for i in user_ids if i in by_id]


# User routes
@router.put("/me", response_model=User)
async def update_current_user(
    user_update: UserUpdate,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    update_data = {k: v for k, v in user_update.model_dump().items() if v is not None}

    if update_data:
        await db.users.update_one({"id": current_user.id}, {"$set": update_data})

    updated_user = await db.users.find_one({"id": current_user.id}, {"_id": 0})
    return User(**updated_user)


@router.get("/search")
async def search_users(
    q: str = "",
    page: int = 1,
    limit: int = 20,
    exclude_ids: List[str] = Query([]),
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    if not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")

    page, limit, skip = page_bounds(page, limit)
    pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
    query = {
        "$or": [{"username": pattern}, {"display_name": pattern}, {"email": pattern}],
        "is_active": True,
        "id": {"$nin": [current_user.id] + exclude_ids},
    }
    docs = await db.users.find(query, {"_id": 0}) \
        .sort("display_name", 1).skip(skip).limit(limit).to_list(length=None)
    total = await db.users.count_documents(query)
    return {"users": [UserSummary(**d) for d in docs], "pagination": pagination(page, limit, total)}


def _suggestion_reason(user: dict) -> str:
    if user.get("is_verified"):
        return "Verified user"
    if user.get("follower_count", 0) > POPULAR_FOLLOWER_COUNT:
        return "Popular user"
    return "New to TalkCart"


@router.get("/suggestions")
async def suggest_users(
    limit: int = 5,
    search: Optional[str] = None,
    current_user: Optional[User] = Depends(get_optional_user),
    db=Depends(get_db),
):
    """Users worth following, verified and popular accounts first."""
    limit = min(max(limit, 1), 50)
    exclude = []
    if current_user is not None:
        exclude = await get_following_ids(db, current_user.id) + [current_user.id]

    query = {"id": {"$nin": exclude}, "is_active": True}
    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"username": pattern}, {"display_name": pattern}]

    docs = await db.users.find(query, {"_id": 0}) \
        .sort([("is_verified", -1), ("follower_count", -1), ("created_at", -1)]) \
        .limit(limit).to_list(length=None)
    suggestions = []
    for doc in docs:
        item = UserSummary(**doc).model_dump()
        item["follower_count"] = doc.get("follower_count", 0)
        item["bio"] = doc.get("bio") or ""
        item["suggestion_reason"] = _suggestion_reason(doc)
        suggestions.append(item)
    return {"suggestions": suggestions}


@router.get("/{user_id}", response_model=User)
async def get_user(user_id: str, db=Depends(get_db)):
    return User(**await _get_active_user(db, user_id))


# Follow routes
@router.post("/{user_id}/follow")
async def follow(user_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    validate_id(user_id, "user ID")
    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot follow yourself")
    await _get_active_user(db, user_id)

    if not await follow_user(db, current_user.id, user_id):
        return {"following": True, "message": "Already following"}

    logger.info("User %s followed %s", current_user.id, user_id)
    try:
        await notifications.create_follow_notification(db, current_user.id, user_id)
    except Exception:
        logger.exception("Failed to create follow notification")
    return {"following": True, "message": "User followed successfully"}


@router.delete("/{user_id}/follow")
async def unfollow(user_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    validate_id(user_id, "user ID")
    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot unfollow yourself")
    await _get_active_user(db, user_id)

    if not await unfollow_user(db, current_user.id, user_id):
        return {"following": False, "message": "Not following"}

    logger.info("User %s unfollowed %s", current_user.id, user_id)
    return {"following": False, "message": "User unfollowed successfully"}


async def _follow_page(db, query: dict, id_field: str, page: int, limit: int):
    page, limit, skip = page_bounds(page, limit)
    edges = await db.follows.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.follows.count_documents(query)
    users = await _summaries(db, [e[id_field] for e in edges])
    return users, pagination(page, limit, total)


@router.get("/{user_id}/followers")
async def list_followers(user_id: str, page: int = 1, limit: int = 20, db=Depends(get_db)):
    await _get_active_user(db, user_id)
    users, pages = await _follow_page(
        db, {"following_id": user_id, "is_active": True}, "follower_id", page, limit
    )
    return {"followers": users, "pagination": pages}


@router.get("/{user_id}/following")
async def list_following(user_id: str, page: int = 1, limit: int = 20, db=Depends(get_db)):
    await _get_active_user(db, user_id)
    users, pages = await _follow_page(
        db, {"follower_id": user_id, "is_active": True}, "following_id", page, limit
    )
    return {"following": users, "pagination": pages}


@router.get("/{user_id}/relationship")
async def relationship(
    user_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    db=Depends(get_db),
):
    await _get_active_user(db, user_id)
    if current_user is None:
        return {"is_following": False, "is_followed_by": False, "is_self": False}
    return {
        "is_following": await is_following(db, current_user.id, user_id),
        "is_followed_by": await is_following(db, user_id, current_user.id),
        "is_self": current_user.id == user_id,
    }
