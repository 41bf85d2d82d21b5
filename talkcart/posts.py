import logging
import re
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from . import notifications, privacy
from .auth import get_current_user, get_optional_user
from .database import get_db, page_bounds, pagination, utcnow, validate_id
from .models import (
    Comment,
    CommentCreate,
    Interaction,
    Post,
    PostCreate,
    PostPage,
    PostView,
    ShareRequest,
    User,
    UserSummary,
)
from .users import get_follower_ids, get_following_ids, is_following

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/posts", tags=["posts"])
profile_router = APIRouter(prefix="/users", tags=["posts"])

MAX_VIDEO_BYTES = 200 * 1024 * 1024


def _has_user(entries, user_id: Optional[str]) -> bool:
    if user_id is None:
        return False
    return any(e.get("user_id") == user_id for e in entries or [])


def to_view(post: dict, viewer_id: Optional[str]) -> PostView:
    author = post.get("author")
    likes = post.get("likes", [])
    shares = post.get("shares", [])
    bookmarks = post.get("bookmarks", [])
    return PostView(
        id=post["id"],
        author_id=post["author_id"],
        author=UserSummary(**author) if author else None,
        content=post["content"],
        type=post.get("type", "text"),
        media=post.get("media", []),
        hashtags=post.get("hashtags", []),
        location=post.get("location"),
        privacy=post.get("privacy", "public"),
        views=post.get("views", 0),
        like_count=len(likes),
        comment_count=post.get("comment_count", 0),
        share_count=len(shares),
        bookmark_count=len(bookmarks),
        is_liked=_has_user(likes, viewer_id),
        is_bookmarked=_has_user(bookmarks, viewer_id),
        is_shared=_has_user(shares, viewer_id),
        created_at=post["created_at"],
    )


async def load_posts(db, query: dict, skip: int, limit: int) -> List[dict]:
    # Get posts with author info
    pipeline = [
        {"$match": query},
        {"$sort": {"created_at": -1}},
        {"$skip": skip},
        {"$limit": limit},
        {
            "$lookup": {
                "from": "users",
                "localField": "author_id",
                "foreignField": "id",
                "as": "author"
            }
        },
        {"$unwind": "$author"},
    ]
    return await db.posts.aggregate(pipeline).to_list(length=None)


async def _page(db, query: dict, page: int, limit: int, viewer_id: Optional[str],
                feed_type: Optional[str] = None) -> PostPage:
    page, limit, skip = page_bounds(page, limit)
    posts = await load_posts(db, query, skip, limit)
    total = await db.posts.count_documents(query)
    return PostPage(
        posts=[to_view(p, viewer_id) for p in posts],
        pagination=pagination(page, limit, total),
        feed_type=feed_type,
    )


async def _get_visible_post(db, post_id: str, viewer_id: Optional[str]) -> dict:
    validate_id(post_id, "post ID")
    post = await db.posts.find_one({"id": post_id}, {"_id": 0})
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    following = await is_following(db, viewer_id, post["author_id"])
    if not privacy.can_view(post, viewer_id, following):
        raise HTTPException(status_code=404, detail="Post not found")
    return post


def _validate_media(body: PostCreate):
    if body.type != "text" and not body.media:
        raise HTTPException(status_code=400, detail=f"{body.type.capitalize()} posts require media files")
    for index, item in enumerate(body.media):
        if body.type == "video" and item.resource_type != "video":
            raise HTTPException(
                status_code=400,
                detail=f"Video posts require video files. Found: {item.resource_type} in media item {index}",
            )
        if item.resource_type == "video" and item.bytes and item.bytes > MAX_VIDEO_BYTES:
            raise HTTPException(
                status_code=400,
                detail=f"Video files must be less than 200MB. Current size: {item.bytes / (1024 * 1024):.1f}MB",
            )


async def notify_followers(db, author_id: str, post: dict):
    try:
        follower_ids = await get_follower_ids(db, author_id)
        for follower_id in follower_ids:
            await notifications.create_post_notification(db, author_id, follower_id, post)
        logger.info("Notified %d followers about post %s", len(follower_ids), post["id"])
    except Exception:
        logger.exception("Error notifying followers about post %s", post["id"])


# Post routes
@router.post("", response_model=PostView, status_code=201)
async def create_post(
    post_data: PostCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    if not post_data.content:
        raise HTTPException(status_code=400, detail="Post content is required")
    _validate_media(post_data)

    post = Post(author_id=current_user.id, **post_data.model_dump())
    doc = post.model_dump()
    await db.posts.insert_one(doc)
    doc.pop("_id", None)
    logger.info("Post %s created by %s (%s, %s)", post.id, current_user.id, post.type, post.privacy)

    background_tasks.add_task(notify_followers, db, current_user.id, doc)

    doc["author"] = current_user.model_dump()
    return to_view(doc, current_user.id)


@router.get("", response_model=PostPage)
async def get_posts(
    feed_type: str = "for-you",
    page: int = 1,
    limit: int = 20,
    content_type: str = "all",
    author_id: Optional[str] = None,
    hashtag: Optional[str] = None,
    search: Optional[str] = None,
    current_user: Optional[User] = Depends(get_optional_user),
    db=Depends(get_db),
):
    if feed_type not in privacy.FEED_TYPES:
        raise HTTPException(status_code=400, detail="Invalid feed type")
    viewer_id = current_user.id if current_user else None

    if author_id:
        validate_id(author_id, "author ID")
        following = await is_following(db, viewer_id, author_id)
        query = privacy.profile_filter(author_id, viewer_id, following)
    else:
        following_ids = await get_following_ids(db, viewer_id) if viewer_id else []
        query = privacy.feed_filter(feed_type, viewer_id, following_ids)

    if content_type != "all":
        query["type"] = content_type
    if hashtag:
        query["hashtags"] = hashtag.lstrip("#").lower()
    if search and search.strip():
        query = {"$and": [query, {"content": {"$regex": re.escape(search.strip()), "$options": "i"}}]}

    return await _page(db, query, page, limit, viewer_id, feed_type)


@router.get("/public", response_model=PostPage)
async def get_public_posts(page: int = 1, limit: int = 20, db=Depends(get_db)):
    return await _page(db, privacy.feed_filter("recent", None), page, limit, None, "public")


@router.get("/bookmarks", response_model=PostPage)
async def get_bookmarked_posts(
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    following_ids = await get_following_ids(db, current_user.id)
    query = {
        "$and": [
            {"bookmarks.user_id": current_user.id},
            privacy.feed_filter("recent", current_user.id, following_ids),
        ]
    }
    return await _page(db, query, page, limit, current_user.id)


@router.get("/trending/hashtags")
async def trending_hashtags(limit: int = 10, db=Depends(get_db)):
    pipeline = [
        {"$match": {"is_active": True, "privacy": "public"}},
        {"$unwind": "$hashtags"},
        {"$group": {"_id": "$hashtags", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
        {"$limit": min(max(limit, 1), 50)},
    ]
    rows = await db.posts.aggregate(pipeline).to_list(length=None)
    return {"hashtags": [{"hashtag": r["_id"], "count": r["count"]} for r in rows]}


@profile_router.get("/{user_id}/posts", response_model=PostPage)
@router.get("/user/{user_id}", response_model=PostPage)
async def get_user_posts(
    user_id: str,
    page: int = 1,
    limit: int = 20,
    current_user: Optional[User] = Depends(get_optional_user),
    db=Depends(get_db),
):
    validate_id(user_id, "user ID")
    viewer_id = current_user.id if current_user else None
    following = await is_following(db, viewer_id, user_id)
    return await _page(db, privacy.profile_filter(user_id, viewer_id, following), page, limit, viewer_id)


@router.get("/{post_id}", response_model=PostView)
async def get_post(
    post_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    db=Depends(get_db),
):
    viewer_id = current_user.id if current_user else None
    await _get_visible_post(db, post_id, viewer_id)
    await db.posts.update_one({"id": post_id}, {"$inc": {"views": 1}})

    posts = await load_posts(db, {"id": post_id}, 0, 1)
    if not posts:
        raise HTTPException(status_code=404, detail="Post not found")
    return to_view(posts[0], viewer_id)


@router.delete("/{post_id}")
async def delete_post(post_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    post = await _get_visible_post(db, post_id, current_user.id)
    if post["author_id"] != current_user.id:
        raise HTTPException(status_code=403, detail="You can only delete your own posts")

    await db.posts.update_one({"id": post_id}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    logger.info("Post %s deleted by %s", post_id, current_user.id)
    return {"message": "Post deleted successfully"}


async def _toggle(db, post_id: str, field: str, user_id: str) -> bool:
    """Flip ``user_id``'s entry in the ``field`` array; returns the new state."""
    entry = Interaction(user_id=user_id).model_dump()
    result = await db.posts.update_one(
        {"id": post_id, f"{field}.user_id": {"$ne": user_id}}, {"$push": {field: entry}}
    )
    if result.modified_count:
        return True
    await db.posts.update_one({"id": post_id}, {"$pull": {field: {"user_id": user_id}}})
    return False


async def _count(db, post_id: str, field: str) -> int:
    post = await db.posts.find_one({"id": post_id}, {"_id": 0, field: 1})
    return len(post.get(field, [])) if post else 0


# Interaction routes
@router.post("/{post_id}/like")
async def toggle_like(post_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    post = await _get_visible_post(db, post_id, current_user.id)
    liked = await _toggle(db, post_id, "likes", current_user.id)

    if liked and post["author_id"] != current_user.id:
        try:
            await notifications.create_like_notification(
                db, current_user.id, post["author_id"], post_id, post["content"]
            )
        except Exception:
            logger.exception("Failed to create like notification")

    return {
        "post_id": post_id,
        "action": "like" if liked else "unlike",
        "is_liked": liked,
        "like_count": await _count(db, post_id, "likes"),
    }


@router.post("/{post_id}/bookmark")
async def toggle_bookmark(post_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    await _get_visible_post(db, post_id, current_user.id)
    bookmarked = await _toggle(db, post_id, "bookmarks", current_user.id)
    return {
        "post_id": post_id,
        "action": "bookmark" if bookmarked else "unbookmark",
        "is_bookmarked": bookmarked,
        "bookmark_count": await _count(db, post_id, "bookmarks"),
    }


@router.post("/{post_id}/share")
async def share_post(
    post_id: str,
    body: Optional[ShareRequest] = None,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    await _get_visible_post(db, post_id, current_user.id)
    platform = body.platform if body else "internal"

    # one share per user
    await db.posts.update_one(
        {"id": post_id, "shares.user_id": {"$ne": current_user.id}},
        {"$push": {"shares": Interaction(user_id=current_user.id).model_dump()}},
    )
    logger.info("Post %s shared by %s via %s", post_id, current_user.id, platform)
    return {
        "post_id": post_id,
        "action": "share",
        "platform": platform,
        "share_count": await _count(db, post_id, "shares"),
    }


# Comment routes
@router.post("/{post_id}/comments", response_model=Comment, status_code=201)
async def create_comment(
    post_id: str,
    comment_data: CommentCreate,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    post = await _get_visible_post(db, post_id, current_user.id)
    content = comment_data.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Comment content is required")

    comment = Comment(post_id=post_id, author_id=current_user.id, content=content)
    await db.comments.insert_one(comment.model_dump())

    # Update post's comments count
    await db.posts.update_one({"id": post_id}, {"$inc": {"comment_count": 1}})

    try:
        await notifications.create_comment_notification(
            db, current_user.id, post["author_id"], post_id, content
        )
    except Exception:
        logger.exception("Failed to create comment notification")

    return comment


@router.get("/{post_id}/comments", response_model=List[Comment])
async def get_comments(
    post_id: str,
    limit: int = 50,
    offset: int = 0,
    current_user: Optional[User] = Depends(get_optional_user),
    db=Depends(get_db),
):
    await _get_visible_post(db, post_id, current_user.id if current_user else None)
    comments = await db.comments.find(
        {"post_id": post_id, "is_active": True}, {"_id": 0}
    ).sort("created_at", -1).skip(max(offset, 0)).limit(min(max(limit, 1), 100)).to_list(length=None)

    return [Comment(**comment) for comment in comments]
