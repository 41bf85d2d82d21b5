"""Post visibility rules.

A post is visible to a viewer when it is active and one of these holds:

* its privacy is ``public``;
* its privacy is ``followers`` and the viewer follows the author;
* the viewer is the author.

``private`` posts are therefore only ever visible to their author.
"""

from typing import Iterable, Optional

FEED_TYPES = ("for-you", "recent", "following", "trending")


def visible_clauses(viewer_id: str, following_ids: Iterable[str]) -> list:
    following_ids = list(following_ids)
    return [
        {"privacy": "public"},
        {"privacy": "followers", "author_id": {"$in": following_ids}},
        {"author_id": viewer_id},
    ]


def feed_filter(feed_type: str, viewer_id: Optional[str], following_ids: Iterable[str] = ()) -> dict:
    """Build the Mongo filter for one of the feed types."""
    query = {"is_active": True}

    if feed_type == "trending" or viewer_id is None:
        query["privacy"] = "public"
        return query

    following_ids = list(following_ids)
    if feed_type == "following":
        query["$and"] = [
            {"author_id": {"$in": following_ids + [viewer_id]}},
            {"$or": visible_clauses(viewer_id, following_ids)},
        ]
    else:
        query["$or"] = visible_clauses(viewer_id, following_ids)
    return query


def profile_filter(author_id: str, viewer_id: Optional[str], is_following: bool) -> dict:
    if viewer_id is not None and viewer_id == author_id:
        return {"is_active": True, "author_id": author_id}
    if viewer_id is not None and is_following:
        return {
            "is_active": True,
            "author_id": author_id,
            "privacy": {"$in": ["public", "followers"]},
        }
    return {"is_active": True, "author_id": author_id, "privacy": "public"}


def can_view(post: dict, viewer_id: Optional[str], is_following: bool) -> bool:
    if not post.get("is_active", True):
        return False
    if viewer_id is not None and post["author_id"] == viewer_id:
        return True
    privacy = post.get("privacy", "public")
    if privacy == "public":
        return True
    if privacy == "followers":
        return viewer_id is not None and is_following
    return False
