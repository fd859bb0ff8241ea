"""
starling.api.routes.posts — Posts, votes and the feed
======================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from starling.api.deps import get_engine, get_fanout
from starling.constants import FEED_DEFAULT_LIMIT
from starling.services import post_service, rating_service

router = APIRouter(tags=["posts"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PostCreate(_CamelModel):
    author_id: int
    self_rating: int
    kind: str = "global"
    text: str | None = None
    image_ref: str | None = None


class ActingUser(_CamelModel):
    acting_user_id: int


class VoteCast(_CamelModel):
    voter_id: int
    stars: int


@router.post("/posts", status_code=201)
def create_post(body: PostCreate, engine=Depends(get_engine), fanout=Depends(get_fanout)):
    post = post_service.create_post(
        engine,
        fanout,
        author_id=body.author_id,
        self_rating=body.self_rating,
        kind=body.kind,
        text=body.text,
        image_ref=body.image_ref,
    )
    return {"postId": post.id}


@router.delete("/posts/{post_id}")
def delete_post(
    post_id: int,
    body: ActingUser,
    engine=Depends(get_engine),
    fanout=Depends(get_fanout),
):
    post_service.delete_post(
        engine, fanout, post_id=post_id, acting_user_id=body.acting_user_id,
    )
    return {"ok": True}


@router.post("/posts/{post_id}/votes")
def cast_vote(
    post_id: int,
    body: VoteCast,
    engine=Depends(get_engine),
    fanout=Depends(get_fanout),
):
    avg = rating_service.cast_vote(
        engine, fanout, voter_id=body.voter_id, post_id=post_id, stars=body.stars,
    )
    return {"averageRating": avg}


@router.get("/posts/{post_id}/rating")
def get_rating(post_id: int, engine=Depends(get_engine)):
    summary = rating_service.get_rating(engine, post_id)
    return {
        "postId": summary.post_id,
        "averageRating": summary.average,
        "voteCount": summary.vote_count,
    }


@router.get("/feed")
def get_feed(
    viewer_id: int = Query(alias="viewerId"),
    scope: str = "all",
    limit: int = FEED_DEFAULT_LIMIT,
    engine=Depends(get_engine),
):
    """Visible posts, newest first, with the viewer's own votes."""
    items = post_service.list_feed(engine, viewer_id=viewer_id, scope=scope, limit=limit)
    return [item.to_dict() for item in items]
