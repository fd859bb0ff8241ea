"""
starling.api.routes.friendships — Friend requests and unfriending
==================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from starling.api.deps import get_engine, get_fanout
from starling.services import friendship_service

router = APIRouter(tags=["friendships"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FriendRequestCreate(_CamelModel):
    sender_id: int
    receiver_id: int


class FriendRequestResponse(_CamelModel):
    acting_user_id: int
    action: str


class Unfriend(_CamelModel):
    acting_user_id: int


@router.post("/friendships", status_code=201)
def send_request(
    body: FriendRequestCreate,
    engine=Depends(get_engine),
    fanout=Depends(get_fanout),
):
    row = friendship_service.send_request(
        engine, fanout, sender_id=body.sender_id, receiver_id=body.receiver_id,
    )
    return {"friendshipId": row.id, "status": row.status}


@router.patch("/friendships/{friendship_id}")
def respond(
    friendship_id: int,
    body: FriendRequestResponse,
    engine=Depends(get_engine),
    fanout=Depends(get_fanout),
):
    """Accept or reject a pending request (receiver only)."""
    friendship_service.respond_to_request(
        engine,
        fanout,
        request_id=friendship_id,
        acting_user_id=body.acting_user_id,
        action=body.action,
    )
    return {"ok": True}


@router.delete("/friendships/{friendship_id}")
def unfriend(
    friendship_id: int,
    body: Unfriend,
    engine=Depends(get_engine),
    fanout=Depends(get_fanout),
):
    friendship_service.unfriend(
        engine, fanout, friendship_id=friendship_id, acting_user_id=body.acting_user_id,
    )
    return {"ok": True}
