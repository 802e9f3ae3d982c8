from typing import List, Optional

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, EmailStr, model_validator
from sqlalchemy import select

from kinship.core.deps import AccessResolverDep, GraphStoreDep, SessionDep
from kinship.core.errors import NotFoundError
from kinship.core.token import CurrentUserDep
from kinship.friends.graph_store import Decision
from kinship.friends.schemas import (
    CandidateOut,
    FriendOut,
    FriendRequestOut,
    FriendshipOut,
    GrantOut,
    VisibleProfile,
)
from kinship.models.friend import FriendRole
from kinship.models.user import User

router = APIRouter(tags=["friend"])

# --- Schemas ---


class SendFriendRequestPayload(BaseModel):
    user_id: Optional[str] = None
    email: Optional[EmailStr] = None
    role: FriendRole = FriendRole.NONE
    message: Optional[str] = None

    @model_validator(mode="after")
    def _one_target(self):
        if not self.user_id and not self.email:
            raise ValueError("Either user_id or email is required")
        return self


class UpdateRolePayload(BaseModel):
    role: FriendRole


class AcceptFriendRequestResponse(BaseModel):
    request: FriendRequestOut
    friends: List[FriendOut]
    grants: List[GrantOut]


class FriendshipChangeResponse(BaseModel):
    friendship: Optional[FriendshipOut] = None
    removed: int = 0
    grants: List[GrantOut]
    profiles: List[VisibleProfile]


# --- Endpoints ---


@router.post("/user/friend/request", response_model=FriendRequestOut, status_code=status.HTTP_201_CREATED)
async def send_friend_request(
    payload: SendFriendRequestPayload,
    user_id: CurrentUserDep,
    store: GraphStoreDep,
    db: SessionDep,
):
    target_id = payload.user_id
    if target_id is None:
        result = await db.execute(select(User.id).where(User.email == payload.email))
        target_id = result.scalar_one_or_none()
        if target_id is None:
            raise NotFoundError("User with this email not found.")

    return await store.send_request(user_id, target_id, role=payload.role, message=payload.message)


@router.get("/user/friend/requests/received", response_model=List[FriendRequestOut])
async def get_received_friend_requests(user_id: CurrentUserDep, store: GraphStoreDep):
    return await store.incoming_requests(user_id)


@router.get("/user/friend/requests/sent", response_model=List[FriendRequestOut])
async def get_sent_friend_requests(user_id: CurrentUserDep, store: GraphStoreDep):
    return await store.outgoing_requests(user_id)


@router.post("/user/friend/request/{request_id}/accept", response_model=AcceptFriendRequestResponse)
async def accept_friend_request(
    request_id: str,
    user_id: CurrentUserDep,
    store: GraphStoreDep,
    resolver: AccessResolverDep,
):
    request = await store.respond_to_request(request_id, Decision.ACCEPT, user_id)
    # fresh snapshot after the write, never a cached one
    snapshot = await resolver.grants_for(user_id)
    return AcceptFriendRequestResponse(
        request=request,
        friends=await store.list_friends(user_id),
        grants=snapshot.as_list(),
    )


@router.post("/user/friend/request/{request_id}/decline", response_model=FriendRequestOut)
async def decline_friend_request(request_id: str, user_id: CurrentUserDep, store: GraphStoreDep):
    return await store.respond_to_request(request_id, Decision.DECLINE, user_id)


@router.delete("/user/friend/request/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_friend_request(request_id: str, user_id: CurrentUserDep, store: GraphStoreDep):
    await store.cancel_request(request_id, user_id)


@router.get("/user/friends", response_model=List[FriendOut])
async def get_friends(user_id: CurrentUserDep, store: GraphStoreDep):
    return await store.list_friends(user_id)


@router.patch("/user/friends/{friendship_id}/role", response_model=FriendshipChangeResponse)
async def update_friend_role(
    friendship_id: str,
    payload: UpdateRolePayload,
    user_id: CurrentUserDep,
    store: GraphStoreDep,
    resolver: AccessResolverDep,
):
    friendship = await store.update_friendship_role(friendship_id, payload.role, user_id)
    snapshot = await resolver.grants_for(user_id)
    return FriendshipChangeResponse(
        friendship=friendship,
        grants=snapshot.as_list(),
        profiles=await resolver.visible_profiles(user_id, snapshot),
    )


@router.delete("/user/friends/{friendship_id}", response_model=FriendshipChangeResponse)
async def remove_friend(
    friendship_id: str,
    user_id: CurrentUserDep,
    store: GraphStoreDep,
    resolver: AccessResolverDep,
):
    removed = await store.remove_friendship(friendship_id, user_id)
    snapshot = await resolver.grants_for(user_id)
    return FriendshipChangeResponse(
        removed=removed,
        grants=snapshot.as_list(),
        profiles=await resolver.visible_profiles(user_id, snapshot),
    )


@router.get("/user/friend/search", response_model=List[CandidateOut])
async def search_users(
    user_id: CurrentUserDep,
    store: GraphStoreDep,
    q: str = Query("", max_length=100),
):
    return await store.search_candidates(user_id, q)
