"""
Friend graph store

Owns the friend-request state machine and the directional friendship grants.

    pending --accept--> accepted   (creates both grant rows, atomically)
    pending --decline-> declined
    accepted / declined are terminal

A pending request is unique per unordered pair: a second request from either
side is rejected, and the partial unique index on (pair_low_id, pair_high_id)
enforces the same rule for requests racing each other.
"""

import enum
from typing import List, Optional, Union

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kinship.core.config import settings
from kinship.core.errors import (
    DuplicateRequestError,
    InvalidRequestStateError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from kinship.core.ids import canonical_pair, new_id
from kinship.core.logging import get_logger
from kinship.core.time import utcnow
from kinship.friends.schemas import CandidateOut, FriendOut, FriendRequestOut, FriendshipOut
from kinship.infra.db import translate_db_errors, with_read_retry
from kinship.models.friend import FriendRequest, FriendRole, Friendship, RequestStatus
from kinship.models.user import User

logger = get_logger(__name__)


class Decision(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


def _coerce_role(role: Union[FriendRole, str]) -> FriendRole:
    try:
        return FriendRole(role)
    except ValueError:
        raise ValidationError(
            f"Unknown role: {role}",
            details={"allowed": [r.value for r in FriendRole]},
        )


def _friendship_between(user_a: str, user_b: str):
    return or_(
        and_(Friendship.user_id == user_a, Friendship.friend_id == user_b),
        and_(Friendship.user_id == user_b, Friendship.friend_id == user_a),
    )


class FriendGraphStore:
    """Persists friend requests and friendship grants."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ============ Requests ============

    async def send_request(
        self,
        requester_id: str,
        requested_id: str,
        role: Union[FriendRole, str] = FriendRole.NONE,
        message: Optional[str] = None,
    ) -> FriendRequestOut:
        if requester_id == requested_id:
            raise ValidationError("You cannot send a friend request to yourself.")
        proposed_role = _coerce_role(role)
        low, high = canonical_pair(requester_id, requested_id)
        message = (message or "").strip() or None

        with translate_db_errors("send_request"):
            async with self._session_factory() as session:
                target = await session.get(User, requested_id)
                if target is None:
                    raise NotFoundError("User not found.", details={"user_id": requested_id})

                friendship = await session.execute(
                    select(Friendship.id).where(_friendship_between(requester_id, requested_id)).limit(1)
                )
                if friendship.scalar_one_or_none():
                    raise DuplicateRequestError("You are already friends.")

                pending = await session.execute(
                    select(FriendRequest).where(
                        FriendRequest.pair_low_id == low,
                        FriendRequest.pair_high_id == high,
                        FriendRequest.status == RequestStatus.PENDING.value,
                    )
                )
                existing = pending.scalar_one_or_none()
                if existing is not None:
                    if existing.requester_id == requester_id:
                        raise DuplicateRequestError(
                            "You have already sent a friend request.",
                            details={"request_id": existing.id},
                        )
                    raise DuplicateRequestError(
                        "This user has already sent you a friend request.",
                        details={"request_id": existing.id},
                    )

                request = FriendRequest(
                    id=new_id("freq"),
                    requester_id=requester_id,
                    requested_id=requested_id,
                    pair_low_id=low,
                    pair_high_id=high,
                    status=RequestStatus.PENDING.value,
                    role=proposed_role.value,
                    message=message,
                    created_at=utcnow(),
                )
                session.add(request)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    # lost a race against a concurrent request for the same pair
                    await session.rollback()
                    raise DuplicateRequestError("A friend request for this pair is already pending.") from exc

        logger.info(
            "friend.request.sent",
            request_id=request.id,
            requester_id=requester_id,
            requested_id=requested_id,
            role=proposed_role.value,
        )
        return FriendRequestOut.model_validate(request)

    async def respond_to_request(
        self,
        request_id: str,
        decision: Union[Decision, str],
        actor_id: str,
    ) -> FriendRequestOut:
        """Accept or decline a pending request.

        Accepting flips the status and inserts both grant rows in the same
        transaction, so a reader never sees an accepted request without its
        two friendships.
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision}")

        new_status = RequestStatus.ACCEPTED if decision is Decision.ACCEPT else RequestStatus.DECLINED

        with translate_db_errors("respond_to_request"):
            async with self._session_factory() as session:
                request = await session.get(FriendRequest, request_id)
                if request is None:
                    raise NotFoundError("Friend request not found.", details={"request_id": request_id})
                if request.requested_id != actor_id:
                    raise NotAuthorizedError("You are not authorized to respond to this request.")
                if request.status != RequestStatus.PENDING.value:
                    raise InvalidRequestStateError(f"Request is already {request.status}.")

                # conditional transition; a concurrent responder sees rowcount 0
                result = await session.execute(
                    update(FriendRequest)
                    .where(
                        FriendRequest.id == request_id,
                        FriendRequest.status == RequestStatus.PENDING.value,
                    )
                    .values(status=new_status.value, responded_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise InvalidRequestStateError("Request was answered concurrently.")

                if new_status is RequestStatus.ACCEPTED:
                    now = utcnow()
                    session.add_all([
                        Friendship(
                            id=new_id("fr"),
                            user_id=request.requester_id,
                            friend_id=request.requested_id,
                            role=FriendRole.NONE.value,
                            created_at=now,
                            updated_at=now,
                        ),
                        Friendship(
                            id=new_id("fr"),
                            user_id=request.requested_id,
                            friend_id=request.requester_id,
                            role=FriendRole.NONE.value,
                            created_at=now,
                            updated_at=now,
                        ),
                    ])

                await session.flush()
                await session.refresh(request)
                await session.commit()

        logger.info(
            "friend.request.answered",
            request_id=request_id,
            status=new_status.value,
            requester_id=request.requester_id,
            requested_id=request.requested_id,
        )
        return FriendRequestOut.model_validate(request)

    async def cancel_request(self, request_id: str, actor_id: str) -> None:
        with translate_db_errors("cancel_request"):
            async with self._session_factory() as session:
                request = await session.get(FriendRequest, request_id)
                if request is None:
                    raise NotFoundError("Friend request not found.", details={"request_id": request_id})
                if request.requester_id != actor_id:
                    raise NotAuthorizedError("Only the requester can cancel a friend request.")

                result = await session.execute(
                    delete(FriendRequest).where(
                        FriendRequest.id == request_id,
                        FriendRequest.status == RequestStatus.PENDING.value,
                    )
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise InvalidRequestStateError(f"Request is already {request.status}.")
                await session.commit()

        logger.info("friend.request.cancelled", request_id=request_id, requester_id=actor_id)

    async def incoming_requests(self, user_id: str) -> List[FriendRequestOut]:
        return await self._pending_requests(FriendRequest.requested_id == user_id, "incoming_requests")

    async def outgoing_requests(self, user_id: str) -> List[FriendRequestOut]:
        return await self._pending_requests(FriendRequest.requester_id == user_id, "outgoing_requests")

    async def _pending_requests(self, criterion, operation: str) -> List[FriendRequestOut]:
        async def _read() -> List[FriendRequestOut]:
            with translate_db_errors(operation):
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(FriendRequest)
                        .where(criterion, FriendRequest.status == RequestStatus.PENDING.value)
                        .order_by(FriendRequest.created_at.desc())
                    )
                    return [FriendRequestOut.model_validate(r) for r in result.scalars().all()]

        return await with_read_retry(_read, operation)

    # ============ Friendships ============

    async def update_friendship_role(
        self,
        friendship_id: str,
        new_role: Union[FriendRole, str],
        actor_id: str,
    ) -> FriendshipOut:
        """Change the capability a grantor gives one friend. Only the grantor may do this."""
        role = _coerce_role(new_role)

        with translate_db_errors("update_friendship_role"):
            async with self._session_factory() as session:
                friendship = await session.get(Friendship, friendship_id)
                if friendship is None:
                    raise NotFoundError("Friendship not found.", details={"friendship_id": friendship_id})
                if friendship.user_id != actor_id:
                    raise NotAuthorizedError("Only the grantor can change this access level.")

                friendship.role = role.value
                friendship.updated_at = utcnow()
                await session.commit()

        logger.info(
            "friend.role.updated",
            friendship_id=friendship_id,
            user_id=friendship.user_id,
            friend_id=friendship.friend_id,
            role=role.value,
        )
        return FriendshipOut.model_validate(friendship)

    async def remove_friendship(self, friendship_id: str, actor_id: str) -> int:
        """Delete both directional rows of the pair the given row belongs to."""
        with translate_db_errors("remove_friendship"):
            async with self._session_factory() as session:
                friendship = await session.get(Friendship, friendship_id)
                if friendship is None:
                    raise NotFoundError("Friendship not found.", details={"friendship_id": friendship_id})
                if actor_id not in (friendship.user_id, friendship.friend_id):
                    raise NotAuthorizedError("You are not part of this friendship.")

                user_a, user_b = friendship.user_id, friendship.friend_id
                result = await session.execute(
                    delete(Friendship).where(_friendship_between(user_a, user_b))
                )
                removed = result.rowcount
                await session.commit()

        logger.info("friend.removed", user_id=user_a, friend_id=user_b, rows=removed)
        return removed

    async def list_friends(self, user_id: str) -> List[FriendOut]:
        """The caller's own grant rows with the grantee's display info."""

        async def _read() -> List[FriendOut]:
            with translate_db_errors("list_friends"):
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(Friendship, User)
                        .join(User, Friendship.friend_id == User.id)
                        .where(Friendship.user_id == user_id)
                        .order_by(User.display_name)
                    )
                    return [
                        FriendOut(
                            friendship_id=f_row.id,
                            friend_id=f_row.friend_id,
                            role=FriendRole(f_row.role),
                            display_name=friend_user.display_name,
                            photo_url=friend_user.photo_url,
                            created_at=f_row.created_at,
                        )
                        for f_row, friend_user in result.all()
                    ]

        return await with_read_retry(_read, "list_friends")

    async def are_friends(self, user_a: str, user_b: str) -> bool:
        async def _read() -> bool:
            with translate_db_errors("are_friends"):
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(Friendship.id).where(_friendship_between(user_a, user_b)).limit(1)
                    )
                    return result.scalar_one_or_none() is not None

        return await with_read_retry(_read, "are_friends")

    async def search_candidates(self, user_id: str, term: str) -> List[CandidateOut]:
        """Users matching `term` by name that the caller could send a request to."""
        term = (term or "").strip()
        if len(term) < settings.user_search_min_length:
            return []

        async def _read() -> List[CandidateOut]:
            with translate_db_errors("search_candidates"):
                async with self._session_factory() as session:
                    friends = select(Friendship.friend_id).where(Friendship.user_id == user_id)
                    pending_out = select(FriendRequest.requested_id).where(
                        FriendRequest.requester_id == user_id,
                        FriendRequest.status == RequestStatus.PENDING.value,
                    )
                    pending_in = select(FriendRequest.requester_id).where(
                        FriendRequest.requested_id == user_id,
                        FriendRequest.status == RequestStatus.PENDING.value,
                    )
                    result = await session.execute(
                        select(User)
                        .where(
                            User.display_name.icontains(term, autoescape=True),
                            User.id != user_id,
                            User.id.not_in(friends),
                            User.id.not_in(pending_out),
                            User.id.not_in(pending_in),
                        )
                        .order_by(User.display_name)
                        .limit(settings.user_search_limit)
                    )
                    return [
                        CandidateOut(id=u.id, display_name=u.display_name, photo_url=u.photo_url)
                        for u in result.scalars().all()
                    ]

        return await with_read_retry(_read, "search_candidates")
