"""
Access resolution

Turns friendship grants into visibility decisions. A grant row
(user_id=O, friend_id=V, role=R) gives V capability R over O's data, so a
viewer's capabilities are read from rows where friend_id = viewer.

Callers that have just mutated the graph take a fresh snapshot with
grants_for() and pass it into the dependent query; nothing here caches
grants between calls.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kinship.core.config import settings
from kinship.core.logging import get_logger
from kinship.core.time import utcnow
from kinship.friends.schemas import GrantOut, VisibleEvent, VisibleProfile
from kinship.infra.db import translate_db_errors, with_read_retry
from kinship.models.friend import FriendRole, Friendship
from kinship.models.profile import Event, Profile
from kinship.models.user import User

logger = get_logger(__name__)

VIEW_ROLES = frozenset({FriendRole.VIEWER, FriendRole.ADMINISTRATOR})


@dataclass(frozen=True)
class GrantSnapshot:
    """What other users have granted one viewer, as of `taken_at`."""

    viewer_id: str
    grants: Mapping[str, FriendRole] = field(default_factory=dict)
    owner_names: Mapping[str, str] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, "grants", MappingProxyType(dict(self.grants)))
        object.__setattr__(self, "owner_names", MappingProxyType(dict(self.owner_names)))

    def role_of(self, owner_id: str) -> Optional[FriendRole]:
        return self.grants.get(owner_id)

    def can_view(self, owner_id: str) -> bool:
        return self.grants.get(owner_id) in VIEW_ROLES

    def can_administer(self, owner_id: str) -> bool:
        return self.grants.get(owner_id) is FriendRole.ADMINISTRATOR

    def owners_with(self, *roles: FriendRole) -> FrozenSet[str]:
        wanted = set(roles)
        return frozenset(owner for owner, role in self.grants.items() if role in wanted)

    def as_list(self) -> List[GrantOut]:
        return [GrantOut(owner_id=owner, role=role) for owner, role in sorted(self.grants.items())]


class AccessResolver:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def grants_for(self, viewer_id: str) -> GrantSnapshot:
        async def _read() -> GrantSnapshot:
            with translate_db_errors("grants_for"):
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(Friendship.user_id, Friendship.role, User.display_name)
                        .join(User, Friendship.user_id == User.id)
                        .where(Friendship.friend_id == viewer_id)
                    )
                    rows = result.all()
            return GrantSnapshot(
                viewer_id=viewer_id,
                grants={owner_id: FriendRole(role) for owner_id, role, _ in rows},
                owner_names={owner_id: name for owner_id, _, name in rows},
            )

        snapshot = await with_read_retry(_read, "grants_for")
        logger.debug(
            "access.snapshot",
            viewer_id=viewer_id,
            grants=len(snapshot.grants),
            administrators=len(snapshot.owners_with(FriendRole.ADMINISTRATOR)),
        )
        return snapshot

    async def can_view(self, viewer_id: str, owner_id: str, snapshot: Optional[GrantSnapshot] = None) -> bool:
        snapshot = await self._snapshot_for(viewer_id, snapshot)
        return snapshot.can_view(owner_id)

    async def can_administer(self, viewer_id: str, owner_id: str, snapshot: Optional[GrantSnapshot] = None) -> bool:
        snapshot = await self._snapshot_for(viewer_id, snapshot)
        return snapshot.can_administer(owner_id)

    async def _snapshot_for(self, viewer_id: str, snapshot: Optional[GrantSnapshot]) -> GrantSnapshot:
        if snapshot is None:
            return await self.grants_for(viewer_id)
        if snapshot.viewer_id != viewer_id:
            raise ValueError(f"snapshot belongs to {snapshot.viewer_id}, not {viewer_id}")
        return snapshot

    async def visible_profiles(self, viewer_id: str, snapshot: GrantSnapshot) -> List[VisibleProfile]:
        """Own profiles first, then every profile whose owner lets the viewer view."""
        snapshot = await self._snapshot_for(viewer_id, snapshot)
        shared_owners = snapshot.owners_with(*VIEW_ROLES)

        async def _read() -> List[Profile]:
            with translate_db_errors("visible_profiles"):
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(Profile)
                        .where(or_(Profile.user_id == viewer_id, Profile.user_id.in_(sorted(shared_owners))))
                        .order_by(Profile.name)
                    )
                    return list(result.scalars().all())

        profiles = await with_read_retry(_read, "visible_profiles")
        visible = [
            VisibleProfile(
                id=p.id,
                user_id=p.user_id,
                name=p.name,
                age=p.age,
                color=p.color,
                photo_url=p.photo_url,
                notes=p.notes,
                is_own=p.user_id == viewer_id,
                access_role=None if p.user_id == viewer_id else snapshot.role_of(p.user_id),
                owner_name=None if p.user_id == viewer_id else snapshot.owner_names.get(p.user_id),
            )
            for p in profiles
        ]
        visible.sort(key=lambda p: not p.is_own)
        return visible

    async def search_events(
        self,
        viewer_id: str,
        snapshot: GrantSnapshot,
        term: str,
        limit: Optional[int] = None,
    ) -> List[VisibleEvent]:
        term = (term or "").strip()
        if len(term) < settings.user_search_min_length:
            return []
        snapshot = await self._snapshot_for(viewer_id, snapshot)
        owners = set(snapshot.owners_with(*VIEW_ROLES)) | {viewer_id}
        pattern = term.lower()

        async def _read():
            with translate_db_errors("search_events"):
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(Event, Profile.user_id)
                        .join(Profile, Event.profile_id == Profile.id)
                        .where(
                            Profile.user_id.in_(sorted(owners)),
                            or_(
                                Event.title.ilike(f"%{pattern}%"),
                                Event.description.ilike(f"%{pattern}%"),
                                Event.location.ilike(f"%{pattern}%"),
                            ),
                        )
                        .order_by(Event.start_time)
                        .limit(limit or settings.event_search_limit)
                    )
                    return result.all()

        rows = await with_read_retry(_read, "search_events")
        return [
            VisibleEvent(
                id=event.id,
                profile_id=event.profile_id,
                owner_id=owner_id,
                title=event.title,
                description=event.description,
                location=event.location,
                start_time=event.start_time,
                end_time=event.end_time,
                is_own=owner_id == viewer_id,
            )
            for event, owner_id in rows
        ]
