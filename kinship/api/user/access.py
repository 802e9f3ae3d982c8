from typing import List

from fastapi import APIRouter, Query

from kinship.core.deps import AccessResolverDep
from kinship.core.token import CurrentUserDep
from kinship.friends.schemas import GrantOut, VisibleEvent, VisibleProfile

router = APIRouter(tags=["access"])


@router.get("/user/grants", response_model=List[GrantOut])
async def get_grants(user_id: CurrentUserDep, resolver: AccessResolverDep):
    """What other users have granted me."""
    snapshot = await resolver.grants_for(user_id)
    return snapshot.as_list()


@router.get("/user/profiles/visible", response_model=List[VisibleProfile])
async def get_visible_profiles(user_id: CurrentUserDep, resolver: AccessResolverDep):
    snapshot = await resolver.grants_for(user_id)
    return await resolver.visible_profiles(user_id, snapshot)


@router.get("/user/events/search", response_model=List[VisibleEvent])
async def search_events(
    user_id: CurrentUserDep,
    resolver: AccessResolverDep,
    q: str = Query("", max_length=100),
    limit: int = Query(10, ge=1, le=50),
):
    snapshot = await resolver.grants_for(user_id)
    return await resolver.search_events(user_id, snapshot, q, limit=limit)
