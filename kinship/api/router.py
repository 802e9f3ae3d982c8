"""
API Router
"""

from fastapi import APIRouter, Depends

from kinship.api.dm.messages import router as dm_messages_router
from kinship.api.dm.threads import router as dm_threads_router
from kinship.api.user.access import router as access_router
from kinship.api.user.friends import router as friends_router
from kinship.core.token import security_scheme

api_router = APIRouter()

# every HTTP route needs a bearer token; the websocket router is mounted on the app directly
api_router.include_router(friends_router, dependencies=[Depends(security_scheme)])
api_router.include_router(access_router, dependencies=[Depends(security_scheme)])
api_router.include_router(dm_threads_router, dependencies=[Depends(security_scheme)])
api_router.include_router(dm_messages_router, dependencies=[Depends(security_scheme)])
