from fastapi import APIRouter

from app.api.v1.endpoints import activity, blocked, friend_requests, friends, notifications, presence

api_router = APIRouter()

# Include routers
api_router.include_router(friend_requests.router, prefix="/friend-requests", tags=["friend-requests"])
api_router.include_router(friends.router, prefix="/friends", tags=["friends"])
api_router.include_router(blocked.router, prefix="/blocked-users", tags=["blocked-users"])
api_router.include_router(presence.router, prefix="/presence", tags=["presence"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_router.include_router(activity.router, prefix="/activity", tags=["activity"])
