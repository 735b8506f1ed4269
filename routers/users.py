from fastapi import APIRouter, Depends, Request

from auth import current_user
from schemas.messages import Identity, OnlineUsersResponse

users_router = APIRouter(prefix="/api/users", tags=["users"])


@users_router.get("/online", response_model=OnlineUsersResponse)
async def get_online_users(request: Request, user: Identity = Depends(current_user)):
    return OnlineUsersResponse(users=request.app.state.gateway.online_users())
