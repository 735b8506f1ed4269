from fastapi import APIRouter, Depends, HTTPException, Query, Request

from auth import current_user
from constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from errors import PersistenceError
from logging_config import get_logger
from schemas.messages import Identity, MessageListResponse

logger = get_logger(__name__)

messages_router = APIRouter(prefix="/api/messages", tags=["messages"])


@messages_router.get("/community/{community_id}", response_model=MessageListResponse)
async def get_community_messages(
    community_id: str,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: Identity = Depends(current_user),
):
    """Chat history of a community, oldest first."""
    logger.info(f"Community history request for {community_id} from {user.userId}, page={page}, limit={limit}")
    try:
        messages = await request.app.state.store.community_messages(community_id, page=page, limit=limit)
    except PersistenceError as e:
        logger.error(f"Error loading messages for community {community_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Server error")
    return MessageListResponse(messages=[m.to_wire() for m in messages])


@messages_router.get("/private/{user_id}", response_model=MessageListResponse)
async def get_private_messages(
    user_id: str,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: Identity = Depends(current_user),
):
    """Conversation between the caller and ``user_id``, oldest first."""
    logger.info(f"Private history request between {user.userId} and {user_id}, page={page}, limit={limit}")
    try:
        messages = await request.app.state.store.private_messages(user.userId, user_id, page=page, limit=limit)
    except PersistenceError as e:
        logger.error(f"Error loading conversation {user.userId}/{user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Server error")
    return MessageListResponse(messages=[m.to_wire() for m in messages])
