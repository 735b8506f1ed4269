import json
import uuid
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB
from errors import NotFoundError, PersistenceError
from logging_config import get_logger
from redis_keys import REDIS_USER_KEY, REDIS_MESSAGE_KEY, REDIS_COMMUNITY_MESSAGES_KEY, conversation_key
from schemas.messages import (
    ChatMessage,
    CommunityTarget,
    Identity,
    MessageType,
    SenderInfo,
    utc_now,
)

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    """Build the client without connecting; the first command opens the pool."""
    return redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, db=REDIS_DB, decode_responses=True)


class RedisBackend:
    """User directory and message store on top of Redis.

    Every Redis failure is raised as PersistenceError so callers only deal
    with the gateway's own error types.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    async def ping(self):
        try:
            await self.redis_client.ping()
        except RedisError as e:
            raise PersistenceError(f"Redis unavailable: {e}") from e
        logger.info("Redis client connected successfully")

    async def close(self):
        await self.redis_client.aclose()

    # Users

    async def save_user(self, user_id: str, name: str, avatar: str = "", role: str = "student", email: str = ""):
        key = REDIS_USER_KEY.format(user_id=user_id)
        try:
            await self.redis_client.hset(key, mapping={"name": name, "avatar": avatar or "", "role": role or "", "email": email or ""})
        except RedisError as e:
            logger.error(f"Failed to save user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to save user") from e
        logger.debug(f"Saved user {user_id} with key: {key}")
        return user_id

    async def get_user(self, user_id: str) -> Optional[Identity]:
        key = REDIS_USER_KEY.format(user_id=user_id)
        try:
            user_data = await self.redis_client.hgetall(key)
        except RedisError as e:
            raise PersistenceError("Failed to load user") from e
        if not user_data or "name" not in user_data:
            logger.debug(f"User {user_id} not found in Redis")
            return None
        return Identity(
            userId=str(user_id),
            name=user_data["name"],
            avatar=user_data.get("avatar") or None,
            role=user_data.get("role") or None,
        )

    async def _sender_info(self, user_id: str) -> SenderInfo:
        user = await self.get_user(user_id)
        if user is None:
            return SenderInfo(id=user_id)
        return SenderInfo(id=user.userId, name=user.name, avatar=user.avatar, role=user.role)

    # Messages

    async def create_message(
        self,
        sender_id: str,
        target,
        content: str,
        type: MessageType = MessageType.TEXT,
        attachments: Optional[dict] = None,
    ) -> ChatMessage:
        """Persist a message and return it with the sender's display fields."""
        message = ChatMessage(
            id=uuid.uuid4().hex,
            sender=SenderInfo(id=sender_id),
            target=target,
            content=content,
            type=type,
            createdAt=utc_now(),
            **(attachments or {}),
        )
        if isinstance(target, CommunityTarget):
            index_key = REDIS_COMMUNITY_MESSAGES_KEY.format(community_id=target.communityId)
        else:
            index_key = conversation_key(sender_id, target.receiverId)

        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.set(REDIS_MESSAGE_KEY.format(message_id=message.id), json.dumps(message.to_document()))
                pipe.zadd(index_key, {message.id: message.createdAt.timestamp()})
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Failed to persist message from {sender_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to save message") from e

        logger.debug(f"Message {message.id} persisted under {index_key}")
        message.sender = await self._sender_info(sender_id)
        return message

    async def find_by_id(self, message_id: str) -> Optional[ChatMessage]:
        try:
            raw = await self.redis_client.get(REDIS_MESSAGE_KEY.format(message_id=message_id))
        except RedisError as e:
            raise PersistenceError("Failed to load message") from e
        if raw is None:
            return None
        document = json.loads(raw)
        return ChatMessage.from_document(document, await self._sender_info(document["sender"]))

    async def mark_read(self, message_id: str) -> ChatMessage:
        key = REDIS_MESSAGE_KEY.format(message_id=message_id)
        try:
            raw = await self.redis_client.get(key)
            if raw is None:
                raise NotFoundError(f"Message {message_id} not found")
            document = json.loads(raw)
            document["read"] = True
            document["readAt"] = utc_now().isoformat()
            await self.redis_client.set(key, json.dumps(document))
        except RedisError as e:
            raise PersistenceError("Failed to update message") from e
        logger.debug(f"Message {message_id} marked as read")
        return ChatMessage.from_document(document, await self._sender_info(document["sender"]))

    async def _page(self, index_key: str, page: int, limit: int) -> list[ChatMessage]:
        start = (page - 1) * limit
        try:
            message_ids = await self.redis_client.zrange(index_key, start, start + limit - 1)
            if not message_ids:
                return []
            raws = await self.redis_client.mget([REDIS_MESSAGE_KEY.format(message_id=m) for m in message_ids])
        except RedisError as e:
            raise PersistenceError("Failed to load messages") from e

        documents = [json.loads(raw) for raw in raws if raw is not None]
        senders = {}
        for document in documents:
            if document["sender"] not in senders:
                senders[document["sender"]] = await self._sender_info(document["sender"])
        return [ChatMessage.from_document(d, senders[d["sender"]]) for d in documents]

    async def community_messages(self, community_id: str, page: int = 1, limit: int = 50) -> list[ChatMessage]:
        """Oldest first, like the chat history endpoint expects."""
        key = REDIS_COMMUNITY_MESSAGES_KEY.format(community_id=community_id)
        return await self._page(key, page, limit)

    async def private_messages(self, user_id: str, other_user_id: str, page: int = 1, limit: int = 50) -> list[ChatMessage]:
        return await self._page(conversation_key(user_id, other_user_id), page, limit)

