REDIS_USER_KEY = "user:{user_id}" # user id - hash with name, avatar, role, email
REDIS_MESSAGE_KEY = "message:{message_id}" # message id - JSON document
REDIS_COMMUNITY_MESSAGES_KEY = "community:{community_id}:messages" # sorted set of message ids by created_at
REDIS_CONVERSATION_KEY = "conversation:{first}:{second}" # user ids in sorted order - sorted set of message ids

# Room names used by the gateway (in-process, not Redis keys)
COMMUNITY_ROOM = "community:{community_id}"
USER_ROOM = "user:{user_id}"


def conversation_key(user_a: str, user_b: str) -> str:
    """Private conversations are stored once per unordered pair of users."""
    first, second = sorted((str(user_a), str(user_b)))
    return REDIS_CONVERSATION_KEY.format(first=first, second=second)

# **Example `user:{id}` hash fields**
# - `name` = display name
# - `avatar` = avatar URL (may be empty)
# - `role` = student | alumni | admin
# - `email` = login email

# **Example `message:{id}` document**
# - `{"id", "sender", "community" | "receiver", "content", "type", "isPrivate", "read", "readAt", "createdAt"}`
