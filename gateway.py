"""Presence and messaging gateway.

Owns the in-memory presence table and room registry for every WebSocket
connected to this process, and relays chat, typing, read-receipt and
notification events between them. Chat messages are persisted through the
message store before they are delivered.

Presence is one entry per user, owned by that user's latest connection.
When an older connection of the same user closes, the entry stays, so the
user remains online as long as any newer socket is open. Only the owning
connection's disconnect removes the user.

Every send to a client is bounded by a timeout; a client that stalls is
closed instead of holding up the broadcast.

Scaling boundary: presence and rooms live in this process only. Running
several instances behind a load balancer needs a shared presence store and a
pub/sub fan-out between instances; this module does not attempt that.
"""
import asyncio
import json
import uuid
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from constants import SEND_TIMEOUT_SECONDS, STORE_TIMEOUT_SECONDS
from errors import GatewayError, NotFoundError, PersistenceError
from logging_config import get_logger
from redis_keys import COMMUNITY_ROOM, USER_ROOM
from schemas.messages import (
    CommunityMessageRequest,
    CommunityTarget,
    DirectTarget,
    Identity,
    NotificationRelayRequest,
    PresenceEntry,
    PrivateMessageRequest,
    ReadReceiptRequest,
    TypingRequest,
    entity_id,
)

logger = get_logger(__name__)


def community_room(community_id: str) -> str:
    return COMMUNITY_ROOM.format(community_id=community_id)


def user_room(user_id: str) -> str:
    return USER_ROOM.format(user_id=user_id)


class Connection:
    """One authenticated socket and the identity it was admitted with."""

    def __init__(self, websocket, identity: Identity, send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.send_timeout = send_timeout
        self.rooms: Set[str] = set()
        # ASGI sends on one socket must not interleave
        self._send_lock = asyncio.Lock()

    @property
    def user_id(self) -> str:
        return self.identity.userId

    async def emit(self, event: str, data: Any = None):
        """Raises asyncio.TimeoutError if the client doesn't take the frame in time."""
        frame = json.dumps({"event": event, "data": data})
        async with self._send_lock:
            await asyncio.wait_for(self.websocket.send_text(frame), timeout=self.send_timeout)

    async def close(self, code: int = 1011):
        try:
            await asyncio.wait_for(self.websocket.close(code=code), timeout=self.send_timeout)
        except Exception as e:
            logger.debug(f"Error closing connection {self.id}: {e}")


class PresenceGateway:
    def __init__(
        self,
        store,
        verifier,
        store_timeout: float = STORE_TIMEOUT_SECONDS,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.verifier = verifier
        self.store_timeout = store_timeout
        self.send_timeout = send_timeout
        # {user_id: PresenceEntry}, last connection wins
        self._online: Dict[str, PresenceEntry] = {}
        # {connection_id: Connection}
        self._connections: Dict[str, Connection] = {}
        # {room: {connection_id: Connection}}
        self._rooms: Dict[str, Dict[str, Connection]] = {}

        self._handlers = {
            "community:join": self.join_room,
            "community:leave": self.leave_room,
            "message:send": self.send_community_message,
            "message:private": self.send_private_message,
            "typing:start": self.typing_start,
            "typing:stop": self.typing_stop,
            "message:read": self.mark_read,
            "notification:send": self.relay_notification,
        }

    # State accessors

    def online_users(self) -> List[PresenceEntry]:
        return list(self._online.values())

    def room_members(self, room: str) -> Set[str]:
        return set(self._rooms.get(room, {}))

    def connection_count(self) -> int:
        return len(self._connections)

    # Admission

    async def authenticate(self, credential: Optional[str]) -> Identity:
        """Raises AuthenticationError; nothing is registered until connect()."""
        return await self.verifier.verify(credential)

    async def connect(self, websocket, identity: Identity) -> Connection:
        connection = Connection(websocket, identity, send_timeout=self.send_timeout)
        self._connections[connection.id] = connection

        self._online[identity.userId] = PresenceEntry(
            userId=identity.userId,
            connectionId=connection.id,
            name=identity.name,
            avatar=identity.avatar,
        )
        logger.info(f"User connected: {identity.name} ({identity.userId}) on {connection.id}")

        await self.broadcast_presence()
        self._subscribe(connection, user_room(identity.userId))
        return connection

    async def disconnect(self, connection: Connection):
        for room in list(connection.rooms):
            self._unsubscribe(connection, room)
        self._connections.pop(connection.id, None)

        entry = self._online.get(connection.user_id)
        # A newer connection for the same user owns the entry now
        if entry is not None and entry.connectionId == connection.id:
            del self._online[connection.user_id]
        logger.info(f"User disconnected: {connection.identity.name} ({connection.user_id})")

        await self.broadcast_presence()

    # Delivery

    async def _deliver(self, connections: List[Connection], event: str, data: Any):
        if not connections:
            return
        results = await asyncio.gather(*(c.emit(event, data) for c in connections), return_exceptions=True)
        stalled = []
        for connection, result in zip(connections, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(f"Connection {connection.id} did not take {event} within {self.send_timeout}s, closing it")
                stalled.append(connection)
            elif isinstance(result, Exception):
                logger.warning(f"Error sending {event} to connection {connection.id}: {result}")
        # The endpoint's receive loop sees the close and runs disconnect()
        if stalled:
            await asyncio.gather(*(c.close() for c in stalled))

    async def emit_to_all(self, event: str, data: Any):
        await self._deliver(list(self._connections.values()), event, data)

    async def emit_to_room(self, room: str, event: str, data: Any, skip: Optional[Connection] = None):
        members = [c for c in self._rooms.get(room, {}).values() if skip is None or c.id != skip.id]
        logger.debug(f"Emitting {event} to {len(members)} connections in {room}")
        await self._deliver(members, event, data)

    async def notify_user(self, user_id: str, event: str, data: Any):
        """Push an event to every connection in a user's personal room."""
        await self.emit_to_room(user_room(user_id), event, data)

    async def broadcast_presence(self):
        users = [entry.model_dump() for entry in self._online.values()]
        await self.emit_to_all("users:online", users)

    # Rooms

    def _subscribe(self, connection: Connection, room: str):
        self._rooms.setdefault(room, {})[connection.id] = connection
        connection.rooms.add(room)

    def _unsubscribe(self, connection: Connection, room: str):
        members = self._rooms.get(room)
        if members is not None:
            members.pop(connection.id, None)
            if not members:
                del self._rooms[room]
        connection.rooms.discard(room)

    async def join_room(self, connection: Connection, community_id):
        # Any authenticated user may subscribe to any community room.
        # Membership is not checked here; see DESIGN.md.
        community_id = entity_id.validate_python(community_id)
        if not community_id:
            logger.debug(f"Ignoring community:join without an id from {connection.id}")
            return
        self._subscribe(connection, community_room(community_id))
        logger.info(f"User {connection.identity.name} joined community {community_id}")

    async def leave_room(self, connection: Connection, community_id):
        community_id = entity_id.validate_python(community_id)
        if not community_id:
            return
        self._unsubscribe(connection, community_room(community_id))
        logger.info(f"User {connection.identity.name} left community {community_id}")

    # Messages

    async def _store_call(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Message store timed out after {self.store_timeout}s") from e

    async def _report_error(self, connection: Connection, error: Exception):
        if isinstance(error, ValidationError):
            message = "; ".join(err["msg"].removeprefix("Value error, ") for err in error.errors())
        else:
            message = str(error)
        await connection.emit("message:error", {"message": message})

    async def send_community_message(self, connection: Connection, data):
        try:
            request = CommunityMessageRequest.model_validate(data)
            message = await self._store_call(self.store.create_message(
                connection.user_id,
                CommunityTarget(communityId=request.communityId),
                request.content,
                request.type,
                request.attachments(),
            ))
        except (ValidationError, GatewayError) as e:
            logger.warning(f"message:send from {connection.user_id} failed: {e}")
            await self._report_error(connection, e)
            return

        await self.emit_to_room(community_room(request.communityId), "message:new", message.to_wire())

    async def send_private_message(self, connection: Connection, data):
        try:
            request = PrivateMessageRequest.model_validate(data)
            message = await self._store_call(self.store.create_message(
                connection.user_id,
                DirectTarget(receiverId=request.receiverId),
                request.content,
                request.type,
                request.attachments(),
            ))
        except (ValidationError, GatewayError) as e:
            logger.warning(f"message:private from {connection.user_id} failed: {e}")
            await self._report_error(connection, e)
            return

        payload = message.to_wire()
        await self.emit_to_room(user_room(request.receiverId), "message:private:new", payload)
        await connection.emit("message:private:sent", payload)

    # Ephemeral relays

    async def _typing(self, connection: Connection, event: str, data, payload: dict):
        request = TypingRequest.model_validate(data or {})
        if request.communityId:
            await self.emit_to_room(community_room(request.communityId), event, payload, skip=connection)
        elif request.receiverId:
            await self.emit_to_room(user_room(request.receiverId), event, payload)

    async def typing_start(self, connection: Connection, data):
        await self._typing(connection, "typing:start", data, {
            "userId": connection.user_id,
            "userName": connection.identity.name,
        })

    async def typing_stop(self, connection: Connection, data):
        await self._typing(connection, "typing:stop", data, {"userId": connection.user_id})

    async def mark_read(self, connection: Connection, data) -> bool:
        """Best-effort read receipt.

        Failures are logged and never reported to the caller. Returns whether
        the sender was notified.
        """
        try:
            request = ReadReceiptRequest.model_validate(data)
            await self._store_call(self.store.mark_read(request.messageId))
            message = await self._store_call(self.store.find_by_id(request.messageId))
        except NotFoundError as e:
            logger.warning(f"Read receipt for missing message: {e}")
            return False
        except (ValidationError, GatewayError) as e:
            logger.warning(f"Read receipt from {connection.user_id} failed: {e}")
            return False

        if message is None:
            return False
        await self.notify_user(message.sender.id, "message:read", {
            "messageId": request.messageId,
            "readBy": connection.user_id,
        })
        return True

    async def relay_notification(self, connection: Connection, data) -> bool:
        """Best-effort relay; the notification is assumed to be persisted already."""
        try:
            request = NotificationRelayRequest.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Dropping notification:send from {connection.user_id}: {e}")
            return False
        await self.notify_user(request.userId, "notification:new", request.notification)
        return True

    # Dispatch

    async def handle_event(self, connection: Connection, event: str, data: Any):
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring unknown event {event!r} from {connection.id}")
            return
        try:
            await handler(connection, data)
        except Exception as e:
            logger.error(f"Error handling {event} from {connection.id}: {e}", exc_info=True)
